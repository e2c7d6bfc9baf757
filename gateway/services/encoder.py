"""
Live encoder process manager.

Owns the single ffmpeg subprocess that turns the presenter's raw PCM into
MP3 and pushes it to the Icecast mount. Exposes start/feed/stop; restarts
the process at most once on its own (shared budget between unexpected
exits and broken stdin writes) before requiring an explicit start.
"""
import asyncio
import enum
import logging
import re
from collections import deque
from typing import Awaitable, Callable

from ..config import RelayTarget
from ..models import AudioConfig
from ..protocol import event

logger = logging.getLogger(__name__)

Notify = Callable[[dict], Awaitable[None]]
Spawn = Callable[..., Awaitable[asyncio.subprocess.Process]]
CommandBuilder = Callable[[AudioConfig, str, str], list[str]]

STOP_TIMEOUT_SEC = 5.0
STDERR_TAIL_LINES = 20
STDERR_CHUNK_BYTES = 4096
STDERR_MAX_LINE_BYTES = 8192

EXIT_MESSAGES = {
    234: "Cannot connect to streaming server. Please check Icecast configuration.",
    1: "Audio encoding error.",
}

_CONNECTED_MARKERS = ("Stream #0:0", "Opening")
_INSTABILITY_MARKERS = ("Broken pipe", "Connection reset")
# ffmpeg ends progress lines with \r, log lines with \n.
_LINE_BREAK = re.compile(rb"[\r\n]")


class EncoderState(enum.Enum):
    NOT_RUNNING = "not_running"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


def build_ffmpeg_args(
    binary: str,
    relay: RelayTarget,
    config: AudioConfig,
    presenter: str,
    latency_mode: str = "normal",
) -> list[str]:
    """s16le PCM on stdin -> MP3 -> icecast:// with no input buffering."""
    args = [
        binary,
        "-hide_banner",
        "-nostats",
        "-loglevel", "info",
        "-fflags", "+nobuffer",
        "-flags", "low_delay",
        "-probesize", "32",
        "-analyzeduration", "0",
        "-f", "s16le",
        "-ar", str(config.sample_rate),
        "-ac", str(config.channels),
        "-i", "pipe:0",
        "-acodec", "libmp3lame",
        "-ab", f"{config.bitrate}k",
        "-ac", "1",
        "-ar", "44100",
    ]
    if latency_mode == "ultra_low":
        args += ["-flush_packets", "1", "-max_delay", "0"]
    args += [
        "-f", "mp3",
        "-content_type", "audio/mpeg",
        "-ice_name", relay.stream_name,
        "-ice_description", f"Live from {presenter}",
        "-ice_genre", relay.genre,
        "-ice_public", "1",
        relay.url,
    ]
    return args


class EncoderManager:
    def __init__(
        self,
        relay: RelayTarget,
        *,
        ffmpeg_binary: str = "ffmpeg",
        respawn_delay: float = 2.0,
        restart_delay: float = 1.0,
        max_write_buffer: int = 256 * 1024,
        max_auto_respawns: int = 1,
        spawn: Spawn | None = None,
        command_builder: CommandBuilder | None = None,
    ):
        self._relay = relay
        self._ffmpeg_binary = ffmpeg_binary
        self._respawn_delay = respawn_delay
        self._restart_delay = restart_delay
        self._max_write_buffer = max_write_buffer
        self._max_auto_respawns = max_auto_respawns
        self._spawn_fn = spawn or asyncio.create_subprocess_exec
        self._command_builder = command_builder or self._default_command

        self._notify: Notify | None = None
        self._session_active: Callable[[], bool] = lambda: True

        self._state = EncoderState.NOT_RUNNING
        self._process: asyncio.subprocess.Process | None = None
        # Bumped whenever a process is retired on purpose; watchers of older generations stay quiet.
        self._generation = 0
        self._tasks: set[asyncio.Task] = set()
        self._restart_task: asyncio.Task | None = None
        self._desired_running = False
        self._respawns_used = 0
        self._muted = False
        self._dropped_frames = 0
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)

        self._config: AudioConfig | None = None
        self._presenter = ""
        self._latency_mode = "normal"

    def _default_command(self, config: AudioConfig, presenter: str, latency_mode: str) -> list[str]:
        return build_ffmpeg_args(self._ffmpeg_binary, self._relay, config, presenter, latency_mode)

    def bind(self, notify: Notify, session_active: Callable[[], bool]) -> None:
        """Route notifications to whoever currently owns the broadcast."""
        self._notify = notify
        self._session_active = session_active

    @property
    def state(self) -> EncoderState:
        return self._state

    @property
    def streaming(self) -> bool:
        return self._state == EncoderState.RUNNING

    @property
    def muted(self) -> bool:
        return self._muted

    def set_muted(self, muted: bool) -> None:
        """While muted, frames are replaced with silence so the mount stays connected."""
        self._muted = muted

    def status(self) -> dict:
        return {
            "state": self._state.value,
            "streaming": self.streaming,
            "pid": self._process.pid if self._process else None,
            "respawnsUsed": self._respawns_used,
            "droppedFrames": self._dropped_frames,
            "muted": self._muted,
        }

    async def _emit(self, message: dict) -> None:
        if self._notify is not None:
            await self._notify(message)

    async def start(self, config: AudioConfig, presenter: str, latency_mode: str = "normal") -> bool:
        """Spawn the encoder. Returns True on success; announcing stream_started is left to the caller."""
        if self._state in (EncoderState.STARTING, EncoderState.RUNNING):
            logger.info("Encoder already running; start ignored")
            await self._emit(event("error", message="Stream already active"))
            return False
        self._cancel_restart()
        self._config = config
        self._presenter = presenter
        self._latency_mode = latency_mode
        self._respawns_used = 0
        self._desired_running = True
        started = await self._spawn()
        if not started:
            self._desired_running = False
        return started

    async def _spawn(self) -> bool:
        args = self._command_builder(self._config, self._presenter, self._latency_mode)
        self._state = EncoderState.STARTING
        self._stderr_tail.clear()
        logger.info("Starting encoder: %s", " ".join(a if "icecast://" not in a else "icecast://***" for a in args))
        try:
            process = await self._spawn_fn(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error("Encoder spawn failed: %s", e)
            self._state = EncoderState.NOT_RUNNING
            await self._emit(event("stream_error", message="Encoding error occurred. Please try again.", error=str(e)))
            return False

        self._process = process
        self._generation += 1
        generation = self._generation
        self._state = EncoderState.RUNNING
        logger.info("Encoder process started (pid=%s)", process.pid)
        self._track(asyncio.create_task(self._watch(process, generation)))
        if process.stderr is not None:
            self._track(asyncio.create_task(self._drain_stderr(process, generation)))
        return True

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def feed(self, frame: bytes) -> bool:
        """Write one PCM frame. Never raises; returns False when the frame was not written."""
        process = self._process
        if self._state != EncoderState.RUNNING or process is None or process.stdin is None:
            return False
        stdin = process.stdin
        if stdin.transport.is_closing():
            self._restart_after_write_failure(BrokenPipeError("encoder stdin closed"))
            return False
        if stdin.transport.get_write_buffer_size() > self._max_write_buffer:
            # Real-time audio: drop rather than queue behind a stalled encoder.
            self._dropped_frames += 1
            if self._dropped_frames % 100 == 1:
                logger.warning("Encoder input backed up; dropped %d frames so far", self._dropped_frames)
            return False
        if self._muted:
            frame = bytes(len(frame))
        try:
            stdin.write(frame)
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            self._restart_after_write_failure(e)
            return False
        return True

    def _restart_after_write_failure(self, error: Exception) -> None:
        if self._restart_task is not None and not self._restart_task.done():
            return
        logger.warning("Encoder write failed (%s); restarting encoder", error)
        process = self._process
        self._retire(process)
        self._state = EncoderState.NOT_RUNNING
        self._recover(self._restart_delay)

    def _retire(self, process: asyncio.subprocess.Process | None) -> None:
        """Kill a process we no longer want, without its exit counting as a failure."""
        self._generation += 1
        self._process = None
        if process is None:
            return
        if process.stdin is not None:
            process.stdin.close()
        try:
            process.kill()
        except ProcessLookupError:
            pass

    def _recover(self, delay: float) -> None:
        if self._respawns_used >= self._max_auto_respawns:
            self._state = EncoderState.FAILED
            logger.error("Encoder failed again after automatic restart; giving up")
            self._track(asyncio.create_task(self._emit(event(
                "stream_failed",
                message="Stream failed after an automatic restart. Start the stream again to retry.",
                error="\n".join(self._stderr_tail) or None,
            ))))
            return
        self._respawns_used += 1
        logger.warning("Scheduling encoder respawn %d/%d in %.1fs", self._respawns_used, self._max_auto_respawns, delay)
        self._restart_task = asyncio.create_task(self._respawn_after(delay))

    async def _respawn_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if not self._desired_running or not self._session_active():
            logger.info("Encoder respawn skipped; session no longer active")
            return
        if await self._spawn():
            await self._emit(event("stream_started", message="Stream reconnected", config=self._config.to_dict()))

    async def _watch(self, process: asyncio.subprocess.Process, generation: int) -> None:
        code = await process.wait()
        if generation != self._generation:
            return
        self._process = None
        self._state = EncoderState.NOT_RUNNING
        if code == 0:
            logger.info("Encoder exited cleanly")
            return
        logger.warning("Encoder exited unexpectedly with code %s", code)
        if not self._desired_running or not self._session_active():
            return
        base = EXIT_MESSAGES.get(code, f"Stream connection lost (code {code}).")
        await self._emit(event("stream_error", message=f"{base} Attempting to reconnect...", error=f"exit code {code}"))
        self._recover(self._respawn_delay)

    async def _drain_stderr(self, process: asyncio.subprocess.Process, generation: int) -> None:
        """Read stderr until EOF so ffmpeg never blocks on a full pipe."""
        connected_sent = False
        pending = b""
        while True:
            chunk = await process.stderr.read(STDERR_CHUNK_BYTES)
            if chunk:
                *lines, pending = _LINE_BREAK.split(pending + chunk)
                if len(pending) > STDERR_MAX_LINE_BYTES:
                    lines.append(pending)
                    pending = b""
            else:
                lines, pending = [pending], b""
            for raw in lines:
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                self._stderr_tail.append(line)
                logger.debug("ffmpeg: %s", line)
                if generation != self._generation:
                    continue
                if not connected_sent and any(m in line for m in _CONNECTED_MARKERS):
                    connected_sent = True
                    await self._emit(event("icecast_connected", message="Successfully connected to Icecast server"))
                if any(m in line for m in _INSTABILITY_MARKERS):
                    logger.warning("Encoder connection issue: %s", line)
                    await self._emit(event("stream_warning", message="Connection instability detected - attempting to stabilize"))
            if not chunk:
                return

    def _cancel_restart(self) -> None:
        if self._restart_task is not None and not self._restart_task.done():
            self._restart_task.cancel()
        self._restart_task = None

    async def stop(self) -> None:
        """Terminate the encoder with SIGTERM. Safe to call when nothing is running."""
        self._desired_running = False
        self._cancel_restart()
        process = self._process
        if process is None:
            self._state = EncoderState.NOT_RUNNING
            return

        self._state = EncoderState.STOPPING
        self._generation += 1
        self._process = None
        if process.stdin is not None:
            process.stdin.close()
        try:
            process.terminate()
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=STOP_TIMEOUT_SEC)
        except asyncio.TimeoutError:
            logger.warning("Encoder did not exit after SIGTERM; killing")
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        self._state = EncoderState.NOT_RUNNING
        self._muted = False
        logger.info("Encoder stopped")

    async def shutdown(self) -> None:
        await self.stop()
        for task in list(self._tasks):
            task.cancel()
