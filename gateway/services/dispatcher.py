"""
Control-command dispatcher.

Demultiplexes the presenter channel into control commands and PCM frames,
and gives the HTTP surface the same ownership-checked command handlers.
"""
import logging
from typing import Awaitable, Callable

from ..errors import CommandError, GatewayError
from ..models import Identity
from ..protocol import (
    COMMAND_TYPES,
    Command,
    ConfigureLatency,
    InjectAudio,
    MuteBroadcast,
    PauseInjection,
    Ping,
    ReconnectStream,
    ResumeInjection,
    SeekInjection,
    SkipInjection,
    StartStream,
    StopInjection,
    StopStream,
    ToggleMonitor,
    UnknownCommand,
    UnmuteBroadcast,
    event,
    parse_frame,
)
from .arbiter import PresenterConnection, SessionArbiter
from .encoder import EncoderManager
from .injection import InjectionPlayer

logger = logging.getLogger(__name__)

Handler = Callable[[Command, Identity, PresenterConnection | None], Awaitable[dict | None]]


class ControlDispatcher:
    def __init__(self, arbiter: SessionArbiter, encoder: EncoderManager, injection: InjectionPlayer):
        self._arbiter = arbiter
        self._encoder = encoder
        self._injection = injection
        self._handlers: dict[type, Handler] = {
            StartStream: self._start_stream,
            ReconnectStream: self._reconnect_stream,
            StopStream: self._stop_stream,
            MuteBroadcast: self._mute,
            UnmuteBroadcast: self._unmute,
            ToggleMonitor: self._toggle_monitor,
            InjectAudio: self._inject_audio,
            StopInjection: self._stop_injection,
            PauseInjection: self._pause_injection,
            ResumeInjection: self._resume_injection,
            SeekInjection: self._seek_injection,
            SkipInjection: self._skip_injection,
            Ping: self._ping,
            ConfigureLatency: self._configure_latency,
            UnknownCommand: self._unknown,
        }
        missing = set(COMMAND_TYPES) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for: {', '.join(sorted(c.__name__ for c in missing))}")

    async def handle_frame(
        self,
        identity: Identity,
        connection: PresenterConnection,
        *,
        text: str | None = None,
        data: bytes | None = None,
    ) -> None:
        """One inbound WebSocket message. Errors go back to the sender, never up the stack."""
        try:
            item = parse_frame(text=text, data=data)
        except CommandError as e:
            await connection.send_json(event("error", message=e.message))
            return
        if item is None:
            return
        if isinstance(item, bytes):
            if self._arbiter.owns(connection):
                self._encoder.feed(item)
            return

        try:
            await self.execute(item, identity, connection)
        except GatewayError as e:
            logger.info("Command %s from %s rejected: %s", type(item).__name__, identity.email, e.message)
            await connection.send_json(event("error", message=e.message, code=e.code))

    async def execute(
        self, command: Command, identity: Identity, connection: PresenterConnection | None = None
    ) -> dict | None:
        return await self._handlers[type(command)](command, identity, connection)

    async def _start_stream(self, command: StartStream, identity, connection):
        if connection is None:
            raise CommandError("start_stream is only available on the live channel")
        return await self._arbiter.start_stream(identity, connection, command)

    async def _reconnect_stream(self, command: ReconnectStream, identity, connection):
        if connection is None:
            raise CommandError("reconnect_stream is only available on the live channel")
        return await self._arbiter.reconnect_stream(identity, connection, command)

    async def _stop_stream(self, command: StopStream, identity, connection):
        return await self._arbiter.stop_stream(identity)

    async def _mute(self, command: MuteBroadcast, identity, connection):
        return await self._arbiter.mute(identity)

    async def _unmute(self, command: UnmuteBroadcast, identity, connection):
        return await self._arbiter.unmute(identity)

    async def _toggle_monitor(self, command: ToggleMonitor, identity, connection):
        return await self._arbiter.set_monitoring(identity, command.enabled)

    async def _configure_latency(self, command: ConfigureLatency, identity, connection):
        return await self._arbiter.configure_latency(identity, command.mode)

    async def _announce(self, action: str, playback: dict) -> None:
        await self._arbiter.notify_presenter(event("audio_injection", action=action, **playback))

    async def _inject_audio(self, command: InjectAudio, identity, connection):
        self._arbiter.require_owner(identity)
        playback = await self._injection.play(command.file_id, command.file_name, command.duration_seconds)
        await self._announce("play", playback)
        return {"fileId": command.file_id, "fileName": command.file_name, "duration": command.duration_seconds}

    async def _stop_injection(self, command: StopInjection, identity, connection):
        self._arbiter.require_owner(identity)
        await self._announce("stop", await self._injection.stop())
        return {"action": "stop"}

    async def _pause_injection(self, command: PauseInjection, identity, connection):
        self._arbiter.require_owner(identity)
        await self._announce("pause", self._injection.pause())
        return {"action": "pause"}

    async def _resume_injection(self, command: ResumeInjection, identity, connection):
        self._arbiter.require_owner(identity)
        await self._announce("resume", self._injection.resume())
        return {"action": "resume"}

    async def _seek_injection(self, command: SeekInjection, identity, connection):
        self._arbiter.require_owner(identity)
        playback = self._injection.seek(command.time)
        await self._announce("seek", playback)
        return {"action": "seek", "time": command.time, "position": playback["positionSeconds"]}

    async def _skip_injection(self, command: SkipInjection, identity, connection):
        self._arbiter.require_owner(identity)
        playback = self._injection.skip(command.seconds)
        await self._announce("skip", playback)
        return {"action": "skip", "seconds": command.seconds, "position": playback["positionSeconds"]}

    async def _ping(self, command: Ping, identity, connection):
        if connection is not None:
            await connection.send_json(event("pong"))
        return None

    async def _unknown(self, command: UnknownCommand, identity, connection):
        raise CommandError(f"Unknown command: {command.type}")
