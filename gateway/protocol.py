"""
Presenter real-time channel protocol.

One WebSocket carries both JSON control messages and raw little-endian PCM
frames. Text frames (or binary frames that start with '{' or '[') are
control messages; everything else is audio.
"""
import json
import numbers
from dataclasses import dataclass, field
from typing import Union

from .errors import CommandError
from .models import AudioConfig

LATENCY_MODES = ("ultra_low", "normal")

_JSON_LEADING_BYTES = (ord("{"), ord("["))

DEFAULT_TITLE = "Live Broadcast"
# Reconnecting clients historically omit their config; these match the browser encoder.
RECONNECT_DEFAULT_CONFIG = AudioConfig(sample_rate=22050, channels=1, bitrate=96)


@dataclass(frozen=True)
class StartStream:
    title: str = DEFAULT_TITLE
    presenter_name: str | None = None
    config: AudioConfig = field(default_factory=AudioConfig)


@dataclass(frozen=True)
class ReconnectStream:
    title: str | None = None
    presenter_name: str | None = None
    config: AudioConfig = RECONNECT_DEFAULT_CONFIG


@dataclass(frozen=True)
class StopStream:
    pass


@dataclass(frozen=True)
class MuteBroadcast:
    pass


@dataclass(frozen=True)
class UnmuteBroadcast:
    pass


@dataclass(frozen=True)
class ToggleMonitor:
    enabled: bool


@dataclass(frozen=True)
class InjectAudio:
    file_id: str
    file_name: str
    duration_seconds: float


@dataclass(frozen=True)
class StopInjection:
    pass


@dataclass(frozen=True)
class PauseInjection:
    pass


@dataclass(frozen=True)
class ResumeInjection:
    pass


@dataclass(frozen=True)
class SeekInjection:
    time: float


@dataclass(frozen=True)
class SkipInjection:
    seconds: float


@dataclass(frozen=True)
class Ping:
    pass


@dataclass(frozen=True)
class ConfigureLatency:
    mode: str


@dataclass(frozen=True)
class UnknownCommand:
    type: str


Command = Union[
    StartStream,
    ReconnectStream,
    StopStream,
    MuteBroadcast,
    UnmuteBroadcast,
    ToggleMonitor,
    InjectAudio,
    StopInjection,
    PauseInjection,
    ResumeInjection,
    SeekInjection,
    SkipInjection,
    Ping,
    ConfigureLatency,
    UnknownCommand,
]

COMMAND_TYPES = (
    StartStream,
    ReconnectStream,
    StopStream,
    MuteBroadcast,
    UnmuteBroadcast,
    ToggleMonitor,
    InjectAudio,
    StopInjection,
    PauseInjection,
    ResumeInjection,
    SeekInjection,
    SkipInjection,
    Ping,
    ConfigureLatency,
    UnknownCommand,
)


def _is_number(value) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _positive_int(data: dict, key: str, default: int) -> int:
    value = data.get(key)
    if value is None:
        return default
    if not _is_number(value) or value <= 0:
        raise CommandError(f"Invalid {key}: must be a positive number")
    return int(value)


def _audio_config(data: dict, default: AudioConfig) -> AudioConfig:
    return AudioConfig(
        sample_rate=_positive_int(data, "sampleRate", default.sample_rate),
        channels=_positive_int(data, "channels", default.channels),
        bitrate=_positive_int(data, "bitrate", default.bitrate),
    )


def _require(data: dict, *keys: str):
    missing = [k for k in keys if data.get(k) in (None, "")]
    if missing:
        raise CommandError(f"Missing required fields: {', '.join(missing)}")


def decode_command(data: dict) -> Command:
    """Turn a decoded JSON object into a command. Raises CommandError on malformed fields."""
    if not isinstance(data, dict):
        raise CommandError("Control message must be a JSON object")
    kind = data.get("type")
    if not isinstance(kind, str) or not kind:
        raise CommandError("Control message is missing 'type'")

    if kind == "start_stream":
        return StartStream(
            title=data.get("title") or DEFAULT_TITLE,
            presenter_name=data.get("presenterName"),
            config=_audio_config(data, AudioConfig()),
        )
    if kind == "reconnect_stream":
        return ReconnectStream(
            title=data.get("title"),
            presenter_name=data.get("presenterName"),
            config=_audio_config(data, RECONNECT_DEFAULT_CONFIG),
        )
    if kind == "stop_stream":
        return StopStream()
    if kind == "mute_broadcast":
        return MuteBroadcast()
    if kind == "unmute_broadcast":
        return UnmuteBroadcast()
    if kind == "toggle_monitor":
        enabled = data.get("enabled")
        if not isinstance(enabled, bool):
            raise CommandError("Invalid enabled: must be true or false")
        return ToggleMonitor(enabled=enabled)
    if kind == "inject_audio":
        duration = data.get("durationSeconds", data.get("duration"))
        _require(data, "fileId", "fileName")
        if not _is_number(duration) or duration <= 0:
            raise CommandError("Invalid durationSeconds: must be a positive number")
        return InjectAudio(file_id=str(data["fileId"]), file_name=str(data["fileName"]), duration_seconds=float(duration))
    if kind == "stop_audio_injection":
        return StopInjection()
    if kind == "pause_audio_injection":
        return PauseInjection()
    if kind == "resume_audio_injection":
        return ResumeInjection()
    if kind == "seek_audio_injection":
        time = data.get("time")
        if not _is_number(time) or time < 0:
            raise CommandError("Invalid time parameter")
        return SeekInjection(time=float(time))
    if kind == "skip_audio_injection":
        seconds = data.get("seconds")
        if not _is_number(seconds):
            raise CommandError("Invalid seconds parameter")
        return SkipInjection(seconds=float(seconds))
    if kind == "ping":
        return Ping()
    if kind == "configure_latency":
        mode = data.get("mode")
        if mode not in LATENCY_MODES:
            raise CommandError(f"Invalid latency mode: {mode}")
        return ConfigureLatency(mode=mode)
    return UnknownCommand(type=kind)


def parse_frame(text: str | None = None, data: bytes | None = None) -> Command | bytes | None:
    """
    Classify one inbound frame.

    Returns a Command for control messages, the raw bytes for audio frames,
    or None for an empty frame. Raises CommandError only for frames that
    were meant to be control messages.
    """
    if text is not None:
        try:
            payload = json.loads(text)
        except ValueError:
            raise CommandError("Failed to process message")
        return decode_command(payload)

    if not data:
        return None
    if data[0] not in _JSON_LEADING_BYTES:
        return data
    try:
        payload = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        # PCM that happens to start with 0x7B/0x5B.
        return data
    return decode_command(payload)


def event(kind: str, **fields) -> dict:
    """Outbound notification."""
    return {"type": kind, **fields}
