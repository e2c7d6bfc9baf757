"""Domain records: presenter identity, broadcast state, conversion jobs."""
import enum
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """pymongo hands back naive UTC datetimes unless the client is tz-aware."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return as_utc(value).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class Identity:
    """Claims carried by a verified bearer credential."""

    user_id: str
    email: str
    role: str
    name: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.email

    def to_dict(self) -> dict:
        return {"userId": self.user_id, "email": self.email, "role": self.role, "name": self.name}


@dataclass(frozen=True)
class AudioConfig:
    sample_rate: int = 44100
    channels: int = 1
    bitrate: int = 128

    def to_dict(self) -> dict:
        return {"sampleRate": self.sample_rate, "channels": self.channels, "bitrate": self.bitrate}

    @classmethod
    def from_dict(cls, data: dict | None) -> "AudioConfig":
        data = data or {}
        default = cls()
        return cls(
            sample_rate=int(data.get("sampleRate") or default.sample_rate),
            channels=int(data.get("channels") or default.channels),
            bitrate=int(data.get("bitrate") or default.bitrate),
        )


@dataclass(frozen=True)
class InjectedFile:
    id: str
    title: str
    duration_seconds: float
    started_at: datetime

    def to_doc(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "durationSeconds": self.duration_seconds,
            "startedAt": self.started_at,
        }

    @classmethod
    def from_doc(cls, doc: dict | None) -> "InjectedFile | None":
        if not doc:
            return None
        return cls(
            id=str(doc.get("id")),
            title=doc.get("title") or "",
            duration_seconds=float(doc.get("durationSeconds") or 0),
            started_at=as_utc(doc.get("startedAt")) or utcnow(),
        )


# Field name on the dataclass -> field name in the stored document.
_STATE_FIELDS = {
    "is_live": "isLive",
    "is_muted": "isMuted",
    "muted_at": "mutedAt",
    "is_monitoring": "isMonitoring",
    "title": "title",
    "presenter_name": "presenterName",
    "presenter_id": "presenterId",
    "presenter_email": "presenterEmail",
    "presenter_connected": "presenterConnected",
    "started_at": "startedAt",
    "current_injected_file": "currentInjectedFile",
    "audio_config": "audioConfig",
    "latency_mode": "latencyMode",
    "last_activity_at": "lastActivityAt",
}

_TIMESTAMP_FIELDS = ("muted_at", "started_at", "last_activity_at")


@dataclass(frozen=True)
class BroadcastState:
    """The single live-broadcast record. Offline defaults are the field defaults."""

    is_live: bool = False
    is_muted: bool = False
    muted_at: datetime | None = None
    is_monitoring: bool = False
    title: str | None = None
    presenter_name: str | None = None
    presenter_id: str | None = None
    presenter_email: str | None = None
    presenter_connected: bool = False
    started_at: datetime | None = None
    current_injected_file: InjectedFile | None = None
    audio_config: AudioConfig | None = None
    latency_mode: str | None = None
    last_activity_at: datetime | None = None

    def evolve(self, **changes) -> "BroadcastState":
        return replace(self, **changes)

    def to_doc(self) -> dict:
        doc = {}
        for attr, key in _STATE_FIELDS.items():
            value = getattr(self, attr)
            if isinstance(value, InjectedFile):
                value = value.to_doc()
            elif isinstance(value, AudioConfig):
                value = value.to_dict()
            doc[key] = value
        return doc

    @classmethod
    def from_doc(cls, doc: dict | None) -> "BroadcastState":
        if not doc:
            return cls()
        values = {}
        for attr, key in _STATE_FIELDS.items():
            if key in doc:
                values[attr] = doc[key]
        # Older documents name the presenter "lecturer".
        if "presenter_name" not in values and doc.get("lecturer"):
            values["presenter_name"] = doc["lecturer"]
        for attr in _TIMESTAMP_FIELDS:
            if attr in values:
                values[attr] = as_utc(values[attr])
        if "current_injected_file" in values:
            values["current_injected_file"] = InjectedFile.from_doc(values["current_injected_file"])
        if values.get("audio_config") is not None:
            values["audio_config"] = AudioConfig.from_dict(values["audio_config"])
        for flag in ("is_live", "is_muted", "is_monitoring", "presenter_connected"):
            if flag in values:
                values[flag] = bool(values[flag])
        return cls(**values)

    def to_api(self) -> dict:
        injected = self.current_injected_file
        return {
            "isLive": self.is_live,
            "isMuted": self.is_muted,
            "mutedAt": isoformat(self.muted_at),
            "isMonitoring": self.is_monitoring,
            "title": self.title,
            "presenterName": self.presenter_name,
            "presenterConnected": self.presenter_connected,
            "startedAt": isoformat(self.started_at),
            "currentInjectedFile": (
                {
                    "id": injected.id,
                    "title": injected.title,
                    "durationSeconds": injected.duration_seconds,
                    "startedAt": isoformat(injected.started_at),
                }
                if injected
                else None
            ),
            "audioConfig": self.audio_config.to_dict() if self.audio_config else None,
            "latencyMode": self.latency_mode,
            "lastActivityAt": isoformat(self.last_activity_at),
        }


class ConversionStatus(str, enum.Enum):
    """Durable conversion status stored on the recording."""

    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ConversionJob:
    recording_id: str
    source_location: str
    source_format: str
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.QUEUED
    progress_percent: int = 0
    attempt_count: int = 0
    last_error: str | None = None
    result_playback_url: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in (JobStatus.QUEUED, JobStatus.PROCESSING)

    def to_status(self) -> dict:
        return {
            "jobId": self.job_id,
            "recordId": self.recording_id,
            "status": self.status.value,
            "progress": self.progress_percent,
            "attempts": self.attempt_count,
            "error": self.last_error,
            "playbackUrl": self.result_playback_url,
        }
