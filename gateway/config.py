"""
Gateway configuration.

Reads a .env file (python-dotenv) and environment variables, with defaults
suitable for a local Icecast + MongoDB setup.
"""
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_ENV_FILE = PROJECT_ROOT / ".env"

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _load_env_file() -> None:
    env_path = Path(os.getenv("GATEWAY_ENV_FILE", str(DEFAULT_ENV_FILE)))
    if env_path.exists():
        load_dotenv(env_path, override=False)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Invalid {name}: {raw} (must be an integer)")


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Invalid {name}: {raw} (must be a number)")


def _list_env(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class RelayTarget:
    """Icecast mount the live encoder pushes to."""

    host: str = "localhost"
    port: int = 8000
    password: str = "hackme"
    mount: str = "/stream"
    stream_name: str = "Live Radio"
    genre: str = "Talk"

    @property
    def url(self) -> str:
        return f"icecast://source:{self.password}@{self.host}:{self.port}{self.mount}"


@dataclass(frozen=True)
class GatewaySettings:
    host: str = "0.0.0.0"
    port: int = 8080
    allowed_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])
    log_level: str = "INFO"

    # Auth
    jwt_secret: str = ""
    jwt_issuer: str = "broadcast-portal"
    jwt_audience: str = "broadcast-gateway"
    broadcast_roles: list[str] = field(default_factory=lambda: ["presenter", "admin", "super_admin"])
    admin_roles: list[str] = field(default_factory=lambda: ["admin", "super_admin"])
    super_role: str = "super_admin"

    relay: RelayTarget = field(default_factory=RelayTarget)

    # Live encoder
    ffmpeg_binary: str = "ffmpeg"
    encoder_respawn_delay: float = 2.0
    encoder_restart_delay: float = 1.0
    encoder_max_write_buffer: int = 256 * 1024

    # Session
    session_cleanup_seconds: float = 30 * 60
    stale_activity_seconds: float = 30 * 60

    # Durable store
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "online-radio"

    # Object storage
    aws_region: str = "us-east-1"
    s3_bucket: str = ""
    s3_endpoint: str | None = None
    s3_public_base_url: str | None = None

    # Conversion queue
    conversion_temp_dir: str = str(Path(tempfile.gettempdir()) / "audio-conversion")
    conversion_max_concurrent: int = 2
    conversion_max_attempts: int = 3
    conversion_tick_seconds: float = 1.0
    conversion_retry_base_seconds: float = 1.0

    def validate(self) -> None:
        """Raise ValueError describing the first invalid setting."""
        if not 1 <= self.port <= 65535:
            raise ValueError(f"Invalid GATEWAY_PORT: {self.port} (must be 1-65535)")
        if not 1 <= self.relay.port <= 65535:
            raise ValueError(f"Invalid ICECAST_PORT: {self.relay.port} (must be 1-65535)")
        if not self.relay.mount.startswith("/"):
            raise ValueError(f"Invalid ICECAST_MOUNT: {self.relay.mount} (must start with '/')")
        if self.log_level.upper() not in VALID_LOG_LEVELS:
            raise ValueError(
                f"Invalid LOG_LEVEL: {self.log_level} (must be one of: {', '.join(VALID_LOG_LEVELS)})"
            )
        if not self.broadcast_roles:
            raise ValueError("BROADCAST_ROLES cannot be empty")
        if not self.admin_roles:
            raise ValueError("ADMIN_ROLES cannot be empty")
        if self.conversion_max_concurrent < 1:
            raise ValueError(
                f"Invalid CONVERSION_MAX_CONCURRENT: {self.conversion_max_concurrent} (must be >= 1)"
            )
        if self.conversion_max_attempts < 1:
            raise ValueError(
                f"Invalid CONVERSION_MAX_ATTEMPTS: {self.conversion_max_attempts} (must be >= 1)"
            )
        for name, value in (
            ("CONVERSION_TICK_SECONDS", self.conversion_tick_seconds),
            ("CONVERSION_RETRY_BASE_SECONDS", self.conversion_retry_base_seconds),
            ("SESSION_CLEANUP_SECONDS", self.session_cleanup_seconds),
            ("ENCODER_RESPAWN_DELAY_SECONDS", self.encoder_respawn_delay),
            ("ENCODER_RESTART_DELAY_SECONDS", self.encoder_restart_delay),
            ("ENCODER_MAX_WRITE_BUFFER_BYTES", self.encoder_max_write_buffer),
        ):
            if value <= 0:
                raise ValueError(f"Invalid {name}: {value} (must be > 0)")


def load_settings() -> GatewaySettings:
    """Build settings from .env + environment and validate them."""
    _load_env_file()

    relay = RelayTarget(
        host=os.getenv("ICECAST_HOST", "localhost"),
        port=_int_env("ICECAST_PORT", 8000),
        password=os.getenv("ICECAST_PASSWORD", "hackme"),
        mount=os.getenv("ICECAST_MOUNT", "/stream"),
        stream_name=os.getenv("ICECAST_STREAM_NAME", "Live Radio"),
        genre=os.getenv("ICECAST_GENRE", "Talk"),
    )
    defaults = GatewaySettings()
    settings = GatewaySettings(
        host=os.getenv("GATEWAY_HOST", defaults.host),
        port=_int_env("GATEWAY_PORT", defaults.port),
        allowed_origins=_list_env("ALLOWED_ORIGINS", defaults.allowed_origins),
        log_level=os.getenv("LOG_LEVEL", defaults.log_level),
        jwt_secret=os.getenv("JWT_SECRET", ""),
        jwt_issuer=os.getenv("JWT_ISSUER", defaults.jwt_issuer),
        jwt_audience=os.getenv("JWT_AUDIENCE", defaults.jwt_audience),
        broadcast_roles=_list_env("BROADCAST_ROLES", defaults.broadcast_roles),
        admin_roles=_list_env("ADMIN_ROLES", defaults.admin_roles),
        super_role=os.getenv("SUPER_ROLE", defaults.super_role),
        relay=relay,
        ffmpeg_binary=os.getenv("FFMPEG_BINARY", defaults.ffmpeg_binary),
        encoder_respawn_delay=_float_env("ENCODER_RESPAWN_DELAY_SECONDS", defaults.encoder_respawn_delay),
        encoder_restart_delay=_float_env("ENCODER_RESTART_DELAY_SECONDS", defaults.encoder_restart_delay),
        encoder_max_write_buffer=_int_env("ENCODER_MAX_WRITE_BUFFER_BYTES", defaults.encoder_max_write_buffer),
        session_cleanup_seconds=_float_env("SESSION_CLEANUP_SECONDS", defaults.session_cleanup_seconds),
        stale_activity_seconds=_float_env("STALE_ACTIVITY_SECONDS", defaults.stale_activity_seconds),
        mongo_uri=os.getenv("MONGO_URI", defaults.mongo_uri),
        mongo_db=os.getenv("MONGO_DB", defaults.mongo_db),
        aws_region=os.getenv("AWS_REGION", defaults.aws_region),
        s3_bucket=os.getenv("AWS_S3_BUCKET", ""),
        s3_endpoint=os.getenv("S3_ENDPOINT") or None,
        s3_public_base_url=os.getenv("S3_PUBLIC_BASE_URL") or None,
        conversion_temp_dir=os.getenv("CONVERSION_TEMP_DIR", defaults.conversion_temp_dir),
        conversion_max_concurrent=_int_env("CONVERSION_MAX_CONCURRENT", defaults.conversion_max_concurrent),
        conversion_max_attempts=_int_env("CONVERSION_MAX_ATTEMPTS", defaults.conversion_max_attempts),
        conversion_tick_seconds=_float_env("CONVERSION_TICK_SECONDS", defaults.conversion_tick_seconds),
        conversion_retry_base_seconds=_float_env(
            "CONVERSION_RETRY_BASE_SECONDS", defaults.conversion_retry_base_seconds
        ),
    )
    settings.validate()
    if not settings.jwt_secret:
        logger.warning("JWT_SECRET is not set; every authenticated request will be rejected")
    return settings
