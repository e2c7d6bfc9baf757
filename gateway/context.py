"""Wires settings, repositories and services into one object per app."""
from dataclasses import dataclass

from starlette.requests import HTTPConnection

from radiodb.db import get_database
from radiodb.live_state import LiveStateRepository
from radiodb.recordings import RecordingRepository

from .config import GatewaySettings
from .services.arbiter import SessionArbiter
from .services.conversion import ConversionQueue, RecordingStore
from .services.dispatcher import ControlDispatcher
from .services.encoder import EncoderManager, Spawn
from .services.injection import InjectionPlayer
from .services.state_store import BroadcastStateStore, LiveStateBackend
from .services.storage import ObjectStore, S3ObjectStore
from .services.transcoder import FfmpegTranscoder, Transcoder


@dataclass
class GatewayContext:
    settings: GatewaySettings
    state_store: BroadcastStateStore
    encoder: EncoderManager
    injection: InjectionPlayer
    arbiter: SessionArbiter
    dispatcher: ControlDispatcher
    conversion: ConversionQueue
    # True between start() and close(); /ws refuses presenters otherwise.
    accepting_presenters: bool = False

    async def start(self) -> None:
        self.conversion.start()
        self.accepting_presenters = True

    async def close(self) -> None:
        self.accepting_presenters = False
        await self.conversion.stop()
        await self.arbiter.shutdown()


def build_context(
    settings: GatewaySettings,
    *,
    live_state: LiveStateBackend | None = None,
    recordings: RecordingStore | None = None,
    object_store: ObjectStore | None = None,
    transcoder: Transcoder | None = None,
    spawn: Spawn | None = None,
) -> GatewayContext:
    """Anything not passed in is built from settings (MongoDB, S3, ffmpeg)."""
    if live_state is None or recordings is None:
        db = get_database(settings.mongo_uri, settings.mongo_db)
        live_state = live_state or LiveStateRepository(db)
        recordings = recordings or RecordingRepository(db)
    if object_store is None:
        object_store = S3ObjectStore(
            settings.s3_bucket,
            settings.aws_region,
            endpoint=settings.s3_endpoint,
            public_base_url=settings.s3_public_base_url,
        )
    transcoder = transcoder or FfmpegTranscoder(settings.ffmpeg_binary)

    state_store = BroadcastStateStore(live_state)
    encoder = EncoderManager(
        settings.relay,
        ffmpeg_binary=settings.ffmpeg_binary,
        respawn_delay=settings.encoder_respawn_delay,
        restart_delay=settings.encoder_restart_delay,
        max_write_buffer=settings.encoder_max_write_buffer,
        spawn=spawn,
    )
    injection = InjectionPlayer(state_store)
    arbiter = SessionArbiter(
        state_store,
        encoder,
        injection,
        cleanup_seconds=settings.session_cleanup_seconds,
        super_role=settings.super_role,
    )
    conversion = ConversionQueue(
        recordings,
        object_store,
        transcoder,
        temp_dir=settings.conversion_temp_dir,
        max_concurrent=settings.conversion_max_concurrent,
        max_attempts=settings.conversion_max_attempts,
        tick_seconds=settings.conversion_tick_seconds,
        retry_base_seconds=settings.conversion_retry_base_seconds,
    )
    return GatewayContext(
        settings=settings,
        state_store=state_store,
        encoder=encoder,
        injection=injection,
        arbiter=arbiter,
        dispatcher=ControlDispatcher(arbiter, encoder, injection),
        conversion=conversion,
    )


def context_of(conn: HTTPConnection) -> GatewayContext:
    return conn.app.state.context
