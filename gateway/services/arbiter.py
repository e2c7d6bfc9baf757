"""
Session arbiter: at most one live presenter, globally.

The durable BroadcastState is authoritative; the in-memory BroadcastSession
is a cache that can be rebuilt when the same presenter reconnects, whether
after a dropped connection or a gateway restart.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

from ..errors import NoActiveSession, PermissionDenied, PresenterConflict
from ..models import AudioConfig, BroadcastState, Identity, isoformat, utcnow
from ..protocol import DEFAULT_TITLE, ReconnectStream, StartStream, event
from .encoder import EncoderManager
from .injection import InjectionPlayer
from .state_store import BroadcastStateStore

logger = logging.getLogger(__name__)


class PresenterConnection(Protocol):
    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


@dataclass
class BroadcastSession:
    identity: Identity
    connection: PresenterConnection | None
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    session_start_time: datetime = field(default_factory=utcnow)
    disconnected_at: datetime | None = None
    cleanup_task: asyncio.Task | None = None
    audio_config: AudioConfig | None = None
    latency_mode: str = "normal"

    @property
    def connected(self) -> bool:
        return self.connection is not None

    def owned_by(self, identity: Identity) -> bool:
        return self.identity.user_id == identity.user_id

    def cancel_cleanup(self) -> None:
        task, self.cleanup_task = self.cleanup_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def summary(self) -> dict:
        return {
            "sessionId": self.session_id,
            "presenter": self.identity.to_dict(),
            "connected": self.connected,
            "sessionStartTime": isoformat(self.session_start_time),
            "disconnectedAt": isoformat(self.disconnected_at),
            "cleanupPending": self.cleanup_task is not None and not self.cleanup_task.done(),
            "audioConfig": self.audio_config.to_dict() if self.audio_config else None,
            "latencyMode": self.latency_mode,
        }


class SessionArbiter:
    def __init__(
        self,
        store: BroadcastStateStore,
        encoder: EncoderManager,
        injection: InjectionPlayer,
        *,
        cleanup_seconds: float = 30 * 60,
        super_role: str = "super_admin",
    ):
        self._store = store
        self._encoder = encoder
        self._injection = injection
        self._cleanup_seconds = cleanup_seconds
        self._super_role = super_role
        self._session: BroadcastSession | None = None
        # Guards slot transitions (claim, disconnect, stop, cleanup).
        self._lock = asyncio.Lock()
        encoder.bind(self.notify_presenter, self._presenter_attached)

    @property
    def session(self) -> BroadcastSession | None:
        return self._session

    def _presenter_attached(self) -> bool:
        return self._session is not None and self._session.connected

    def owns(self, connection: PresenterConnection) -> bool:
        return self._session is not None and self._session.connection is connection

    def require_owner(self, identity: Identity, allow_super: bool = False) -> BroadcastSession:
        session = self._session
        if session is None:
            raise NoActiveSession()
        if session.owned_by(identity):
            return session
        if allow_super and identity.role == self._super_role:
            return session
        raise PermissionDenied("Only the active presenter can control this broadcast")

    async def notify_presenter(self, message: dict) -> bool:
        session = self._session
        if session is None or session.connection is None:
            return False
        try:
            await session.connection.send_json(message)
        except Exception as e:
            logger.debug("Notify presenter failed (%s): %s", message.get("type"), e)
            return False
        return True

    async def _close_quietly(self, connection: PresenterConnection, reason: str) -> None:
        try:
            await connection.close(code=1000, reason=reason)
        except Exception as e:
            logger.debug("Close presenter connection: %s", e)

    def _abandoned(self, state: BroadcastState) -> bool:
        if state.last_activity_at is None:
            return True
        return utcnow() - state.last_activity_at > timedelta(seconds=self._cleanup_seconds)

    # Slot transitions. Callers hold self._lock.

    async def _claim(
        self, identity: Identity, connection: PresenterConnection
    ) -> tuple[BroadcastSession, BroadcastState, bool]:
        """Attach the connection to the slot. Returns (session, durable state, recovering)."""
        state = await self._store.get()
        session = self._session

        if session is not None:
            if not session.owned_by(identity):
                raise PresenterConflict(state.presenter_name or session.identity.display_name)
            previous = session.connection
            session.cancel_cleanup()
            session.connection = connection
            session.disconnected_at = None
            if previous is not None and previous is not connection:
                logger.info("Presenter %s opened a new connection; closing the old one", identity.email)
                await self._close_quietly(previous, "Replaced by a newer connection")
            return session, state, state.is_live

        if state.is_live and state.presenter_id != identity.user_id:
            if not self._abandoned(state):
                raise PresenterConflict(state.presenter_name or state.presenter_email or "unknown")
            logger.warning(
                "Live record for %s has had no activity for over %ss; releasing it",
                state.presenter_name, self._cleanup_seconds,
            )
            state = await self._store.reset()

        session = BroadcastSession(identity=identity, connection=connection)
        recovering = state.is_live
        if recovering:
            logger.info("Recovering live session for %s from durable state", identity.email)
            session.session_start_time = state.started_at or session.session_start_time
            session.audio_config = state.audio_config
            session.latency_mode = state.latency_mode or "normal"
        self._session = session
        return session, state, recovering

    async def _teardown(self) -> None:
        """Stop everything and put the durable record back to offline defaults."""
        session, self._session = self._session, None
        if session is not None:
            session.cancel_cleanup()
        await self._encoder.stop()
        self._injection.clear()
        await self._store.reset()

    async def _expire(self, session: BroadcastSession) -> None:
        await asyncio.sleep(self._cleanup_seconds)
        async with self._lock:
            if self._session is not session or session.connected:
                return
            logger.info("Cleanup deadline passed for %s; resetting broadcast", session.identity.email)
            await self._teardown()

    # Connection lifecycle

    async def connect(self, identity: Identity, connection: PresenterConnection) -> BroadcastSession:
        """Claim or recover the slot. Raises PresenterConflict without touching any state."""
        async with self._lock:
            session, state, recovering = await self._claim(identity, connection)
            if recovering:
                state = await self._store.update(presenter_connected=True)
                if not self._encoder.streaming:
                    session.audio_config = session.audio_config or AudioConfig()
                    self._encoder.set_muted(state.is_muted)
                    await self._encoder.start(
                        session.audio_config,
                        state.presenter_name or identity.display_name,
                        session.latency_mode,
                    )

        if recovering and state.is_muted:
            await self.notify_presenter(event(
                "session_recovered",
                message="Session recovered. The broadcast is still muted; unmute when ready.",
                isMuted=True,
                startedAt=isoformat(state.started_at),
                sessionId=session.session_id,
            ))
        elif recovering:
            await self.notify_presenter(event(
                "ready",
                message="Reconnected to live session",
                recovered=True,
                startedAt=isoformat(state.started_at),
                sessionId=session.session_id,
            ))
        else:
            logger.info("Presenter %s connected (session %s)", identity.email, session.session_id)
            await self.notify_presenter(event(
                "ready", message="Connected to broadcast gateway", sessionId=session.session_id
            ))
        return session

    async def disconnect(self, connection: PresenterConnection) -> None:
        """Presenter connection dropped. Holds a live session open for the cleanup window."""
        async with self._lock:
            session = self._session
            if session is None or session.connection is not connection:
                return
            session.connection = None
            session.disconnected_at = utcnow()
            await self._encoder.stop()

            state = await self._store.get()
            if not state.is_live:
                self._session = None
                logger.info("Presenter %s disconnected before going live; slot released", session.identity.email)
                return

            await self._store.update(is_muted=True, presenter_connected=False)
            session.cleanup_task = asyncio.create_task(self._expire(session))
            logger.info(
                "Presenter %s disconnected; broadcast auto-muted, holding session for %ss",
                session.identity.email, self._cleanup_seconds,
            )

    # Broadcast control

    async def _owning_session(self, identity: Identity, connection: PresenterConnection) -> BroadcastSession:
        if self.owns(connection):
            return self._session
        session, _, _ = await self._claim(identity, connection)
        return session

    async def start_stream(self, identity: Identity, connection: PresenterConnection, command: StartStream) -> dict | None:
        async with self._lock:
            session = await self._owning_session(identity, connection)
            presenter = command.presenter_name or identity.display_name
            if not await self._encoder.start(command.config, presenter, session.latency_mode):
                return None
            session.audio_config = command.config
            state = await self._store.update(
                is_live=True,
                is_muted=False,
                title=command.title,
                presenter_name=presenter,
                presenter_id=identity.user_id,
                presenter_email=identity.email,
                presenter_connected=True,
                audio_config=command.config,
                latency_mode=session.latency_mode,
            )
            self._encoder.set_muted(False)

        logger.info("Broadcast '%s' started by %s", command.title, presenter)
        await self.notify_presenter(event(
            "stream_started",
            message="Live stream active",
            config=command.config.to_dict(),
            startedAt=isoformat(state.started_at),
        ))
        return {"sessionId": session.session_id, "startedAt": isoformat(state.started_at)}

    async def reconnect_stream(
        self, identity: Identity, connection: PresenterConnection, command: ReconnectStream
    ) -> dict | None:
        """Client-side reconnect: respawn the encoder but keep startedAt and mute state."""
        async with self._lock:
            session = await self._owning_session(identity, connection)
            current = await self._store.get()
            if self._encoder.streaming:
                await self._encoder.stop()
            presenter = command.presenter_name or current.presenter_name or identity.display_name
            self._encoder.set_muted(current.is_muted)
            if not await self._encoder.start(command.config, presenter, session.latency_mode):
                return None
            session.audio_config = command.config
            state = await self._store.update(
                is_live=True,
                title=command.title or current.title or DEFAULT_TITLE,
                presenter_name=presenter,
                presenter_id=identity.user_id,
                presenter_email=identity.email,
                presenter_connected=True,
                audio_config=command.config,
                latency_mode=session.latency_mode,
            )

        logger.info("Broadcast stream reconnected by %s", presenter)
        await self.notify_presenter(event(
            "stream_started",
            message="Stream reconnected",
            config=command.config.to_dict(),
            isMuted=state.is_muted,
            startedAt=isoformat(state.started_at),
        ))
        return {"sessionId": session.session_id, "startedAt": isoformat(state.started_at)}

    async def stop_stream(self, identity: Identity) -> dict:
        async with self._lock:
            session = self.require_owner(identity, allow_super=True)
            forced = not session.owned_by(identity)
            message = "Stream stopped by administrator" if forced else "Stream stopped"
            await self.notify_presenter(event("stream_stopped", message=message))
            await self._teardown()
        logger.info("Broadcast stopped by %s%s", identity.email, " (override)" if forced else "")
        return {"message": message, "sessionId": session.session_id}

    async def emergency_stop(self, admin: Identity, reason: str | None = None, stopped_by: str | None = None) -> dict:
        """Force-terminate whatever is live. Succeeds even when nothing is."""
        stopped_by = stopped_by or admin.email
        async with self._lock:
            session = self._session
            connection = session.connection if session else None
            if connection is not None:
                await self.notify_presenter(event(
                    "emergency_stop",
                    message="Broadcast stopped by administrator",
                    stoppedBy=stopped_by,
                    reason=reason,
                ))
            await self._teardown()
            if connection is not None:
                await self._close_quietly(connection, "Emergency stop")
        logger.warning(
            "EMERGENCY STOP by %s (reason: %s, active session: %s)",
            stopped_by, reason or "none given", session.session_id if session else "none",
        )
        return {"stoppedBy": stopped_by, "hadActiveSession": session is not None}

    async def mute(self, identity: Identity) -> dict:
        session = self.require_owner(identity)
        state = await self._store.update(is_muted=True)
        self._encoder.set_muted(True)
        muted_at = isoformat(state.muted_at)
        await self.notify_presenter(event("broadcast_muted", message="Broadcast muted", mutedAt=muted_at))
        logger.info("Broadcast muted by %s", identity.email)
        return {"message": "Broadcast muted", "sessionId": session.session_id, "mutedAt": muted_at}

    async def unmute(self, identity: Identity) -> dict:
        session = self.require_owner(identity)
        await self._store.update(is_muted=False)
        self._encoder.set_muted(False)
        await self.notify_presenter(event("broadcast_unmuted", message="Broadcast unmuted"))
        logger.info("Broadcast unmuted by %s", identity.email)
        return {"message": "Broadcast unmuted", "sessionId": session.session_id}

    async def set_monitoring(self, identity: Identity, enabled: bool) -> dict:
        self.require_owner(identity)
        state = await self._store.update(is_monitoring=enabled)
        await self.notify_presenter(event("monitor_toggled", isMonitoring=state.is_monitoring))
        return {"isMonitoring": state.is_monitoring}

    async def configure_latency(self, identity: Identity, mode: str) -> dict:
        """Takes effect on the next encoder spawn."""
        session = self.require_owner(identity)
        session.latency_mode = mode
        await self._store.update(latency_mode=mode)
        await self.notify_presenter(event("latency_configured", mode=mode))
        return {"mode": mode}

    def summary(self) -> dict | None:
        return self._session.summary() if self._session else None

    async def shutdown(self) -> None:
        """Process exit: stop local resources but leave the durable record for recovery."""
        async with self._lock:
            if self._session is not None:
                self._session.cancel_cleanup()
        await self._encoder.shutdown()
