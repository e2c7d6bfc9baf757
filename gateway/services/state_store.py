"""Atomic read-modify-write access to the durable BroadcastState record."""
import asyncio
import logging
from datetime import timedelta
from typing import Callable, Protocol

from ..models import BroadcastState, utcnow

logger = logging.getLogger(__name__)


class LiveStateBackend(Protocol):
    def load(self) -> dict | None: ...

    def save(self, doc: dict) -> None: ...


def normalize(state: BroadcastState, previous: BroadcastState) -> BroadcastState:
    """Re-derive the timestamps coupled to isMuted/isLive."""
    now = utcnow()
    changes = {"last_activity_at": now}

    if state.is_muted:
        if state.muted_at is None:
            changes["muted_at"] = previous.muted_at if previous.is_muted and previous.muted_at else now
    elif state.muted_at is not None:
        changes["muted_at"] = None

    if state.is_live:
        if state.started_at is None:
            changes["started_at"] = previous.started_at or now
    elif state.started_at is not None:
        changes["started_at"] = None

    return state.evolve(**changes)


class BroadcastStateStore:
    """
    Serializes every mutation of the live-state document.

    The durable record is the source of truth; callers never hold a copy
    across an await without re-reading it through this store.
    """

    def __init__(self, backend: LiveStateBackend):
        self._backend = backend
        self._lock = asyncio.Lock()

    async def _load(self) -> BroadcastState:
        doc = await asyncio.to_thread(self._backend.load)
        return BroadcastState.from_doc(doc)

    async def get(self) -> BroadcastState:
        async with self._lock:
            return await self._load()

    async def mutate(self, fn: Callable[[BroadcastState], BroadcastState]) -> BroadcastState:
        async with self._lock:
            current = await self._load()
            updated = normalize(fn(current), current)
            await asyncio.to_thread(self._backend.save, updated.to_doc())
            return updated

    async def update(self, **changes) -> BroadcastState:
        return await self.mutate(lambda state: state.evolve(**changes))

    async def reset(self) -> BroadcastState:
        """Back to offline defaults. The record is never deleted."""
        state = await self.mutate(lambda _: BroadcastState())
        logger.info("Broadcast state reset to offline")
        return state


def consistency_report(state: BroadcastState, stale_after_seconds: float) -> list[str]:
    issues = []
    if state.is_muted and not state.muted_at:
        issues.append("Muted state without mutedAt timestamp")
    if not state.is_muted and state.muted_at:
        issues.append("Unmuted state with mutedAt timestamp")
    if state.is_live and not state.started_at:
        issues.append("Live state without startedAt timestamp")
    if not state.is_live and state.started_at:
        issues.append("Offline state with startedAt timestamp")
    if state.is_live and state.last_activity_at:
        if utcnow() - state.last_activity_at > timedelta(seconds=stale_after_seconds):
            issues.append("Live state with stale activity timestamp")
    return issues
