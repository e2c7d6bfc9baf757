"""Playback state for pre-recorded audio injected into the live mix."""
import logging
import time
from typing import Callable

from ..models import InjectedFile, isoformat, utcnow
from .state_store import BroadcastStateStore

logger = logging.getLogger(__name__)


class InjectionPlayer:
    """
    Tracks which file is playing and where the playhead is.

    The durable record only mirrors the current file; position, pause and
    seek live here and are lost on restart.
    """

    def __init__(self, store: BroadcastStateStore, clock: Callable[[], float] = time.monotonic):
        self._store = store
        self._clock = clock
        self._file: InjectedFile | None = None
        self._paused = False
        self._offset = 0.0
        self._anchor = 0.0

    @property
    def is_playing(self) -> bool:
        return self._file is not None

    @property
    def is_paused(self) -> bool:
        return self._file is not None and self._paused

    def position(self) -> float:
        if self._file is None:
            return 0.0
        pos = self._offset
        if not self._paused:
            pos += self._clock() - self._anchor
        return min(max(pos, 0.0), self._file.duration_seconds)

    def snapshot(self) -> dict:
        f = self._file
        return {
            "isPlaying": self.is_playing,
            "isPaused": self.is_paused,
            "currentFile": {"id": f.id, "title": f.title, "durationSeconds": f.duration_seconds} if f else None,
            "positionSeconds": round(self.position(), 3),
            "startedAt": isoformat(f.started_at) if f else None,
        }

    def _move_to(self, position: float) -> None:
        self._offset = min(max(position, 0.0), self._file.duration_seconds)
        self._anchor = self._clock()

    async def play(self, file_id: str, title: str, duration_seconds: float) -> dict:
        injected = InjectedFile(id=file_id, title=title, duration_seconds=duration_seconds, started_at=utcnow())
        await self._store.update(current_injected_file=injected)
        if self._file is not None:
            logger.info("Replacing injected audio %s with %s", self._file.id, file_id)
        self._file = injected
        self._paused = False
        self._offset = 0.0
        self._anchor = self._clock()
        logger.info("Injecting audio %s (%s, %.1fs)", file_id, title, duration_seconds)
        return self.snapshot()

    async def stop(self) -> dict:
        if self._file is not None:
            logger.info("Stopped injected audio %s", self._file.id)
        self.clear()
        await self._store.update(current_injected_file=None)
        return self.snapshot()

    def clear(self) -> None:
        """Forget playback without touching the durable record."""
        self._file = None
        self._paused = False
        self._offset = 0.0

    def pause(self) -> dict:
        if self._file is not None and not self._paused:
            self._offset = self.position()
            self._paused = True
        return self.snapshot()

    def resume(self) -> dict:
        if self._file is not None and self._paused:
            self._paused = False
            self._anchor = self._clock()
        return self.snapshot()

    def seek(self, time_seconds: float) -> dict:
        if self._file is not None:
            self._move_to(time_seconds)
        return self.snapshot()

    def skip(self, seconds: float) -> dict:
        if self._file is not None:
            self._move_to(self.position() + seconds)
        return self.snapshot()
