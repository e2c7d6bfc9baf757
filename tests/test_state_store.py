from datetime import timedelta

import anyio
import pytest

from gateway.models import BroadcastState, utcnow
from gateway.services.state_store import BroadcastStateStore, consistency_report
from tests.fakes import InMemoryLiveState


def _invariants_hold(state: BroadcastState) -> bool:
    return (state.is_muted == (state.muted_at is not None)) and (state.is_live == (state.started_at is not None))


@pytest.mark.anyio
async def test_first_read_is_offline_defaults():
    store = BroadcastStateStore(InMemoryLiveState())
    state = await store.get()
    assert state == BroadcastState()


@pytest.mark.anyio
async def test_mute_sets_and_unmute_clears_muted_at():
    backend = InMemoryLiveState()
    store = BroadcastStateStore(backend)
    muted = await store.update(is_muted=True)
    assert muted.muted_at is not None
    assert backend.doc["mutedAt"] == muted.muted_at

    again = await store.update(is_muted=True)
    assert again.muted_at == muted.muted_at

    unmuted = await store.update(is_muted=False)
    assert unmuted.muted_at is None


@pytest.mark.anyio
async def test_started_at_preserved_while_live_and_cleared_on_reset():
    store = BroadcastStateStore(InMemoryLiveState())
    live = await store.update(is_live=True, title="Tafsir")
    t0 = live.started_at
    assert t0 is not None

    await store.update(is_muted=True)
    await store.update(is_muted=False, title="Tafsir (cont.)")
    assert (await store.get()).started_at == t0

    offline = await store.reset()
    assert offline.started_at is None
    assert offline.is_live is False
    assert offline.last_activity_at is not None


@pytest.mark.anyio
async def test_every_mutation_keeps_invariants():
    store = BroadcastStateStore(InMemoryLiveState())
    steps = [
        dict(is_live=True),
        dict(is_muted=True),
        dict(is_muted=True, muted_at=None),
        dict(is_live=False),
        dict(is_muted=False),
        dict(is_live=True, started_at=None),
        dict(is_muted=False, muted_at=utcnow()),
    ]
    for changes in steps:
        state = await store.update(**changes)
        assert _invariants_hold(state), changes
        assert consistency_report(state, 60) == []


@pytest.mark.anyio
async def test_concurrent_mutations_serialize():
    store = BroadcastStateStore(InMemoryLiveState())

    def bump(state: BroadcastState) -> BroadcastState:
        return state.evolve(title=str(int(state.title or 0) + 1))

    async with anyio.create_task_group() as tg:
        for _ in range(25):
            tg.start_soon(store.mutate, bump)

    assert (await store.get()).title == "25"


def test_consistency_report_flags_broken_documents():
    now = utcnow()
    broken = BroadcastState(is_muted=True, is_live=True, started_at=now, last_activity_at=now - timedelta(hours=2))
    issues = consistency_report(broken, stale_after_seconds=1800)
    assert "Muted state without mutedAt timestamp" in issues
    assert "Live state with stale activity timestamp" in issues

    offline = BroadcastState(started_at=now, muted_at=now)
    issues = consistency_report(offline, stale_after_seconds=1800)
    assert "Offline state with startedAt timestamp" in issues
    assert "Unmuted state with mutedAt timestamp" in issues


def test_legacy_document_fields():
    state = BroadcastState.from_doc({"isLive": 1, "lecturer": "Sheikh X", "startedAt": None})
    assert state.is_live is True
    assert state.presenter_name == "Sheikh X"
