"""Shared pytest fixtures: settings, in-memory services and a TestClient harness."""
from dataclasses import dataclass, field
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from gateway.config import GatewaySettings
from gateway.context import build_context
from gateway.main import create_app
from tests.fakes import (
    TEST_SECRET,
    FakeObjectStore,
    FakeSpawner,
    InMemoryLiveState,
    InMemoryRecordings,
    ScriptedTranscoder,
    make_token,
)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path) -> GatewaySettings:
    return GatewaySettings(
        jwt_secret=TEST_SECRET,
        encoder_respawn_delay=0.01,
        encoder_restart_delay=0.01,
        session_cleanup_seconds=60,
        conversion_temp_dir=str(tmp_path / "scratch"),
        conversion_tick_seconds=0.01,
        conversion_retry_base_seconds=0.001,
    )


@pytest.fixture
def services(settings):
    """Real services over in-memory backends, for direct async tests."""
    fakes = SimpleNamespace(
        live_state=InMemoryLiveState(),
        recordings=InMemoryRecordings(),
        object_store=FakeObjectStore(),
        transcoder=ScriptedTranscoder(),
        spawner=FakeSpawner(),
    )
    ctx = build_context(
        settings,
        live_state=fakes.live_state,
        recordings=fakes.recordings,
        object_store=fakes.object_store,
        transcoder=fakes.transcoder,
        spawn=fakes.spawner,
    )
    return SimpleNamespace(ctx=ctx, **vars(fakes))


@dataclass
class Harness:
    client: TestClient
    settings: GatewaySettings
    live_state: InMemoryLiveState
    recordings: InMemoryRecordings
    object_store: FakeObjectStore
    transcoder: ScriptedTranscoder
    spawner: FakeSpawner
    tokens: dict = field(default_factory=dict)

    @property
    def ctx(self):
        return self.client.app.state.context

    def headers(self, user: str = "a") -> dict:
        return {"Authorization": f"Bearer {self.tokens[user]}"}

    def ws_url(self, user: str = "a") -> str:
        return f"/ws?token={self.tokens[user]}"


@pytest.fixture
def harness(settings):
    live_state = InMemoryLiveState()
    recordings = InMemoryRecordings()
    object_store = FakeObjectStore()
    transcoder = ScriptedTranscoder()
    spawner = FakeSpawner()
    app = create_app(
        settings,
        live_state=live_state,
        recordings=recordings,
        object_store=object_store,
        transcoder=transcoder,
        spawn=spawner,
    )
    tokens = {
        "a": make_token("u-a", "a@example.com", "presenter", "Presenter A"),
        "b": make_token("u-b", "b@example.com", "presenter", "Presenter B"),
        "admin": make_token("u-admin", "admin@example.com", "admin"),
        "super": make_token("u-super", "root@example.com", "super_admin"),
        "listener": make_token("u-l", "listener@example.com", "listener"),
    }
    with TestClient(app) as client:
        yield Harness(
            client=client,
            settings=settings,
            live_state=live_state,
            recordings=recordings,
            object_store=object_store,
            transcoder=transcoder,
            spawner=spawner,
            tokens=tokens,
        )
