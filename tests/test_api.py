import pytest
from starlette.websockets import WebSocketDisconnect

from gateway.models import as_utc, isoformat
from tests.fakes import eventually

START = {
    "type": "start_stream",
    "title": "Tafsir",
    "presenterName": "Sheikh X",
    "sampleRate": 22050,
    "channels": 1,
    "bitrate": 96,
}


def go_live(ws) -> dict:
    assert ws.receive_json()["type"] == "ready"
    ws.send_json(START)
    started = ws.receive_json()
    assert started["type"] == "stream_started"
    return started


def test_health(harness):
    body = harness.client.get("/health").json()
    assert body["status"] == "ok"
    assert body["services"] == {"websocket": "active", "conversion": "active", "icecast": "disconnected"}
    assert body["queue"] == {"queued": 0, "processing": 0}
    assert body["timestamp"].endswith("Z")


def test_presenter_goes_live(harness):
    with harness.client.websocket_connect(harness.ws_url("a")) as ws:
        started = go_live(ws)
        assert started["config"] == {"sampleRate": 22050, "channels": 1, "bitrate": 96}

        doc = harness.live_state.load()
        assert doc["isLive"] is True
        assert doc["startedAt"] is not None
        assert doc["presenterName"] == "Sheikh X"
        assert harness.client.get("/health").json()["services"]["icecast"] == "connected"

        pcm = b"\x01\x00\x02\x00" * 512
        ws.send_bytes(pcm)
        eventually(lambda: bytes(harness.spawner.current.stdin.written) == pcm)

        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}

        ws.send_json({"type": "wave_hands"})
        assert ws.receive_json()["message"] == "Unknown command: wave_hands"

        ws.send_text("{definitely not json")
        assert ws.receive_json()["message"] == "Failed to process message"


def test_second_presenter_is_turned_away(harness):
    with harness.client.websocket_connect(harness.ws_url("a")) as ws_a:
        go_live(ws_a)
        before = harness.live_state.load()["presenterName"]

        with pytest.raises(WebSocketDisconnect):
            with harness.client.websocket_connect(harness.ws_url("b")) as ws_b:
                error = ws_b.receive_json()
                assert error["type"] == "error"
                assert "Sheikh X" in error["message"]
                ws_b.receive_json()

        assert harness.live_state.load()["presenterName"] == before == "Sheikh X"
        assert harness.live_state.load()["isLive"] is True
        assert harness.ctx.arbiter.session.identity.user_id == "u-a"


def test_reconnect_within_deadline_recovers_session(harness):
    with harness.client.websocket_connect(harness.ws_url("a")) as ws:
        go_live(ws)
        t0 = harness.live_state.load()["startedAt"]

    eventually(lambda: harness.live_state.load()["presenterConnected"] is False)
    doc = harness.live_state.load()
    assert doc["isLive"] is True and doc["isMuted"] is True

    with harness.client.websocket_connect(harness.ws_url("a")) as ws:
        recovered = ws.receive_json()
        assert recovered["type"] == "session_recovered"
        assert recovered["isMuted"] is True
        assert recovered["startedAt"] == isoformat(as_utc(t0))
        assert harness.live_state.load()["startedAt"] == t0

        resp = harness.client.post("/api/broadcast/unmute", headers=harness.headers("a"))
        assert resp.status_code == 200
        assert ws.receive_json()["type"] == "broadcast_unmuted"


def test_supervisor_can_force_stop(harness):
    with harness.client.websocket_connect(harness.ws_url("a")) as ws_a:
        go_live(ws_a)
        with harness.client.websocket_connect(harness.ws_url("super")) as ws_root:
            assert ws_root.receive_json()["code"] == "PRESENTER_CONFLICT"
            ws_root.send_json({"type": "stop_stream"})
            stopped = ws_a.receive_json()
            assert stopped == {"type": "stream_stopped", "message": "Stream stopped by administrator"}
        assert not harness.live_state.load()["isLive"]


def test_broadcast_controls_over_http(harness):
    client = harness.client
    assert client.post("/api/broadcast/mute", headers=harness.headers("a")).status_code == 404

    with client.websocket_connect(harness.ws_url("a")) as ws:
        go_live(ws)

        resp = client.post("/api/broadcast/mute", headers=harness.headers("b"))
        assert resp.status_code == 403

        resp = client.post("/api/broadcast/mute", headers=harness.headers("a"))
        body = resp.json()
        assert body["success"] is True
        assert body["message"] == "Broadcast muted"
        assert body["sessionId"] == harness.ctx.arbiter.session.session_id
        assert "timestamp" in body
        assert ws.receive_json()["type"] == "broadcast_muted"
        assert harness.live_state.load()["mutedAt"] is not None

        resp = client.post("/api/broadcast/monitor", headers=harness.headers("a"), json={"enabled": True})
        assert resp.json()["isMonitoring"] is True
        assert ws.receive_json() == {"type": "monitor_toggled", "isMonitoring": True}

        resp = client.post("/api/broadcast/audio/play", headers=harness.headers("a"), json={"fileId": "f1"})
        assert resp.status_code == 400

        resp = client.post(
            "/api/broadcast/audio/play",
            headers=harness.headers("a"),
            json={"fileId": "f1", "fileName": "Nasheed", "duration": 90},
        )
        assert resp.json()["fileName"] == "Nasheed" and resp.json()["duration"] == 90
        assert ws.receive_json()["action"] == "play"

        for action in ("pause", "resume", "stop"):
            resp = client.post(f"/api/broadcast/audio/{action}", headers=harness.headers("a"))
            assert resp.json()["action"] == action
            assert ws.receive_json()["action"] == action

        resp = client.post("/api/broadcast/audio/seek", headers=harness.headers("a"), json={"time": -4})
        assert resp.status_code == 400
        resp = client.post("/api/broadcast/audio/seek", headers=harness.headers("a"), json={"time": 10})
        assert resp.json()["action"] == "seek" and resp.json()["time"] == 10
        ws.receive_json()

        resp = client.post("/api/broadcast/audio/skip", headers=harness.headers("a"), json={"seconds": 15})
        assert resp.json()["action"] == "skip" and resp.json()["seconds"] == 15
        ws.receive_json()

        resp = client.post("/api/broadcast/audio/pause", headers=harness.headers("b"))
        assert resp.status_code == 403

        state = client.get("/api/broadcast/state", headers=harness.headers("a")).json()
        assert state["state"]["isLive"] is True
        assert state["state"]["isMonitoring"] is True
        assert state["session"]["presenter"]["userId"] == "u-a"
        assert state["encoder"]["state"] == "running"
        assert state["issues"] == []


def test_emergency_stop_disconnects_presenter(harness):
    with harness.client.websocket_connect(harness.ws_url("a")) as ws:
        go_live(ws)
        resp = harness.client.post(
            "/api/emergency-stop",
            headers=harness.headers("admin"),
            json={"adminEmail": "ops@example.com", "reason": "Off-air request"},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["stoppedBy"] == "ops@example.com"
        assert body["hadActiveSession"] is True

        notice = ws.receive_json()
        assert notice["type"] == "emergency_stop"
        assert notice["reason"] == "Off-air request"
        with pytest.raises(WebSocketDisconnect):
            ws.receive_json()

    assert harness.live_state.load()["isLive"] is False
    assert harness.ctx.arbiter.session is None


def test_emergency_stop_with_nothing_live(harness):
    resp = harness.client.post("/api/emergency-stop", headers=harness.headers("admin"), json={})
    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert resp.json()["stoppedBy"] == "admin@example.com"
    doc = harness.live_state.load() or {}
    assert not doc.get("isLive")
    assert doc.get("startedAt") is None


def test_conversion_flow(harness):
    harness.recordings.records["rec1"] = {"format": "amr", "conversionStatus": "pending"}
    resp = harness.client.post(
        "/api/convert-audio",
        headers=harness.headers("a"),
        json={"recordId": "rec1", "originalKey": "original/rec1.amr", "format": "amr"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "queued"
    assert body["message"] == "Conversion queued"

    def completed():
        status = harness.client.get(f"/api/convert-status/{body['jobId']}", headers=harness.headers("a")).json()
        return status["status"] == "completed"

    eventually(completed)
    status = harness.client.get(f"/api/convert-status/{body['jobId']}", headers=harness.headers("a")).json()
    assert status["playbackUrl"] == "https://cdn.example.com/playback/rec1.mp3"
    assert harness.recordings.records["rec1"]["conversionStatus"] == "ready"

    again = harness.client.post(
        "/api/convert-audio",
        headers=harness.headers("a"),
        json={"recordId": "rec1", "originalKey": "original/rec1.amr", "format": "amr"},
    ).json()
    assert again["status"] == "completed"
    assert again["jobId"] == "existing_rec1"
    assert again["playbackUrl"] == status["playbackUrl"]


def test_conversion_rejects_unsupported_format(harness):
    harness.recordings.records["rec2"] = {"format": "mp3", "conversionStatus": "ready"}
    resp = harness.client.post(
        "/api/convert-audio",
        headers=harness.headers("a"),
        json={"recordId": "rec2", "originalKey": "original/rec2.mp3", "format": "mp3"},
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_FORMAT"
    assert harness.client.get("/health").json()["queue"] == {"queued": 0, "processing": 0}
    assert harness.recordings.history == []


def test_conversion_request_validation(harness):
    resp = harness.client.post("/api/convert-audio", headers=harness.headers("a"), json={"recordId": "rec1"})
    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_REQUEST"

    resp = harness.client.post(
        "/api/convert-audio",
        headers=harness.headers("a"),
        json={"recordId": "ghost", "originalKey": "original/ghost.amr", "format": "amr"},
    )
    assert resp.status_code == 500
    assert resp.json()["code"] == "CONVERSION_FAILED"

    resp = harness.client.get("/api/convert-status/nope", headers=harness.headers("a"))
    assert resp.status_code == 404
    assert resp.json() == {"success": False, "error": "Job not found", "code": "JOB_NOT_FOUND"}


def test_bodies_that_are_not_json_objects_read_as_empty(harness):
    headers = harness.headers("a")
    resp = harness.client.post("/api/convert-audio", headers=headers, json=["rec1"])
    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_REQUEST"

    resp = harness.client.post(
        "/api/convert-audio",
        headers={**headers, "Content-Type": "application/json"},
        content=b"{not json",
    )
    assert resp.status_code == 400
    assert resp.json()["success"] is False

    resp = harness.client.post("/api/broadcast/audio/seek", headers=headers, json=5)
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": "Invalid time parameter", "code": "INVALID_COMMAND"}

    resp = harness.client.post("/api/emergency-stop", headers=harness.headers("admin"), json="stop")
    assert resp.status_code == 200
    assert resp.json()["stoppedBy"] == "admin@example.com"


@pytest.mark.anyio
async def test_presenter_channel_follows_context_lifecycle(services):
    ctx = services.ctx
    assert ctx.accepting_presenters is False
    await ctx.start()
    assert ctx.accepting_presenters is True
    await ctx.close()
    assert ctx.accepting_presenters is False
    assert ctx.conversion.running is False


def test_presenter_channel_refused_when_not_accepting(harness):
    harness.ctx.accepting_presenters = False
    assert harness.client.get("/health").json()["services"]["websocket"] == "stopped"
    with pytest.raises(WebSocketDisconnect) as exc:
        with harness.client.websocket_connect(harness.ws_url("a")) as ws:
            ws.receive_json()
    assert exc.value.code == 1013
    assert harness.ctx.arbiter.session is None
    harness.ctx.accepting_presenters = True
