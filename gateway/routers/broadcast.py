"""Out-of-band broadcast controls for the presenter that owns the live session."""
from fastapi import APIRouter, Depends, Request

from ..auth import require_identity
from ..context import context_of
from ..models import Identity, isoformat, utcnow
from ..protocol import decode_command
from ..services.state_store import consistency_report
from .common import json_body

router = APIRouter(prefix="/api/broadcast")


def _ok(result: dict | None) -> dict:
    return {"success": True, **(result or {}), "timestamp": isoformat(utcnow())}


async def _run(request: Request, identity: Identity, kind: str, body: dict | None = None) -> dict:
    command = decode_command({**(body or {}), "type": kind})
    return _ok(await context_of(request).dispatcher.execute(command, identity))


@router.post("/mute")
async def mute(request: Request, identity: Identity = Depends(require_identity)):
    return await _run(request, identity, "mute_broadcast")


@router.post("/unmute")
async def unmute(request: Request, identity: Identity = Depends(require_identity)):
    return await _run(request, identity, "unmute_broadcast")


@router.post("/monitor")
async def monitor(request: Request, body: dict = Depends(json_body), identity: Identity = Depends(require_identity)):
    return await _run(request, identity, "toggle_monitor", {"enabled": body.get("enabled")})


@router.post("/audio/play")
async def play_audio(request: Request, body: dict = Depends(json_body), identity: Identity = Depends(require_identity)):
    return await _run(request, identity, "inject_audio", body)


@router.post("/audio/stop")
async def stop_audio(request: Request, identity: Identity = Depends(require_identity)):
    return await _run(request, identity, "stop_audio_injection")


@router.post("/audio/pause")
async def pause_audio(request: Request, identity: Identity = Depends(require_identity)):
    return await _run(request, identity, "pause_audio_injection")


@router.post("/audio/resume")
async def resume_audio(request: Request, identity: Identity = Depends(require_identity)):
    return await _run(request, identity, "resume_audio_injection")


@router.post("/audio/seek")
async def seek_audio(request: Request, body: dict = Depends(json_body), identity: Identity = Depends(require_identity)):
    return await _run(request, identity, "seek_audio_injection", {"time": body.get("time")})


@router.post("/audio/skip")
async def skip_audio(request: Request, body: dict = Depends(json_body), identity: Identity = Depends(require_identity)):
    return await _run(request, identity, "skip_audio_injection", {"seconds": body.get("seconds")})


@router.get("/state")
async def broadcast_state(request: Request, identity: Identity = Depends(require_identity)):
    """Durable record plus the in-memory session, playback and encoder views."""
    ctx = context_of(request)
    state = await ctx.state_store.get()
    return _ok({
        "state": state.to_api(),
        "session": ctx.arbiter.summary(),
        "injection": ctx.injection.snapshot(),
        "encoder": ctx.encoder.status(),
        "issues": consistency_report(state, ctx.settings.stale_activity_seconds),
    })
