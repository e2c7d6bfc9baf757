"""Unauthenticated liveness probe."""
from fastapi import APIRouter, Request

from ..context import context_of
from ..models import isoformat, utcnow

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    ctx = context_of(request)
    return {
        "status": "ok",
        "services": {
            "websocket": "active" if ctx.accepting_presenters else "stopped",
            "conversion": "active" if ctx.conversion.running else "stopped",
            "icecast": "connected" if ctx.encoder.streaming else "disconnected",
        },
        "queue": ctx.conversion.counts(),
        "timestamp": isoformat(utcnow()),
    }
