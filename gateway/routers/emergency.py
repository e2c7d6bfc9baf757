"""Administrator kill switch for whatever is on air."""
from fastapi import APIRouter, Depends, Request

from ..auth import require_admin
from ..context import context_of
from ..models import Identity, isoformat, utcnow
from .common import json_body

router = APIRouter()


@router.post("/api/emergency-stop")
async def emergency_stop(request: Request, body: dict = Depends(json_body), admin: Identity = Depends(require_admin)):
    result = await context_of(request).arbiter.emergency_stop(
        admin,
        reason=body.get("reason"),
        stopped_by=body.get("adminEmail") or admin.email,
    )
    return {
        "success": True,
        "message": "Emergency stop executed",
        **result,
        "timestamp": isoformat(utcnow()),
    }
