"""Conversion enqueue/status endpoints over the background queue."""
import logging

from fastapi import APIRouter, Depends, Request

from ..auth import require_identity
from ..context import context_of
from ..errors import ConversionFailed, GatewayError, InvalidRequest
from ..models import Identity, JobStatus
from .common import json_body

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api")

_MESSAGES = {
    JobStatus.COMPLETED.value: "Recording already converted",
    JobStatus.QUEUED.value: "Conversion queued",
    JobStatus.PROCESSING.value: "Conversion already in progress",
}


@router.post("/convert-audio")
async def convert_audio(request: Request, body: dict = Depends(json_body), identity: Identity = Depends(require_identity)):
    record_id = body.get("recordId")
    original_key = body.get("originalKey")
    source_format = body.get("format")
    if not record_id or not original_key or not source_format:
        raise InvalidRequest("Missing required fields: recordId, originalKey, format")

    try:
        result = await context_of(request).conversion.enqueue(str(record_id), str(original_key), str(source_format))
    except GatewayError:
        raise
    except Exception as e:
        logger.exception("Failed to queue conversion for %s", record_id)
        raise ConversionFailed(f"Failed to queue conversion: {e}") from e

    return {
        "success": True,
        "jobId": result["jobId"],
        "status": result["status"],
        "message": _MESSAGES.get(result["status"], "Conversion queued"),
        "playbackUrl": result["playbackUrl"],
    }


@router.get("/convert-status/{job_id}")
async def convert_status(request: Request, job_id: str, identity: Identity = Depends(require_identity)):
    return {"success": True, **context_of(request).conversion.get_status(job_id)}
