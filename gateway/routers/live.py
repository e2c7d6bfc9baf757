"""Presenter real-time channel: /ws WebSocket carrying JSON control messages and PCM frames."""
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from ..auth import authenticate_presenter
from ..context import context_of
from ..errors import GatewayError, PresenterConflict
from ..protocol import event

logger = logging.getLogger(__name__)
router = APIRouter()


@router.websocket("/ws")
async def presenter_channel(websocket: WebSocket):
    ctx = context_of(websocket)
    if not ctx.accepting_presenters:
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER, reason="Gateway is shutting down")
        return
    try:
        identity = authenticate_presenter(websocket)
    except GatewayError as e:
        logger.info("Presenter handshake rejected: %s", e.message)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.message)
        return

    await websocket.accept()
    try:
        await ctx.arbiter.connect(identity, websocket)
    except PresenterConflict as e:
        logger.info("Rejected %s: %s", identity.email, e.message)
        await websocket.send_json(event("error", message=e.message, code=e.code))
        if identity.role != ctx.settings.super_role:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Another presenter is live")
            return
        # Super role stays attached without the slot so it can force a stop.

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            await ctx.dispatcher.handle_frame(
                identity, websocket, text=message.get("text"), data=message.get("bytes")
            )
    except WebSocketDisconnect:
        pass
    finally:
        await ctx.arbiter.disconnect(websocket)
        logger.info("Presenter channel closed for %s", identity.email)
