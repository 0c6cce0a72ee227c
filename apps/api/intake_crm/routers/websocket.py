"""
WebSocket router for real-time call notifications.

Provides a WebSocket endpoint that:
1. Authenticates users via JWT (query token or session cookie)
2. Registers the connection under the user's organization
3. Receives incoming_call pushes from the on-call router
"""

import logging
from uuid import UUID

import jwt
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from intake_crm.core.deps import COOKIE_NAME
from intake_crm.core.security import decode_session_token
from intake_crm.core.websocket import manager

router = APIRouter(prefix="/ws", tags=["WebSocket"])
logger = logging.getLogger(__name__)


def _identity(token: str) -> tuple[UUID, UUID | None]:
    payload = decode_session_token(token)
    user_id = UUID(payload["sub"])
    org_id = UUID(payload["org_id"]) if "org_id" in payload else None
    return user_id, org_id


@router.websocket("/notifications")
async def websocket_notifications(
    websocket: WebSocket,
    token: str | None = Query(None),
):
    """
    WebSocket endpoint for real-time notifications.

    Authenticates via:
    1. JWT token in query parameter (?token=...), used by the mobile app
    2. Or session cookie (for browser clients)

    Any client frame counts as a heartbeat; "ping" is answered with "pong".
    Connections silent for longer than the stale window are closed by the
    liveness sweep.
    """
    user_id = None
    org_id = None

    if token:
        try:
            user_id, org_id = _identity(token)
        except (jwt.InvalidTokenError, KeyError, ValueError):
            await websocket.close(code=4001, reason="Invalid token")
            return

    if not user_id:
        cookie = websocket.cookies.get(COOKIE_NAME)
        if cookie:
            try:
                user_id, org_id = _identity(cookie)
            except (jwt.InvalidTokenError, KeyError, ValueError):
                logger.debug("Ignoring invalid session cookie on websocket")

    if not user_id:
        await websocket.close(code=4001, reason="Authentication required")
        return

    await manager.connect(websocket, user_id, org_id)

    try:
        while True:
            try:
                data = await websocket.receive_text()
            except WebSocketDisconnect:
                break
            manager.touch(websocket)
            if data == "ping":
                await websocket.send_text("pong")
    finally:
        await manager.disconnect(websocket, user_id)
