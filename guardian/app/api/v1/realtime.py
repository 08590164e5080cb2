"""
WebSocket endpoint for realtime emergency updates.

/ws — one connection per app instance
    • JWT validated at handshake, before accept(); failures close with 4401
    • The connection joins user:<id> automatically
    • Client frames:
        {"type": "join_emergency",  "emergency_id": "..."}
        {"type": "leave_emergency", "emergency_id": "..."}
        {"type": "ping"}
    • Server frames: {"event": "...", "data": {...}}

Room membership is not persisted: after a reconnect the client re-joins
the emergency rooms it cares about and re-fetches state over HTTP.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from guardian.app.core.errors import AuthenticationError
from guardian.app.core.logging_config import set_request_context
from guardian.app.core.security import decode_access_token, extract_token_from_websocket
from guardian.app.realtime.rooms import ClientConnection, RoomBroadcaster, get_rooms

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

WS_UNAUTHORIZED = 4401


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    token = extract_token_from_websocket(websocket)
    if not token:
        await websocket.close(code=WS_UNAUTHORIZED, reason="Authentication required")
        return
    try:
        user = decode_access_token(token)
    except AuthenticationError as e:
        await websocket.close(code=WS_UNAUTHORIZED, reason=e.message)
        return

    set_request_context(endpoint="/ws", user_id=user.user_id)
    rooms = get_rooms()
    await websocket.accept()
    conn = await rooms.connect(websocket, user.user_id)

    try:
        await websocket.send_json({
            "event": "connected",
            "data": {"user_id": user.user_id, "connection_id": conn.connection_id},
        })
        while True:
            frame = await websocket.receive_json()
            await _handle_client_frame(rooms, conn, frame)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(
            "WebSocket error for %s: %s", user.user_id, e,
            extra={"user_id": user.user_id},
        )
    finally:
        await rooms.disconnect(conn)


async def _handle_client_frame(
    rooms: RoomBroadcaster,
    conn: ClientConnection,
    frame: Any,
) -> None:
    if not isinstance(frame, dict):
        await _send_error(conn, "Frames must be JSON objects")
        return

    kind = frame.get("type")
    if kind == "ping":
        await conn.socket.send_json({"event": "pong", "data": {}})
        return

    if kind in ("join_emergency", "leave_emergency"):
        emergency_id = frame.get("emergency_id")
        if not emergency_id or not isinstance(emergency_id, str):
            await _send_error(conn, "emergency_id is required")
            return
        if kind == "join_emergency":
            await rooms.join_emergency(conn, emergency_id)
            ack = "joined_emergency"
        else:
            await rooms.leave_emergency(conn, emergency_id)
            ack = "left_emergency"
        await conn.socket.send_json({"event": ack, "data": {"emergency_id": emergency_id}})
        return

    await _send_error(conn, f"Unknown frame type: {kind!r}")


async def _send_error(conn: ClientConnection, message: str) -> None:
    payload: Dict[str, Any] = {"event": "error", "data": {"message": message}}
    await conn.socket.send_json(payload)
