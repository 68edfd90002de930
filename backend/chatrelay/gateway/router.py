"""WebSocket endpoint for the chat relay.

This module provides:
    - WebSocket /ws: Bidirectional event channel (see chatrelay.protocol)

Protocol Flow:
    1. Client connects → Origin is checked before the handshake completes
    2. Client sends: {type: "identity-init", userId, username}
       → Server sends: {type: "identity-ack", ok: true}
    3. Client sends: {type: "room-join", roomId}
       → Joiner gets: {type: "history-seed", roomId, messages}
       → Others get: {type: "presence-online", userId, username, roomId}
       → Everyone gets: {type: "presence-snapshot", roomId, users}
    4. Client sends: {type: "message-send", roomId, text}
       → Everyone (sender included) gets: {type: "message-new", ...message}
    5. On disconnect → every joined room gets presence-offline + snapshot
"""
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from chatrelay.config import get_config

from .gateway import gateway

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint handling the full lifecycle of one connection.

    Connections from origins that are not allowed are closed with code 1008
    (Policy Violation) before the handshake is accepted, so no protocol
    event is ever processed for them.
    """
    origin = websocket.headers.get("origin")
    if not get_config().server.is_origin_allowed(origin):
        logger.warning(f"[WS] Rejecting connection from origin {origin!r}")
        await websocket.close(code=1008)
        return

    await websocket.accept()
    session = await gateway.on_connect(websocket)

    try:
        while True:
            # receive_json would raise on a bad frame and end the session; decode here to drop it instead
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                logger.debug(f"[WS] Dropping non-JSON frame from {session.id}")
                continue
            await gateway.handle_frame(session, frame)
    except WebSocketDisconnect as e:
        logger.info(f"[WS] Session {session.id} closed by client (code={e.code})")
    finally:
        await gateway.on_disconnect(session)
