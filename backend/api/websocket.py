# backend/api/websocket.py

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from core.errors import AuthenticationFailed
from core.state import AppServices
from models import events

logger = logging.getLogger(__name__)

router = APIRouter()


def _bearer_token(websocket: WebSocket, token: Optional[str]) -> Optional[str]:
    if token:
        return token
    authorization = websocket.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials
    return None


# ============================================================================
# WEBSOCKET ENDPOINT
# ============================================================================

@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
    """
    WebSocket endpoint for room presence and chat.

    Protocol:
    =========

    Client -> Server Actions:
    -------------------------
    Join Room (must already be a member, see POST /rooms/join):
        {"action": "joinRoom", "room_id": "<room_id>"}
        Response: {"type": "chatHistory", ...} to the joiner,
                  {"type": "roomUsers", ...} to the room,
                  {"type": "systemMessage", ...} to the other members

    Leave Room (removes membership):
        {"action": "leaveRoom", "room_id": "<room_id>"}
        Response: {"type": "roomLeft", "room_id": "<room_id>"}

    Chat:
        {"action": "chatMessage", "room_id": "<room_id>", "content": "hi", "type": "TEXT"}
        Broadcast: {"type": "chatMessage", "room_id", "user_id", "username",
                    "content", "message_type", "timestamp"}

    Toggle Ready:
        {"action": "toggleReady", "room_id": "<room_id>"}
        Response: {"type": "readyState", "room_id", "ready"} + roomUsers broadcast

    Ping:
        {"action": "ping"}  ->  {"type": "pong"}

    Server -> Client Messages:
    -------------------------
    Presence:
        {"type": "roomUsers", "room_id": "...", "users": [{"user_id", "name", "ready", "online"}]}

    Error:
        {"type": "error", "message": "..."}

    Lifecycle:
    ==========
    1. Client connects with ?token=<jwt> (or an Authorization: Bearer header)
    2. Invalid token: error frame, then close with 1008
    3. Client sends "joinRoom" for the rooms it wants to follow
    4. On disconnect the user is shown offline; membership is kept
    """
    services: AppServices = websocket.app.state.services
    gateway = services.gateway

    await websocket.accept()
    connection = services.connections.register(websocket)

    try:
        user = await services.tokens.authenticate(_bearer_token(websocket, token))
    except AuthenticationFailed as e:
        logger.info("WebSocket authentication failed: %s", e.message)
        services.connections.unregister(connection)
        await websocket.send_json(events.error(e.message))
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    connection.authenticate(user)
    logger.info("✓ User %s connected. Total: %d", user.id, len(services.connections.connections))

    try:
        while True:
            data = await websocket.receive_text()
            await gateway.dispatch(connection, data)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error("WebSocket error on %r: %s", connection, e)
    finally:
        await gateway.disconnect(connection)
