# backend/models/events.py
"""
WebSocket protocol records.

Client -> Server frames carry an "action"; Server -> Client frames carry a
"type". Inbound frames are parsed into one of the event models below through
a discriminated union so a frame with a missing or mistyped field is rejected
before any state is touched.
"""
from __future__ import annotations

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from models.models import ChatMessage, MessageType, PresenceEntry

MAX_CONTENT_LENGTH = 2000


# ============================================================================
# INBOUND
# ============================================================================

class JoinRoomEvent(BaseModel):
    action: Literal["joinRoom"]
    room_id: str = Field(..., min_length=1)


class LeaveRoomEvent(BaseModel):
    action: Literal["leaveRoom"]
    room_id: str = Field(..., min_length=1)


class ChatMessageEvent(BaseModel):
    action: Literal["chatMessage"]
    room_id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1, max_length=MAX_CONTENT_LENGTH)
    type: MessageType = MessageType.TEXT

    @field_validator("type")
    @classmethod
    def no_system_messages(cls, value: MessageType) -> MessageType:
        if value is MessageType.SYSTEM:
            raise ValueError("SYSTEM messages are server-generated")
        return value


class ToggleReadyEvent(BaseModel):
    action: Literal["toggleReady"]
    room_id: str = Field(..., min_length=1)


class PingEvent(BaseModel):
    action: Literal["ping"]


InboundEvent = Annotated[
    Union[JoinRoomEvent, LeaveRoomEvent, ChatMessageEvent, ToggleReadyEvent, PingEvent],
    Field(discriminator="action"),
]

inbound_event_adapter = TypeAdapter(InboundEvent)


# ============================================================================
# OUTBOUND
# ============================================================================

def room_users(room_id: str, entries: List[PresenceEntry]) -> dict:
    return {
        "type": "roomUsers",
        "room_id": room_id,
        "users": [entry.model_dump() for entry in entries],
    }


def chat_history(room_id: str, messages: List[ChatMessage]) -> dict:
    return {
        "type": "chatHistory",
        "room_id": room_id,
        "messages": [history_item(message) for message in messages],
    }


def history_item(message: ChatMessage) -> dict:
    return {
        "id": message.id,
        "user_id": message.user_id,
        "username": message.username,
        "content": message.content,
        "type": message.type.value,
        "timestamp": message.created_at.isoformat(),
    }


def system_message(room_id: str, content: str, timestamp: str) -> dict:
    return {
        "type": "systemMessage",
        "room_id": room_id,
        "content": content,
        "timestamp": timestamp,
    }


def chat_message(
    room_id: str,
    user_id: Optional[str],
    username: str,
    content: str,
    message_type: MessageType,
    timestamp: str,
) -> dict:
    return {
        "type": "chatMessage",
        "room_id": room_id,
        "user_id": user_id,
        "username": username,
        "content": content,
        "message_type": message_type.value,
        "timestamp": timestamp,
    }


def room_left(room_id: str) -> dict:
    return {"type": "roomLeft", "room_id": room_id}


def ready_state(room_id: str, ready: bool) -> dict:
    return {"type": "readyState", "room_id": room_id, "ready": ready}


def error(message: str) -> dict:
    return {"type": "error", "message": message}


def pong() -> dict:
    return {"type": "pong"}
