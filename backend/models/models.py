# backend/models/models.py
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RoomStatus(str, Enum):
    WAITING = "WAITING"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"


class MemberRole(str, Enum):
    HOST = "HOST"
    CO_HOST = "CO_HOST"
    MEMBER = "MEMBER"


class MessageType(str, Enum):
    TEXT = "TEXT"
    SYSTEM = "SYSTEM"
    EMOJI = "EMOJI"
    FILE = "FILE"


# ============================================================================
# DIRECTORY RECORDS
# ============================================================================

class User(BaseModel):
    id: str
    name: str
    email: str


class Member(BaseModel):
    user_id: str
    role: MemberRole = MemberRole.MEMBER
    ready: bool = False
    joined_at: datetime = Field(default_factory=utcnow)


class Room(BaseModel):
    id: str
    code: str
    title: str
    host_id: str
    status: RoomStatus = RoomStatus.WAITING
    max_seats: int = 8
    members: List[Member] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def member_count(self) -> int:
        return len(self.members)

    def find_member(self, user_id: str) -> Optional[Member]:
        for member in self.members:
            if member.user_id == user_id:
                return member
        return None


# ============================================================================
# PRESENCE / CHAT
# ============================================================================

class PresenceEntry(BaseModel):
    """Liveness of one member in one room. Not authoritative for membership."""

    user_id: str
    name: str
    ready: bool = False
    online: bool = True


class ChatMessageJob(BaseModel):
    """Queue payload. `timestamp` is the receive time and is stored as-is."""

    model_config = ConfigDict(frozen=True)

    room_id: str
    user_id: Optional[str] = None
    username: str
    content: str
    type: MessageType = MessageType.TEXT
    timestamp: str = Field(default_factory=lambda: utcnow().isoformat())


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    room_id: str
    user_id: Optional[str] = None
    username: str
    content: str
    type: MessageType = MessageType.TEXT
    created_at: datetime


class ChatHistoryPage(BaseModel):
    messages: List[ChatMessage]
    next_cursor: Optional[str] = None
    # First message of this page when it was requested with a cursor
    prev_cursor: Optional[str] = None
    has_more: bool = False
    # All messages in the room, regardless of filters
    total_count: int = 0


class MessageTypeCount(BaseModel):
    type: MessageType
    count: int


class Contributor(BaseModel):
    user_id: str
    username: str
    message_count: int


class RoomMessageStats(BaseModel):
    total_messages: int
    messages_by_type: List[MessageTypeCount]
    top_contributors: List[Contributor]


# ============================================================================
# REST REQUESTS / RESPONSES
# ============================================================================

class CreateRoomRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    max_seats: Optional[int] = Field(None, ge=2, le=20)


class JoinRoomRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=6)


class UpdateRoomRequest(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    status: Optional[RoomStatus] = None
    max_seats: Optional[int] = Field(None, ge=2, le=20)


class MemberView(BaseModel):
    id: str
    name: str
    role: MemberRole
    ready: bool
    joined_at: datetime


class RoomView(BaseModel):
    id: str
    code: str
    title: str
    host_id: str
    status: RoomStatus
    max_seats: int
    member_count: int
    members: List[MemberView] = Field(default_factory=list)
    created_at: datetime


class ReadyResponse(BaseModel):
    ready: bool
    message: str
