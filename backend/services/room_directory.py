# backend/services/room_directory.py

from __future__ import annotations

import asyncio
import json
import logging
import os
import secrets
import string
import uuid
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional, Tuple

from core.errors import (
    AccessDenied,
    AlreadyMember,
    CodeGenerationExhausted,
    NotAMember,
    RoomClosed,
    RoomFull,
    RoomNotFound,
    ValidationError,
)
from models.models import Member, MemberRole, Room, RoomStatus, utcnow

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 6
MAX_CODE_ATTEMPTS = 10
DEFAULT_MAX_SEATS = 8


def generate_room_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


# ============================================================================
# ROOM DIRECTORY
# ============================================================================
class RoomDirectory:
    """
    Source of truth for rooms, membership and roles.

    Every mutation of a room runs under that room's lock, so two concurrent
    joins cannot both pass the capacity check. Room creation additionally
    holds the directory lock that guards the join-code index.

    Callers always receive copies; the stored `Room` objects never leave
    this class.

    Storage Format (rooms file, optional):
        {
            "<room_id>": {
                "id": "<room_id>",
                "code": "AB12CD",
                "title": "Algebra",
                "host_id": "u1",
                "status": "WAITING",
                "max_seats": 4,
                "members": [{"user_id": "u1", "role": "HOST", "ready": false, "joined_at": "..."}],
                ...
            }
        }
    """

    def __init__(
        self,
        rooms_file: str = "",
        code_factory: Callable[[], str] = generate_room_code,
    ) -> None:
        self.rooms_file = rooms_file
        self.code_factory = code_factory
        self.rooms: Dict[str, Room] = {}
        self.codes: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._directory_lock = asyncio.Lock()
        if rooms_file:
            self.load_rooms()

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def load_rooms(self) -> None:
        """Load rooms from the rooms file, if it exists."""
        if not os.path.exists(self.rooms_file):
            return
        with open(self.rooms_file, "r") as f:
            data = json.load(f)
        self.rooms = {k: Room.model_validate(v) for k, v in data.items()}
        self.codes = {room.code: room.id for room in self.rooms.values()}
        logger.info("✓ Loaded %d rooms from %s", len(self.rooms), self.rooms_file)

    def save_rooms(self) -> None:
        """Persist rooms after a mutation. No-op without a rooms file."""
        if not self.rooms_file:
            return
        data = {k: v.model_dump(mode="json") for k, v in self.rooms.items()}
        tmp_path = f"{self.rooms_file}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.rooms_file)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _room_lock(self, room_id: str):
        lock = self._locks.setdefault(room_id, asyncio.Lock())
        async with lock:
            yield

    def _get(self, room_id: str) -> Room:
        room = self.rooms.get(room_id)
        if room is None:
            raise RoomNotFound()
        return room

    def _touch(self, room: Room) -> None:
        room.updated_at = utcnow()
        self.save_rooms()

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------

    async def create_room(self, host_id: str, title: str, max_seats: Optional[int] = None) -> Room:
        """
        Create a room with `host_id` as its only member and role HOST.

        Raises:
            CodeGenerationExhausted: every one of the attempts collided
        """
        async with self._directory_lock:
            for _ in range(MAX_CODE_ATTEMPTS):
                code = self.code_factory().upper()
                if code not in self.codes:
                    break
            else:
                logger.error("Join code generation exhausted after %d attempts", MAX_CODE_ATTEMPTS)
                raise CodeGenerationExhausted()

            room = Room(
                id=uuid.uuid4().hex,
                code=code,
                title=title,
                host_id=host_id,
                max_seats=max_seats or DEFAULT_MAX_SEATS,
                members=[Member(user_id=host_id, role=MemberRole.HOST)],
            )
            self.rooms[room.id] = room
            self.codes[code] = room.id
            self.save_rooms()

        logger.info("✓ Created room %s (%s) for host %s", room.id, room.code, host_id)
        return room.model_copy(deep=True)

    async def find_by_code(self, code: str) -> Optional[Room]:
        room_id = self.codes.get(code.strip().upper())
        if room_id is None:
            return None
        return self.rooms[room_id].model_copy(deep=True)

    async def join_room(self, user_id: str, code: str) -> Room:
        room_id = self.codes.get(code.strip().upper())
        if room_id is None:
            raise RoomNotFound()

        async with self._room_lock(room_id):
            room = self._get(room_id)
            if room.status == RoomStatus.COMPLETED:
                raise RoomClosed()
            if len(room.members) >= room.max_seats:
                raise RoomFull()
            if room.find_member(user_id) is not None:
                raise AlreadyMember()

            room.members.append(Member(user_id=user_id, role=MemberRole.MEMBER))
            self._touch(room)
            logger.info("→ %s joined room %s (%d/%d)", user_id, room.id, len(room.members), room.max_seats)
            return room.model_copy(deep=True)

    async def leave_room(self, room_id: str, user_id: str) -> Tuple[Room, bool]:
        """
        Remove a member. Leaving twice is a no-op the second time.

        A departing host hands HOST to the earliest-joined remaining member;
        the last member leaving completes the room.

        Returns:
            The room and whether `user_id` was actually removed
        """
        async with self._room_lock(room_id):
            room = self._get(room_id)
            member = room.find_member(user_id)
            if member is None:
                return room.model_copy(deep=True), False

            room.members = [m for m in room.members if m.user_id != user_id]

            if room.members and member.role == MemberRole.HOST:
                successor = room.members[0]
                successor.role = MemberRole.HOST
                room.host_id = successor.user_id
                logger.info("Host of room %s passed from %s to %s", room.id, user_id, successor.user_id)

            if not room.members:
                room.status = RoomStatus.COMPLETED
                logger.info("Room %s completed (no members left)", room.id)

            self._touch(room)
            logger.info("← %s left room %s (%d members)", user_id, room.id, len(room.members))
            return room.model_copy(deep=True), True

    async def toggle_ready(self, room_id: str, user_id: str) -> Tuple[Room, bool]:
        async with self._room_lock(room_id):
            room = self._get(room_id)
            member = room.find_member(user_id)
            if member is None:
                raise NotAMember()
            member.ready = not member.ready
            self._touch(room)
            return room.model_copy(deep=True), member.ready

    async def get_room_for_user(self, room_id: str, user_id: str) -> Room:
        room = self._get(room_id)
        if room.find_member(user_id) is None:
            raise AccessDenied()
        return room.model_copy(deep=True)

    async def get_room(self, room_id: str) -> Optional[Room]:
        room = self.rooms.get(room_id)
        return room.model_copy(deep=True) if room else None

    async def is_member(self, room_id: str, user_id: str) -> bool:
        room = self.rooms.get(room_id)
        return room is not None and room.find_member(user_id) is not None

    async def list_rooms_for_user(self, user_id: str) -> List[Room]:
        rooms = [
            room.model_copy(deep=True)
            for room in self.rooms.values()
            if room.host_id == user_id or room.find_member(user_id) is not None
        ]
        rooms.sort(key=lambda r: r.updated_at, reverse=True)
        return rooms

    async def update_room(
        self,
        room_id: str,
        user_id: str,
        title: Optional[str] = None,
        status: Optional[RoomStatus] = None,
        max_seats: Optional[int] = None,
    ) -> Room:
        """Host-only update of title, status and capacity."""
        async with self._room_lock(room_id):
            room = self._get(room_id)
            if room.host_id != user_id:
                raise AccessDenied("Only the host can update the room")
            if room.status == RoomStatus.COMPLETED:
                raise RoomClosed()
            if status == RoomStatus.COMPLETED:
                raise ValidationError("A room is completed when its last member leaves")
            if max_seats is not None and max_seats < len(room.members):
                raise ValidationError(
                    f"max_seats cannot be lower than the current member count ({len(room.members)})"
                )

            if title is not None:
                room.title = title
            if status is not None:
                room.status = status
            if max_seats is not None:
                room.max_seats = max_seats
            self._touch(room)
            return room.model_copy(deep=True)
