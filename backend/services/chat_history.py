# backend/services/chat_history.py

from __future__ import annotations

import asyncio
import logging
import os
from collections import Counter
from datetime import datetime, timezone
from typing import Dict, List, Optional

from models.models import (
    ChatHistoryPage,
    ChatMessage,
    ChatMessageJob,
    Contributor,
    MessageType,
    MessageTypeCount,
    RoomMessageStats,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class ChatHistory:
    """
    Durable chat history, written only by the persistence worker.

    Messages are kept per room sorted by (created_at, id). Ids come from a
    zero-padded store-wide sequence, so they sort in insertion order and work
    as pagination cursors.

    When `history_file` is set every append is also written as one JSON line
    and the file is replayed on startup.
    """

    def __init__(self, history_file: str = "") -> None:
        self.history_file = history_file
        self.rooms: Dict[str, List[ChatMessage]] = {}
        self._sequence = 0
        self._lock = asyncio.Lock()
        if history_file:
            self.load_history()

    def load_history(self) -> None:
        if not os.path.exists(self.history_file):
            return
        with open(self.history_file, "r") as f:
            for line in f:
                if not line.strip():
                    continue
                message = ChatMessage.model_validate_json(line)
                self._insert(message)
                self._sequence = max(self._sequence, int(message.id))
        logger.info(
            "✓ Replayed %d chat messages from %s",
            sum(len(m) for m in self.rooms.values()),
            self.history_file,
        )

    def _insert(self, message: ChatMessage) -> None:
        messages = self.rooms.setdefault(message.room_id, [])
        messages.append(message)
        # Retried jobs can arrive after newer messages; keep the room ordered.
        if len(messages) > 1 and messages[-2].created_at > message.created_at:
            messages.sort(key=lambda m: (m.created_at, m.id))

    async def append(self, job: ChatMessageJob) -> ChatMessage:
        async with self._lock:
            self._sequence += 1
            message = ChatMessage(
                id=f"{self._sequence:012d}",
                room_id=job.room_id,
                user_id=job.user_id,
                username=job.username,
                content=job.content,
                type=job.type,
                created_at=datetime.fromisoformat(job.timestamp),
            )
            self._insert(message)
            if self.history_file:
                await asyncio.to_thread(self._write_line, message.model_dump_json())
        return message

    def _write_line(self, line: str) -> None:
        with open(self.history_file, "a") as f:
            f.write(line + "\n")

    async def list_by_room(
        self,
        room_id: str,
        limit: int = 20,
        cursor: Optional[str] = None,
        order: str = "desc",
        since: Optional[datetime] = None,
    ) -> ChatHistoryPage:
        """
        Page through a room's history.

        Args:
            room_id: Room to read
            limit: Page size (1..100)
            cursor: `next_cursor` of the previous page
            order: "desc" (newest first) or "asc"
            since: Only messages created at or after this instant (naive means UTC)
        """
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        async with self._lock:
            messages = list(self.rooms.get(room_id, []))
        total_count = len(messages)

        if since is not None:
            since = _as_utc(since)
            messages = [m for m in messages if _as_utc(m.created_at) >= since]

        if order == "desc":
            messages.reverse()

        if cursor is not None:
            for index, message in enumerate(messages):
                if message.id == cursor:
                    messages = messages[index + 1:]
                    break
            else:
                messages = []

        page = messages[:limit]
        has_more = len(messages) > limit
        return ChatHistoryPage(
            messages=page,
            next_cursor=page[-1].id if has_more else None,
            prev_cursor=page[0].id if cursor is not None and page else None,
            has_more=has_more,
            total_count=total_count,
        )

    async def count(self, room_id: str, message_type: Optional[MessageType] = None) -> int:
        async with self._lock:
            messages = self.rooms.get(room_id, [])
            if message_type is None:
                return len(messages)
            return sum(1 for m in messages if m.type == message_type)

    async def stats(self, room_id: str, top: int = 10) -> RoomMessageStats:
        """
        Message totals for a room: overall, per type, and the `top` users
        by message count. System messages (no user) are not contributors.
        Contributor names are the latest name seen on their messages.
        """
        async with self._lock:
            messages = list(self.rooms.get(room_id, []))

        by_type = Counter(m.type for m in messages)
        by_user = Counter(m.user_id for m in messages if m.user_id is not None)
        names = {m.user_id: m.username for m in messages if m.user_id is not None}

        ranked = sorted(by_user.items(), key=lambda item: (-item[1], item[0]))[:top]
        return RoomMessageStats(
            total_messages=len(messages),
            messages_by_type=[
                MessageTypeCount(type=message_type, count=by_type[message_type])
                for message_type in MessageType
                if by_type[message_type]
            ],
            top_contributors=[
                Contributor(user_id=user_id, username=names[user_id], message_count=count)
                for user_id, count in ranked
            ],
        )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
