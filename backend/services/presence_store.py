# backend/services/presence_store.py

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List

import redis.asyncio as redis
from redis.exceptions import WatchError

from models.models import PresenceEntry

logger = logging.getLogger(__name__)

PRESENCE_KEY = "room:{room_id}:presence"


class PresenceStore:
    """
    Per-room liveness and readiness of members.

    Writers never merge: the last `set_presence` for a (room, user) wins.
    `set_online` only touches an existing entry and never creates one.
    """

    async def set_presence(self, room_id: str, user_id: str, entry: PresenceEntry) -> None:
        raise NotImplementedError

    async def remove_presence(self, room_id: str, user_id: str) -> None:
        raise NotImplementedError

    async def list_presence(self, room_id: str) -> List[PresenceEntry]:
        raise NotImplementedError

    async def set_online(self, room_id: str, user_id: str, online: bool) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


# ============================================================================
# IN-MEMORY BACKEND
# ============================================================================

class InMemoryPresenceStore(PresenceStore):
    """Process-local store for single-instance deployments and tests."""

    def __init__(self) -> None:
        self._rooms: Dict[str, Dict[str, PresenceEntry]] = {}
        self._lock = asyncio.Lock()

    async def set_presence(self, room_id: str, user_id: str, entry: PresenceEntry) -> None:
        async with self._lock:
            self._rooms.setdefault(room_id, {})[user_id] = entry.model_copy()

    async def remove_presence(self, room_id: str, user_id: str) -> None:
        async with self._lock:
            entries = self._rooms.get(room_id)
            if entries is None:
                return
            entries.pop(user_id, None)
            if not entries:
                del self._rooms[room_id]

    async def list_presence(self, room_id: str) -> List[PresenceEntry]:
        async with self._lock:
            return [entry.model_copy() for entry in self._rooms.get(room_id, {}).values()]

    async def set_online(self, room_id: str, user_id: str, online: bool) -> None:
        async with self._lock:
            entry = self._rooms.get(room_id, {}).get(user_id)
            if entry is not None:
                self._rooms[room_id][user_id] = entry.model_copy(update={"online": online})


# ============================================================================
# REDIS BACKEND
# ============================================================================

class RedisPresenceStore(PresenceStore):
    """
    Presence shared by every gateway instance.

    Storage Format:
        room:{room_id}:presence  (hash)
            {user_id}: '{"user_id": "...", "name": "...", "ready": false, "online": true}'
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self.client = None

    async def connect(self) -> None:
        """Establish async connection to Redis."""
        self.client = redis.from_url(self.url, decode_responses=True)
        await self.client.ping()
        logger.info("✓ Presence store connected to Redis at %s", self.url)

    @staticmethod
    def _key(room_id: str) -> str:
        return PRESENCE_KEY.format(room_id=room_id)

    async def set_presence(self, room_id: str, user_id: str, entry: PresenceEntry) -> None:
        await self.client.hset(self._key(room_id), user_id, entry.model_dump_json())

    async def remove_presence(self, room_id: str, user_id: str) -> None:
        await self.client.hdel(self._key(room_id), user_id)

    async def list_presence(self, room_id: str) -> List[PresenceEntry]:
        raw = await self.client.hgetall(self._key(room_id))
        entries = []
        for user_id, value in raw.items():
            try:
                entries.append(PresenceEntry.model_validate_json(value))
            except ValueError:
                logger.warning("Dropping unreadable presence entry room=%s user=%s", room_id, user_id)
        return entries

    async def set_online(self, room_id: str, user_id: str, online: bool) -> None:
        # WATCH makes the read-modify-write fail if a remove lands in between,
        # so a deleted entry is never written back.
        key = self._key(room_id)
        async with self.client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    value = await pipe.hget(key, user_id)
                    if value is None:
                        await pipe.unwatch()
                        return
                    entry = PresenceEntry.model_validate_json(value)
                    entry.online = online
                    pipe.multi()
                    pipe.hset(key, user_id, entry.model_dump_json())
                    await pipe.execute()
                    return
                except WatchError:
                    logger.debug("Presence for %s in %s changed concurrently, retrying", user_id, room_id)
                    continue

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
        logger.info("Presence store connection closed")
