# backend/services/redis_pub_sub.py
from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from services.connection_manager import ConnectionManager

logger = logging.getLogger(__name__)

ROOM_EVENTS_CHANNEL = "room:{room_id}:events"
ROOM_EVENTS_PATTERN = "room:*:events"


class LocalRoomBroadcaster:
    """Delivers room events to this process's connections only."""

    def __init__(self, connection_manager: ConnectionManager) -> None:
        self.connection_manager = connection_manager

    async def start(self) -> None:
        return None

    async def publish(self, room_id: str, message: dict, exclude: Optional[str] = None) -> None:
        self.connection_manager.broadcast_to_room(room_id, message, exclude=exclude)

    async def close(self) -> None:
        return None


class AsyncRedisPubSubService(LocalRoomBroadcaster):
    """
    Room fan-out across gateway instances via Redis Pub/Sub.

    Every instance publishes room events to `room:{room_id}:events` and
    listens on the `room:*:events` pattern; the listener forwards each event
    to the local connections of that room. The sender's own instance gets
    its copy through the same subscription.

    Envelope:
        {"room_id": "...", "exclude": "<connection id>|null", "message": {...}}
    """

    def __init__(self, connection_manager: ConnectionManager, url: str) -> None:
        super().__init__(connection_manager)
        self.url = url
        self.client = None
        self.pubsub = None
        self._listener: Optional[asyncio.Task] = None

    async def connect(self) -> None:
        """Establish async connection to Redis."""
        self.client = redis.from_url(self.url, decode_responses=True)
        await self.client.ping()
        logger.info("✓ Room broadcaster connected to Redis at %s", self.url)

    async def start(self) -> None:
        self.pubsub = self.client.pubsub()
        await self.pubsub.psubscribe(ROOM_EVENTS_PATTERN)
        logger.info("✓ Subscribed to Redis pattern '%s'", ROOM_EVENTS_PATTERN)
        self._listener = asyncio.create_task(self.listen(), name="room-events-listener")

    async def publish(self, room_id: str, message: dict, exclude: Optional[str] = None) -> None:
        """
        Broadcast a room event to every instance.

        If Redis is gone the event is still delivered locally, so members on
        this instance keep chatting.
        """
        channel = ROOM_EVENTS_CHANNEL.format(room_id=room_id)
        envelope = {"room_id": room_id, "exclude": exclude, "message": message}
        try:
            await self.client.publish(channel, json.dumps(envelope))
        except (RedisError, OSError) as e:
            logger.warning("Redis publish to %s failed (%s) - delivering locally", channel, e)
            self.connection_manager.broadcast_to_room(room_id, message, exclude=exclude)

    async def listen(self) -> None:
        async for event in self.pubsub.listen():
            if event["type"] not in ("message", "pmessage"):
                continue
            try:
                data = json.loads(event["data"])
                room_id = data.get("room_id")
                if room_id:
                    self.connection_manager.broadcast_to_room(
                        room_id, data["message"], exclude=data.get("exclude")
                    )
                else:
                    logger.warning("Redis room event without room_id - ignoring")
            except (ValueError, KeyError) as e:
                logger.error("Error processing Redis room event: %s", e)

    async def close(self) -> None:
        """Close connections."""
        if self._listener:
            self._listener.cancel()
        if self.pubsub:
            await self.pubsub.punsubscribe()
            await self.pubsub.aclose()
        if self.client:
            await self.client.aclose()
        logger.info("Redis connection closed")
