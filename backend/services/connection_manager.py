# backend/services/connection_manager.py

from __future__ import annotations

import asyncio
import logging
import uuid
from enum import Enum
from typing import Dict, Optional, Set

from fastapi import WebSocket

from models.models import User

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    AUTHENTICATED = "AUTHENTICATED"
    ROOM_BOUND = "ROOM_BOUND"
    CLOSED = "CLOSED"


# ============================================================================
# CLIENT CONNECTION
# ============================================================================

class ClientConnection:
    """
    One live WebSocket and everything the server knows about it.

    Outgoing frames go through a bounded outbox drained by a dedicated
    writer task, so `send` never waits on the network. Direct replies and
    room broadcasts share the outbox and therefore keep their order.
    """

    def __init__(self, websocket: WebSocket, outbox_size: int = 256) -> None:
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.user: Optional[User] = None
        self.state = ConnectionState.UNAUTHENTICATED
        self.rooms: Set[str] = set()
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=outbox_size)
        self._writer: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        user_id = self.user.id if self.user else None
        return f"<ClientConnection {self.id[:8]} user={user_id} state={self.state.value}>"

    @property
    def closed(self) -> bool:
        return self.state == ConnectionState.CLOSED

    def authenticate(self, user: User) -> None:
        self.user = user
        self.state = ConnectionState.AUTHENTICATED
        self._writer = asyncio.create_task(self._write_loop(), name=f"ws-writer-{self.id[:8]}")

    def send(self, message: dict) -> bool:
        """Queue a frame for delivery. Returns False if the outbox is full or closed."""
        if self.closed:
            return False
        try:
            self._outbox.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True

    async def _write_loop(self) -> None:
        while True:
            message = await self._outbox.get()
            try:
                await self.websocket.send_json(message)
            except Exception as e:
                logger.warning("Send error on %r: %s", self, e)
                self.state = ConnectionState.CLOSED
                return

    async def flush(self, timeout: float = 1.0) -> None:
        """Wait (bounded) until the outbox is drained."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not self._outbox.empty() and not self.closed and loop.time() < deadline:
            await asyncio.sleep(0.01)

    async def abort(self, code: int = 1011, reason: str = "") -> None:
        """Close the socket from the server side; the receive loop then sees the disconnect."""
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug("Close of %r failed: %s", self, e)

    def close(self) -> None:
        self.state = ConnectionState.CLOSED
        if self._writer is not None:
            self._writer.cancel()


# ============================================================================
# WEBSOCKET CONNECTION MANAGER
# ============================================================================

class ConnectionManager:
    """
    Registry of live connections and their room broadcast groups.

    Data Structures:
        rooms: Maps room_id -> Set of connections bound to that room
               Example: {"room-123": {conn1, conn2}}

        connections: Maps connection id -> connection

    Only join, leave and disconnect mutate the groups; broadcasts read them.
    The registry is per process; `services.redis_pub_sub` carries room
    events between instances.
    """

    def __init__(self, outbox_size: int = 256) -> None:
        self.outbox_size = outbox_size
        self.rooms: Dict[str, Set[ClientConnection]] = {}
        self.connections: Dict[str, ClientConnection] = {}
        # Strong references to in-flight close tasks.
        self._closing: Set[asyncio.Task] = set()

    def register(self, websocket: WebSocket) -> ClientConnection:
        connection = ClientConnection(websocket, outbox_size=self.outbox_size)
        self.connections[connection.id] = connection
        return connection

    def unregister(self, connection: ClientConnection) -> Set[str]:
        """
        Drop a connection from every group it is bound to.

        Returns:
            The room ids the connection was bound to
        """
        bound = set(connection.rooms)
        for room_id in bound:
            self._discard(room_id, connection)
        connection.rooms.clear()
        self.connections.pop(connection.id, None)
        connection.close()
        user_id = connection.user.id if connection.user else "anonymous"
        logger.info("✗ User %s disconnected. Total: %d", user_id, len(self.connections))
        return bound

    def bind(self, connection: ClientConnection, room_id: str) -> None:
        self.rooms.setdefault(room_id, set()).add(connection)
        connection.rooms.add(room_id)
        connection.state = ConnectionState.ROOM_BOUND

    def unbind(self, connection: ClientConnection, room_id: str) -> None:
        self._discard(room_id, connection)
        connection.rooms.discard(room_id)
        if not connection.rooms and not connection.closed:
            connection.state = ConnectionState.AUTHENTICATED

    def _discard(self, room_id: str, connection: ClientConnection) -> None:
        members = self.rooms.get(room_id)
        if members is None:
            return
        members.discard(connection)
        # Clean up empty groups
        if not members:
            del self.rooms[room_id]

    def connections_for_user(self, room_id: str, user_id: str) -> Set[ClientConnection]:
        return {
            c for c in self.rooms.get(room_id, set())
            if c.user is not None and c.user.id == user_id
        }

    def is_user_bound(self, room_id: str, user_id: str) -> bool:
        return bool(self.connections_for_user(room_id, user_id))

    def broadcast_to_room(self, room_id: str, message: dict, exclude: Optional[str] = None) -> int:
        """
        Fan a frame out to every local connection bound to a room.

        Never waits for delivery. A connection whose outbox is full is too
        slow to keep up and gets closed; nobody else is affected.

        Args:
            room_id: Target room
            message: Frame to send (JSON serializable)
            exclude: Connection id that should not receive the frame

        Returns:
            Number of connections the frame was queued for
        """
        if room_id not in self.rooms:
            logger.debug("[routing] Skipped broadcast: room=%s has 0 local subscribers", room_id)
            return 0

        delivered = 0
        for connection in list(self.rooms[room_id]):
            if connection.id == exclude:
                continue
            if connection.send(message):
                delivered += 1
            elif not connection.closed:
                logger.warning("Outbox full for %r - dropping slow connection", connection)
                connection.state = ConnectionState.CLOSED
                task = asyncio.create_task(connection.abort(code=1008, reason="Too slow"))
                self._closing.add(task)
                task.add_done_callback(self._closing.discard)
        return delivered

    def get_rooms_info(self) -> Dict[str, dict]:
        """Connection counts per room with local connections, for /metrics."""
        return {room_id: {"connections": len(conns)} for room_id, conns in self.rooms.items()}
