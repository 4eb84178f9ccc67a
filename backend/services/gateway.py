# backend/services/gateway.py

from __future__ import annotations

import json
import logging
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from core.errors import NotAMember, QueueUnavailable, RoomServiceError
from models import events
from models.events import (
    ChatMessageEvent,
    JoinRoomEvent,
    LeaveRoomEvent,
    PingEvent,
    ToggleReadyEvent,
    inbound_event_adapter,
)
from models.models import ChatMessageJob, MessageType, PresenceEntry, User
from services.chat_history import ChatHistory
from services.connection_manager import ClientConnection, ConnectionManager
from services.job_queue import JobQueue
from services.presence_store import PresenceStore
from services.redis_pub_sub import LocalRoomBroadcaster
from services.room_directory import RoomDirectory

logger = logging.getLogger(__name__)

SYSTEM_USERNAME = "System"


class RoomGateway:
    """
    Room protocol on top of live connections.

    Ties the Room Directory (who may be in a room), the Presence Store (who
    is online and ready), room broadcasts and the persistence queue together.

    Lifecycle per connection:
        UNAUTHENTICATED -> AUTHENTICATED   token verified at connect
        AUTHENTICATED   -> ROOM_BOUND      joinRoom accepted
        ROOM_BOUND      -> AUTHENTICATED   leaveRoom of the last bound room
        any             -> CLOSED          disconnect

    Errors raised while handling an event are reported to the originating
    connection only; the connection stays open.
    """

    def __init__(
        self,
        room_directory: RoomDirectory,
        presence_store: PresenceStore,
        chat_history: ChatHistory,
        connections: ConnectionManager,
        broadcaster: LocalRoomBroadcaster,
        job_queue: Optional[JobQueue] = None,
        history_page_size: int = 20,
    ) -> None:
        self.room_directory = room_directory
        self.presence_store = presence_store
        self.chat_history = chat_history
        self.connections = connections
        self.broadcaster = broadcaster
        self.job_queue = job_queue
        self.history_page_size = history_page_size

        self.messages_broadcast = 0
        self.jobs_enqueued = 0
        self.jobs_dropped = 0

    @property
    def persistence_enabled(self) -> bool:
        return self.job_queue is not None

    # ------------------------------------------------------------------
    # inbound frames
    # ------------------------------------------------------------------

    async def dispatch(self, connection: ClientConnection, raw: str) -> None:
        """Parse and handle one inbound frame."""
        try:
            event = inbound_event_adapter.validate_python(json.loads(raw))
        except json.JSONDecodeError:
            connection.send(events.error("Invalid JSON"))
            return
        except PydanticValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first["loc"])
            connection.send(events.error(f"Invalid event: {location}: {first['msg']}"))
            return

        logger.debug("Websocket input from %r: %s", connection, event.action)
        try:
            if isinstance(event, JoinRoomEvent):
                await self.join(connection, event.room_id)
            elif isinstance(event, LeaveRoomEvent):
                await self.leave(connection, event.room_id)
            elif isinstance(event, ChatMessageEvent):
                await self.chat(connection, event)
            elif isinstance(event, ToggleReadyEvent):
                await self.toggle_ready(connection, event.room_id)
            elif isinstance(event, PingEvent):
                connection.send(events.pong())
        except RoomServiceError as e:
            connection.send(events.error(e.message))
        except Exception:
            logger.exception("Unhandled error for %s from %r", event.action, connection)
            connection.send(events.error(f"Failed to handle {event.action}"))

    # ------------------------------------------------------------------
    # handlers
    # ------------------------------------------------------------------

    async def join(self, connection: ClientConnection, room_id: str) -> None:
        user = connection.user
        room = await self.room_directory.get_room_for_user(room_id, user.id)
        member = room.find_member(user.id)

        if room_id in connection.rooms:
            # Repeated join on a bound connection only resyncs it.
            entries = await self.presence_store.list_presence(room_id)
            connection.send(events.room_users(room_id, entries))
            await self.send_history(connection, room_id)
            return

        self.connections.bind(connection, room_id)
        await self.presence_store.set_presence(
            room_id,
            user.id,
            PresenceEntry(user_id=user.id, name=user.name, ready=member.ready, online=True),
        )

        notice = self._system_job(room_id, f"{user.name} joined the room")
        await self.broadcaster.publish(
            room_id,
            events.system_message(room_id, notice.content, notice.timestamp),
            exclude=connection.id,
        )
        await self.enqueue(notice)
        await self.publish_presence(room_id)

        await self.send_history(connection, room_id)
        logger.info("→ %s joined room %s over %r", user.id, room_id, connection)

    async def send_history(self, connection: ClientConnection, room_id: str) -> None:
        page = await self.chat_history.list_by_room(room_id, limit=self.history_page_size)
        connection.send(events.chat_history(room_id, list(reversed(page.messages))))

    async def leave(self, connection: ClientConnection, room_id: str) -> None:
        if not await self.leave_room(connection.user, room_id):
            # Not (or no longer) a member: nothing to announce.
            self.connections.unbind(connection, room_id)
            connection.send(events.room_left(room_id))

    async def leave_room(self, user: User, room_id: str) -> bool:
        """
        Intentional departure: membership, presence and every connection of
        the user bound to the room are removed.

        Returns:
            False when the user was not a member; nothing is announced then
        """
        _, removed = await self.room_directory.leave_room(room_id, user.id)
        if not removed:
            return False

        for connection in self.connections.connections_for_user(room_id, user.id):
            self.connections.unbind(connection, room_id)
            connection.send(events.room_left(room_id))

        await self.presence_store.remove_presence(room_id, user.id)

        notice = self._system_job(room_id, f"{user.name} left the room")
        await self.broadcaster.publish(
            room_id, events.system_message(room_id, notice.content, notice.timestamp)
        )
        await self.enqueue(notice)
        await self.publish_presence(room_id)
        return True

    async def chat(self, connection: ClientConnection, event: ChatMessageEvent) -> None:
        if event.room_id not in connection.rooms:
            raise NotAMember("Join the room before sending messages")

        user = connection.user
        job = ChatMessageJob(
            room_id=event.room_id,
            user_id=user.id,
            username=user.name,
            content=event.content,
            type=event.type,
        )
        # Live delivery first; persistence never holds it up.
        await self.broadcaster.publish(
            event.room_id,
            events.chat_message(
                job.room_id, job.user_id, job.username, job.content, job.type, job.timestamp
            ),
        )
        self.messages_broadcast += 1
        await self.enqueue(job)

    async def toggle_ready(self, connection: ClientConnection, room_id: str) -> None:
        ready = await self.set_ready(connection.user, room_id)
        connection.send(events.ready_state(room_id, ready))

    async def set_ready(self, user: User, room_id: str) -> bool:
        _, ready = await self.room_directory.toggle_ready(room_id, user.id)

        online = self.connections.is_user_bound(room_id, user.id)
        for entry in await self.presence_store.list_presence(room_id):
            if entry.user_id == user.id:
                online = entry.online or online
                break

        await self.presence_store.set_presence(
            room_id,
            user.id,
            PresenceEntry(user_id=user.id, name=user.name, ready=ready, online=online),
        )
        await self.publish_presence(room_id)
        return ready

    async def disconnect(self, connection: ClientConnection) -> None:
        """
        Transport went away. Presence goes offline, membership stays: only an
        explicit leave removes a member.
        """
        bound = self.connections.unregister(connection)
        if connection.user is None:
            return

        for room_id in bound:
            # Another tab of the same user keeps them online.
            if self.connections.is_user_bound(room_id, connection.user.id):
                continue
            try:
                await self.presence_store.set_online(room_id, connection.user.id, False)
                await self.publish_presence(room_id)
            except Exception as e:
                logger.error("Failed to mark %s offline in %s: %s", connection.user.id, room_id, e)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    async def publish_presence(self, room_id: str) -> List[PresenceEntry]:
        entries = await self.presence_store.list_presence(room_id)
        await self.broadcaster.publish(room_id, events.room_users(room_id, entries))
        return entries

    async def enqueue(self, job: ChatMessageJob) -> None:
        """Hand a job to the persistence queue without ever failing the caller."""
        if self.job_queue is None:
            self.jobs_dropped += 1
            logger.debug("Persistence disabled - message for room %s not stored", job.room_id)
            return
        try:
            await self.job_queue.enqueue(job)
            self.jobs_enqueued += 1
        except QueueUnavailable as e:
            self.jobs_dropped += 1
            logger.warning("Persistence queue unavailable, message for room %s not stored: %s", job.room_id, e)

    @staticmethod
    def _system_job(room_id: str, content: str) -> ChatMessageJob:
        return ChatMessageJob(
            room_id=room_id,
            user_id=None,
            username=SYSTEM_USERNAME,
            content=content,
            type=MessageType.SYSTEM,
        )
