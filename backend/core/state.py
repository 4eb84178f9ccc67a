# backend/core/state.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from redis.exceptions import RedisError

from core.config import Settings
from core.errors import QueueUnavailable
from core.logging import get_logger
from services.auth_service import TokenVerifier
from services.chat_history import ChatHistory
from services.chat_worker import ChatPersistenceWorker
from services.connection_manager import ConnectionManager
from services.gateway import RoomGateway
from services.job_queue import InMemoryJobQueue, JobQueue, RedisJobQueue, RetryPolicy
from services.presence_store import InMemoryPresenceStore, PresenceStore, RedisPresenceStore
from services.redis_pub_sub import AsyncRedisPubSubService, LocalRoomBroadcaster
from services.room_directory import RoomDirectory
from services.user_directory import UserDirectory

logger = get_logger(__name__)


@dataclass
class AppServices:
    """
    Process-wide components, built once at startup and handed to every
    handler through `app.state.services`.
    """

    settings: Settings
    users: UserDirectory
    rooms: RoomDirectory
    history: ChatHistory
    presence: PresenceStore
    connections: ConnectionManager
    broadcaster: LocalRoomBroadcaster
    gateway: RoomGateway
    tokens: TokenVerifier
    job_queue: Optional[JobQueue] = None
    worker: Optional[ChatPersistenceWorker] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


async def connect_presence_store(settings: Settings) -> PresenceStore:
    if settings.PRESENCE_BACKEND == "redis":
        store = RedisPresenceStore(settings.REDIS_URL)
        try:
            await store.connect()
            return store
        except (RedisError, OSError) as e:
            logger.warning("⚠️ Presence store unavailable (%s) - using in-process presence", e)
    return InMemoryPresenceStore()


async def connect_job_queue(settings: Settings) -> Optional[JobQueue]:
    """Build the persistence queue. None means chat runs without persistence."""
    policy = RetryPolicy(attempts=settings.QUEUE_ATTEMPTS, backoff_ms=settings.QUEUE_BACKOFF_MS)
    if settings.QUEUE_BACKEND == "memory":
        return InMemoryJobQueue(
            policy,
            remove_on_complete=settings.QUEUE_REMOVE_ON_COMPLETE,
            remove_on_fail=settings.QUEUE_REMOVE_ON_FAIL,
            lease_ms=settings.QUEUE_LEASE_MS,
        )

    queue = RedisJobQueue(
        settings.REDIS_URL,
        name=settings.QUEUE_NAME,
        policy=policy,
        remove_on_complete=settings.QUEUE_REMOVE_ON_COMPLETE,
        remove_on_fail=settings.QUEUE_REMOVE_ON_FAIL,
        enqueue_timeout=settings.QUEUE_ENQUEUE_TIMEOUT_S,
        lease_ms=settings.QUEUE_LEASE_MS,
    )
    try:
        await queue.connect(
            attempts=settings.QUEUE_CONNECT_ATTEMPTS,
            backoff_ms=settings.QUEUE_CONNECT_BACKOFF_MS,
            backoff_max_ms=settings.QUEUE_CONNECT_BACKOFF_MAX_MS,
        )
    except QueueUnavailable as e:
        logger.error("❌ %s - chat persistence disabled, real-time chat stays up", e)
        return None
    return queue


async def connect_broadcaster(settings: Settings, connections: ConnectionManager) -> LocalRoomBroadcaster:
    if settings.BROADCAST_BACKEND == "redis":
        broadcaster = AsyncRedisPubSubService(connections, settings.REDIS_URL)
        try:
            await broadcaster.connect()
            return broadcaster
        except (RedisError, OSError) as e:
            logger.warning("⚠️ Redis fan-out unavailable (%s) - broadcasting to local connections only", e)
    return LocalRoomBroadcaster(connections)


async def build_services(settings: Settings) -> AppServices:
    users = UserDirectory(settings.USERS_FILE)
    rooms = RoomDirectory(settings.ROOMS_FILE)
    history = ChatHistory(settings.CHAT_HISTORY_FILE)
    connections = ConnectionManager(outbox_size=settings.OUTBOX_SIZE)

    presence = await connect_presence_store(settings)
    job_queue = await connect_job_queue(settings)
    broadcaster = await connect_broadcaster(settings, connections)
    await broadcaster.start()

    gateway = RoomGateway(
        room_directory=rooms,
        presence_store=presence,
        chat_history=history,
        connections=connections,
        broadcaster=broadcaster,
        job_queue=job_queue,
        history_page_size=settings.HISTORY_PAGE_SIZE,
    )

    worker = None
    if job_queue is not None and settings.WORKER_ENABLED:
        worker = ChatPersistenceWorker(
            job_queue,
            rooms,
            users,
            history,
            concurrency=settings.WORKER_CONCURRENCY,
            rate_max=settings.WORKER_RATE_MAX,
            rate_window_ms=settings.WORKER_RATE_WINDOW_MS,
        )
        await worker.start()

    return AppServices(
        settings=settings,
        users=users,
        rooms=rooms,
        history=history,
        presence=presence,
        connections=connections,
        broadcaster=broadcaster,
        gateway=gateway,
        tokens=TokenVerifier(settings.JWT_SECRET, settings.JWT_ALGORITHM, users),
        job_queue=job_queue,
        worker=worker,
    )


async def shutdown_services(services: AppServices) -> None:
    if services.worker is not None:
        await services.worker.stop()
    if services.job_queue is not None:
        await services.job_queue.close()
    await services.broadcaster.close()
    await services.presence.close()
