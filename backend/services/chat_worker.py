# backend/services/chat_worker.py

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Deque, Dict, Optional, Set

from core.errors import NotAMember, RoomNotFound, UserNotFound
from models.models import ChatMessage, ChatMessageJob, MessageType
from services.chat_history import ChatHistory
from services.job_queue import JobQueue, QueuedJob
from services.room_directory import RoomDirectory
from services.user_directory import UserDirectory

logger = logging.getLogger(__name__)


class RateLimiter:
    """Sliding window: at most `max_jobs` acquisitions per `window` seconds."""

    def __init__(self, max_jobs: int, window: float) -> None:
        self.max_jobs = max_jobs
        self.window = window
        self._stamps: Deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        loop = asyncio.get_running_loop()
        async with self._lock:
            while True:
                now = loop.time()
                while self._stamps and now - self._stamps[0] >= self.window:
                    self._stamps.popleft()
                if len(self._stamps) < self.max_jobs:
                    self._stamps.append(now)
                    return
                await asyncio.sleep(self.window - (now - self._stamps[0]))


# ============================================================================
# CHAT PERSISTENCE WORKER
# ============================================================================

class ChatPersistenceWorker:
    """
    Drains the persistence queue into chat history.

    A single dispatcher reserves jobs in queue order and hands each to its
    own task. At most `concurrency` jobs are in flight, at most `rate_max`
    start per `rate_window_ms`, and jobs of the same room run one after
    another in the order they were reserved.

    Job errors never escape: a failed job goes back to the queue's retry
    policy and, once the attempts are spent, to the dead-letter list.

    A heartbeat renews the lease of every reserved job (including jobs
    still waiting for their room's previous job) and recovers jobs whose
    lease ran out because their consumer died.
    """

    def __init__(
        self,
        queue: JobQueue,
        room_directory: RoomDirectory,
        user_directory: UserDirectory,
        chat_history: ChatHistory,
        concurrency: int = 5,
        rate_max: int = 100,
        rate_window_ms: int = 60000,
        poll_timeout: float = 1.0,
    ) -> None:
        self.queue = queue
        self.room_directory = room_directory
        self.user_directory = user_directory
        self.chat_history = chat_history
        self.concurrency = concurrency
        self.poll_timeout = poll_timeout
        self.rate_limiter = RateLimiter(rate_max, rate_window_ms / 1000)

        self.processed_count = 0
        self.failed_count = 0
        self.dead_lettered_count = 0

        self._slots = asyncio.Semaphore(concurrency)
        self._room_tails: Dict[str, asyncio.Task] = {}
        self._inflight: Set[asyncio.Task] = set()
        self._dispatcher: Optional[asyncio.Task] = None
        self._heartbeat: Optional[asyncio.Task] = None
        self._leased: Dict[str, QueuedJob] = {}
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    async def start(self) -> None:
        await self.queue.recover_stalled()
        self._stopping = False
        self._dispatcher = asyncio.create_task(self._dispatch(), name="chat-worker-dispatcher")
        self._heartbeat = asyncio.create_task(self._keep_leases(), name="chat-worker-heartbeat")
        logger.info(
            "✅ Chat worker ready (concurrency=%d, rate=%d/%.0fs)",
            self.concurrency, self.rate_limiter.max_jobs, self.rate_limiter.window,
        )

    async def stop(self, timeout: float = 5.0) -> None:
        self._stopping = True
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        if self._inflight:
            _, pending = await asyncio.wait(self._inflight, timeout=timeout)
            for task in pending:
                task.cancel()
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            try:
                await self._heartbeat
            except asyncio.CancelledError:
                pass
            self._heartbeat = None
        logger.info("✅ Chat worker closed")

    async def _dispatch(self) -> None:
        while not self._stopping:
            await self._slots.acquire()
            try:
                queued = await self.queue.reserve(self.poll_timeout)
            except Exception as exc:
                self._slots.release()
                logger.error("Chat worker could not reserve a job: %s", exc)
                await asyncio.sleep(self.poll_timeout)
                continue

            if queued is None:
                self._slots.release()
                continue

            self._leased[queued.id] = queued
            room_id = queued.job.room_id
            previous = self._room_tails.get(room_id)
            task = asyncio.create_task(self._run(queued, previous))
            self._room_tails[room_id] = task
            self._inflight.add(task)
            task.add_done_callback(lambda t, r=room_id: self._forget(t, r))

    def _forget(self, task: asyncio.Task, room_id: str) -> None:
        self._inflight.discard(task)
        if self._room_tails.get(room_id) is task:
            del self._room_tails[room_id]

    async def _run(self, queued: QueuedJob, previous: Optional[asyncio.Task]) -> None:
        try:
            if previous is not None and not previous.done():
                await asyncio.wait({previous})
            await self.rate_limiter.acquire()
            await self.handle(queued)
        finally:
            self._leased.pop(queued.id, None)
            self._slots.release()

    async def _keep_leases(self) -> None:
        interval = self.queue.lease_ms / 3000
        while True:
            await asyncio.sleep(interval)
            try:
                for queued in list(self._leased.values()):
                    if not await self.queue.extend(queued) and queued.id in self._leased:
                        logger.warning("Lease of chat message job %s was lost", queued.id)
                await self.queue.recover_stalled()
            except Exception as exc:
                logger.error("Chat worker heartbeat failed: %s", exc)

    async def handle(self, queued: QueuedJob) -> None:
        """Process one reserved job and settle it with the queue."""
        job = queued.job
        try:
            try:
                message = await self.process(job)
            except Exception as exc:
                self.failed_count += 1
                retried = await self.queue.fail(queued, exc)
                if retried:
                    logger.warning(
                        "Chat message job %s failed (attempt %d/%d), will retry: %s",
                        queued.id, queued.attempts_made, self.queue.policy.attempts, exc,
                    )
                else:
                    self.dead_lettered_count += 1
                    logger.error(
                        "☠ Chat message job %s dead-lettered after %d attempts: %s | payload=%s",
                        queued.id, self.queue.policy.attempts, exc, job.model_dump_json(),
                    )
                return

            await self.queue.complete(queued)
            self.processed_count += 1
            logger.debug("Chat message job %s completed as message %s", queued.id, message.id)
        except Exception as exc:
            # Settling failed (queue backend gone); the job stays active and
            # is recovered once its lease expires.
            logger.error("Chat message job %s could not be settled: %s", queued.id, exc)

    async def process(self, job: ChatMessageJob) -> ChatMessage:
        """
        Validate a job against the directories and store it.

        Steps:
            1. The room must exist.
            2. For non-system messages with a user: the user must exist and
               be a current member of the room.
            3. Append to history with the job's own timestamp.
        """
        logger.info(
            "Processing chat message room=%s user=%s type=%s length=%d",
            job.room_id, job.user_id, job.type.value, len(job.content),
        )

        room = await self.room_directory.get_room(job.room_id)
        if room is None:
            raise RoomNotFound(f"Room {job.room_id} not found")

        if job.user_id and job.type != MessageType.SYSTEM:
            user = await self.user_directory.find_by_id(job.user_id)
            if user is None:
                raise UserNotFound(f"User {job.user_id} not found")
            if room.find_member(job.user_id) is None:
                raise NotAMember(f"User {job.user_id} is not a member of room {job.room_id}")

        message = await self.chat_history.append(job)
        logger.info("Chat message %s saved for room %s", message.id, job.room_id)
        return message
