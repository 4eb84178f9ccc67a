# backend/services/job_queue.py

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from core.errors import QueueUnavailable
from models.models import ChatMessageJob, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded attempts with exponential backoff: delay * 2 ** (attempt - 1)."""

    attempts: int = 3
    backoff_ms: int = 2000

    def delay_ms(self, attempts_made: int) -> int:
        return self.backoff_ms * 2 ** (attempts_made - 1)


@dataclass
class QueuedJob:
    id: str
    job: ChatMessageJob
    attempts_made: int = 0


def _finished_record(queued: QueuedJob, attempts_made: int, error: Optional[str] = None) -> dict:
    record = {
        "id": queued.id,
        "data": queued.job.model_dump(mode="json"),
        "attempts_made": attempts_made,
        "finished_at": utcnow().isoformat(),
    }
    if error is not None:
        record["failed_reason"] = error
    return record


class JobQueue:
    """
    Durable, retryable work queue of `ChatMessageJob`s.

    Lifecycle of a job:
        enqueue -> wait -> (reserve) active -> complete      -> completed (capped)
                                            -> fail, retry   -> delayed -> wait
                                            -> fail, no more -> failed  (capped, dead-letter)

    A reserved job is leased for `lease_ms`. The consumer keeps the lease
    alive with `extend` while it works; a job whose lease ran out belongs
    to a consumer that died and `recover_stalled` puts it back in front of
    the wait list. Live leases are never touched, so any number of
    consumers can share one queue.
    """

    def __init__(
        self,
        policy: RetryPolicy = RetryPolicy(),
        remove_on_complete: int = 100,
        remove_on_fail: int = 50,
        lease_ms: int = 30000,
    ) -> None:
        self.policy = policy
        self.remove_on_complete = remove_on_complete
        self.remove_on_fail = remove_on_fail
        self.lease_ms = lease_ms

    async def enqueue(self, job: ChatMessageJob) -> str:
        raise NotImplementedError

    async def reserve(self, timeout: float = 1.0) -> Optional[QueuedJob]:
        raise NotImplementedError

    async def extend(self, queued: QueuedJob) -> bool:
        """Renew the lease of a reserved job. False if the job is no longer active."""
        raise NotImplementedError

    async def complete(self, queued: QueuedJob) -> None:
        raise NotImplementedError

    async def fail(self, queued: QueuedJob, error: BaseException) -> bool:
        """Record a failed attempt. Returns True when the job will be retried."""
        raise NotImplementedError

    async def counts(self) -> Dict[str, int]:
        raise NotImplementedError

    async def failed_jobs(self) -> List[dict]:
        raise NotImplementedError

    async def recover_stalled(self) -> int:
        """Move active jobs whose lease expired back to the front of the wait list."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


# ============================================================================
# IN-MEMORY BACKEND
# ============================================================================

class InMemoryJobQueue(JobQueue):
    """Same contract as the Redis queue, without durability across restarts."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._wait: Deque[QueuedJob] = deque()
        # job id -> (lease expiry in loop time, job)
        self._active: Dict[str, Tuple[float, QueuedJob]] = {}
        self._delayed: Dict[str, Tuple[float, QueuedJob]] = {}
        self._completed: Deque[dict] = deque(maxlen=self.remove_on_complete)
        self._failed: Deque[dict] = deque(maxlen=self.remove_on_fail)
        self._next_id = 0
        self._wakeup = asyncio.Event()

    def _lease_until(self) -> float:
        return asyncio.get_running_loop().time() + self.lease_ms / 1000

    async def enqueue(self, job: ChatMessageJob) -> str:
        self._next_id += 1
        queued = QueuedJob(id=str(self._next_id), job=job)
        self._wait.append(queued)
        self._wakeup.set()
        return queued.id

    def _promote_due(self, now: float) -> None:
        due = sorted(
            (due_at, job_id) for job_id, (due_at, _) in self._delayed.items() if due_at <= now
        )
        for _, job_id in due:
            _, queued = self._delayed.pop(job_id)
            self._wait.append(queued)

    async def reserve(self, timeout: float = 1.0) -> Optional[QueuedJob]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            now = loop.time()
            self._promote_due(now)
            if self._wait:
                queued = self._wait.popleft()
                self._active[queued.id] = (self._lease_until(), queued)
                return queued

            remaining = deadline - now
            if remaining <= 0:
                return None
            if self._delayed:
                next_due = min(due_at for due_at, _ in self._delayed.values())
                remaining = min(remaining, max(next_due - now, 0))

            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), remaining)
            except asyncio.TimeoutError:
                pass

    async def extend(self, queued: QueuedJob) -> bool:
        if queued.id not in self._active:
            return False
        self._active[queued.id] = (self._lease_until(), queued)
        return True

    async def complete(self, queued: QueuedJob) -> None:
        self._active.pop(queued.id, None)
        self._completed.appendleft(_finished_record(queued, queued.attempts_made + 1))

    async def fail(self, queued: QueuedJob, error: BaseException) -> bool:
        self._active.pop(queued.id, None)
        attempts_made = queued.attempts_made + 1
        if attempts_made < self.policy.attempts:
            queued.attempts_made = attempts_made
            due_at = asyncio.get_running_loop().time() + self.policy.delay_ms(attempts_made) / 1000
            self._delayed[queued.id] = (due_at, queued)
            self._wakeup.set()
            return True
        self._failed.appendleft(_finished_record(queued, attempts_made, str(error)))
        return False

    async def counts(self) -> Dict[str, int]:
        return {
            "waiting": len(self._wait),
            "active": len(self._active),
            "delayed": len(self._delayed),
            "completed": len(self._completed),
            "failed": len(self._failed),
        }

    async def failed_jobs(self) -> List[dict]:
        return list(self._failed)

    async def recover_stalled(self) -> int:
        now = asyncio.get_running_loop().time()
        stalled = [queued for expires_at, queued in self._active.values() if expires_at <= now]
        for queued in stalled:
            del self._active[queued.id]
        self._wait.extendleft(reversed(stalled))
        if stalled:
            logger.warning("Recovered %d stalled jobs", len(stalled))
            self._wakeup.set()
        return len(stalled)


# ============================================================================
# REDIS BACKEND
# ============================================================================

# Promotes due delayed jobs, then leases the head of the wait list.
# KEYS: delayed, wait, active   ARGV: now_ms, lease_ms
RESERVE_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
for _, id in ipairs(due) do
    redis.call('ZREM', KEYS[1], id)
    redis.call('RPUSH', KEYS[2], id)
end
local id = redis.call('LPOP', KEYS[2])
if not id then
    return false
end
redis.call('ZADD', KEYS[3], tonumber(ARGV[1]) + tonumber(ARGV[2]), id)
return id
"""

# KEYS: active   ARGV: job id, new expiry ms
EXTEND_SCRIPT = """
if redis.call('ZSCORE', KEYS[1], ARGV[1]) then
    redis.call('ZADD', KEYS[1], ARGV[2], ARGV[1])
    return 1
end
return 0
"""

# Expired leases go back to the front of the wait list, oldest first.
# KEYS: active, wait   ARGV: now_ms
RECOVER_SCRIPT = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
for i = #ids, 1, -1 do
    redis.call('ZREM', KEYS[1], ids[i])
    redis.call('LPUSH', KEYS[2], ids[i])
end
return #ids
"""


def _now_ms() -> int:
    return int(time.time() * 1000)


class RedisJobQueue(JobQueue):
    """
    Redis-backed queue shared by every gateway instance.

    Keys (prefix "queue:{name}:"):
        id          counter for job ids
        job:{id}    hash {data, attempts_made, enqueued_at, last_error}
        wait        list of job ids ready to run (FIFO)
        active      sorted set of reserved job ids, score = lease expiry in ms
        delayed     sorted set of job ids, score = due time in ms
        completed   capped list of finished job records (JSON)
        failed      capped list of dead-lettered job records (JSON)

    The client uses short socket timeouts so `enqueue` fails fast. Reserve
    runs one script per poll, every `poll_interval` seconds while the
    queue is empty.
    """

    def __init__(
        self,
        url: str,
        name: str = "chat.persist",
        policy: RetryPolicy = RetryPolicy(),
        remove_on_complete: int = 100,
        remove_on_fail: int = 50,
        enqueue_timeout: float = 0.5,
        lease_ms: int = 30000,
        poll_interval: float = 0.1,
    ) -> None:
        super().__init__(policy, remove_on_complete, remove_on_fail, lease_ms)
        self.url = url
        self.name = name
        self.enqueue_timeout = enqueue_timeout
        self.poll_interval = poll_interval
        self.client = None
        self._reserve = None
        self._extend = None
        self._recover = None

    def _key(self, suffix: str) -> str:
        return f"queue:{self.name}:{suffix}"

    def use_client(self, client) -> None:
        """Attach a connected client and register the queue scripts on it."""
        self.client = client
        self._reserve = client.register_script(RESERVE_SCRIPT)
        self._extend = client.register_script(EXTEND_SCRIPT)
        self._recover = client.register_script(RECOVER_SCRIPT)

    async def connect(self, attempts: int = 5, backoff_ms: int = 50, backoff_max_ms: int = 2000) -> None:
        """
        Connect with bounded retries and capped exponential backoff.

        Raises:
            QueueUnavailable: Redis did not answer within `attempts`
        """
        for attempt in range(1, attempts + 1):
            try:
                client = redis.from_url(
                    self.url,
                    decode_responses=True,
                    socket_connect_timeout=self.enqueue_timeout,
                    socket_timeout=self.enqueue_timeout,
                )
                self.client = client
                await client.ping()
                self.use_client(client)
                logger.info("✓ Persistence queue '%s' connected to Redis", self.name)
                return
            except (RedisError, OSError) as exc:
                await self.close()
                delay = min(backoff_ms * 2 ** (attempt - 1), backoff_max_ms)
                logger.warning(
                    "Queue connection attempt %d/%d failed: %s (retrying in %d ms)",
                    attempt, attempts, exc, delay,
                )
                if attempt < attempts:
                    await asyncio.sleep(delay / 1000)
        raise QueueUnavailable(f"Could not connect to queue backend after {attempts} attempts")

    async def enqueue(self, job: ChatMessageJob) -> str:
        if self.client is None:
            raise QueueUnavailable()
        try:
            return await asyncio.wait_for(self._enqueue(job), self.enqueue_timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise QueueUnavailable(f"Enqueue failed: {exc}") from exc

    async def _enqueue(self, job: ChatMessageJob) -> str:
        job_id = str(await self.client.incr(self._key("id")))
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.hset(
                self._key(f"job:{job_id}"),
                mapping={
                    "data": job.model_dump_json(),
                    "attempts_made": 0,
                    "enqueued_at": _now_ms(),
                },
            )
            pipe.rpush(self._key("wait"), job_id)
            await pipe.execute()
        logger.debug("📥 Enqueued job %s for room %s", job_id, job.room_id)
        return job_id

    async def reserve(self, timeout: float = 1.0) -> Optional[QueuedJob]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            job_id = await self._reserve(
                keys=[self._key("delayed"), self._key("wait"), self._key("active")],
                args=[_now_ms(), self.lease_ms],
            )
            if job_id is not None:
                break
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval, remaining))

        raw = await self.client.hgetall(self._key(f"job:{job_id}"))
        if not raw:
            logger.warning("Job %s has no payload - discarding", job_id)
            await self.client.zrem(self._key("active"), job_id)
            return None
        return QueuedJob(
            id=job_id,
            job=ChatMessageJob.model_validate_json(raw["data"]),
            attempts_made=int(raw.get("attempts_made", 0)),
        )

    async def extend(self, queued: QueuedJob) -> bool:
        renewed = await self._extend(
            keys=[self._key("active")],
            args=[queued.id, _now_ms() + self.lease_ms],
        )
        return bool(renewed)

    async def complete(self, queued: QueuedJob) -> None:
        record = _finished_record(queued, queued.attempts_made + 1)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.zrem(self._key("active"), queued.id)
            pipe.delete(self._key(f"job:{queued.id}"))
            pipe.lpush(self._key("completed"), json.dumps(record))
            pipe.ltrim(self._key("completed"), 0, self.remove_on_complete - 1)
            await pipe.execute()

    async def fail(self, queued: QueuedJob, error: BaseException) -> bool:
        attempts_made = queued.attempts_made + 1
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.zrem(self._key("active"), queued.id)
            if attempts_made < self.policy.attempts:
                due = _now_ms() + self.policy.delay_ms(attempts_made)
                pipe.hset(
                    self._key(f"job:{queued.id}"),
                    mapping={"attempts_made": attempts_made, "last_error": str(error)},
                )
                pipe.zadd(self._key("delayed"), {queued.id: due})
                retried = True
            else:
                record = _finished_record(queued, attempts_made, str(error))
                pipe.delete(self._key(f"job:{queued.id}"))
                pipe.lpush(self._key("failed"), json.dumps(record))
                pipe.ltrim(self._key("failed"), 0, self.remove_on_fail - 1)
                retried = False
            await pipe.execute()
        return retried

    async def counts(self) -> Dict[str, int]:
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.llen(self._key("wait"))
            pipe.zcard(self._key("active"))
            pipe.zcard(self._key("delayed"))
            pipe.llen(self._key("completed"))
            pipe.llen(self._key("failed"))
            waiting, active, delayed, completed, failed = await pipe.execute()
        return {
            "waiting": waiting,
            "active": active,
            "delayed": delayed,
            "completed": completed,
            "failed": failed,
        }

    async def failed_jobs(self) -> List[dict]:
        return [json.loads(item) for item in await self.client.lrange(self._key("failed"), 0, -1)]

    async def recover_stalled(self) -> int:
        moved = await self._recover(
            keys=[self._key("active"), self._key("wait")],
            args=[_now_ms()],
        )
        if moved:
            logger.warning("Recovered %d stalled jobs in queue '%s'", moved, self.name)
        return moved

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
        self.client = None
