"""Redis-based job queue implementation.

Provides a Redis backend for the job queue with true multi-machine
support. Unlike SQLite which requires shared filesystem access, Redis
enables workers to run on completely separate machines.

Data Structures:
- statewise:queue:{priority} (LIST): FIFO of ready job ids per priority
- statewise:delayed (ZSET): delayed job ids (score = ready-at, ms)
- statewise:running (LIST): claimed job ids
- statewise:jobs (ZSET): every stored job id (score = created_at, ms)
- statewise:job:{job_id} (HASH): job metadata and JSON payload
- statewise:unique:{digest} (STRING): de-duplication marker, value = job id

Key Features:
- Atomic claim: LMOVE from a priority list into the running list, so each
  job id is handed to exactly one worker
- Delayed retries are promoted into their priority list by whichever
  worker removes them from the ZSET first (ZREM returns 1 once)
- Unique keys are hashed with xxhash so marker keys stay short

Design: Adapter Pattern
Implements the JobQueue interface for Redis.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta

import xxhash

try:
    import redis.asyncio as redis
except ImportError:
    raise ImportError("redis-py is required for RedisJobQueue. Install with: pip install redis")

from pystatewise.models import Job, JobStatus, Priority
from pystatewise.storage.base import STALE_REASON, JobQueue, StorageError

_PREFIX = "statewise"
_DELAYED = f"{_PREFIX}:delayed"
_RUNNING = f"{_PREFIX}:running"
_JOBS = f"{_PREFIX}:jobs"

logger = logging.getLogger(__name__)


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _dt(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=UTC)


class RedisJobQueue(JobQueue):
    """Redis job queue using connection pooling.

    All dependencies (Redis connection) passed explicitly.

    Usage:
        queue = RedisJobQueue("redis://localhost:6379")
        await queue.connect()

        job_id = await queue.enqueue(job)
        job = await queue.dequeue("worker-1", [Priority.CRITICAL, Priority.DEFAULT])
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", max_connections: int = 16):
        """Initialize Redis job queue.

        Default redis_url works for local development.

        Args:
            redis_url: Redis connection URL
            max_connections: Maximum pool size
        """
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._redis: redis.Redis | None = None

    def __repr__(self) -> str:
        return f"RedisJobQueue({self._redis_url})"

    async def connect(self) -> None:
        """Establish Redis connection pool."""
        self._redis = redis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=self._max_connections,
        )

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _check_connected(self) -> None:
        """Ensure connection established.

        Raises immediately if not connected.
        """
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")

    @staticmethod
    def _job_key(job_id: str) -> str:
        return f"{_PREFIX}:job:{job_id}"

    @staticmethod
    def _queue_key(priority: Priority) -> str:
        return f"{_PREFIX}:queue:{priority.value}"

    @staticmethod
    def _unique_key(unique_key: str) -> str:
        digest = xxhash.xxh64_hexdigest(unique_key.encode("utf-8"))
        return f"{_PREFIX}:unique:{digest}"

    async def enqueue(self, job: Job) -> str | None:
        self._check_connected()

        marker = None
        try:
            if job.unique_key is not None:
                key = self._unique_key(job.unique_key)
                if not await self._redis.set(key, job.job_id, nx=True):
                    return None
                marker = key

            mapping = {
                "job_id": job.job_id,
                "job_type": job.job_type,
                "payload": json.dumps(job.payload),
                "priority": job.priority.value,
                "status": job.status.value,
                "locked_by": "",
                "attempts": job.attempts,
                "max_attempts": "" if job.max_attempts is None else job.max_attempts,
                "created_at": _ms(job.created_at),
                "updated_at": _ms(job.updated_at),
                "error_message": "",
                "scheduled_for": "" if job.scheduled_for is None else _ms(job.scheduled_for),
                "unique_key": job.unique_key or "",
                "claimed_at": "",
                "completed_at": "",
            }

            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._job_key(job.job_id), mapping=mapping)
                pipe.zadd(_JOBS, {job.job_id: _ms(job.created_at)})
                if job.scheduled_for is not None and job.scheduled_for > datetime.now(UTC):
                    pipe.zadd(_DELAYED, {job.job_id: _ms(job.scheduled_for)})
                else:
                    pipe.rpush(self._queue_key(job.priority), job.job_id)
                await pipe.execute()
        except redis.RedisError as e:
            if marker is not None:
                await self._drop_marker(marker, job.job_id)
            raise StorageError(f"Failed to enqueue job: {e}") from e

        return job.job_id

    async def _drop_marker(self, marker: str, job_id: str) -> None:
        """Delete a de-duplication marker whose job was never stored."""
        try:
            await self._redis.delete(marker)
        except redis.RedisError as e:
            logger.warning(f"Could not remove unique marker for job {job_id}: {e}")

    async def _promote_delayed(self, now: datetime) -> None:
        """Move due delayed jobs into their priority lists."""
        due = await self._redis.zrangebyscore(_DELAYED, "-inf", _ms(now))
        for job_id in due:
            if await self._redis.zrem(_DELAYED, job_id) != 1:
                continue  # another worker promoted it
            priority = await self._redis.hget(self._job_key(job_id), "priority")
            if priority is None:
                continue
            await self._redis.rpush(self._queue_key(Priority(priority)), job_id)

    async def dequeue(self, worker_id: str, order: list[Priority]) -> Job | None:
        """Claim the head of the first non-empty priority list.

        Design: Optimistic Concurrency Control
        LMOVE is atomic, so two workers never pop the same id. Ids whose
        hash is no longer PENDING (purged or stale) are dropped.
        """
        self._check_connected()
        now = datetime.now(UTC)

        try:
            await self._promote_delayed(now)

            for priority in order:
                while True:
                    job_id = await self._redis.lmove(
                        self._queue_key(priority), _RUNNING, "LEFT", "RIGHT"
                    )
                    if job_id is None:
                        break

                    key = self._job_key(job_id)
                    if await self._redis.hget(key, "status") != JobStatus.PENDING.value:
                        await self._redis.lrem(_RUNNING, 1, job_id)
                        continue

                    async with self._redis.pipeline(transaction=True) as pipe:
                        pipe.hset(
                            key,
                            mapping={
                                "status": JobStatus.RUNNING.value,
                                "locked_by": worker_id,
                                "claimed_at": _ms(now),
                                "updated_at": _ms(now),
                            },
                        )
                        pipe.hincrby(key, "attempts", 1)
                        await pipe.execute()

                    return await self.get_job(job_id)
        except redis.RedisError as e:
            raise StorageError(f"Failed to dequeue job: {e}") from e

        return None

    async def _finish(self, job_id: str, fields: dict) -> None:
        key = self._job_key(job_id)
        if not await self._redis.exists(key):
            raise StorageError(f"Job not found: job_id={job_id}")

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping=fields)
            pipe.lrem(_RUNNING, 1, job_id)
            await pipe.execute()

    async def complete(self, job_id: str) -> None:
        self._check_connected()
        now = _ms(datetime.now(UTC))
        await self._finish(
            job_id,
            {
                "status": JobStatus.COMPLETE.value,
                "locked_by": "",
                "completed_at": now,
                "updated_at": now,
            },
        )

    async def retry(self, job_id: str, error_message: str, delay: timedelta) -> None:
        self._check_connected()
        now = datetime.now(UTC)
        ready_at = _ms(now + delay)
        await self._finish(
            job_id,
            {
                "status": JobStatus.PENDING.value,
                "locked_by": "",
                "error_message": error_message,
                "scheduled_for": ready_at,
                "updated_at": _ms(now),
            },
        )
        await self._redis.zadd(_DELAYED, {job_id: ready_at})

    async def dead_letter(self, job_id: str, error_message: str) -> None:
        self._check_connected()
        now = _ms(datetime.now(UTC))
        await self._finish(
            job_id,
            {
                "status": JobStatus.FAILED.value,
                "locked_by": "",
                "error_message": error_message,
                "completed_at": now,
                "updated_at": now,
            },
        )

    async def release(self, job_id: str, reason: str) -> None:
        self._check_connected()
        key = self._job_key(job_id)
        attempts = await self._redis.hget(key, "attempts")
        priority = await self._redis.hget(key, "priority")
        if priority is None:
            raise StorageError(f"Job not found: job_id={job_id}")

        await self._finish(
            job_id,
            {
                "status": JobStatus.PENDING.value,
                "locked_by": "",
                "error_message": reason,
                "attempts": max(int(attempts or 0) - 1, 0),
                "updated_at": _ms(datetime.now(UTC)),
            },
        )
        # Released jobs go to the front of their priority
        await self._redis.lpush(self._queue_key(Priority(priority)), job_id)

    async def recover_stale(self, claimed_before: datetime) -> int:
        """Requeue running jobs whose claim is older than ``claimed_before``.

        Ids left in the running list for jobs that finished or were purged
        are dropped along the way.
        """
        self._check_connected()
        cutoff = _ms(claimed_before)
        recovered = 0

        try:
            for job_id in await self._redis.lrange(_RUNNING, 0, -1):
                key = self._job_key(job_id)
                status, claimed_at, locked_by, priority = await self._redis.hmget(
                    key, ["status", "claimed_at", "locked_by", "priority"]
                )
                if status is None or JobStatus(status).is_terminal:
                    await self._redis.lrem(_RUNNING, 1, job_id)
                    continue
                if status != JobStatus.RUNNING.value or not claimed_at:
                    continue
                if int(claimed_at) >= cutoff:
                    continue

                async with self._redis.pipeline(transaction=True) as pipe:
                    pipe.hset(
                        key,
                        mapping={
                            "status": JobStatus.PENDING.value,
                            "locked_by": "",
                            "error_message": f"{STALE_REASON} (locked by {locked_by or '?'})",
                            "updated_at": _ms(datetime.now(UTC)),
                        },
                    )
                    pipe.lrem(_RUNNING, 1, job_id)
                    pipe.rpush(self._queue_key(Priority(priority)), job_id)
                    await pipe.execute()
                recovered += 1
        except redis.RedisError as e:
            raise StorageError(f"Failed to recover stale jobs: {e}") from e

        return recovered

    async def get_job(self, job_id: str) -> Job | None:
        self._check_connected()
        data = await self._redis.hgetall(self._job_key(job_id))
        if not data:
            return None
        return self._parse_job(data)

    async def list_jobs(self, status: JobStatus | None = None) -> list[Job]:
        self._check_connected()
        jobs = []
        for job_id in await self._redis.zrange(_JOBS, 0, -1):
            job = await self.get_job(job_id)
            if job is not None and (status is None or job.status == status):
                jobs.append(job)
        return jobs

    async def purge_terminal(self, before: datetime) -> int:
        self._check_connected()
        purged = 0
        for job in await self.list_jobs():
            if not job.status.is_terminal or job.updated_at >= before:
                continue
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.delete(self._job_key(job.job_id))
                pipe.zrem(_JOBS, job.job_id)
                if job.unique_key:
                    pipe.delete(self._unique_key(job.unique_key))
                await pipe.execute()
            purged += 1
        return purged

    async def counts(self) -> dict[JobStatus, int]:
        result = {status: 0 for status in JobStatus}
        for job in await self.list_jobs():
            result[job.status] += 1
        return result

    async def reset(self) -> None:
        """Delete every key of this queue (for testing).

        Warning: Destructive operation - only use in testing!
        """
        self._check_connected()
        keys = [k async for k in self._redis.scan_iter(match=f"{_PREFIX}:*")]
        if keys:
            await self._redis.delete(*keys)

    def _parse_job(self, data: dict[str, str]) -> Job:
        return Job(
            job_id=data["job_id"],
            job_type=data["job_type"],
            payload=json.loads(data["payload"]),
            priority=Priority(data["priority"]),
            status=JobStatus(data["status"]),
            locked_by=data.get("locked_by") or None,
            attempts=int(data.get("attempts") or 0),
            max_attempts=int(data["max_attempts"]) if data.get("max_attempts") else None,
            created_at=_dt(data["created_at"]),
            updated_at=_dt(data["updated_at"]),
            error_message=data.get("error_message") or None,
            scheduled_for=_dt(data.get("scheduled_for")),
            unique_key=data.get("unique_key") or None,
            claimed_at=_dt(data.get("claimed_at")),
            completed_at=_dt(data.get("completed_at")),
        )
