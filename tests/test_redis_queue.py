"""
Tests for the Redis job queue.

Tests using the ``redis_queue`` fixture are skipped unless a Redis server
answers at STATEWISE_REDIS_URL (default redis://localhost:6379); each of
them starts and ends with an empty ``statewise:*`` keyspace. The rest run
against a stand-in client.
"""

import asyncio
import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from pystatewise.models import Job, JobStatus, Priority, strict_order
from pystatewise.storage import StorageError
from pystatewise.storage.base import STALE_REASON
from pystatewise.storage.redis import RedisJobQueue

REDIS_URL = os.getenv("STATEWISE_REDIS_URL", "redis://localhost:6379")


@pytest.fixture
async def redis_queue() -> AsyncGenerator[RedisJobQueue, None]:
    queue = RedisJobQueue(REDIS_URL)
    try:
        await queue.connect()
        await queue._redis.ping()
    except Exception:
        await queue.close()
        pytest.skip("Redis not available")

    await queue.reset()
    yield queue
    await queue.reset()
    await queue.close()


def _job(job_id: str, priority: Priority = Priority.DEFAULT, **kwargs) -> Job:
    return Job(job_id=job_id, job_type="ping", payload={"n": job_id}, priority=priority, **kwargs)


@pytest.mark.asyncio
async def test_enqueue_and_dequeue(redis_queue):
    assert await redis_queue.enqueue(_job("j1")) == "j1"

    job = await redis_queue.dequeue("w1", strict_order())

    assert job.job_id == "j1"
    assert job.payload == {"n": "j1"}
    assert job.status == JobStatus.RUNNING
    assert job.locked_by == "w1"
    assert job.attempts == 1
    assert await redis_queue.dequeue("w1", strict_order()) is None


@pytest.mark.asyncio
async def test_unique_key_drops_duplicates(redis_queue):
    assert await redis_queue.enqueue(_job("j1", unique_key="scan:10:00")) == "j1"
    assert await redis_queue.enqueue(_job("j2", unique_key="scan:10:00")) is None

    assert [j.job_id for j in await redis_queue.list_jobs()] == ["j1"]


@pytest.mark.asyncio
async def test_dequeue_follows_requested_order(redis_queue):
    await redis_queue.enqueue(_job("low", Priority.LOW))
    await redis_queue.enqueue(_job("critical", Priority.CRITICAL))
    await redis_queue.enqueue(_job("default", Priority.DEFAULT))

    served = [(await redis_queue.dequeue("w1", strict_order())).job_id for _ in range(3)]
    assert served == ["critical", "default", "low"]


@pytest.mark.asyncio
async def test_unrequested_priority_is_not_served(redis_queue):
    await redis_queue.enqueue(_job("low", Priority.LOW))

    assert await redis_queue.dequeue("w1", [Priority.CRITICAL, Priority.DEFAULT]) is None
    assert (await redis_queue.dequeue("w1", [Priority.LOW])).job_id == "low"


@pytest.mark.asyncio
async def test_delayed_job_waits_until_due(redis_queue):
    await redis_queue.enqueue(
        _job("later", scheduled_for=datetime.now(UTC) + timedelta(milliseconds=200))
    )

    assert await redis_queue.dequeue("w1", strict_order()) is None
    await asyncio.sleep(0.3)
    assert (await redis_queue.dequeue("w1", strict_order())).job_id == "later"


@pytest.mark.asyncio
async def test_concurrent_dequeue_claims_each_job_once(redis_queue):
    for i in range(5):
        await redis_queue.enqueue(_job(f"j{i}"))

    claimed = await asyncio.gather(
        *(redis_queue.dequeue(f"w{i}", strict_order()) for i in range(10))
    )

    ids = [job.job_id for job in claimed if job is not None]
    assert sorted(ids) == [f"j{i}" for i in range(5)]


@pytest.mark.asyncio
async def test_retry_complete_and_dead_letter(redis_queue):
    await redis_queue.enqueue(_job("j1"))
    await redis_queue.enqueue(_job("j2"))

    first = await redis_queue.dequeue("w1", strict_order())
    await redis_queue.retry(first.job_id, "ChannelError: provider timeout", timedelta(0))
    retried = await redis_queue.get_job(first.job_id)
    assert retried.status == JobStatus.PENDING
    assert retried.error_message == "ChannelError: provider timeout"
    assert retried.locked_by is None

    second = await redis_queue.dequeue("w1", strict_order())
    await redis_queue.dead_letter(second.job_id, "NotFound: trigger not found: t1")

    again = await redis_queue.dequeue("w1", strict_order())
    assert again.job_id == first.job_id
    assert again.attempts == 2
    await redis_queue.complete(again.job_id)

    counts = await redis_queue.counts()
    assert counts[JobStatus.COMPLETE] == 1
    assert counts[JobStatus.FAILED] == 1
    assert counts[JobStatus.PENDING] == 0


@pytest.mark.asyncio
async def test_release_returns_job_to_front(redis_queue):
    await redis_queue.enqueue(_job("j1"))
    await redis_queue.enqueue(_job("j2"))

    job = await redis_queue.dequeue("w1", strict_order())
    await redis_queue.release(job.job_id, "worker shutdown")

    released = await redis_queue.get_job("j1")
    assert released.status == JobStatus.PENDING
    assert released.attempts == 0
    assert (await redis_queue.dequeue("w2", strict_order())).job_id == "j1"


@pytest.mark.asyncio
async def test_finishing_unknown_job_raises(redis_queue):
    with pytest.raises(StorageError):
        await redis_queue.complete("missing")


@pytest.mark.asyncio
async def test_purge_terminal_frees_unique_key(redis_queue):
    await redis_queue.enqueue(_job("j1", unique_key="cleanup:03:00"))
    job = await redis_queue.dequeue("w1", strict_order())
    await redis_queue.complete(job.job_id)

    purged = await redis_queue.purge_terminal(datetime.now(UTC) + timedelta(seconds=1))

    assert purged == 1
    assert await redis_queue.get_job("j1") is None
    assert await redis_queue.enqueue(_job("j3", unique_key="cleanup:03:00")) == "j3"


@pytest.mark.asyncio
async def test_recover_stale_requeues_abandoned_claim(redis_queue):
    await redis_queue.enqueue(_job("j1"))
    await redis_queue.enqueue(_job("j2"))
    await redis_queue.dequeue("crashed-worker", strict_order())
    await redis_queue.dequeue("w1", strict_order())
    await redis_queue.complete("j2")

    assert await redis_queue.recover_stale(datetime.now(UTC) - timedelta(minutes=10)) == 0
    assert await redis_queue.recover_stale(datetime.now(UTC) + timedelta(seconds=1)) == 1

    job = await redis_queue.get_job("j1")
    assert job.status == JobStatus.PENDING
    assert job.locked_by is None
    assert job.attempts == 1
    assert job.error_message == f"{STALE_REASON} (locked by crashed-worker)"
    assert await redis_queue._redis.lrange("statewise:running", 0, -1) == []

    again = await redis_queue.dequeue("w2", strict_order())
    assert again.job_id == "j1"
    assert again.attempts == 2


# ==============================================================================
# Without a server
# ==============================================================================


def test_unique_key_digest_is_stable():
    key = RedisJobQueue._unique_key("scan:2025-01-15T14:00Z")

    assert key.startswith("statewise:unique:")
    assert len(key.removeprefix("statewise:unique:")) == 16
    assert RedisJobQueue._unique_key("scan:2025-01-15T14:00Z") == key
    assert RedisJobQueue._unique_key("scan:2025-01-15T14:01Z") != key


class UnreachableAfterMarker:
    """Accepts the unique marker, then loses the connection."""

    def __init__(self):
        self.markers: dict[str, str] = {}

    async def set(self, key, value, nx=False):
        if nx and key in self.markers:
            return None
        self.markers[key] = value
        return True

    async def delete(self, *keys):
        for key in keys:
            self.markers.pop(key, None)
        return len(keys)

    def pipeline(self, transaction=True):
        raise RedisConnectionError("connection reset by peer")


@pytest.mark.asyncio
async def test_failed_enqueue_drops_unique_marker():
    queue = RedisJobQueue()
    queue._redis = UnreachableAfterMarker()

    with pytest.raises(StorageError):
        await queue.enqueue(_job("j1", unique_key="cleanup:03:00"))

    # The next enqueue with the same key is not mistaken for a duplicate
    assert queue._redis.markers == {}
    with pytest.raises(StorageError):
        await queue.enqueue(_job("j2", unique_key="cleanup:03:00"))
