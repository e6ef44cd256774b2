"""
JobClient - Simple API for enqueuing background jobs.

Design Principle: Single Responsibility (SOLID)
JobClient has ONE job: put jobs on the queue. It does NOT execute them
(that's Worker's job).

Key Benefit:
Producers (the workflow engine, the trigger scheduler, the periodic
scheduler) don't need to know about job ids, timestamps or queue backends.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from uuid_extensions import uuid7

from pystatewise.models import Job, JobStatus, Priority
from pystatewise.models.retry import RetryableError
from pystatewise.storage.base import JobQueue

logger = logging.getLogger(__name__)


class JobClient:
    """
    Producer side of the job queue.

    Design Pattern: Façade Pattern
    Simplifies the process of:
    1. Generating a job id
    2. Applying priority, delay and de-duplication key
    3. Storing in the durable queue

    Into a single enqueue() call.

    Usage:
        client = JobClient(queue)

        job_id = await client.enqueue(
            "workflow:execute_trigger",
            payload.to_dict(),
            Priority.CRITICAL,
        )
    """

    def __init__(self, queue: JobQueue):
        """
        Args:
            queue: Queue backend for persisting jobs
        """
        self._queue = queue

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        priority: Priority = Priority.DEFAULT,
        unique_key: str | None = None,
        max_attempts: int | None = None,
        delay: timedelta | None = None,
    ) -> str | None:
        """
        Enqueue a job.

        Args:
            job_type: Handler routing key
            payload: JSON-compatible arguments
            priority: Queue priority class
            unique_key: Drop the job if one with this key is already stored
            max_attempts: Per-job attempt ceiling (worker policy if None)
            delay: Earliest execution delay

        Returns:
            job_id, or None if ``unique_key`` was a duplicate

        Raises:
            EnqueueError: If the queue could not store the job
        """
        now = datetime.now(UTC)
        job = Job(
            job_id=str(uuid7()),
            job_type=job_type,
            payload=payload,
            priority=priority,
            status=JobStatus.PENDING,
            max_attempts=max_attempts,
            created_at=now,
            updated_at=now,
            scheduled_for=now + delay if delay else None,
            unique_key=unique_key,
        )

        try:
            job_id = await self._queue.enqueue(job)
        except Exception as e:
            raise EnqueueError(f"Failed to enqueue {job_type}: {e}") from e

        if job_id is None:
            logger.debug(f"Skipped duplicate {job_type} job (unique_key={unique_key})")
        else:
            logger.debug(f"Enqueued {job_type} job {job_id} at {priority} priority")
        return job_id

    @property
    def queue(self) -> JobQueue:
        """
        Get queue backend (for testing/inspection).
        """
        return self._queue


class EnqueueError(RetryableError):
    """
    Job enqueueing failed.

    Wraps the underlying queue error with the job type.
    """

    pass
