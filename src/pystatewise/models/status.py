"""Status enumerations for background jobs and the trigger ledger.

Defines lifecycle states for queued jobs and for time-based trigger
occurrences recorded in the pending-job ledger.
"""

from enum import Enum


class JobStatus(Enum):
    """Status of a job in the durable work queue.

    Lifecycle:
        PENDING → RUNNING → COMPLETE
        PENDING → RUNNING → PENDING (retry with backoff) → ... → FAILED

    A FAILED job has exhausted its attempts (or hit a non-retryable error)
    and is kept for manual inspection. It is never silently dropped.
    """

    PENDING = "PENDING"
    """Job is queued, waiting for a worker to claim it."""

    RUNNING = "RUNNING"
    """Job is currently being executed by a worker."""

    COMPLETE = "COMPLETE"
    """Job handler returned successfully."""

    FAILED = "FAILED"
    """Job was dead-lettered after a permanent error or exhausted retries."""

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (no more work needed)."""
        return self in (JobStatus.COMPLETE, JobStatus.FAILED)

    def __str__(self) -> str:
        return self.value


class OccurrenceStatus(Enum):
    """Status of a time-based trigger occurrence in the pending-job ledger.

    Lifecycle:
        CLAIMED → FIRED
        CLAIMED → CANCELLED (cancel_pending called before the job ran)
        CLAIMED → FAILED (enqueue failed, or the job failed permanently)
    """

    CLAIMED = "CLAIMED"
    FIRED = "FIRED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not OccurrenceStatus.CLAIMED

    def __str__(self) -> str:
        return self.value
