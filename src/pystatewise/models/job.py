"""Background job for the durable multi-priority work queue.

Represents a unit of work in the queue, tracking execution state,
attempts, delayed retries and de-duplication keys.
"""

from __future__ import annotations

import random
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pystatewise.models.status import JobStatus


class Priority(Enum):
    """Priority class of a job.

    - CRITICAL: immediate notifications (transition triggers, payment due)
    - DEFAULT: scheduled trigger execution
    - LOW: batch work and housekeeping
    """

    CRITICAL = "critical"
    DEFAULT = "default"
    LOW = "low"

    def __str__(self) -> str:
        return self.value


DEFAULT_WEIGHTS: dict[Priority, int] = {
    Priority.CRITICAL: 6,
    Priority.DEFAULT: 3,
    Priority.LOW: 1,
}


def strict_order() -> list[Priority]:
    """Priorities from highest to lowest."""
    return [Priority.CRITICAL, Priority.DEFAULT, Priority.LOW]


def weighted_order(
    weights: Mapping[Priority, int] | None = None, rng: random.Random | None = None
) -> list[Priority]:
    """Draw a dequeue order proportional to the configured weights.

    Priorities are sampled without replacement, each draw weighted by the
    remaining priorities' weights. With the default 6/3/1 weights CRITICAL
    comes first 60% of the time, and LOW is still first one time in ten so
    it is never starved while higher priority work keeps arriving. The
    worker then takes the first non-empty priority in the returned order.

    Args:
        weights: Weight per priority (missing or zero weights are skipped)
        rng: Random source (injectable for deterministic tests)

    Returns:
        Every priority with a positive weight, in dequeue order
    """
    weights = DEFAULT_WEIGHTS if weights is None else weights
    rng = rng or random

    remaining = [p for p in strict_order() if weights.get(p, 0) > 0]
    order: list[Priority] = []

    while remaining:
        total = sum(weights[p] for p in remaining)
        pick = rng.uniform(0, total)
        upto = 0.0
        chosen = remaining[-1]
        for p in remaining:
            upto += weights[p]
            if pick <= upto:
                chosen = p
                break
        order.append(chosen)
        remaining.remove(chosen)

    return order


@dataclass
class Job:
    """Job in the durable work queue.

    Workers dequeue Jobs, run the handler registered for ``job_type`` and
    mark them complete, retry them with backoff or dead-letter them.

    Design: Value Object
        Snapshot of queue state with all metadata needed for distributed
        execution and failure diagnosis.
    """

    job_id: str
    """Unique identifier for this job (UUID string)."""

    job_type: str
    """Handler routing key, e.g. ``workflow:execute_trigger``."""

    payload: dict[str, Any]
    """JSON-compatible job arguments."""

    priority: Priority = Priority.DEFAULT
    """Priority class the job is queued under."""

    status: JobStatus = JobStatus.PENDING
    """Current job status."""

    locked_by: str | None = None
    """Worker ID that claimed this job, None if unclaimed."""

    attempts: int = 0
    """Number of executions started so far."""

    max_attempts: int | None = None
    """Per-job attempt ceiling, None to use the worker's retry policy."""

    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    error_message: str | None = None
    """Error message from the last failed execution, None if no error."""

    scheduled_for: datetime | None = None
    """Earliest execution time (delayed retry), None for immediate execution."""

    unique_key: str | None = None
    """De-duplication key. A second enqueue with the same key is dropped."""

    claimed_at: datetime | None = None
    completed_at: datetime | None = None

    def is_ready(self, now: datetime) -> bool:
        """True if the job is pending and due."""
        if self.status != JobStatus.PENDING:
            return False
        return self.scheduled_for is None or self.scheduled_for <= now

    def __repr__(self) -> str:
        return (
            f"Job(job_id={self.job_id!r}, job_type={self.job_type!r}, "
            f"priority={self.priority}, status={self.status}, "
            f"locked_by={self.locked_by!r}, attempts={self.attempts})"
        )
