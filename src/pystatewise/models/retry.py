"""
Retry policy configuration for background jobs.

Design Pattern: Strategy Pattern
RetryPolicy encapsulates retry behavior, allowing different retry strategies
without modifying the worker's outcome handling.

Backoff is linear in the attempt count: the n-th retry waits ``n * step``
(one minute by default), capped at ``max_delay``. After ``max_attempts``
executions the job is dead-lettered for manual review.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, cast


@dataclass(frozen=True)
class RetryPolicy:
    """
    Configuration for job retry behavior.

    Examples:
        # Named policy: predefined sensible defaults
        policy = RetryPolicy.STANDARD

        # Simple: just specify max attempts (uses the one-minute step)
        policy = RetryPolicy.with_max_attempts(5)

        # Custom policy: full control
        policy = RetryPolicy(
            max_attempts=5,
            step=timedelta(seconds=30),
            max_delay=timedelta(minutes=10),
        )
    """

    max_attempts: int
    """Maximum number of executions (including the first try).

    For example, max_attempts = 3 means:
    - Attempt 1: immediate (first try)
    - Attempt 2: after 1 * step
    - Attempt 3: after 2 * step
    """

    step: timedelta = timedelta(minutes=1)
    """Backoff unit. The n-th retry waits n * step."""

    max_delay: timedelta = timedelta(hours=1)
    """Upper bound for a single backoff delay."""

    if TYPE_CHECKING:
        NONE: RetryPolicy
        STANDARD: RetryPolicy
    else:
        NONE = cast("RetryPolicy", None)
        STANDARD = cast("RetryPolicy", None)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.step < timedelta(0):
            raise ValueError("step must not be negative")

    @classmethod
    def with_max_attempts(cls, max_attempts: int) -> RetryPolicy:
        """
        Create a policy with custom max_attempts (uses the standard step).

        Args:
            max_attempts: Maximum number of executions

        Returns:
            RetryPolicy with a one-minute linear step
        """
        return cls(max_attempts=max_attempts)

    def delay_for_attempt(self, attempt: int) -> timedelta | None:
        """
        Calculate the delay before the next execution.

        Args:
            attempt: Number of executions that already failed (1-indexed)

        Returns:
            Delay before the next retry, or None if no more retries.

        Example:
            policy = RetryPolicy(max_attempts=3)
            policy.delay_for_attempt(1)  # 1 minute
            policy.delay_for_attempt(2)  # 2 minutes
            policy.delay_for_attempt(3)  # None (max attempts)
        """
        if attempt >= self.max_attempts:
            return None

        return min(self.step * attempt, self.max_delay)

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(max_attempts={self.max_attempts}, "
            f"step={self.step}, max_delay={self.max_delay})"
        )


RetryPolicy.NONE = RetryPolicy(max_attempts=1, step=timedelta(0), max_delay=timedelta(0))

# Matches the queue's historical ceiling of 25 executions
RetryPolicy.STANDARD = RetryPolicy(max_attempts=25)


class RetryableError(Exception):
    """
    Base class for errors that can specify whether they should be retried.

    Example:
        class GatewayError(RetryableError):
            def __init__(self, message: str, is_retryable: bool = True):
                super().__init__(message)
                self._retryable = is_retryable

            def is_retryable(self) -> bool:
                return self._retryable

        # Transient error - should retry
        raise GatewayError("Network timeout", is_retryable=True)

        # Permanent error - should NOT retry
        raise GatewayError("Unknown recipient", is_retryable=False)
    """

    def is_retryable(self) -> bool:
        """
        Returns true if this error is transient and the job should be retried.

        - True: Error is transient (network timeout, data store timeout).
        - False: Error is permanent (configuration defect). The job is
          dead-lettered immediately.
        """
        return True


def is_retryable(error: BaseException) -> bool:
    """Classify an arbitrary exception.

    Exceptions that do not implement ``is_retryable()`` are treated as
    transient.
    """
    check = getattr(error, "is_retryable", None)
    if callable(check):
        return bool(check())
    return True
