"""Job execution outcome handling.

Handles the three job completion paths:
- Success: mark complete
- Retryable error: schedule a retry with linear backoff
- Non-retryable error or attempts exhausted: dead-letter, keeping the error

Design: Information Hiding (Parnas)
Retry logic is isolated here, allowing the worker loop to remain simple and
these policies to evolve independently.
"""

import logging
from datetime import timedelta

from pystatewise.models import Job, RetryPolicy
from pystatewise.models.retry import is_retryable
from pystatewise.storage.base import JobQueue

logger = logging.getLogger(__name__)

__all__ = [
    "handle_job_completion",
    "handle_job_error",
    "check_should_retry",
]


async def handle_job_completion(queue: JobQueue, worker_id: str, job: Job) -> None:
    """Mark a job complete.

    Args:
        queue: Queue backend
        worker_id: Identifier of worker completing the job
        job: The finished job
    """
    logger.info(f"Worker {worker_id} completed job: job_id={job.job_id}, type={job.job_type}")

    try:
        await queue.complete(job.job_id)
    except Exception as e:
        logger.error(f"Worker {worker_id} failed to mark job complete: {e}")


def check_should_retry(job: Job, error: BaseException, policy: RetryPolicy) -> timedelta | None:
    """Decide whether a failed job runs again.

    The job's own max_attempts (if set) overrides the policy's.

    Args:
        job: Failed job (``attempts`` counts the execution that just failed)
        error: The exception the handler raised
        policy: Worker retry policy

    Returns:
        Delay before the retry, or None to dead-letter

    Example:
        ```python
        delay = check_should_retry(job, ChannelError("timeout"), RetryPolicy.STANDARD)
        # job.attempts == 1 -> timedelta(minutes=1)
        ```
    """
    if not is_retryable(error):
        return None

    if job.max_attempts is not None:
        policy = RetryPolicy(
            max_attempts=job.max_attempts, step=policy.step, max_delay=policy.max_delay
        )
    return policy.delay_for_attempt(job.attempts)


async def handle_job_error(
    queue: JobQueue,
    worker_id: str,
    job: Job,
    error: BaseException,
    policy: RetryPolicy,
) -> None:
    """Handle a failed job: retry with backoff or dead-letter.

    A dead-lettered job keeps its error message for manual inspection; it
    is never silently dropped.

    Args:
        queue: Queue backend
        worker_id: Identifier of worker handling the error
        job: Failed job
        error: The exception that occurred
        policy: Worker retry policy
    """
    error_msg = f"{type(error).__name__}: {error}"

    delay = check_should_retry(job, error, policy)

    if delay is not None:
        logger.warning(
            f"Worker {worker_id} job failed, retrying: job_id={job.job_id}, "
            f"type={job.job_type}, attempt={job.attempts}, delay={delay}, error={error_msg}"
        )
        try:
            await queue.retry(job.job_id, error_msg, delay)
        except Exception as e:
            logger.error(f"Worker {worker_id} failed to schedule retry: {e}")
        return

    reason = "not retryable" if not is_retryable(error) else "max attempts reached"
    logger.error(
        f"Worker {worker_id} dead-lettering job: job_id={job.job_id}, type={job.job_type}, "
        f"attempts={job.attempts} ({reason}), error={error_msg}"
    )
    try:
        await queue.dead_letter(job.job_id, error_msg)
    except Exception as e:
        logger.error(f"Worker {worker_id} failed to dead-letter job: {e}")
