"""Worker pool for polling and executing background jobs.

Workers poll the job queue across priority classes, execute handlers in
background tasks under a bounded concurrency limit, and turn failures into
retries or dead letters. Supports graceful shutdown with a grace period.

Features:
- Event-driven work polling with fallback
- Weighted priority selection (critical preferred, low never starved)
- Bounded concurrency with backpressure before dequeue
- Linear retry backoff, dead-lettering after max attempts
- Graceful shutdown: in-flight jobs finish or are released back to pending
- Lease recovery: jobs left RUNNING by a dead worker return to pending
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import xxhash

from pystatewise.engine.execution import handle_job_completion, handle_job_error
from pystatewise.errors import InvalidConfiguration, UnknownJobType
from pystatewise.models import DEFAULT_WEIGHTS, Job, Priority, RetryPolicy
from pystatewise.models.job import strict_order, weighted_order
from pystatewise.storage import WorkNotificationSource
from pystatewise.storage.base import JobQueue

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[None]]

SHUTDOWN_REASON = "worker shutdown: job released before completion"


class Registry:
    """Registry mapping job types to their handlers.

    Example:
        ```python
        registry = Registry()
        registry.register("workflow:execute_trigger", handlers.handle_execute_trigger)
        ```
    """

    def __init__(self):
        """Create a new empty handler registry."""
        self._handlers: dict[str, Handler] = {}

    def register(self, job_type: str, handler: Handler) -> None:
        """Register the async handler for a job type.

        The handler receives the job's JSON payload. Returning normally marks
        the job complete; raising hands the error to the retry policy.
        """
        logger.debug(f"Registered job type: {job_type}")
        self._handlers[job_type] = handler

    def get_handler(self, job_type: str) -> Handler | None:
        return self._handlers.get(job_type)

    def job_types(self) -> list[str]:
        return sorted(self._handlers)

    def __len__(self) -> int:
        """Returns the number of registered job types."""
        return len(self._handlers)

    def is_empty(self) -> bool:
        return len(self._handlers) == 0


class Worker:
    """Worker that polls and executes jobs from the durable queue.

    Design Patterns:
    - Template Method: _run() defines fixed algorithm skeleton
    - Strategy: job handlers are interchangeable strategies
    - Builder: with_concurrency(), with_poll_interval() for configuration

    Default configuration works out of the box (concurrency 10, weights
    critical=6 default=3 low=1, standard retry policy), but customizable.

    Usage:
        worker = Worker(queue, "worker-1") \\
            .with_concurrency(10) \\
            .with_poll_interval(1.0)

        worker.register("workflow:execute_trigger", handlers.handle_execute_trigger)

        handle = await worker.start()

        # ... let it run ...

        await handle.shutdown()
    """

    def __init__(self, queue: JobQueue, worker_id: str):
        """Initialize worker with a queue backend.

        All dependencies passed explicitly, no globals.

        Args:
            queue: Job queue to poll
            worker_id: Unique worker identifier
        """
        self._queue = queue
        self._worker_id = worker_id
        self._concurrency = 10
        self._slots = asyncio.Semaphore(self._concurrency)
        self._weights: dict[Priority, int] = dict(DEFAULT_WEIGHTS)
        self._strict_priority = False
        self._rng = random.Random()
        self._retry_policy = RetryPolicy.STANDARD
        self._shutdown_grace = 8.0
        self._lease = timedelta(minutes=10)
        self._maintenance_interval = 60.0

        self._poll_interval = 1.0
        self._poll_interval_with_jitter = self._poll_interval + self._jitter()

        self._registry = Registry()

        self._shutdown_event = asyncio.Event()
        self._running = False

        # Track background tasks to prevent garbage collection
        self._background_tasks: set[asyncio.Task] = set()

        # Dequeue channel (bounded to 1) to prevent work hogging
        self._dequeue_queue: asyncio.Queue[Job] = asyncio.Queue(maxsize=1)
        self._dequeue_task: asyncio.Task | None = None
        self._maintenance_task: asyncio.Task | None = None

        self._supports_work_notifications = isinstance(queue, WorkNotificationSource)
        if self._supports_work_notifications:
            self._work_notify = queue.work_notify()
            logger.debug(f"Worker {worker_id}: Event-driven work notifications enabled")
        else:
            self._work_notify = None
            logger.debug(f"Worker {worker_id}: Polling-based work detection (no notifications)")

    def _jitter(self) -> float:
        """Per-worker poll offset (1-5ms) to avoid a thundering herd."""
        return (1 + xxhash.xxh32_intdigest(self._worker_id.encode("utf-8")) % 5) / 1000.0

    # ------------------------------------------------------------------
    # Builder methods
    # ------------------------------------------------------------------

    def with_concurrency(self, concurrency: int) -> "Worker":
        """Limit concurrent job executions (builder pattern).

        The slot is acquired BEFORE querying the queue, so a saturated
        worker does not claim jobs it cannot start.

        Args:
            concurrency: Maximum number of jobs executing at once

        Returns:
            self for method chaining
        """
        if concurrency < 1:
            raise InvalidConfiguration(f"concurrency must be >= 1, got {concurrency}")
        self._concurrency = concurrency
        self._slots = asyncio.Semaphore(concurrency)
        return self

    def with_weights(self, weights: Mapping[Priority, int]) -> "Worker":
        """Set relative priority weights (builder pattern).

        Example:
            worker.with_weights({Priority.CRITICAL: 6, Priority.DEFAULT: 3, Priority.LOW: 1})
        """
        if any(w < 0 for w in weights.values()) or not any(w > 0 for w in weights.values()):
            raise InvalidConfiguration(f"invalid queue weights: {dict(weights)}")
        self._weights = dict(weights)
        return self

    def with_strict_priority(self, strict: bool = True) -> "Worker":
        """Always drain higher priorities first (builder pattern).

        Strict mode can starve LOW while CRITICAL work keeps arriving.
        """
        self._strict_priority = strict
        return self

    def with_poll_interval(self, interval: float) -> "Worker":
        """Configure polling interval (builder pattern).

        Args:
            interval: Seconds between queue polls when idle

        Returns:
            self for method chaining
        """
        self._poll_interval = interval
        self._poll_interval_with_jitter = interval + self._jitter()
        return self

    def with_retry_policy(self, policy: RetryPolicy) -> "Worker":
        """Set the retry policy for jobs without their own max_attempts."""
        self._retry_policy = policy
        return self

    def with_shutdown_grace(self, seconds: float) -> "Worker":
        """How long shutdown() waits for in-flight jobs before cancelling them."""
        self._shutdown_grace = seconds
        return self

    def with_lease(self, seconds: float) -> "Worker":
        """How long a claimed job may stay RUNNING before it is presumed abandoned.

        Must exceed the longest expected handler run, or a slow job can be
        picked up a second time.
        """
        if seconds <= 0:
            raise InvalidConfiguration(f"lease must be > 0, got {seconds}")
        self._lease = timedelta(seconds=seconds)
        return self

    def with_maintenance_interval(self, seconds: float) -> "Worker":
        """Seconds between stale-lease sweeps while the worker runs."""
        self._maintenance_interval = seconds
        return self

    def with_rng(self, rng: random.Random) -> "Worker":
        """Inject the random source used for weighted ordering (tests)."""
        self._rng = rng
        return self

    # ------------------------------------------------------------------
    # Registration and inspection
    # ------------------------------------------------------------------

    def register(self, job_type: str, handler: Handler) -> None:
        """Register the handler for a job type."""
        self._registry.register(job_type, handler)

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def registry(self) -> Registry:
        return self._registry

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    @property
    def lease(self) -> timedelta:
        return self._lease

    def next_order(self) -> list[Priority]:
        """Priority order for the next dequeue."""
        if self._strict_priority:
            return [p for p in strict_order() if self._weights.get(p, 0) > 0]
        return weighted_order(self._weights, self._rng)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run_once(self) -> Job | None:
        """Dequeue and execute a single job inline.

        Useful for tests and one-shot maintenance scripts.

        Returns:
            The job that was executed, or None if nothing was ready
        """
        await self._slots.acquire()
        try:
            job = await self._queue.dequeue(self._worker_id, self.next_order())
        except BaseException:
            self._slots.release()
            raise

        if job is None:
            self._slots.release()
            return None

        await self._execute_job(job)
        return job

    async def drain(self, max_jobs: int = 1000) -> int:
        """Run ready jobs inline until the queue has none ready.

        Returns:
            Number of jobs executed
        """
        executed = 0
        while executed < max_jobs:
            if await self.run_once() is None:
                break
            executed += 1
        return executed

    async def recover_stale_jobs(self) -> int:
        """Return jobs whose lease expired to pending.

        A job stays RUNNING forever if the worker that claimed it died
        without completing, retrying or releasing it. Any live worker can
        recover such jobs once their claim is older than the lease.

        Returns:
            Number of jobs recovered
        """
        recovered = await self._queue.recover_stale(datetime.now(UTC) - self._lease)
        if recovered > 0:
            logger.info(f"Worker {self._worker_id}: recovered {recovered} stale jobs")
        return recovered

    async def _maintenance_loop(self) -> None:
        """Periodically recover stale jobs until cancelled."""
        while self._running and not self._shutdown_event.is_set():
            try:
                await self.recover_stale_jobs()
            except Exception as e:
                logger.warning(f"Worker {self._worker_id}: failed to recover stale jobs: {e}")
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self._maintenance_interval
                )
            except TimeoutError:
                pass

    async def start(self) -> "WorkerHandle":
        """Start the worker main loop.

        Returns WorkerHandle immediately, letting caller decide
        whether to await or run concurrently.

        Returns:
            WorkerHandle for shutdown control
        """
        if self._registry.is_empty():
            logger.warning(f"Worker {self._worker_id} started with no registered job types")

        self._running = True
        task = asyncio.create_task(self._run())
        return WorkerHandle(self, task)

    async def _background_dequeue_loop(self) -> None:
        """Background task that continuously dequeues jobs into the bounded queue.

        Backpressure strategy:
        1. Acquire a concurrency slot BEFORE the queue query
        2. Query the queue with this round's priority order
        3. Hand the job to the main loop; the slot is released when the
           job finishes

        Runs until cancelled (CancelledError raised).
        """
        while self._running and not self._shutdown_event.is_set():
            holding_slot = False
            claimed: Job | None = None
            try:
                await self._slots.acquire()
                holding_slot = True

                claimed = await self._queue.dequeue(self._worker_id, self.next_order())

                if claimed is not None:
                    await self._dequeue_queue.put(claimed)
                    claimed = None
                    holding_slot = False  # Transferred with the job
                    continue

                self._slots.release()
                holding_slot = False

                if self._supports_work_notifications:
                    try:
                        await asyncio.wait_for(
                            self._work_notify.wait(),
                            timeout=self._poll_interval_with_jitter,
                        )
                        self._work_notify.clear()
                    except TimeoutError:
                        pass
                else:
                    await asyncio.sleep(self._poll_interval_with_jitter)

            except asyncio.CancelledError:
                if claimed is not None:
                    await self._release(claimed, SHUTDOWN_REASON)
                if holding_slot:
                    self._slots.release()
                raise

            except Exception as e:
                if holding_slot:
                    self._slots.release()
                logger.error(f"Worker {self._worker_id}: background dequeue error: {e}")
                await asyncio.sleep(0.1)

    async def _run(self) -> None:
        """Main worker loop using asyncio.wait with FIRST_COMPLETED.

        Concurrently waits on:
        1. Job dequeue (from background task via bounded queue)
        2. Shutdown signal

        Runs until shutdown() is called.
        """
        logger.info(
            f"Worker {self._worker_id} started (concurrency={self._concurrency}, "
            f"job types={self._registry.job_types()})"
        )

        self._dequeue_task = asyncio.create_task(self._background_dequeue_loop())
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())

        try:
            while self._running and not self._shutdown_event.is_set():
                shutdown_task = asyncio.create_task(self._shutdown_event.wait())
                dequeue_task = asyncio.create_task(self._dequeue_queue.get())

                done, pending = await asyncio.wait(
                    {shutdown_task, dequeue_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )

                for task in pending:
                    task.cancel()
                    try:
                        await task
                    except asyncio.CancelledError:
                        pass

                if dequeue_task in done:
                    job = dequeue_task.result()
                    self._dequeue_queue.task_done()

                    if self._shutdown_event.is_set():
                        await self._release(job, SHUTDOWN_REASON)
                        self._slots.release()
                        break

                    task = asyncio.create_task(self._execute_job(job))
                    self._background_tasks.add(task)
                    task.add_done_callback(self._background_tasks.discard)

                    logger.debug(
                        f"Worker {self._worker_id} claimed job: job_id={job.job_id}, "
                        f"priority={job.priority}"
                    )
        finally:
            logger.info(f"Worker {self._worker_id} stopped")

    async def _execute_job(self, job: Job) -> None:
        """Run the handler for a job and record the outcome.

        The concurrency slot acquired for this job is released on return.
        Cancellation (shutdown past the grace period) releases the job back
        to pending without consuming an attempt.
        """
        try:
            handler = self._registry.get_handler(job.job_type)
            if handler is None:
                error = UnknownJobType(
                    f"No handler registered for job type: {job.job_type}. "
                    f"Did you forget to call worker.register()?"
                )
                await handle_job_error(
                    self._queue, self._worker_id, job, error, self._retry_policy
                )
                return

            try:
                await handler(job.payload)
            except asyncio.CancelledError:
                logger.warning(
                    f"Worker {self._worker_id} job cancelled during shutdown: "
                    f"job_id={job.job_id}"
                )
                await self._release(job, SHUTDOWN_REASON)
                raise
            except Exception as e:
                await handle_job_error(self._queue, self._worker_id, job, e, self._retry_policy)
                return

            await handle_job_completion(self._queue, self._worker_id, job)
        finally:
            self._slots.release()

    async def _release(self, job: Job, reason: str) -> None:
        try:
            await self._queue.release(job.job_id, reason)
        except Exception as e:
            logger.error(f"Worker {self._worker_id} failed to release job {job.job_id}: {e}")

    async def shutdown(self) -> None:
        """Gracefully shutdown the worker.

        1. Stop pulling new jobs
        2. Wait for in-flight jobs up to the grace period
        3. Cancel what is still running; cancelled jobs go back to pending
        """
        logger.info(f"Worker {self._worker_id} shutting down...")
        self._running = False
        self._shutdown_event.set()

        for task in (self._dequeue_task, self._maintenance_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        # Claimed by the dequeue loop but never picked up by the main loop
        while not self._dequeue_queue.empty():
            job = self._dequeue_queue.get_nowait()
            await self._release(job, SHUTDOWN_REASON)
            self._slots.release()

        if self._background_tasks:
            in_flight = set(self._background_tasks)
            logger.info(
                f"Worker {self._worker_id}: Waiting up to {self._shutdown_grace}s for "
                f"{len(in_flight)} in-flight jobs..."
            )
            _, pending = await asyncio.wait(in_flight, timeout=self._shutdown_grace)

            if pending:
                logger.warning(
                    f"Worker {self._worker_id}: cancelling {len(pending)} jobs after grace period"
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

            logger.info(f"Worker {self._worker_id}: All in-flight jobs settled")


class WorkerHandle:
    """Handle for controlling a running worker.

    Composition - handle HAS-A worker, not IS-A worker.

    Usage:
        handle = await worker.start()
        await handle.shutdown()
    """

    def __init__(self, worker: Worker, task: asyncio.Task):
        self._worker = worker
        self._task = task

    def worker_id(self) -> str:
        return self._worker.worker_id

    def is_running(self) -> bool:
        """Return True if the worker task is still running."""
        return not self._task.done()

    async def shutdown(self) -> None:
        """Shutdown worker and wait for completion."""
        await self._worker.shutdown()
        await self._task

        logger.info("Worker handle closed")

    def abort(self) -> None:
        """Abort the worker immediately without waiting for completion.

        Note: This bypasses graceful shutdown; claimed jobs stay RUNNING
        until a worker's lease recovery returns them to pending.
        Prefer shutdown() for normal termination.
        """
        self._task.cancel()
