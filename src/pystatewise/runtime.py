"""
Process wiring: builds every component once and runs the worker and the
periodic scheduler until a termination signal arrives.

Design Principle: Dependency Injection
Components receive their collaborators through constructors; there are no
module-level singletons. Tests build a Runtime on in-memory adapters.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from pystatewise.channels import LoggingSender, NotificationSender
from pystatewise.config import Settings
from pystatewise.engine import (
    ActionExecutor,
    JobClient,
    JobHandlers,
    PeriodicScheduler,
    TriggerEvaluator,
    TriggerScheduler,
    Worker,
    WorkerHandle,
    WorkflowEngine,
)
from pystatewise.models import CHECK_TIME_TRIGGERS, CLEANUP, Priority
from pystatewise.storage.base import JobQueue, WorkflowStore

logger = logging.getLogger(__name__)


class Runtime:
    """
    Fully wired engine.

    Usage:
        runtime = await Runtime.from_settings(Settings.from_env())
        await runtime.run()  # until SIGINT / SIGTERM
    """

    def __init__(
        self,
        store: WorkflowStore,
        queue: JobQueue,
        settings: Settings | None = None,
        sender: NotificationSender | None = None,
    ):
        self.settings = settings or Settings()
        self.store = store
        self.queue = queue
        self.sender = sender or LoggingSender()

        self.client = JobClient(queue)
        self.executor = ActionExecutor(store, self.sender)
        self.scheduler = TriggerScheduler(
            store,
            self.client,
            TriggerEvaluator(),
            retention=self.settings.retention,
            catch_up=self.settings.catch_up,
        )
        self.engine = WorkflowEngine(store, self.client, self.executor, self.scheduler)
        self.handlers = JobHandlers(self.engine, self.scheduler, self.executor, store)

        self.worker = (
            Worker(queue, self.settings.worker_id)
            .with_concurrency(self.settings.concurrency)
            .with_weights(self.settings.queue_weights)
            .with_strict_priority(self.settings.strict_priority)
            .with_retry_policy(self.settings.retry_policy)
            .with_shutdown_grace(self.settings.shutdown_grace_seconds)
            .with_lease(self.settings.job_lease_seconds)
        )
        self.handlers.register(self.worker)

        self.periodic = PeriodicScheduler(self.client)
        self.periodic.register(self.settings.scan_cron, CHECK_TIME_TRIGGERS)
        self.periodic.register(self.settings.cleanup_cron, CLEANUP, priority=Priority.LOW)

        self._stop = asyncio.Event()
        self._handle: WorkerHandle | None = None

    @classmethod
    async def from_settings(
        cls, settings: Settings, sender: NotificationSender | None = None
    ) -> Runtime:
        """Open the configured store and queue, then wire everything."""
        from pystatewise.storage.sqlite import SqliteWorkflowStore

        settings.validate()

        store = SqliteWorkflowStore(settings.database)
        await store.connect()

        queue: JobQueue
        if settings.queue == "redis":
            from pystatewise.storage.redis import RedisJobQueue

            queue = RedisJobQueue(settings.redis_url)
            await queue.connect()
        elif settings.queue == "memory":
            from pystatewise.storage.memory import InMemoryJobQueue

            queue = InMemoryJobQueue()
        else:
            from pystatewise.storage.sqlite import SqliteJobQueue

            queue = SqliteJobQueue(settings.database)
            await queue.connect()

        logger.info(
            f"Runtime configured: database={settings.database}, queue={settings.queue}, "
            f"worker_id={settings.worker_id}"
        )
        return cls(store, queue, settings, sender)

    def stop(self) -> None:
        """Request shutdown (signal handlers call this)."""
        self._stop.set()

    async def start(self) -> None:
        """Start the worker first, then the producer of periodic jobs."""
        self._handle = await self.worker.start()
        await self.periodic.start()

    async def shutdown(self) -> None:
        """
        Stop in dependency order.

        The worker drains first (grace period); the periodic scheduler stops
        afterwards so nothing is enqueued that no worker would claim.
        """
        if self._handle is not None:
            await self._handle.shutdown()
            self._handle = None
        await self.periodic.shutdown()

        await self.queue.close()
        await self.store.close()

    async def run(self) -> None:
        """Run until SIGINT/SIGTERM or stop()."""
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform or outside the main thread
                pass

        await self.start()
        logger.info("Runtime running, waiting for shutdown signal")
        try:
            await self._stop.wait()
        finally:
            logger.info("Runtime shutting down...")
            await self.shutdown()
            for sig in installed:
                loop.remove_signal_handler(sig)
