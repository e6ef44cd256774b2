"""
Periodic job producer.

Enqueues registered jobs on cron schedules: the time-trigger scan every
minute, housekeeping once a day. Uses APScheduler's AsyncIOScheduler for
the clock and the job queue's unique keys for coordination, so several
processes running the same schedule enqueue each fire time once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from pystatewise.engine.client import JobClient
from pystatewise.engine.evaluator import TriggerEvaluator
from pystatewise.models import Priority, parse_cron

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeriodicEntry:
    cron: str
    job_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    priority: Priority = Priority.DEFAULT

    def unique_key(self, fire_at: datetime) -> str:
        return f"{self.job_type}:{fire_at.astimezone(UTC).isoformat()}"


class PeriodicScheduler:
    """
    Cron-driven producer of queue jobs.

    Usage:
        periodic = PeriodicScheduler(client)
        periodic.register("* * * * *", CHECK_TIME_TRIGGERS)
        periodic.register("0 3 * * *", CLEANUP, priority=Priority.LOW)

        await periodic.start()
        ...
        await periodic.shutdown()
    """

    def __init__(self, client: JobClient, lookback: timedelta = timedelta(minutes=1)):
        """
        Args:
            client: Job producer
            lookback: How far back tick() looks for a missed fire time
        """
        self.client = client
        self.lookback = lookback
        self._entries: list[PeriodicEntry] = []
        self._evaluator = TriggerEvaluator()
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def entries(self) -> list[PeriodicEntry]:
        return list(self._entries)

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    def register(
        self,
        cron: str,
        job_type: str,
        payload: dict[str, Any] | None = None,
        priority: Priority = Priority.DEFAULT,
    ) -> PeriodicEntry:
        """
        Add a schedule.

        Raises:
            InvalidConfiguration: If the cron expression is malformed
        """
        parse_cron(cron)
        entry = PeriodicEntry(cron, job_type, dict(payload or {}), priority)
        self._entries.append(entry)

        if self._scheduler is not None:
            self._add_job(self._scheduler, entry, len(self._entries) - 1)
        return entry

    async def tick(self, now: datetime | None = None) -> list[str]:
        """
        Enqueue every entry whose latest fire time falls in ``(now - lookback, now]``.

        Safe to call repeatedly and from several processes: the unique key
        ``job_type:fire_time`` lets only the first enqueue through.

        Returns:
            Ids of the jobs enqueued by this call
        """
        now = now or datetime.now(UTC)
        job_ids = []
        for entry in self._entries:
            job_id = await self._enqueue_due(entry, now)
            if job_id is not None:
                job_ids.append(job_id)
        return job_ids

    async def _enqueue_due(self, entry: PeriodicEntry, now: datetime) -> str | None:
        fire_at = self._evaluator.latest_cron_occurrence(entry.cron, now - self.lookback, now)
        if fire_at is None:
            return None

        job_id = await self.client.enqueue(
            entry.job_type,
            dict(entry.payload),
            entry.priority,
            unique_key=entry.unique_key(fire_at),
        )
        if job_id is not None:
            logger.debug(f"Periodic {entry.job_type} enqueued for {fire_at.isoformat()}")
        return job_id

    async def _run_entry(self, entry: PeriodicEntry) -> None:
        try:
            await self._enqueue_due(entry, datetime.now(UTC))
        except Exception as e:
            logger.error(f"Periodic {entry.job_type} failed to enqueue: {e}")

    def _add_job(self, scheduler: AsyncIOScheduler, entry: PeriodicEntry, index: int) -> None:
        scheduler.add_job(
            self._run_entry,
            parse_cron(entry.cron),
            args=[entry],
            id=f"{entry.job_type}:{index}",
            name=entry.job_type,
            replace_existing=True,
            coalesce=True,
        )

    async def start(self) -> None:
        """Start firing registered entries on the running event loop."""
        if self._scheduler is not None:
            logger.warning("PeriodicScheduler already running")
            return

        scheduler = AsyncIOScheduler(timezone=UTC)
        for index, entry in enumerate(self._entries):
            self._add_job(scheduler, entry, index)

        scheduler.start()
        self._scheduler = scheduler
        logger.info(f"PeriodicScheduler started with {len(self._entries)} entries")

    async def shutdown(self) -> None:
        if self._scheduler is None:
            return

        self._scheduler.shutdown(wait=True)
        self._scheduler = None
        logger.info("PeriodicScheduler stopped")
