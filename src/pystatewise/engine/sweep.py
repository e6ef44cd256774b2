"""
Time-trigger scheduler.

Turns time-based triggers into queued jobs. A periodic
``workflow:check_time_triggers`` job calls ``process_pending_jobs``; every
due occurrence is first claimed in the pending-job ledger and only then
enqueued, so overlapping or concurrent scans enqueue each occurrence once.

Design: Claim-Then-Enqueue
The ledger's unique (trigger_id, entity_id, occurrence_key) constraint is
the only coordination between scheduler instances. Whoever inserts the row
owns the occurrence; everyone else skips it.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from pystatewise.engine.client import JobClient
from pystatewise.engine.evaluator import Occurrence, TriggerEvaluator
from pystatewise.models import (
    EXECUTE_TRIGGER,
    ExecuteTriggerPayload,
    OccurrenceStatus,
    PendingJob,
    Priority,
    Trigger,
    TriggerType,
)
from pystatewise.storage.base import WorkflowStore

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK = timedelta(minutes=2)
DEFAULT_CATCH_UP = timedelta(hours=1)
DEFAULT_RETENTION = timedelta(days=30)


class TriggerScheduler:
    """
    Scans time-based triggers and enqueues their due occurrences.

    Example:
        scheduler = TriggerScheduler(store, client, TriggerEvaluator())
        enqueued = await scheduler.process_pending_jobs()
    """

    def __init__(
        self,
        store: WorkflowStore,
        client: JobClient,
        evaluator: TriggerEvaluator | None = None,
        lookback: timedelta = DEFAULT_LOOKBACK,
        retention: timedelta = DEFAULT_RETENTION,
        catch_up: timedelta = DEFAULT_CATCH_UP,
    ):
        """
        Args:
            store: Workflow data store (triggers, entities, ledger)
            client: Job producer
            evaluator: Trigger evaluator (a fresh one if None)
            lookback: Scan window length, normally two scan intervals
            retention: Age after which ledger rows and finished jobs are purged
            catch_up: How far back offset triggers (time_before, time_after)
                are still fired after missed scans
        """
        self.store = store
        self.client = client
        self.evaluator = evaluator or TriggerEvaluator()
        self.lookback = lookback
        self.retention = retention
        self.catch_up = max(catch_up, lookback)

    async def process_pending_jobs(self, now: datetime | None = None) -> int:
        """
        Claim and enqueue every time-trigger occurrence due in the scan window.

        Recurring triggers look back ``lookback`` and fire only their latest
        period. Offset triggers look back ``catch_up``, so an occurrence
        missed while no scan ran still fires once on the next scan; the
        ledger keeps it from firing twice.

        Args:
            now: End of the scan window (current time if None)

        Returns:
            Number of execute_trigger jobs enqueued
        """
        now = now or datetime.now(UTC)
        triggers = await self.store.list_time_triggers()
        logger.debug(f"Scanning {len(triggers)} time triggers up to {now}")

        enqueued = 0
        for trigger in triggers:
            occurrences = await self._due_for(trigger, self._window_start(trigger, now), now)
            for occurrence in occurrences:
                if await self._claim_and_enqueue(occurrence):
                    enqueued += 1

        if enqueued:
            logger.info(f"Enqueued {enqueued} time-triggered jobs")
        return enqueued

    def _window_start(self, trigger: Trigger, now: datetime) -> datetime:
        if trigger.trigger_type == TriggerType.RECURRING:
            return now - self.lookback
        return now - self.catch_up

    async def _due_for(
        self, trigger: Trigger, window_start: datetime, now: datetime
    ) -> list[Occurrence]:
        graph = await self.store.get_graph_by_id(trigger.organization_id, trigger.graph_id)
        if graph is None or not graph.is_active:
            logger.debug(f"Trigger {trigger.id} has no active graph, skipping")
            return []

        entities = await self.store.list_entities(trigger.organization_id, graph.entity_type)
        return self.evaluator.due_occurrences(trigger, entities, window_start, now)

    async def _claim_and_enqueue(self, occurrence: Occurrence) -> bool:
        trigger, entity = occurrence.trigger, occurrence.entity

        pending = PendingJob(
            organization_id=trigger.organization_id,
            trigger_id=trigger.id,
            entity_type=entity.entity_type,
            entity_id=entity.entity_id,
            occurrence_key=occurrence.occurrence_key,
            scheduled_for=occurrence.fire_at,
        )
        if not await self.store.claim_occurrence(pending):
            logger.debug(
                f"Occurrence {occurrence.occurrence_key} of trigger {trigger.id} "
                f"for entity {entity.entity_id} already claimed"
            )
            return False

        payload = ExecuteTriggerPayload(
            organization_id=trigger.organization_id,
            trigger_id=trigger.id,
            entity_type=entity.entity_type,
            entity_id=entity.entity_id,
            occurrence_key=occurrence.occurrence_key,
        )
        try:
            await self.client.enqueue(EXECUTE_TRIGGER, payload.to_dict(), Priority.DEFAULT)
        except Exception as e:
            logger.error(
                f"Failed to enqueue trigger {trigger.id} for entity {entity.entity_id}: {e}"
            )
            await self.store.mark_occurrence(
                trigger.id,
                entity.entity_id,
                occurrence.occurrence_key,
                OccurrenceStatus.FAILED,
                str(e),
            )
            return False

        return True

    async def cleanup_old_jobs(self, now: datetime | None = None) -> int:
        """
        Purge ledger rows and finished jobs older than the retention window.

        Never raises: a failed purge is logged and retried on the next run.

        Returns:
            Number of records deleted
        """
        before = (now or datetime.now(UTC)) - self.retention
        deleted = 0

        try:
            deleted += await self.store.purge_occurrences(before)
        except Exception as e:
            logger.warning(f"Failed to purge pending-job ledger: {e}")

        try:
            deleted += await self.client.queue.purge_terminal(before)
        except Exception as e:
            logger.warning(f"Failed to purge finished jobs: {e}")

        if deleted:
            logger.info(f"Cleaned up {deleted} records older than {before.isoformat()}")
        return deleted

    async def cancel_pending(self, organization_id: str, entity_type: str, entity_id: str) -> int:
        """
        Cancel claimed-but-not-fired occurrences of an entity.

        For entities withdrawn from automation (archived, deleted). State
        transitions do not cancel anything: time triggers fire regardless of
        state. A job already on the queue for a cancelled row is skipped and
        logged as a trigger_skipped event when it runs.
        """
        cancelled = await self.store.cancel_occurrences(organization_id, entity_type, entity_id)
        if cancelled:
            logger.info(f"Cancelled {cancelled} pending occurrences for {entity_type} {entity_id}")
        return cancelled

    async def pending_count(self) -> int:
        """Number of claimed occurrences not yet fired."""
        return await self.store.count_occurrences(OccurrenceStatus.CLAIMED)
