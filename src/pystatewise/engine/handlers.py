"""
Job handlers: the worker-side entry points for every workflow job type.

Each handler decodes its JSON payload and delegates to the engine, the
scheduler or the executor. Handlers raise on failure and never log the
error themselves; the worker decides between retry and dead-letter.
"""

from __future__ import annotations

import logging
from typing import Any

from pystatewise.engine.executor import ActionExecutor
from pystatewise.engine.sweep import TriggerScheduler
from pystatewise.engine.worker import Worker
from pystatewise.engine.workflow import WorkflowEngine
from pystatewise.errors import InvalidConfiguration, NotFound
from pystatewise.models import (
    CHECK_TIME_TRIGGERS,
    CLEANUP,
    EXECUTE_TRIGGER,
    SEND_NOTIFICATION,
    CheckTimeTriggersPayload,
    EventType,
    ExecuteTriggerPayload,
    ExecutionEvent,
    OccurrenceStatus,
    SendNotificationPayload,
)
from pystatewise.models.retry import is_retryable
from pystatewise.storage.base import WorkflowStore

logger = logging.getLogger(__name__)


class JobHandlers:
    """
    Handlers for the four workflow job types.

    Usage:
        handlers = JobHandlers(engine, scheduler, executor, store)
        handlers.register(worker)
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        scheduler: TriggerScheduler,
        executor: ActionExecutor,
        store: WorkflowStore,
    ):
        self.engine = engine
        self.scheduler = scheduler
        self.executor = executor
        self.store = store

    def register(self, worker: Worker) -> Worker:
        """Wire every workflow job type into a worker's registry."""
        worker.register(EXECUTE_TRIGGER, self.handle_execute_trigger)
        worker.register(SEND_NOTIFICATION, self.handle_send_notification)
        worker.register(CHECK_TIME_TRIGGERS, self.handle_check_time_triggers)
        worker.register(CLEANUP, self.handle_cleanup)
        return worker

    async def handle_execute_trigger(self, payload: dict[str, Any]) -> None:
        """
        Run one trigger for one entity.

        For jobs produced by the time-trigger scan the ledger row is marked
        fired on success. A row cancelled in the meantime skips execution and
        leaves a trigger_skipped event in the execution log. A permanent
        failure marks the row failed; a retryable one leaves it claimed for
        the retry.
        """
        p = ExecuteTriggerPayload.from_dict(payload)

        if p.occurrence_key is not None:
            row = await self.store.get_occurrence(p.trigger_id, p.entity_id, p.occurrence_key)
            if row is not None and row.status == OccurrenceStatus.CANCELLED:
                logger.info(
                    f"Skipping cancelled occurrence {p.occurrence_key} of trigger "
                    f"{p.trigger_id} for {p.entity_type} {p.entity_id}"
                )
                await self._log_skip(p)
                return

        try:
            await self.engine.execute_trigger_by_id(
                p.organization_id, p.trigger_id, p.entity_type, p.entity_id
            )
        except Exception as e:
            if p.occurrence_key is not None and not is_retryable(e):
                await self.store.mark_occurrence(
                    p.trigger_id,
                    p.entity_id,
                    p.occurrence_key,
                    OccurrenceStatus.FAILED,
                    f"{type(e).__name__}: {e}",
                )
            raise

        if p.occurrence_key is not None:
            await self.store.mark_occurrence(
                p.trigger_id, p.entity_id, p.occurrence_key, OccurrenceStatus.FIRED
            )

    async def _log_skip(self, p: ExecuteTriggerPayload) -> None:
        try:
            await self.store.log_event(
                ExecutionEvent(
                    organization_id=p.organization_id,
                    entity_type=p.entity_type,
                    entity_id=p.entity_id,
                    event_type=EventType.TRIGGER_SKIPPED,
                    trigger_id=p.trigger_id,
                    details={"occurrence_key": p.occurrence_key, "reason": "cancelled"},
                )
            )
        except Exception as e:
            logger.warning(f"Failed to write trigger_skipped event: {e}")

    async def handle_send_notification(self, payload: dict[str, Any]) -> None:
        """Send one notification for an action with the payload's template."""
        p = SendNotificationPayload.from_dict(payload)

        action = await self.store.get_action(p.organization_id, p.action_id)
        if action is None:
            raise NotFound("action", p.action_id)

        if action.action_type.channel != p.channel:
            raise InvalidConfiguration(
                f"action {action.id} ({action.action_type}) cannot send on {p.channel}"
            )

        entity = await self.store.get_entity(p.organization_id, p.entity_type, p.entity_id)
        if entity is None:
            raise NotFound(p.entity_type, p.entity_id)

        await self.executor.execute(action, entity, template_id=p.template_id)

    async def handle_check_time_triggers(self, payload: dict[str, Any]) -> None:
        CheckTimeTriggersPayload.from_dict(payload)

        await self.scheduler.process_pending_jobs()
        # Housekeeping never fails the scan
        await self.scheduler.cleanup_old_jobs()

    async def handle_cleanup(self, payload: dict[str, Any]) -> None:
        await self.scheduler.cleanup_old_jobs()
