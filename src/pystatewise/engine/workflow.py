"""
WorkflowEngine - state transitions and trigger execution.

The engine is the single entry point for changing an entity's lifecycle
state. A transition is validated against the organization's graph,
persisted with one compare-and-set write, and only then fans out to
background jobs: one ``workflow:execute_trigger`` job per matching trigger,
so a failing trigger never blocks its siblings.

Design Pattern: Façade Pattern
Callers (the CRUD layer, job handlers) see request_transition() and
execute_trigger_by_id(); graph lookups, trigger matching, the queue and the
execution log stay behind this class.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from pystatewise.engine.client import EnqueueError, JobClient
from pystatewise.engine.evaluator import TriggerEvaluator
from pystatewise.engine.executor import ActionExecutor
from pystatewise.engine.sweep import TriggerScheduler
from pystatewise.errors import ActionFailures, InvalidTransition, NotFound
from pystatewise.models import (
    EXECUTE_TRIGGER,
    EntityContext,
    EventType,
    ExecuteTriggerPayload,
    ExecutionEvent,
    Priority,
    State,
    StateGraph,
    Transition,
    Trigger,
)
from pystatewise.storage.base import WorkflowStore

logger = logging.getLogger(__name__)


@dataclass
class TransitionResult:
    """Outcome of a persisted transition."""

    from_state: str | None
    to_state: str
    job_ids: list[str] = field(default_factory=list)


class WorkflowEngine:
    """
    Drives entities through their state graphs.

    Usage:
        engine = WorkflowEngine(store, client, executor, scheduler)

        result = await engine.request_transition(org_id, "budget", budget_id, "approved")
        # result.job_ids -> one execute_trigger job per matching trigger

    Concurrency: two concurrent transitions of the same entity are
    serialized by the store's compare-and-set. The loser gets
    InvalidTransition and nothing is enqueued for it.
    """

    def __init__(
        self,
        store: WorkflowStore,
        client: JobClient,
        executor: ActionExecutor,
        scheduler: TriggerScheduler,
    ):
        self.store = store
        self.client = client
        self.executor = executor
        self.scheduler = scheduler

    @property
    def evaluator(self) -> TriggerEvaluator:
        return self.scheduler.evaluator

    async def _load(
        self, organization_id: str, entity_type: str, entity_id: str
    ) -> tuple[StateGraph, EntityContext]:
        graph = await self.store.get_graph(organization_id, entity_type)
        if graph is None:
            raise NotFound("graph", f"{organization_id}/{entity_type}")

        entity = await self.store.get_entity(organization_id, entity_type, entity_id)
        if entity is None:
            raise NotFound(entity_type, entity_id)
        return graph, entity

    async def request_transition(
        self, organization_id: str, entity_type: str, entity_id: str, to_state: str
    ) -> TransitionResult:
        """
        Move an entity to ``to_state`` and enqueue the triggers it fires.

        Args:
            organization_id: Owning organization
            entity_type: session, budget or project
            entity_id: Entity to move
            to_state: Target state name

        Returns:
            TransitionResult with the ids of the enqueued trigger jobs

        Raises:
            NotFound: No active graph for the entity type, or no such entity
            InvalidTransition: No explicit edge from the current state, or the
                state changed concurrently; the entity is left untouched
            EnqueueError: The state was persisted but a trigger job could not
                be enqueued
        """
        graph, entity = await self._load(organization_id, entity_type, entity_id)
        from_state = entity.current_state

        transition = graph.find_transition(from_state, to_state) if from_state else None
        if transition is None:
            raise InvalidTransition(entity_type, entity_id, from_state, to_state)

        if not await self.store.set_entity_state(
            organization_id, entity_type, entity_id, from_state, to_state
        ):
            # Another writer moved the entity after we read it
            raise InvalidTransition(entity_type, entity_id, from_state, to_state)

        logger.info(
            f"Transitioned {entity_type} {entity_id}: {from_state} -> {to_state} "
            f"(org={organization_id})"
        )

        await self._record_state_change(graph, entity, from_state, to_state, transition)

        job_ids = await self._fan_out(graph, entity, from_state, to_state, transition)
        return TransitionResult(from_state=from_state, to_state=to_state, job_ids=job_ids)

    async def initialize_entity(
        self, organization_id: str, entity_type: str, entity_id: str
    ) -> TransitionResult:
        """
        Place a new entity in its graph's initial state.

        Fires the initial state's on_enter triggers. An entity that already
        has a state raises InvalidTransition.
        """
        graph, entity = await self._load(organization_id, entity_type, entity_id)
        initial: State = graph.initial_state()

        if entity.current_state is not None or not await self.store.set_entity_state(
            organization_id, entity_type, entity_id, None, initial.name
        ):
            raise InvalidTransition(entity_type, entity_id, entity.current_state, initial.name)

        logger.info(f"Initialized {entity_type} {entity_id} in state {initial.name}")

        await self._record_state_change(graph, entity, None, initial.name, None)
        job_ids = await self._fan_out(graph, entity, None, initial.name, None)
        return TransitionResult(from_state=None, to_state=initial.name, job_ids=job_ids)

    async def available_transitions(
        self, organization_id: str, entity_type: str, entity_id: str
    ) -> list[State]:
        """States the entity can move to from its current state."""
        graph, entity = await self._load(organization_id, entity_type, entity_id)
        if entity.current_state is None:
            return []
        return graph.outgoing(entity.current_state)

    async def _fan_out(
        self,
        graph: StateGraph,
        entity: EntityContext,
        from_state: str | None,
        to_state: str,
        transition: Transition | None,
    ) -> list[str]:
        triggers = await self.store.list_triggers(entity.organization_id, graph.id)
        exit_triggers, enter_triggers = self.evaluator.triggers_for_transition(
            triggers, graph, from_state, to_state, transition
        )

        job_ids: list[str] = []
        failures: list[EnqueueError] = []

        # Exit triggers first, then enter triggers
        for trigger in [*exit_triggers, *enter_triggers]:
            try:
                job_id = await self._enqueue_trigger(trigger, entity)
            except EnqueueError as e:
                logger.error(f"Failed to enqueue trigger {trigger.id}: {e}")
                failures.append(e)
                continue
            if job_id is not None:
                job_ids.append(job_id)

        if failures:
            raise failures[0]
        return job_ids

    async def _enqueue_trigger(self, trigger: Trigger, entity: EntityContext) -> str | None:
        payload = ExecuteTriggerPayload(
            organization_id=entity.organization_id,
            trigger_id=trigger.id,
            entity_type=entity.entity_type,
            entity_id=entity.entity_id,
        )
        return await self.client.enqueue(EXECUTE_TRIGGER, payload.to_dict(), Priority.CRITICAL)

    async def _record_state_change(
        self,
        graph: StateGraph,
        entity: EntityContext,
        from_state: str | None,
        to_state: str,
        transition: Transition | None,
    ) -> None:
        details = {"transition_id": transition.id} if transition else {}
        await self._log(
            ExecutionEvent(
                organization_id=entity.organization_id,
                entity_type=entity.entity_type,
                entity_id=entity.entity_id,
                event_type=EventType.STATE_CHANGE,
                graph_id=graph.id,
                from_state=from_state,
                to_state=to_state,
                details=details,
            )
        )

    async def _log(self, event: ExecutionEvent) -> None:
        try:
            await self.store.log_event(event)
        except Exception as e:
            logger.warning(f"Failed to write {event.event_type} event: {e}")

    async def execute_trigger_by_id(
        self, organization_id: str, trigger_id: str, entity_type: str, entity_id: str
    ) -> int:
        """
        Run every active action of a trigger against one entity, in order.

        A failing action does not stop the ones after it. Actions must be
        idempotent: the whole trigger is replayed when the job is retried.

        Returns:
            Number of actions that succeeded

        Raises:
            NotFound: Trigger (in this organization) or entity missing
            ActionFailures: One or more actions failed; ``first`` is the
                earliest failure
        """
        trigger = await self.store.get_trigger(organization_id, trigger_id)
        if trigger is None:
            raise NotFound("trigger", trigger_id)

        entity = await self.store.get_entity(organization_id, entity_type, entity_id)
        if entity is None:
            raise NotFound(entity_type, entity_id)

        actions = await self.store.list_actions(trigger_id)
        logger.info(
            f"Executing trigger {trigger_id} ({trigger.trigger_type}) with {len(actions)} "
            f"actions for {entity_type} {entity_id}"
        )

        await self._log(
            ExecutionEvent(
                organization_id=organization_id,
                entity_type=entity_type,
                entity_id=entity_id,
                event_type=EventType.TRIGGER_FIRED,
                graph_id=trigger.graph_id,
                to_state=entity.current_state,
                trigger_id=trigger_id,
                details={"trigger_type": trigger.trigger_type.value},
            )
        )

        errors: list[BaseException] = []
        succeeded = 0
        for action in actions:
            try:
                await self.executor.execute(action, entity)
            except Exception as e:
                logger.warning(
                    f"Action {action.id} ({action.action_type}) of trigger {trigger_id} failed: {e}"
                )
                errors.append(e)
                await self._log_action(trigger, entity, action.id, EventType.ACTION_FAILED, e)
                continue

            succeeded += 1
            await self._log_action(trigger, entity, action.id, EventType.ACTION_EXECUTED)

        if errors:
            raise ActionFailures(trigger_id, errors)
        return succeeded

    async def _log_action(
        self,
        trigger: Trigger,
        entity: EntityContext,
        action_id: str,
        event_type: EventType,
        error: BaseException | None = None,
    ) -> None:
        details = {"error": f"{type(error).__name__}: {error}"} if error else {}
        await self._log(
            ExecutionEvent(
                organization_id=entity.organization_id,
                entity_type=entity.entity_type,
                entity_id=entity.entity_id,
                event_type=event_type,
                graph_id=trigger.graph_id,
                trigger_id=trigger.id,
                action_id=action_id,
                details=details,
            )
        )
