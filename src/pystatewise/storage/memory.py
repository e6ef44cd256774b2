"""In-memory storage implementation for pystatewise.

Design Pattern: Adapter Pattern
InMemoryWorkflowStore and InMemoryJobQueue adapt plain dictionaries to the
WorkflowStore and JobQueue interfaces.

Instances are immediately usable after __init__. All mutations happen
under one asyncio.Lock, which gives the same atomicity guarantees as the
SQLite adapters' single-statement writes (within one process).
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

from pystatewise.models import (
    Action,
    EntityContext,
    ExecutionEvent,
    Job,
    JobStatus,
    MessageTemplate,
    OccurrenceStatus,
    PendingJob,
    Priority,
    StateGraph,
    Task,
    Trigger,
)
from pystatewise.models.entity import coerce_field
from pystatewise.storage.base import STALE_REASON, JobQueue, StorageError, WorkflowStore


class InMemoryWorkflowStore(WorkflowStore):
    """In-memory workflow data store for tests and single-process demos.

    Can be substituted for SqliteWorkflowStore without changing client code.

    Usage:
        store = InMemoryWorkflowStore()
        await store.save_graph(graph)
        entity = await store.get_entity("org-1", "budget", "b-1")
    """

    def __init__(self):
        self._graphs: dict[str, StateGraph] = {}
        self._triggers: dict[str, Trigger] = {}
        self._actions: dict[str, Action] = {}
        self._templates: dict[str, MessageTemplate] = {}

        # {(organization_id, entity_type, entity_id): EntityContext}
        self._entities: dict[tuple[str, str, str], EntityContext] = {}

        # {(trigger_id, entity_id, occurrence_key): PendingJob}
        self._ledger: dict[tuple[str, str, str], PendingJob] = {}

        self._events: list[ExecutionEvent] = []
        self._tasks: dict[str, Task] = {}

        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return "InMemoryWorkflowStore"

    # Configuration reads

    async def get_graph(self, organization_id: str, entity_type: str) -> StateGraph | None:
        for graph in self._graphs.values():
            if (
                graph.organization_id == organization_id
                and graph.entity_type == entity_type
                and graph.is_active
            ):
                return graph
        return None

    async def get_graph_by_id(self, organization_id: str, graph_id: str) -> StateGraph | None:
        graph = self._graphs.get(graph_id)
        if graph is None or graph.organization_id != organization_id:
            return None
        return graph

    async def list_triggers(self, organization_id: str, graph_id: str) -> list[Trigger]:
        return [
            t
            for t in self._triggers.values()
            if t.organization_id == organization_id and t.graph_id == graph_id and t.is_active
        ]

    async def list_time_triggers(self) -> list[Trigger]:
        return [t for t in self._triggers.values() if t.is_active and t.trigger_type.is_time_based]

    async def get_trigger(self, organization_id: str, trigger_id: str) -> Trigger | None:
        trigger = self._triggers.get(trigger_id)
        if trigger is None or trigger.organization_id != organization_id:
            return None
        return trigger

    async def list_actions(self, trigger_id: str) -> list[Action]:
        actions = [a for a in self._actions.values() if a.trigger_id == trigger_id and a.is_active]
        return sorted(actions, key=lambda a: (a.action_order, a.id))

    async def get_action(self, organization_id: str, action_id: str) -> Action | None:
        action = self._actions.get(action_id)
        if action is None:
            return None
        trigger = self._triggers.get(action.trigger_id)
        if trigger is None or trigger.organization_id != organization_id:
            return None
        return action

    async def get_template(self, organization_id: str, template_id: str) -> MessageTemplate | None:
        template = self._templates.get(template_id)
        if template is None or template.organization_id != organization_id:
            return None
        return template

    # Entities

    async def get_entity(
        self, organization_id: str, entity_type: str, entity_id: str
    ) -> EntityContext | None:
        return self._entities.get((organization_id, entity_type, entity_id))

    async def list_entities(self, organization_id: str, entity_type: str) -> list[EntityContext]:
        return [
            e
            for (org, etype, _), e in self._entities.items()
            if org == organization_id and etype == entity_type
        ]

    async def set_entity_state(
        self,
        organization_id: str,
        entity_type: str,
        entity_id: str,
        expected_state: str | None,
        new_state: str,
    ) -> bool:
        key = (organization_id, entity_type, entity_id)
        async with self._lock:
            entity = self._entities.get(key)
            if entity is None or entity.current_state != expected_state:
                return False
            self._entities[key] = replace(entity, current_state=new_state)
            return True

    async def update_entity_field(
        self, organization_id: str, entity_type: str, entity_id: str, field: str, value: Any
    ) -> bool:
        key = (organization_id, entity_type, entity_id)
        async with self._lock:
            entity = self._entities.get(key)
            if entity is None:
                return False
            try:
                updated = replace(entity, **{field: coerce_field(type(entity), field, value)})
            except (TypeError, ValueError) as e:
                raise StorageError(f"cannot set {entity_type}.{field}: {e}") from e
            self._entities[key] = updated
            return True

    async def create_task(self, task: Task) -> str:
        async with self._lock:
            self._tasks[task.id] = task
            return task.id

    async def list_tasks(self, organization_id: str, entity_type: str, entity_id: str) -> list[Task]:
        return [
            t
            for t in self._tasks.values()
            if t.organization_id == organization_id
            and t.entity_type == entity_type
            and t.entity_id == entity_id
        ]

    # Ledger

    async def claim_occurrence(self, pending: PendingJob) -> bool:
        key = (pending.trigger_id, pending.entity_id, pending.occurrence_key)
        async with self._lock:
            if key in self._ledger:
                return False
            self._ledger[key] = pending
            return True

    async def mark_occurrence(
        self,
        trigger_id: str,
        entity_id: str,
        occurrence_key: str,
        status: OccurrenceStatus,
        error: str | None = None,
    ) -> bool:
        async with self._lock:
            row = self._ledger.get((trigger_id, entity_id, occurrence_key))
            if row is None:
                return False
            row.status = status
            row.last_error = error
            if status == OccurrenceStatus.FIRED:
                row.fired_at = datetime.now(UTC)
            return True

    async def cancel_occurrences(
        self, organization_id: str, entity_type: str, entity_id: str
    ) -> int:
        cancelled = 0
        async with self._lock:
            for row in self._ledger.values():
                if (
                    row.organization_id == organization_id
                    and row.entity_type == entity_type
                    and row.entity_id == entity_id
                    and row.status == OccurrenceStatus.CLAIMED
                ):
                    row.status = OccurrenceStatus.CANCELLED
                    cancelled += 1
        return cancelled

    async def purge_occurrences(self, before: datetime) -> int:
        async with self._lock:
            stale = [
                k
                for k, row in self._ledger.items()
                if row.status.is_terminal and row.created_at < before
            ]
            for k in stale:
                del self._ledger[k]
            return len(stale)

    async def count_occurrences(self, status: OccurrenceStatus | None = None) -> int:
        return sum(1 for row in self._ledger.values() if status is None or row.status == status)

    async def get_occurrence(
        self, trigger_id: str, entity_id: str, occurrence_key: str
    ) -> PendingJob | None:
        return self._ledger.get((trigger_id, entity_id, occurrence_key))

    # Execution log

    async def log_event(self, event: ExecutionEvent) -> None:
        self._events.append(event)

    async def list_events(
        self, organization_id: str, entity_type: str, entity_id: str
    ) -> list[ExecutionEvent]:
        return [
            e
            for e in self._events
            if e.organization_id == organization_id
            and e.entity_type == entity_type
            and e.entity_id == entity_id
        ]

    # Configuration writers

    async def save_graph(self, graph: StateGraph) -> None:
        graph.validate()
        self._graphs[graph.id] = graph

    async def save_trigger(self, trigger: Trigger) -> None:
        trigger.validate()
        self._triggers[trigger.id] = trigger

    async def save_action(self, action: Action) -> None:
        action.validate()
        self._actions[action.id] = action

    async def save_template(self, template: MessageTemplate) -> None:
        self._templates[template.id] = template

    async def save_entity(self, entity: EntityContext) -> None:
        self._entities[(entity.organization_id, entity.entity_type, entity.entity_id)] = entity


class InMemoryJobQueue(JobQueue):
    """In-memory job queue for testing.

    Implements WorkNotificationSource: enqueue, retry and release wake
    waiting workers.

    Usage:
        queue = InMemoryJobQueue()
        await queue.enqueue(Job(job_id="j-1", job_type="ping", payload={}))
        job = await queue.dequeue("worker-1", [Priority.CRITICAL, Priority.DEFAULT])
    """

    def __init__(self):
        self._jobs: dict[str, Job] = {}

        # {unique_key: job_id} for de-duplication
        self._unique: dict[str, str] = {}

        self._lock = asyncio.Lock()
        self._work_notify = asyncio.Event()

    def __repr__(self) -> str:
        return "InMemoryJobQueue"

    def work_notify(self) -> asyncio.Event:
        return self._work_notify

    async def enqueue(self, job: Job) -> str | None:
        async with self._lock:
            if job.unique_key is not None and job.unique_key in self._unique:
                return None

            self._jobs[job.job_id] = copy.deepcopy(job)
            if job.unique_key is not None:
                self._unique[job.unique_key] = job.job_id

            # NOTE: We do NOT clear the event here. The worker clears it upon waking.
            self._work_notify.set()
            return job.job_id

    async def dequeue(self, worker_id: str, order: list[Priority]) -> Job | None:
        async with self._lock:
            now = datetime.now(UTC)
            for priority in order:
                ready = [
                    j for j in self._jobs.values() if j.priority == priority and j.is_ready(now)
                ]
                if not ready:
                    continue

                job = min(ready, key=lambda j: (j.scheduled_for or j.created_at, j.created_at))
                job.status = JobStatus.RUNNING
                job.locked_by = worker_id
                job.attempts += 1
                job.claimed_at = now
                job.updated_at = now

                # Daisy-chain: more ready work wakes another worker
                if len(ready) > 1:
                    self._work_notify.set()
                return copy.deepcopy(job)
            return None

    def _get(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise StorageError(f"job not found: {job_id}")
        return job

    async def complete(self, job_id: str) -> None:
        async with self._lock:
            job = self._get(job_id)
            now = datetime.now(UTC)
            job.status = JobStatus.COMPLETE
            job.locked_by = None
            job.completed_at = now
            job.updated_at = now

    async def retry(self, job_id: str, error_message: str, delay: timedelta) -> None:
        async with self._lock:
            job = self._get(job_id)
            now = datetime.now(UTC)
            job.status = JobStatus.PENDING
            job.locked_by = None
            job.error_message = error_message
            job.scheduled_for = now + delay
            job.updated_at = now
            self._work_notify.set()

    async def dead_letter(self, job_id: str, error_message: str) -> None:
        async with self._lock:
            job = self._get(job_id)
            now = datetime.now(UTC)
            job.status = JobStatus.FAILED
            job.locked_by = None
            job.error_message = error_message
            job.completed_at = now
            job.updated_at = now

    async def release(self, job_id: str, reason: str) -> None:
        async with self._lock:
            job = self._get(job_id)
            job.status = JobStatus.PENDING
            job.locked_by = None
            job.attempts = max(0, job.attempts - 1)
            job.error_message = reason
            job.updated_at = datetime.now(UTC)
            self._work_notify.set()

    async def recover_stale(self, claimed_before: datetime) -> int:
        async with self._lock:
            stale = [
                j
                for j in self._jobs.values()
                if j.status == JobStatus.RUNNING
                and j.claimed_at is not None
                and j.claimed_at < claimed_before
            ]
            now = datetime.now(UTC)
            for job in stale:
                job.error_message = f"{STALE_REASON} (locked by {job.locked_by})"
                job.status = JobStatus.PENDING
                job.locked_by = None
                job.updated_at = now
            if stale:
                self._work_notify.set()
            return len(stale)

    async def get_job(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job is not None else None

    async def list_jobs(self, status: JobStatus | None = None) -> list[Job]:
        jobs = [j for j in self._jobs.values() if status is None or j.status == status]
        return [copy.deepcopy(j) for j in sorted(jobs, key=lambda j: j.created_at)]

    async def purge_terminal(self, before: datetime) -> int:
        async with self._lock:
            stale = [
                j for j in self._jobs.values() if j.status.is_terminal and j.updated_at < before
            ]
            for job in stale:
                del self._jobs[job.job_id]
                if job.unique_key is not None:
                    self._unique.pop(job.unique_key, None)
            return len(stale)

    async def counts(self) -> dict[JobStatus, int]:
        result = {status: 0 for status in JobStatus}
        for job in self._jobs.values():
            result[job.status] += 1
        return result
