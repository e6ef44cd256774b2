"""
Storage interfaces: the workflow data store and the durable job queue.

Design Pattern: Adapter Pattern
WorkflowStore and JobQueue define the target interfaces that every storage
adapter implements. Different backends (Memory, SQLite, Redis) adapt to
these common interfaces.

Design Principle: Interface Segregation (SOLID)
Workflow data (graphs, triggers, entities, ledger) and queued jobs are two
separate interfaces. A deployment can keep its data in SQLite and its
queue in Redis.

Design Principle: Dependency Inversion (SOLID)
The engine, scheduler and worker depend on these abstractions, never on a
concrete backend. Tests run the whole pipeline on the in-memory adapters.

Tenant isolation: every WorkflowStore read and write that touches
organization data takes ``organization_id`` and includes it in the lookup.
A record from another organization is indistinguishable from a missing one.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Protocol, runtime_checkable

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
from pystatewise.models.retry import RetryableError

STALE_REASON = "lease expired: worker stopped before finishing the job"


class StorageError(RetryableError):
    """
    Storage operation failed.

    Storage failures are usually transient (connection lost, lock timeout),
    so jobs that hit one are retried.
    """

    pass


class WorkflowStore(ABC):
    """
    Abstract data store for workflow configuration, entities and the ledger.

    Methods either succeed or raise StorageError; they never log and raise.
    Lookups return None when the record does not exist (in that
    organization), leaving the decision to the caller.
    """

    # ========================================================================
    # Configuration reads
    # ========================================================================

    @abstractmethod
    async def get_graph(self, organization_id: str, entity_type: str) -> StateGraph | None:
        """
        Return the active state graph for an entity type.

        Args:
            organization_id: Owning organization
            entity_type: Entity type the graph models (session, budget, ...)

        Returns:
            The active graph, or None if the organization has not defined one
        """
        pass

    @abstractmethod
    async def get_graph_by_id(self, organization_id: str, graph_id: str) -> StateGraph | None:
        pass

    @abstractmethod
    async def list_triggers(self, organization_id: str, graph_id: str) -> list[Trigger]:
        """Active triggers of a graph."""
        pass

    @abstractmethod
    async def list_time_triggers(self) -> list[Trigger]:
        """
        Active time-based triggers across all organizations.

        This is the only cross-tenant read; the scheduler scopes every
        follow-up query by the trigger's own organization_id.
        """
        pass

    @abstractmethod
    async def get_trigger(self, organization_id: str, trigger_id: str) -> Trigger | None:
        pass

    @abstractmethod
    async def list_actions(self, trigger_id: str) -> list[Action]:
        """
        Active actions of a trigger.

        Returns:
            Actions sorted by action_order (ties broken by id)
        """
        pass

    @abstractmethod
    async def get_action(self, organization_id: str, action_id: str) -> Action | None:
        """Return an action if its trigger belongs to the organization."""
        pass

    @abstractmethod
    async def get_template(self, organization_id: str, template_id: str) -> MessageTemplate | None:
        pass

    # ========================================================================
    # Entities
    # ========================================================================

    @abstractmethod
    async def get_entity(
        self, organization_id: str, entity_type: str, entity_id: str
    ) -> EntityContext | None:
        pass

    @abstractmethod
    async def list_entities(self, organization_id: str, entity_type: str) -> list[EntityContext]:
        pass

    @abstractmethod
    async def set_entity_state(
        self,
        organization_id: str,
        entity_type: str,
        entity_id: str,
        expected_state: str | None,
        new_state: str,
    ) -> bool:
        """
        Compare-and-set the entity's current_state.

        One single-row write: succeeds only if the stored state still equals
        ``expected_state``.

        Returns:
            True if the state was written, False if the entity is missing
            or another writer changed the state first
        """
        pass

    @abstractmethod
    async def update_entity_field(
        self, organization_id: str, entity_type: str, entity_id: str, field: str, value: Any
    ) -> bool:
        """
        Write one field of one entity.

        Callers enforce the field whitelist; this method only writes.

        Returns:
            True if the entity exists and was updated
        """
        pass

    @abstractmethod
    async def create_task(self, task: Task) -> str:
        """Persist a follow-up task and return its id."""
        pass

    @abstractmethod
    async def list_tasks(self, organization_id: str, entity_type: str, entity_id: str) -> list[Task]:
        pass

    # ========================================================================
    # Pending-job ledger
    # ========================================================================

    @abstractmethod
    async def claim_occurrence(self, pending: PendingJob) -> bool:
        """
        Insert a ledger row unless one already exists.

        The store enforces uniqueness of (trigger_id, entity_id,
        occurrence_key). This is the concurrency-safety mechanism for the
        time-trigger scan: of N concurrent claims for one occurrence,
        exactly one returns True.

        Returns:
            True if this call inserted the row, False if already claimed
        """
        pass

    @abstractmethod
    async def mark_occurrence(
        self,
        trigger_id: str,
        entity_id: str,
        occurrence_key: str,
        status: OccurrenceStatus,
        error: str | None = None,
    ) -> bool:
        """
        Move a ledger row to a new status.

        Returns:
            True if the row exists
        """
        pass

    @abstractmethod
    async def get_occurrence(
        self, trigger_id: str, entity_id: str, occurrence_key: str
    ) -> PendingJob | None:
        pass

    @abstractmethod
    async def cancel_occurrences(
        self, organization_id: str, entity_type: str, entity_id: str
    ) -> int:
        """
        Cancel every still-claimed ledger row of one entity.

        Returns:
            Number of rows cancelled
        """
        pass

    @abstractmethod
    async def purge_occurrences(self, before: datetime) -> int:
        """Delete ledger rows created before ``before``. Returns the count."""
        pass

    @abstractmethod
    async def count_occurrences(self, status: OccurrenceStatus | None = None) -> int:
        pass

    # ========================================================================
    # Execution log
    # ========================================================================

    @abstractmethod
    async def log_event(self, event: ExecutionEvent) -> None:
        pass

    @abstractmethod
    async def list_events(
        self, organization_id: str, entity_type: str, entity_id: str
    ) -> list[ExecutionEvent]:
        """Events of one entity, oldest first."""
        pass

    # ========================================================================
    # Configuration writers (stand-in for the CRUD layer)
    # ========================================================================

    @abstractmethod
    async def save_graph(self, graph: StateGraph) -> None:
        pass

    @abstractmethod
    async def save_trigger(self, trigger: Trigger) -> None:
        pass

    @abstractmethod
    async def save_action(self, action: Action) -> None:
        pass

    @abstractmethod
    async def save_template(self, template: MessageTemplate) -> None:
        pass

    @abstractmethod
    async def save_entity(self, entity: EntityContext) -> None:
        pass

    # ========================================================================
    # Utility Operations
    # ========================================================================

    async def close(self) -> None:
        """
        Close connections and clean up resources.

        Default is a no-op for backends without connections.
        """
        return None


class JobQueue(ABC):
    """
    Durable multi-priority job queue.

    Delivery is at-least-once: a job is handed to one worker at a time, but
    a crash between execution and complete() runs it again.

    Ordering: FIFO within a priority (by scheduled_for, then created_at).
    Across priorities the caller passes the order to try; see
    pystatewise.models.weighted_order.
    """

    @abstractmethod
    async def enqueue(self, job: Job) -> str | None:
        """
        Add a job to the queue.

        Args:
            job: Job to store. ``unique_key`` (if set) de-duplicates against
                every job still stored with the same key.

        Returns:
            The job id, or None if a job with the same unique_key exists

        Raises:
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def dequeue(self, worker_id: str, order: list[Priority]) -> Job | None:
        """
        Claim the oldest ready job of the first non-empty priority.

        The claim is atomic: two workers never receive the same job. The
        returned job is RUNNING, locked by ``worker_id``, with attempts
        already incremented.

        Args:
            worker_id: Claiming worker
            order: Priorities to try, first match wins

        Returns:
            Claimed job, or None if nothing is ready
        """
        pass

    @abstractmethod
    async def complete(self, job_id: str) -> None:
        """Mark a job COMPLETE."""
        pass

    @abstractmethod
    async def retry(self, job_id: str, error_message: str, delay: timedelta) -> None:
        """
        Return a failed job to PENDING after ``delay``.

        The error message is kept for inspection and the attempt count is
        unchanged (it was incremented on dequeue).
        """
        pass

    @abstractmethod
    async def dead_letter(self, job_id: str, error_message: str) -> None:
        """Mark a job FAILED and keep it for manual inspection."""
        pass

    @abstractmethod
    async def release(self, job_id: str, reason: str) -> None:
        """
        Return a claimed job to PENDING without consuming an attempt.

        Used when a worker shuts down with the job in flight.
        """
        pass

    @abstractmethod
    async def recover_stale(self, claimed_before: datetime) -> int:
        """
        Return RUNNING jobs claimed before ``claimed_before`` to PENDING.

        Covers workers that died without calling complete, retry or
        release. The attempt counter is left as it was, and the job's
        error_message records STALE_REASON and the previous lock holder.

        Returns:
            Number of jobs recovered
        """
        pass

    @abstractmethod
    async def get_job(self, job_id: str) -> Job | None:
        pass

    @abstractmethod
    async def list_jobs(self, status: JobStatus | None = None) -> list[Job]:
        """Jobs with the given status (all jobs if None), oldest first."""
        pass

    @abstractmethod
    async def purge_terminal(self, before: datetime) -> int:
        """
        Delete COMPLETE and FAILED jobs last updated before ``before``.

        Returns:
            Number of jobs deleted
        """
        pass

    @abstractmethod
    async def counts(self) -> dict[JobStatus, int]:
        """Number of jobs per status."""
        pass

    async def close(self) -> None:
        return None


# =============================================================================
# Notification Source Protocol - Event-Driven Queue
# =============================================================================


@runtime_checkable
class WorkNotificationSource(Protocol):
    """
    Protocol for queues that can wake workers when work arrives.

    **Pattern**: Interface Segregation Principle (SOLID)
    Not every queue can notify (a Redis queue shared across processes
    cannot signal an in-process event for jobs enqueued elsewhere). Workers
    fall back to polling for those.

    **Contract**:
    Implementations must:
    1. Maintain an asyncio.Event for work notifications
    2. Call `event.set()` when work becomes available (enqueue, retry, release)
    3. Workers will `await event.wait()` and then `event.clear()`

    **Worker Usage**:
    ```python
    if isinstance(queue, WorkNotificationSource):
        # Fast path: event-driven
        await asyncio.wait_for(queue.work_notify().wait(), timeout=poll_interval)
    else:
        # Fallback: polling
        await asyncio.sleep(poll_interval)
    ```
    """

    def work_notify(self) -> asyncio.Event:
        """
        Return event that signals when work becomes available.

        Returns:
            asyncio.Event that workers wait on
        """
        ...
