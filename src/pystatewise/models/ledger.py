"""Records the engine writes: the time-trigger ledger, the execution log
and follow-up tasks."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from uuid_extensions import uuid7

from pystatewise.models.status import OccurrenceStatus


def new_id() -> str:
    """Time-ordered record id."""
    return str(uuid7())


def occurrence_key(fire_at: datetime) -> str:
    """Ledger key for a fire time: its UTC minute in ISO 8601.

    Two scans computing the same fire time always agree on the key, and the
    scan never fires more often than once a minute.
    """
    return fire_at.astimezone(UTC).strftime("%Y-%m-%dT%H:%MZ")


@dataclass
class PendingJob:
    """Ledger row: one time-trigger occurrence for one entity.

    The store enforces uniqueness of (trigger_id, entity_id,
    occurrence_key); inserting a duplicate is how a concurrent scan learns
    the occurrence was already claimed.
    """

    organization_id: str
    trigger_id: str
    entity_type: str
    entity_id: str
    occurrence_key: str
    scheduled_for: datetime
    status: OccurrenceStatus = OccurrenceStatus.CLAIMED
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    fired_at: datetime | None = None
    last_error: str | None = None


class EventType(Enum):
    STATE_CHANGE = "state_change"
    TRIGGER_FIRED = "trigger_fired"
    ACTION_EXECUTED = "action_executed"
    ACTION_FAILED = "action_failed"
    TRIGGER_SKIPPED = "trigger_skipped"

    def __str__(self) -> str:
        return self.value


@dataclass
class ExecutionEvent:
    """Workflow execution log entry (audit trail per entity)."""

    organization_id: str
    entity_type: str
    entity_id: str
    event_type: EventType
    graph_id: str | None = None
    from_state: str | None = None
    to_state: str | None = None
    trigger_id: str | None = None
    action_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class Task:
    """Follow-up task created by a create_task action."""

    organization_id: str
    entity_type: str
    entity_id: str
    title: str
    description: str = ""
    assignee_id: str | None = None
    due_at: datetime | None = None
    source_action_id: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
