"""Data models for workflow configuration, entities and the job queue.

Design: Dependency-Free Models
These types depend only on each other and on pystatewise.errors, never on
storage or engine modules, so every layer can import them.
"""

from pystatewise.models.retry import RetryableError, RetryPolicy
from pystatewise.models.status import JobStatus, OccurrenceStatus
from pystatewise.models.job import DEFAULT_WEIGHTS, Job, Priority, strict_order, weighted_order
from pystatewise.models.graph import State, StateGraph, StateType, Transition
from pystatewise.models.trigger import (
    Action,
    ActionType,
    Channel,
    MessageTemplate,
    Trigger,
    TriggerType,
    parse_cron,
)
from pystatewise.models.entity import (
    BudgetContext,
    EntityContext,
    ProjectContext,
    SessionContext,
    entity_class,
    entity_from_record,
)
from pystatewise.models.ledger import (
    EventType,
    ExecutionEvent,
    PendingJob,
    Task,
    new_id,
    occurrence_key,
)
from pystatewise.models.payloads import (
    CHECK_TIME_TRIGGERS,
    CLEANUP,
    EXECUTE_TRIGGER,
    SEND_NOTIFICATION,
    CheckTimeTriggersPayload,
    ExecuteTriggerPayload,
    SendNotificationPayload,
)

__all__ = [
    "RetryPolicy",
    "RetryableError",
    "JobStatus",
    "OccurrenceStatus",
    "Job",
    "Priority",
    "DEFAULT_WEIGHTS",
    "strict_order",
    "weighted_order",
    "State",
    "StateGraph",
    "StateType",
    "Transition",
    "Action",
    "ActionType",
    "Channel",
    "MessageTemplate",
    "Trigger",
    "TriggerType",
    "parse_cron",
    "EntityContext",
    "SessionContext",
    "BudgetContext",
    "ProjectContext",
    "entity_class",
    "entity_from_record",
    "EventType",
    "ExecutionEvent",
    "PendingJob",
    "Task",
    "new_id",
    "occurrence_key",
    "SEND_NOTIFICATION",
    "EXECUTE_TRIGGER",
    "CHECK_TIME_TRIGGERS",
    "CLEANUP",
    "ExecuteTriggerPayload",
    "SendNotificationPayload",
    "CheckTimeTriggersPayload",
]
