"""Trigger, action and message template configuration.

These records are organization-authored configuration. The engine only
reads them; they are created and edited by the CRUD layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from apscheduler.triggers.cron import CronTrigger

from pystatewise.errors import InvalidConfiguration


class TriggerType(Enum):
    ON_ENTER = "on_enter"
    ON_EXIT = "on_exit"
    TIME_BEFORE = "time_before"
    TIME_AFTER = "time_after"
    RECURRING = "recurring"

    @property
    def is_time_based(self) -> bool:
        return self in (TriggerType.TIME_BEFORE, TriggerType.TIME_AFTER, TriggerType.RECURRING)

    @property
    def is_lifecycle(self) -> bool:
        return self in (TriggerType.ON_ENTER, TriggerType.ON_EXIT)

    def __str__(self) -> str:
        return self.value


class ActionType(Enum):
    SEND_WHATSAPP = "send_whatsapp"
    SEND_EMAIL = "send_email"
    UPDATE_FIELD = "update_field"
    CREATE_TASK = "create_task"

    @property
    def channel(self) -> Channel | None:
        """Outbound channel for send actions, None for the others."""
        if self == ActionType.SEND_WHATSAPP:
            return Channel.WHATSAPP
        if self == ActionType.SEND_EMAIL:
            return Channel.EMAIL
        return None

    def __str__(self) -> str:
        return self.value


class Channel(Enum):
    WHATSAPP = "whatsapp"
    EMAIL = "email"

    def __str__(self) -> str:
        return self.value


def parse_cron(expression: str) -> CronTrigger:
    """Parse a five-field crontab expression (evaluated in UTC).

    Raises:
        InvalidConfiguration: If the expression is malformed
    """
    try:
        return CronTrigger.from_crontab(expression, timezone="UTC")
    except ValueError as e:
        raise InvalidConfiguration(f"invalid cron expression {expression!r}: {e}") from e


@dataclass
class Trigger:
    """Binds a lifecycle event or a time offset to an ordered list of actions.

    A trigger references exactly one of {state, transition} (on_enter /
    on_exit), XOR it is time-based with neither reference:

    - time_before / time_after: fires ``time_offset_minutes`` before/after
      the entity's ``time_field`` timestamp (``created_at`` by default)
    - recurring: fires on every occurrence of ``recurring_cron``
    """

    id: str
    graph_id: str
    organization_id: str
    trigger_type: TriggerType
    state_id: str | None = None
    transition_id: str | None = None
    time_offset_minutes: int | None = None
    time_field: str | None = None
    recurring_cron: str | None = None
    is_active: bool = True

    def validate(self) -> None:
        """Check the binding invariant.

        Raises:
            InvalidConfiguration: If the trigger is malformed
        """
        bound = (self.state_id is not None) + (self.transition_id is not None)

        if self.trigger_type.is_lifecycle:
            if bound != 1:
                raise InvalidConfiguration(
                    f"trigger {self.id}: {self.trigger_type} must reference exactly one "
                    "of state or transition"
                )
            return

        if bound != 0:
            raise InvalidConfiguration(
                f"trigger {self.id}: time-based triggers cannot reference a state or transition"
            )

        if self.trigger_type == TriggerType.RECURRING:
            if not self.recurring_cron:
                raise InvalidConfiguration(f"trigger {self.id}: recurring requires a cron")
            parse_cron(self.recurring_cron)
        elif self.time_offset_minutes is None:
            raise InvalidConfiguration(
                f"trigger {self.id}: {self.trigger_type} requires time_offset_minutes"
            )

    @property
    def effective_time_field(self) -> str:
        return self.time_field or "created_at"


@dataclass
class Action:
    """One executable step of a trigger.

    ``action_order`` defines execution sequence within the trigger.
    ``action_config`` is a free-form map whose keys depend on the type:

    - send_email / send_whatsapp: optional ``to_field``
    - update_field: ``field`` and ``value``
    - create_task: ``title``, ``description``, ``assignee_id``,
      ``due_in_minutes``
    """

    id: str
    trigger_id: str
    action_type: ActionType
    action_order: int = 0
    template_id: str | None = None
    action_config: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True

    def validate(self) -> None:
        if self.action_type.channel is not None and self.template_id is None:
            raise InvalidConfiguration(
                f"action {self.id}: {self.action_type} requires a template_id"
            )


@dataclass
class MessageTemplate:
    """Outbound message template, scoped to one organization.

    ``body`` and ``subject`` reference named variables specific to the
    entity type (e.g. ``{{patient_name}}`` for sessions).
    """

    id: str
    organization_id: str
    channel: Channel
    body: str
    subject: str | None = None
    name: str = ""
    is_active: bool = True
