"""
Trigger evaluation: which triggers apply to a transition, and which
time-based trigger occurrences are due in a scan window.

The evaluator is pure. It reads configuration and entities handed to it
and never touches the store or the queue; claiming and enqueueing are the
scheduler's job.

Scan windows are half-open, ``(window_start, now]``. Consecutive scans
with overlapping windows compute the same occurrence keys for the same
fire times, and the ledger turns the overlap into a no-op.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from apscheduler.triggers.cron import CronTrigger

from pystatewise.errors import InvalidConfiguration
from pystatewise.models import (
    EntityContext,
    StateGraph,
    Transition,
    Trigger,
    TriggerType,
    occurrence_key,
    parse_cron,
)

logger = logging.getLogger(__name__)

_TICK = timedelta(microseconds=1)


@dataclass(frozen=True)
class Occurrence:
    """One due firing of a time-based trigger for one entity."""

    trigger: Trigger
    entity: EntityContext
    fire_at: datetime
    occurrence_key: str


class TriggerEvaluator:
    """
    Decides which triggers fire.

    Example:
        evaluator = TriggerEvaluator()
        exit_triggers, enter_triggers = evaluator.triggers_for_transition(
            triggers, graph, "draft", "sent", transition
        )
    """

    def __init__(self):
        self._crons: dict[str, CronTrigger] = {}

    def triggers_for_transition(
        self,
        triggers: Iterable[Trigger],
        graph: StateGraph,
        from_state: str | None,
        to_state: str,
        transition: Transition | None,
    ) -> tuple[list[Trigger], list[Trigger]]:
        """
        Split a graph's triggers into those fired by one transition.

        Args:
            triggers: Triggers of the graph
            graph: Graph the transition belongs to
            from_state: Vacated state name (None when initializing an entity)
            to_state: Entered state name
            transition: The edge taken (None when initializing an entity)

        Returns:
            (exit_triggers, enter_triggers): active on_exit triggers bound to
            the vacated state or the transition, and active on_enter triggers
            bound to the entered state or the transition
        """
        source = graph.state_by_name(from_state) if from_state else None
        target = graph.state_by_name(to_state)
        transition_id = transition.id if transition else None

        exit_triggers: list[Trigger] = []
        enter_triggers: list[Trigger] = []

        for trigger in triggers:
            if not trigger.is_active or trigger.graph_id != graph.id:
                continue

            on_transition = transition_id is not None and trigger.transition_id == transition_id

            if trigger.trigger_type == TriggerType.ON_EXIT:
                on_state = source is not None and trigger.state_id == source.id
                if on_state or on_transition:
                    exit_triggers.append(trigger)
            elif trigger.trigger_type == TriggerType.ON_ENTER:
                on_state = target is not None and trigger.state_id == target.id
                if on_state or on_transition:
                    enter_triggers.append(trigger)

        return exit_triggers, enter_triggers

    def fire_time(self, trigger: Trigger, entity: EntityContext) -> datetime | None:
        """
        Compute when a time_before / time_after trigger fires for an entity.

        Returns:
            ``entity.<time_field> -/+ offset``, or None if the field is unset

        Raises:
            InvalidConfiguration: For other trigger types, or an unknown field
        """
        if trigger.trigger_type not in (TriggerType.TIME_BEFORE, TriggerType.TIME_AFTER):
            raise InvalidConfiguration(f"trigger {trigger.id} is not offset-based")

        base = entity.timestamp(trigger.effective_time_field)
        if base is None:
            return None
        if base.tzinfo is None:
            base = base.replace(tzinfo=UTC)

        offset = timedelta(minutes=trigger.time_offset_minutes or 0)
        if trigger.trigger_type == TriggerType.TIME_BEFORE:
            return base - offset
        return base + offset

    def _cron(self, expression: str) -> CronTrigger:
        cron = self._crons.get(expression)
        if cron is None:
            cron = parse_cron(expression)
            self._crons[expression] = cron
        return cron

    def latest_cron_occurrence(
        self, expression: str, window_start: datetime, now: datetime
    ) -> datetime | None:
        """
        Most recent cron fire time in ``(window_start, now]``.

        Computed relative to now: after an outage only the latest occurrence
        is returned, missed periods are not backfilled.

        Returns:
            Fire time in UTC, or None if the cron does not fire in the window
        """
        cron = self._cron(expression)
        latest = None

        candidate = cron.get_next_fire_time(None, window_start + _TICK)
        while candidate is not None and candidate <= now:
            latest = candidate
            candidate = cron.get_next_fire_time(candidate, candidate)

        return latest.astimezone(UTC) if latest is not None else None

    def due_occurrences(
        self,
        trigger: Trigger,
        entities: Iterable[EntityContext],
        window_start: datetime,
        now: datetime,
    ) -> list[Occurrence]:
        """
        Occurrences of a time-based trigger that fall in ``(window_start, now]``.

        Entities whose time field is unset are skipped. A misconfigured
        trigger (unknown time field) yields nothing and is logged.
        """
        if not trigger.is_active or not trigger.trigger_type.is_time_based:
            return []

        entities = list(entities)

        if trigger.trigger_type == TriggerType.RECURRING:
            fire_at = self.latest_cron_occurrence(trigger.recurring_cron, window_start, now)
            if fire_at is None:
                return []
            key = occurrence_key(fire_at)
            return [Occurrence(trigger, entity, fire_at, key) for entity in entities]

        due = []
        for entity in entities:
            try:
                fire_at = self.fire_time(trigger, entity)
            except InvalidConfiguration as e:
                logger.warning(f"Skipping trigger {trigger.id}: {e}")
                return []
            if fire_at is None or not (window_start < fire_at <= now):
                continue
            due.append(Occurrence(trigger, entity, fire_at, occurrence_key(fire_at)))
        return due
