"""Domain errors raised by the workflow engine.

Every error carries a retry classification (see RetryableError). The worker
is the single place where a job failure is turned into retry or
dead-letter:

    - ValidationError and subclasses: configuration or request defects.
      Retrying cannot fix them, so the job is dead-lettered immediately.
    - TransientError and subclasses: the outside world failed (channel
      provider down, timeout). The job is retried with backoff.
    - ActionFailures: some actions of a trigger failed. Retryable iff any
      underlying failure is retryable.
"""

from __future__ import annotations

from collections.abc import Sequence

from pystatewise.models.retry import RetryableError, is_retryable


class WorkflowError(RetryableError):
    """Base class for engine errors."""


class ValidationError(WorkflowError):
    """Permanent failure: never retried."""

    def is_retryable(self) -> bool:
        return False


class InvalidTransition(ValidationError):
    """No explicit transition exists between the two states, or the entity
    moved concurrently."""

    def __init__(self, entity_type: str, entity_id: str, from_state: str | None, to_state: str):
        super().__init__(
            f"invalid transition for {entity_type} {entity_id}: {from_state!r} -> {to_state!r}"
        )
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.from_state = from_state
        self.to_state = to_state


class MissingTemplate(ValidationError):
    """A send action has no template_id."""


class MissingDestination(ValidationError):
    """No phone number or email address could be resolved for the entity."""


class ForbiddenFieldUpdate(ValidationError):
    """update_field targeted current_state or a field outside the whitelist."""


class InvalidConfiguration(ValidationError):
    """Malformed graph, trigger, action, template or setting."""


class NotFound(ValidationError):
    """A referenced record does not exist within the organization."""

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class UnknownJobType(ValidationError):
    """No handler is registered for a job type."""


class TransientError(WorkflowError):
    """Temporary failure: retried with backoff."""


class ChannelError(TransientError):
    """The email or messaging provider rejected or failed a send."""


class ActionFailures(WorkflowError):
    """One or more actions of a trigger failed.

    Raised only after every action was attempted. ``first`` is the error
    of the earliest failing action.
    """

    def __init__(self, trigger_id: str, errors: Sequence[BaseException]):
        if not errors:
            raise ValueError("ActionFailures requires at least one error")
        self.trigger_id = trigger_id
        self.errors = list(errors)
        super().__init__(
            f"trigger {trigger_id}: {len(self.errors)} action(s) failed, first: {self.first}"
        )

    @property
    def first(self) -> BaseException:
        return self.errors[0]

    def is_retryable(self) -> bool:
        return any(is_retryable(e) for e in self.errors)
