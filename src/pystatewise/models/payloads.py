"""Job types and their JSON payloads.

Payloads cross process boundaries through the queue, so they are plain
JSON objects. Each payload class converts to and from that form.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from pystatewise.errors import InvalidConfiguration
from pystatewise.models.trigger import Channel

SEND_NOTIFICATION = "workflow:send_notification"
EXECUTE_TRIGGER = "workflow:execute_trigger"
CHECK_TIME_TRIGGERS = "workflow:check_time_triggers"
CLEANUP = "workflow:cleanup"


def _require(data: dict[str, Any], *keys: str) -> None:
    missing = [k for k in keys if not data.get(k)]
    if missing:
        raise InvalidConfiguration(f"payload missing {', '.join(missing)}")


@dataclass(frozen=True)
class ExecuteTriggerPayload:
    """Run every action of one trigger against one entity.

    ``occurrence_key`` is set when the job was produced by the time-trigger
    scan; the handler marks that ledger row fired on success.
    """

    organization_id: str
    trigger_id: str
    entity_type: str
    entity_id: str
    occurrence_key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.occurrence_key is None:
            del data["occurrence_key"]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecuteTriggerPayload:
        _require(data, "organization_id", "trigger_id", "entity_type", "entity_id")
        return cls(
            organization_id=str(data["organization_id"]),
            trigger_id=str(data["trigger_id"]),
            entity_type=str(data["entity_type"]),
            entity_id=str(data["entity_id"]),
            occurrence_key=data.get("occurrence_key"),
        )


@dataclass(frozen=True)
class SendNotificationPayload:
    """Send a single notification for an action, with an explicit template."""

    organization_id: str
    action_id: str
    entity_type: str
    entity_id: str
    channel: Channel
    template_id: str

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["channel"] = self.channel.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SendNotificationPayload:
        _require(
            data,
            "organization_id",
            "action_id",
            "entity_type",
            "entity_id",
            "channel",
            "template_id",
        )
        try:
            channel = Channel(data["channel"])
        except ValueError:
            raise InvalidConfiguration(f"unknown channel: {data['channel']!r}") from None

        return cls(
            organization_id=str(data["organization_id"]),
            action_id=str(data["action_id"]),
            entity_type=str(data["entity_type"]),
            entity_id=str(data["entity_id"]),
            channel=channel,
            template_id=str(data["template_id"]),
        )


@dataclass(frozen=True)
class CheckTimeTriggersPayload:
    """Periodic scan; carries no data."""

    def to_dict(self) -> dict[str, Any]:
        return {}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckTimeTriggersPayload:
        return cls()
