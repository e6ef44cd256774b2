"""Entity contexts: typed views of the entities workflows run against.

Design: Closed Tagged Union
Instead of an open, untyped ``dict`` per entity, each entity type has its
own dataclass (SessionContext, BudgetContext, ProjectContext) sharing the
EntityContext capability used by the engine:

    - as_template_data(): the variables templates may reference
    - phone_fields / email_fields: destination fallback chains
    - time_fields: timestamps time-based triggers may key off
    - updatable_fields: whitelist for update_field actions

Entities are owned by the domain services. The engine reads them and only
writes through update_field actions and state transitions.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import date, datetime
from decimal import Decimal
from typing import Any, ClassVar

from pystatewise.errors import InvalidConfiguration


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Decimal):
        return f"{value:.2f}"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


@dataclass(frozen=True)
class EntityContext:
    """Fields every workflow entity carries."""

    entity_type: ClassVar[str] = ""
    phone_fields: ClassVar[tuple[str, ...]] = ()
    email_fields: ClassVar[tuple[str, ...]] = ()
    time_fields: ClassVar[tuple[str, ...]] = ("created_at",)
    updatable_fields: ClassVar[frozenset[str]] = frozenset()
    derived_variables: ClassVar[tuple[str, ...]] = ()

    entity_id: str
    organization_id: str
    current_state: str | None = None
    created_at: datetime | None = None

    def as_template_data(self) -> dict[str, str]:
        """Flatten the entity into template variables.

        ``current_state`` is exposed as ``status``; timestamps as ISO 8601.
        """
        data = {}
        for f in fields(self):
            if f.name in ("organization_id", "current_state"):
                continue
            data[f.name] = _format_value(getattr(self, f.name))
        data["status"] = self.current_state or ""
        return data

    def timestamp(self, name: str) -> datetime | None:
        """Read a trigger time field.

        Raises:
            InvalidConfiguration: If ``name`` is not a time field of this type
        """
        if name not in self.time_fields:
            raise InvalidConfiguration(f"{self.entity_type} has no time field {name!r}")
        return getattr(self, name)

    def destination(self, channel_fields: tuple[str, ...]) -> str | None:
        """First non-empty value along a fallback chain."""
        for name in channel_fields:
            value = getattr(self, name, None)
            if value:
                return str(value)
        return None

    def to_record(self) -> dict[str, Any]:
        """Plain dict of all fields (storage adapters persist this)."""
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class SessionContext(EntityContext):
    """Clinical appointment session."""

    entity_type: ClassVar[str] = "session"
    phone_fields: ClassVar[tuple[str, ...]] = ("patient_phone", "client_phone")
    email_fields: ClassVar[tuple[str, ...]] = ("patient_email", "client_email")
    time_fields: ClassVar[tuple[str, ...]] = ("created_at", "scheduled_at")
    updatable_fields: ClassVar[frozenset[str]] = frozenset(
        {"session_type", "notes", "amount", "payment_status"}
    )
    derived_variables: ClassVar[tuple[str, ...]] = ("session_date", "session_time")

    scheduled_at: datetime | None = None
    session_type: str = ""
    patient_name: str = ""
    patient_phone: str | None = None
    patient_email: str | None = None
    client_phone: str | None = None
    client_email: str | None = None
    therapist_name: str = ""
    amount: Decimal | None = None
    payment_status: str | None = None
    notes: str | None = None

    def as_template_data(self) -> dict[str, str]:
        data = super().as_template_data()
        if self.scheduled_at is not None:
            data["session_date"] = self.scheduled_at.strftime("%d/%m/%Y")
            data["session_time"] = self.scheduled_at.strftime("%H:%M")
        return data


@dataclass(frozen=True)
class BudgetContext(EntityContext):
    """Construction budget (quote) sent to a client."""

    entity_type: ClassVar[str] = "budget"
    phone_fields: ClassVar[tuple[str, ...]] = ("client_phone",)
    email_fields: ClassVar[tuple[str, ...]] = ("client_email",)
    time_fields: ClassVar[tuple[str, ...]] = ("created_at", "sent_at", "valid_until")
    updatable_fields: ClassVar[frozenset[str]] = frozenset({"notes", "valid_until", "sent_at"})

    budget_number: str = ""
    budget_total: Decimal | None = None
    project_name: str = ""
    client_name: str = ""
    client_email: str | None = None
    client_phone: str | None = None
    sent_at: datetime | None = None
    valid_until: datetime | None = None
    notes: str | None = None


@dataclass(frozen=True)
class ProjectContext(EntityContext):
    """Construction project."""

    entity_type: ClassVar[str] = "project"
    phone_fields: ClassVar[tuple[str, ...]] = ("client_phone",)
    email_fields: ClassVar[tuple[str, ...]] = ("client_email",)
    time_fields: ClassVar[tuple[str, ...]] = ("created_at", "start_date", "due_date")
    updatable_fields: ClassVar[frozenset[str]] = frozenset(
        {"notes", "start_date", "due_date", "project_name"}
    )

    project_number: str = ""
    project_name: str = ""
    client_name: str = ""
    client_email: str | None = None
    client_phone: str | None = None
    start_date: datetime | None = None
    due_date: datetime | None = None
    notes: str | None = None


ENTITY_TYPES: dict[str, type[EntityContext]] = {
    cls.entity_type: cls for cls in (SessionContext, BudgetContext, ProjectContext)
}


def entity_class(entity_type: str) -> type[EntityContext]:
    """Look up the context class for an entity type.

    Raises:
        InvalidConfiguration: If the entity type is unknown
    """
    try:
        return ENTITY_TYPES[entity_type]
    except KeyError:
        raise InvalidConfiguration(f"unknown entity type: {entity_type!r}") from None


def coerce_field(cls: type[EntityContext], name: str, value: Any) -> Any:
    """Convert a JSON-ish value to the declared type of an entity field.

    Used when a field value comes from configuration (``update_field``) or
    from a storage row.
    """
    if value is None:
        return None

    declared = {f.name: f.type for f in fields(cls)}.get(name, "")
    declared = str(declared)

    if "datetime" in declared and isinstance(value, str):
        return datetime.fromisoformat(value)
    if "datetime" in declared and isinstance(value, date) and not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day)
    if "Decimal" in declared and not isinstance(value, Decimal):
        return Decimal(str(value))
    return value


def template_variable_names(entity_type: str) -> list[str]:
    """Every variable as_template_data() can produce for an entity type."""
    cls = entity_class(entity_type)
    names = [f.name for f in fields(cls) if f.name not in ("organization_id", "current_state")]
    names.append("status")
    names.extend(cls.derived_variables)
    return names


def entity_from_record(entity_type: str, record: dict[str, Any]) -> EntityContext:
    """Build an entity context from a plain dict, ignoring unknown keys."""
    cls = entity_class(entity_type)
    known = {f.name for f in fields(cls)}
    values = {k: coerce_field(cls, k, v) for k, v in record.items() if k in known}
    return cls(**values)
