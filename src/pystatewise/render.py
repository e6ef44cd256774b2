"""Message template rendering.

Templates use ``{{variable_name}}`` placeholders and nothing else: no
expressions, filters, attribute access or recursion. A substituted value is
never re-scanned, so a value containing ``{{x}}`` is output literally.

Unknown or None variables render as the empty string. A missing optional
field must not block delivery of the whole message; validate_template()
reports unknown names at authoring time instead.

Escaping applies to substituted values only. Template text is authored by
the organization and passed through unchanged:

    - email body: HTML escaped (the email transport sends text/html)
    - email subject: control characters removed (no header injection)
    - whatsapp: control characters other than newline and tab removed
"""

from __future__ import annotations

import html
import re
from collections.abc import Callable, Mapping
from typing import Any, Literal

from pystatewise.models import Channel
from pystatewise.models.entity import template_variable_names

PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")

_CONTROL = re.compile(r"[\x00-\x1f\x7f]")
_CONTROL_KEEP_LINES = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")

Escape = Callable[[str], str]


def _strip_control(value: str) -> str:
    return _CONTROL.sub("", value)


def _strip_control_keep_lines(value: str) -> str:
    return _CONTROL_KEEP_LINES.sub("", value)


def escape_for(channel: Channel, part: Literal["subject", "body"] = "body") -> Escape:
    """Return the value escaper for one part of a message on a channel."""
    if channel == Channel.EMAIL:
        if part == "subject":
            return _strip_control
        return html.escape
    return _strip_control_keep_lines


def render(template: str, data: Mapping[str, Any], escape: Escape | None = None) -> str:
    """
    Substitute ``{{name}}`` placeholders with values from ``data``.

    Args:
        template: Template text
        data: Variable values (converted with str())
        escape: Applied to each substituted value, not to the template text

    Returns:
        Rendered text

    Example:
        render("Olá {{client_name}}", {"client_name": "Ana"})  # "Olá Ana"
        render("Olá {{nope}}!", {})                             # "Olá !"
    """

    def substitute(match: re.Match) -> str:
        value = data.get(match.group(1))
        if value is None:
            return ""
        text = str(value)
        return escape(text) if escape is not None else text

    return PLACEHOLDER.sub(substitute, template)


def template_variables(template: str) -> list[str]:
    """Placeholder names in order of first appearance, de-duplicated."""
    seen: dict[str, None] = {}
    for match in PLACEHOLDER.finditer(template):
        seen.setdefault(match.group(1), None)
    return list(seen)


def available_variables(entity_type: str) -> list[str]:
    """Variables templates can reference for an entity type."""
    return template_variable_names(entity_type)


def validate_template(template: str, entity_type: str) -> list[str]:
    """
    Find placeholders that the entity type does not provide.

    Returns:
        Unknown variable names, de-duplicated, in order of appearance
        (empty if the template is valid)
    """
    known = set(available_variables(entity_type))
    return [name for name in template_variables(template) if name not in known]


SAMPLE_DATA: dict[str, dict[str, str]] = {
    "session": {
        "patient_name": "João Silva",
        "patient_phone": "+351912345678",
        "patient_email": "joao.silva@email.com",
        "therapist_name": "Dr. Maria Santos",
        "session_date": "15/01/2025",
        "session_time": "14:30",
        "session_type": "Consulta Regular",
        "amount": "50.00",
        "status": "scheduled",
    },
    "budget": {
        "client_name": "Manuel Costa",
        "client_email": "manuel.costa@email.com",
        "client_phone": "+351923456789",
        "project_name": "Remodelação Cozinha",
        "budget_number": "ORC-2025-001",
        "budget_total": "15000.00",
        "status": "sent",
    },
    "project": {
        "client_name": "Ana Ferreira",
        "client_email": "ana.ferreira@email.com",
        "client_phone": "+351934567890",
        "project_number": "PRJ-2025-014",
        "project_name": "Construção Moradia",
        "status": "in_progress",
    },
}


def preview_template(
    body: str, entity_type: str, subject: str | None = None
) -> tuple[str, str]:
    """Render a template against sample data for the authoring UI.

    Returns:
        (subject, body); subject is "" when the template has none
    """
    data = SAMPLE_DATA.get(entity_type, {})
    rendered_subject = render(subject, data) if subject else ""
    return rendered_subject, render(body, data)
