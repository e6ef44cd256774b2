"""Outbound channel collaborator.

The engine does not talk to email or messaging providers itself. It calls a
NotificationSender, which production code implements on top of the real
transports. Any exception a sender raises is surfaced as a retryable
ChannelError by the action executor.
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class NotificationSender(Protocol):
    """Email and messaging transport used by send actions."""

    async def send_email(self, to: str, subject: str, body: str) -> None:
        """Send an HTML email."""
        ...

    async def send_message(self, to: str, body: str) -> None:
        """Send a WhatsApp message to a phone number."""
        ...


def _truncate(text: str, max_len: int = 50) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len] + "..."


class LoggingSender:
    """Sender used when no transport is configured: logs and drops."""

    async def send_email(self, to: str, subject: str, body: str) -> None:
        logger.info(f"Email sender not configured, skipping send to {to}: subject={subject!r}")

    async def send_message(self, to: str, body: str) -> None:
        logger.info(
            f"WhatsApp sender not configured, skipping send to {to}: {_truncate(body)!r}"
        )
