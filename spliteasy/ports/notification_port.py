"""Notification port — abstract interface for user-visible messages.

Core modules depend on this protocol, never on a specific display. Sending
is fire-and-forget: the core logs and ignores notifier failures.
"""

from __future__ import annotations

from typing import Protocol


class NotificationPort(Protocol):
    """Abstract notification interface used by core modules."""

    async def send_message(self, text: str, level: str = "success") -> None: ...
