"""Logging notification adapter — implements NotificationPort.

Default sink when no chat is configured: user-visible messages go to the
application log at a level matching their severity.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

_LEVELS = {
    "success": logging.INFO,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class LogNotifier:
    """Logging implementation of NotificationPort."""

    async def send_message(self, text: str, level: str = "success") -> None:
        logger.log(_LEVELS.get(level, logging.INFO), "%s", text)
