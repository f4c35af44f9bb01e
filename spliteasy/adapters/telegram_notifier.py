"""Telegram notification adapter — implements NotificationPort.

Forwards sync notifications to a single Telegram chat through a
telegram.Bot instance.
"""

from __future__ import annotations

import logging

from telegram import Bot

logger = logging.getLogger(__name__)

_PREFIXES = {
    "success": "✅",
    "info": "ℹ️",
    "warning": "⚠️",
    "error": "❌",
}


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(self, bot: Bot, chat_id: int) -> None:
        self._bot = bot
        self._chat_id = chat_id

    async def send_message(self, text: str, level: str = "success") -> None:
        prefix = _PREFIXES.get(level)
        body = f"{prefix} {text}" if prefix else text
        await self._bot.send_message(chat_id=self._chat_id, text=body)
