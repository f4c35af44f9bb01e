"""Adapter factory — builds the remote and notification adapters from config."""

from __future__ import annotations

import logging

from spliteasy.config import settings
from spliteasy.ports.notification_port import NotificationPort
from spliteasy.ports.remote_port import RealtimePort, RemoteStorePort

logger = logging.getLogger(__name__)


def create_remote_store() -> RemoteStorePort | None:
    """Return the PostgREST adapter, or None when Supabase isn't configured."""
    if not settings.supabase_configured:
        logger.warning("Supabase not configured, running in local-only mode")
        return None

    from spliteasy.adapters.postgrest_store import PostgrestStore

    return PostgrestStore(
        settings.SUPABASE_URL,
        settings.SUPABASE_ANON_KEY,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )


def create_realtime() -> RealtimePort | None:
    if not settings.supabase_configured:
        return None

    from spliteasy.adapters.supabase_realtime import SupabaseRealtime

    return SupabaseRealtime(settings.SUPABASE_URL, settings.SUPABASE_ANON_KEY)


def create_notifier() -> NotificationPort:
    """Telegram when a bot token and chat id are set, otherwise the log."""
    if settings.TELEGRAM_BOT_TOKEN and settings.TELEGRAM_CHAT_ID is not None:
        from telegram import Bot

        from spliteasy.adapters.telegram_notifier import TelegramNotifier

        return TelegramNotifier(Bot(token=settings.TELEGRAM_BOT_TOKEN), settings.TELEGRAM_CHAT_ID)

    from spliteasy.adapters.log_notifier import LogNotifier

    return LogNotifier()
