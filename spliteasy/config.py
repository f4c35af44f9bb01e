"""
SplitEasy — Centralized configuration.

Loads all settings from .env. Unlike a server, the client keeps working
without a backend: missing Supabase credentials only disable remote sync.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

logger = logging.getLogger(__name__)

# Load .env from project root (one level up from spliteasy/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)

_PLACEHOLDERS = ("YOUR_SUPABASE_URL_HERE", "YOUR_SUPABASE_ANON_KEY_HERE")


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Supabase (empty → offline-only mode)
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: str = ""

    # Local cache
    DATABASE_PATH: str = "data/spliteasy.db"
    READ_CACHE_TTL_SECONDS: float = 1.0

    # Sync triggers
    SYNC_DEBOUNCE_SECONDS: float = 2.0
    SYNC_INTERVAL_SECONDS: float = 300.0
    SYNC_PACING_SECONDS: float = 0.1
    RECONNECT_DELAY_SECONDS: float = 1.0
    CONNECTION_CHECK_INTERVAL_SECONDS: float = 30.0

    # Realtime
    ECHO_WINDOW_SECONDS: float = 5.0

    # HTTP
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # Telegram notifications (optional, both needed)
    TELEGRAM_BOT_TOKEN: str = ""
    TELEGRAM_CHAT_ID: int | None = None

    @field_validator("SUPABASE_URL", mode="before")
    @classmethod
    def strip_url(cls, v: str | None) -> str:
        return (v or "").strip().rstrip("/")

    @field_validator("TELEGRAM_CHAT_ID", mode="before")
    @classmethod
    def parse_chat_id(cls, v: str | int | None) -> int | None:
        if v is None or v == "":
            return None
        return int(v)

    @property
    def supabase_configured(self) -> bool:
        """True when both Supabase credentials are set and not placeholders."""
        if not self.SUPABASE_URL or not self.SUPABASE_ANON_KEY:
            return False
        return not (
            self.SUPABASE_URL in _PLACEHOLDERS or self.SUPABASE_ANON_KEY in _PLACEHOLDERS
        )


def _load_settings() -> Settings:
    """Load settings from environment, warning about missing credentials."""
    loaded = Settings(
        SUPABASE_URL=os.getenv("SUPABASE_URL", ""),
        SUPABASE_ANON_KEY=os.getenv("SUPABASE_ANON_KEY", ""),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/spliteasy.db"),
        READ_CACHE_TTL_SECONDS=os.getenv("READ_CACHE_TTL_SECONDS", "1"),
        SYNC_DEBOUNCE_SECONDS=os.getenv("SYNC_DEBOUNCE_SECONDS", "2"),
        SYNC_INTERVAL_SECONDS=os.getenv("SYNC_INTERVAL_SECONDS", "300"),
        SYNC_PACING_SECONDS=os.getenv("SYNC_PACING_SECONDS", "0.1"),
        RECONNECT_DELAY_SECONDS=os.getenv("RECONNECT_DELAY_SECONDS", "1"),
        CONNECTION_CHECK_INTERVAL_SECONDS=os.getenv("CONNECTION_CHECK_INTERVAL_SECONDS", "30"),
        ECHO_WINDOW_SECONDS=os.getenv("ECHO_WINDOW_SECONDS", "5"),
        HTTP_TIMEOUT_SECONDS=os.getenv("HTTP_TIMEOUT_SECONDS", "10"),
        TELEGRAM_BOT_TOKEN=os.getenv("TELEGRAM_BOT_TOKEN", ""),
        TELEGRAM_CHAT_ID=os.getenv("TELEGRAM_CHAT_ID", ""),
    )

    if not loaded.supabase_configured:
        logger.warning(
            "SUPABASE_URL / SUPABASE_ANON_KEY missing in .env, running offline only"
        )

    return loaded


# Singleton, imported by other modules as:
#   from spliteasy.config import settings
settings = _load_settings()
