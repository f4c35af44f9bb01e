"""
SplitEasy — Local Cache Store.

Durable on-device key→JSON storage in SQLite. The group collection (with
nested expenses), the delete queue, local identities and sync metadata all
live here, so the app keeps working offline and survives restarts.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Callable

from pydantic import TypeAdapter, ValidationError

from spliteasy.data.models import (
    Group,
    PreviousUser,
    QueuedDeletion,
    User,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

GROUPS_KEY = "groups"
CURRENT_USER_KEY = "current_user"
PREVIOUS_USERS_KEY = "previous_users"
DELETE_QUEUE_KEY = "delete_queue"
LAST_SYNC_KEY = "last_sync"
IDENTITY_MAP_KEY = "identity_map"

MAX_PREVIOUS_USERS = 10

_groups_adapter = TypeAdapter(list[Group])
_queue_adapter = TypeAdapter(list[QueuedDeletion])
_previous_users_adapter = TypeAdapter(list[PreviousUser])


class LocalStore:
    """SQLite-backed key → JSON blob storage."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from spliteasy.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    key        TEXT PRIMARY KEY,
                    value      TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
        logger.debug("Local store initialized at %s", self._db_path)

    def get_raw(self, key: str) -> str | None:
        """Return the raw JSON text stored under `key`, or None."""
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return None if row is None else row["value"]

    def set_raw(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                               updated_at = excluded.updated_at
                """,
                (key, value, utc_now_iso()),
            )

    def get_json(self, key: str, default: Any = None) -> Any:
        """Decode the JSON stored under `key`. Corrupt values raise ValueError."""
        raw = self.get_raw(key)
        if raw is None:
            return default
        return json.loads(raw)

    def set_json(self, key: str, value: Any) -> None:
        self.set_raw(key, json.dumps(value))

    def delete(self, key: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        return cursor.rowcount > 0


class GroupCache:
    """The local group collection, with derived-field recomputation on save.

    A short-lived read cache absorbs bursts of reads; every write
    invalidates it immediately.
    """

    def __init__(self, store: LocalStore, ttl_seconds: float | None = None) -> None:
        if ttl_seconds is None:
            from spliteasy.config import settings
            ttl_seconds = settings.READ_CACHE_TTL_SECONDS

        self._store = store
        self._ttl = ttl_seconds
        self._cached: list[Group] | None = None
        self._cached_at = 0.0

    def invalidate(self) -> None:
        self._cached = None
        self._cached_at = 0.0

    def load(self) -> list[Group]:
        """Return all groups. Corrupted storage is cleared and yields []."""
        now = time.monotonic()
        if self._cached is not None and now - self._cached_at < self._ttl:
            return [g.model_copy(deep=True) for g in self._cached]

        raw = self._store.get_raw(GROUPS_KEY)
        try:
            groups = _groups_adapter.validate_json(raw) if raw else []
        except (ValidationError, ValueError) as exc:
            logger.error("Corrupted group cache, clearing it: %s", exc)
            self._store.delete(GROUPS_KEY)
            groups = []

        self._cached = groups
        self._cached_at = now
        return [g.model_copy(deep=True) for g in groups]

    def save(self, groups: list[Group]) -> None:
        """Recompute totals and shares, then persist the whole collection."""
        for group in groups:
            group.recompute_totals()
        self._store.set_raw(GROUPS_KEY, _groups_adapter.dump_json(groups).decode("utf-8"))
        self.invalidate()
        logger.debug("Saved %d groups to local cache", len(groups))

    def get(self, group_id: str) -> Group | None:
        """Find a group by local or remote id."""
        for group in self.load():
            if group_id in (group.local_id, group.remote_id):
                return group
        return None

    def find_by_remote_id(self, remote_id: str) -> Group | None:
        for group in self.load():
            if group.remote_id == remote_id:
                return group
        return None

    def upsert(self, group: Group) -> Group:
        """Insert or replace a group, matched by local id."""
        groups = self.load()
        for i, existing in enumerate(groups):
            if existing.local_id == group.local_id:
                groups[i] = group
                break
        else:
            groups.append(group)
        self.save(groups)
        return group

    def update(self, local_id: str, fn: Callable[[Group], None]) -> Group | None:
        """Apply `fn` to a fresh copy of the group and persist it.

        Returns the updated group, or None if it no longer exists locally.
        """
        groups = self.load()
        for group in groups:
            if group.local_id == local_id:
                fn(group)
                self.save(groups)
                return group
        return None

    def remove(self, local_id: str) -> bool:
        groups = self.load()
        remaining = [g for g in groups if g.local_id != local_id]
        if len(remaining) == len(groups):
            return False
        self.save(remaining)
        logger.info("Group %s removed from local cache", local_id)
        return True


class DeleteQueue:
    """FIFO queue of deletions deferred while offline."""

    def __init__(self, store: LocalStore) -> None:
        self._store = store

    def items(self) -> list[QueuedDeletion]:
        raw = self._store.get_raw(DELETE_QUEUE_KEY)
        try:
            return _queue_adapter.validate_json(raw) if raw else []
        except (ValidationError, ValueError) as exc:
            logger.error("Corrupted delete queue, clearing it: %s", exc)
            self._store.delete(DELETE_QUEUE_KEY)
            return []

    def _write(self, items: list[QueuedDeletion]) -> None:
        self._store.set_raw(DELETE_QUEUE_KEY, _queue_adapter.dump_json(items).decode("utf-8"))

    def append(self, entity_type: str, entity_id: str) -> QueuedDeletion:
        items = self.items()
        entry = QueuedDeletion(type=entity_type, id=entity_id, timestamp=time.time())
        items.append(entry)
        self._write(items)
        logger.info("Queued %s deletion %s for later sync", entity_type, entity_id)
        return entry

    def contains(self, entity_type: str, entity_id: str) -> bool:
        return any(i.type == entity_type and i.id == entity_id for i in self.items())

    def remove(self, entity_type: str, entity_id: str) -> int:
        """Drop every queued entry matching type and id. Returns how many."""
        items = self.items()
        remaining = [i for i in items if not (i.type == entity_type and i.id == entity_id)]
        removed = len(items) - len(remaining)
        if removed:
            self._write(remaining)
            logger.debug("Cleaned up delete queue for %s %s", entity_type, entity_id)
        return removed

    def __len__(self) -> int:
        return len(self.items())


class UserStore:
    """Current local identity and the recently-used identities list."""

    def __init__(self, store: LocalStore) -> None:
        self._store = store

    def get_current(self) -> User | None:
        raw = self._store.get_raw(CURRENT_USER_KEY)
        if not raw:
            return None
        try:
            return User.model_validate_json(raw)
        except (ValidationError, ValueError) as exc:
            logger.error("Corrupted current user record, clearing it: %s", exc)
            self._store.delete(CURRENT_USER_KEY)
            return None

    def set_current(self, user: User) -> None:
        self._store.set_raw(CURRENT_USER_KEY, user.model_dump_json())

    def clear_current(self) -> None:
        self._store.delete(CURRENT_USER_KEY)

    def previous_users(self) -> list[PreviousUser]:
        raw = self._store.get_raw(PREVIOUS_USERS_KEY)
        try:
            return _previous_users_adapter.validate_json(raw) if raw else []
        except (ValidationError, ValueError) as exc:
            logger.error("Error loading previous users: %s", exc)
            return []

    def _write_previous(self, users: list[PreviousUser]) -> None:
        self._store.set_raw(
            PREVIOUS_USERS_KEY, _previous_users_adapter.dump_json(users).decode("utf-8"),
        )

    def remember(self, user: User) -> list[PreviousUser]:
        """Move `user` to the front of the list, keeping the 10 most recent."""
        users = [u for u in self.previous_users() if u.id != user.id]
        users.insert(0, PreviousUser(id=user.id, name=user.name))
        users = users[:MAX_PREVIOUS_USERS]
        self._write_previous(users)
        return users

    def forget(self, user_id: str) -> bool:
        users = self.previous_users()
        remaining = [u for u in users if u.id != user_id]
        if len(remaining) == len(users):
            return False
        self._write_previous(remaining)
        return True


class SyncMetaStore:
    """Last successful sync time and the local→remote identity map."""

    def __init__(self, store: LocalStore) -> None:
        self._store = store

    def get_last_sync(self) -> float | None:
        try:
            value = self._store.get_json(LAST_SYNC_KEY)
        except ValueError:
            return None
        return float(value) if value is not None else None

    def set_last_sync(self, timestamp: float) -> None:
        self._store.set_json(LAST_SYNC_KEY, timestamp)

    def get_identity_map(self) -> dict[str, dict[str, str]]:
        try:
            data = self._store.get_json(IDENTITY_MAP_KEY, default={})
        except ValueError:
            logger.error("Corrupted identity map, starting fresh")
            data = {}
        data.setdefault("group", {})
        data.setdefault("expense", {})
        return data

    def set_identity_map(self, mapping: dict[str, dict[str, str]]) -> None:
        self._store.set_json(IDENTITY_MAP_KEY, mapping)
