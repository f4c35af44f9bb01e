"""Remote store ports — abstract interfaces for the backend and its change feed.

Core modules depend on these protocols, never on a specific backend client.
Rows are plain dicts keyed by *physical* column names; translating to
logical field names is the Schema Adapter's job.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol


class RemoteStoreError(Exception):
    """Raised when any remote store operation fails."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class RemoteUnavailableError(RemoteStoreError):
    """The backend could not be reached (transient, retry later)."""


class RemoteStorePort(Protocol):
    """Abstract relational backend used by the sync core."""

    async def fetch_one(self, table: str, column: str, value: str) -> dict | None: ...

    async def fetch_by(self, table: str, column: str, value: str) -> list[dict]: ...

    async def fetch_containing(self, table: str, column: str, value: str) -> list[dict]: ...

    async def insert(self, table: str, record: dict) -> dict: ...

    async def upsert(self, table: str, record: dict, on_conflict: str = "id") -> dict: ...

    async def delete(self, table: str, column: str, value: str) -> list[dict]: ...

    async def probe(self, table: str, column: str) -> bool: ...

    async def ping(self) -> bool: ...

    async def aclose(self) -> None: ...


@dataclass
class ChangeEvent:
    """A row-level change pushed by the backend."""

    table: str
    type: str                       # "INSERT" | "UPDATE" | "DELETE"
    record: dict = field(default_factory=dict)
    old_record: dict = field(default_factory=dict)
    commit_timestamp: str = ""

    @property
    def row(self) -> dict:
        """The most informative row: new values, or old ones for deletes."""
        return self.record or self.old_record


ChangeCallback = Callable[[ChangeEvent], Awaitable[None]]


class RealtimePort(Protocol):
    """Abstract change-data-capture channel."""

    async def subscribe(self, tables: list[str], callback: ChangeCallback) -> Any: ...

    async def unsubscribe(self, handle: Any) -> None: ...
