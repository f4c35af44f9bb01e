"""
SplitEasy — Schema Adapter.

The remote tables are not guaranteed to follow one naming convention
(`createdby`, `created_by` and `createdBy` all exist in the wild). At
runtime we probe each candidate column name with a zero-row select and
record the first one that exists. Every remote read and write is then
routed through the resulting SchemaMap, falling back to the historical
lowercase name when a field was never probed or never resolved.

Detection runs at most once per adapter: concurrent callers share the
in-flight detection instead of issuing their own probe storm.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import TYPE_CHECKING, Any

from spliteasy.ports.remote_port import RemoteStoreError

if TYPE_CHECKING:
    from spliteasy.ports.remote_port import RemoteStorePort

logger = logging.getLogger(__name__)

USERS = "users"
GROUPS = "groups"
EXPENSES = "expenses"

# Canonical logical fields per table
TABLE_FIELDS: dict[str, list[str]] = {
    USERS: ["id", "name", "createdAt", "updatedAt"],
    GROUPS: [
        "id", "name", "createdBy", "updatedBy", "members", "participants",
        "pendingDeletion", "deletionInitiatedBy", "deletionConfirmedBy",
        "deletionRestoredBy", "deletionInitiatedAt", "createdAt", "updatedAt",
    ],
    EXPENSES: [
        "id", "groupId", "description", "amount", "paidBy", "splitBetween",
        "createdBy", "createdAt", "updatedAt", "perPersonAmount",
    ],
}

# Columns some deployments have and others don't, only written when detected
OPTIONAL_FIELDS: dict[str, list[str]] = {
    GROUPS: ["totalExpenses", "expenseCount"],
}

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def default_column(field: str) -> str:
    """Historical backend naming: all lowercase, no separators."""
    return field.lower()


def candidate_columns(field: str) -> list[str]:
    """Physical names to try for a logical field, most likely first."""
    snake = _CAMEL_BOUNDARY.sub("_", field).lower()
    candidates: list[str] = []
    for name in (field.lower(), snake, field):
        if name not in candidates:
            candidates.append(name)
    return candidates


def _is_optional(table: str, field: str) -> bool:
    return field in OPTIONAL_FIELDS.get(table, [])


class SchemaMap:
    """Translation table `table.logicalField -> physicalColumn`."""

    def __init__(self, columns: dict[str, str] | None = None) -> None:
        self.columns: dict[str, str] = dict(columns or {})

    def resolved(self, table: str, field: str) -> str | None:
        return self.columns.get(f"{table}.{field}")

    def column(self, table: str, field: str) -> str:
        return self.resolved(table, field) or default_column(field)

    def to_remote(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        """Rename a logical record's keys to physical column names."""
        out: dict[str, Any] = {}
        for field, value in record.items():
            if _is_optional(table, field) and self.resolved(table, field) is None:
                continue
            out[self.column(table, field)] = value
        return out

    def read(self, table: str, row: dict[str, Any], field: str, default: Any = None) -> Any:
        """Read a logical field from a physical row."""
        column = self.column(table, field)
        if column in row:
            return row[column]
        for candidate in candidate_columns(field):
            if candidate in row:
                return row[candidate]
        return default

    def __eq__(self, other: object) -> bool:
        return isinstance(other, SchemaMap) and self.columns == other.columns

    def __repr__(self) -> str:
        return f"SchemaMap({self.columns!r})"


class SchemaAdapter:
    """Probes the remote store's real column names once per process."""

    def __init__(self, remote: RemoteStorePort | None) -> None:
        self._remote = remote
        self._map = SchemaMap()
        self._checked = False
        self._inflight: asyncio.Task | None = None

    @property
    def schema_map(self) -> SchemaMap:
        return self._map

    @property
    def checked(self) -> bool:
        return self._checked

    async def detect(self) -> SchemaMap:
        """Detect column names, or return the map from an earlier detection.

        Never raises: on failure the default names stay in effect and a
        later call may try again.
        """
        if self._checked or self._remote is None:
            return self._map

        if self._inflight is None:
            self._inflight = asyncio.create_task(self._run_detection())

        try:
            await asyncio.shield(self._inflight)
        except RemoteStoreError as exc:
            logger.error("Schema detection failed, using default column names: %s", exc)
        return self._map

    async def _run_detection(self) -> None:
        try:
            columns: dict[str, str] = {}
            attempted = 0
            errored = 0

            for table, fields in TABLE_FIELDS.items():
                for field in [*fields, *OPTIONAL_FIELDS.get(table, [])]:
                    candidates = candidate_columns(field)
                    if len(candidates) == 1 and not _is_optional(table, field):
                        continue
                    for candidate in candidates:
                        attempted += 1
                        try:
                            exists = await self._remote.probe(table, candidate)
                        except Exception as exc:
                            errored += 1
                            logger.debug("Probe %s.%s failed: %s", table, candidate, exc)
                            exists = False
                        if exists:
                            columns[f"{table}.{field}"] = candidate
                            break

            if attempted and errored == attempted:
                raise RemoteStoreError("every schema probe failed")

            self._map = SchemaMap(columns)
            self._checked = True
            logger.info(
                "Schema detected: %d columns resolved after %d probes",
                len(columns), attempted,
            )
        finally:
            if not self._checked:
                self._inflight = None
