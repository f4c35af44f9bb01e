"""
SplitEasy — Identity Resolver.

Local-first creation gives groups and expenses simple local ids, while the
backend requires UUID primary keys. The resolver allocates the UUID lazily,
on the first sync attempt, and keeps both ids associated for the life of
the entity: once assigned, a remote id is written back to the entity, the
persisted identity map and the local cache, so retries reuse it.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from spliteasy.data.db import GroupCache, SyncMetaStore
    from spliteasy.data.models import Expense, Group

logger = logging.getLogger(__name__)

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_uuid(value: str | None) -> bool:
    """True if `value` has the shape of a UUID (i.e. it originated remotely)."""
    return bool(value) and _UUID_RE.match(value) is not None


def new_uuid() -> str:
    """A fresh version-4 UUID from the OS CSPRNG."""
    return str(uuid.uuid4())


class IdentityResolver:
    """Maps local ids to remote UUIDs for groups and expenses."""

    def __init__(self, groups: GroupCache, meta: SyncMetaStore) -> None:
        self._groups = groups
        self._meta = meta

    def _mapped(self, scope: str, local_id: str) -> str | None:
        return self._meta.get_identity_map()[scope].get(local_id)

    def _record(self, scope: str, local_id: str, remote_id: str) -> None:
        mapping = self._meta.get_identity_map()
        if mapping[scope].get(local_id) == remote_id:
            return
        mapping[scope][local_id] = remote_id
        self._meta.set_identity_map(mapping)

    def resolve_group_remote_id(self, group: Group) -> str:
        """Return the group's remote id, allocating one if needed."""
        if group.remote_id:
            self._record("group", group.local_id, group.remote_id)
            return group.remote_id

        remote_id = self._mapped("group", group.local_id)
        if remote_id is None:
            remote_id = group.local_id if is_uuid(group.local_id) else new_uuid()
            logger.info("Group %s assigned remote id %s", group.local_id, remote_id)

        group.remote_id = remote_id
        self._record("group", group.local_id, remote_id)

        def _assign(g: Group) -> None:
            if not g.remote_id:
                g.remote_id = remote_id

        self._groups.update(group.local_id, _assign)
        return remote_id

    def resolve_expense_remote_id(self, expense: Expense) -> str:
        """Return the expense's remote id, allocating one if needed."""
        if expense.remote_id:
            self._record("expense", expense.local_id, expense.remote_id)
            return expense.remote_id

        remote_id = self._mapped("expense", expense.local_id)
        if remote_id is None:
            remote_id = expense.local_id if is_uuid(expense.local_id) else new_uuid()
            logger.info("Expense %s assigned remote id %s", expense.local_id, remote_id)

        expense.remote_id = remote_id
        self._record("expense", expense.local_id, remote_id)

        parent = self._groups.get(expense.group_ref)
        if parent is not None:
            def _assign(g: Group) -> None:
                local = g.find_expense(expense.local_id)
                if local is not None and not local.remote_id:
                    local.remote_id = remote_id

            self._groups.update(parent.local_id, _assign)
        return remote_id

    def group_remote_id_for(self, group_ref: str) -> str | None:
        """Resolve a parent group reference to its remote id.

        Tries the identity map, then a UUID-shaped reference itself, then
        a reverse lookup in the local cache.
        """
        mapped = self._mapped("group", group_ref)
        if mapped:
            return mapped
        if is_uuid(group_ref):
            return group_ref
        group = self._groups.get(group_ref)
        if group is not None and group.remote_id:
            return group.remote_id
        return None

    def forget_group(self, group: Group) -> None:
        """Drop identity map entries for a group and its expenses."""
        mapping = self._meta.get_identity_map()
        mapping["group"].pop(group.local_id, None)
        for expense in group.expenses:
            mapping["expense"].pop(expense.local_id, None)
        self._meta.set_identity_map(mapping)
