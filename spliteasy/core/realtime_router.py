"""
SplitEasy — Realtime Event Router.

Listens to row-level change events on the `groups` and `expenses` tables
and keeps the local cache current:

- the group open in the view is re-fetched in full, then the view refreshed
- any other relevant group gets a list-level merge and a list refresh
- deleted groups, and groups the user no longer belongs to, are purged
- a pending deletion the user hasn't voted on prompts the view

Changes the current user authored are ignored: group rows carry `updatedBy`,
other rows are matched against the `updatedAt` this client last pushed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

from spliteasy.core.records import as_list
from spliteasy.core.schema import EXPENSES, GROUPS
from spliteasy.ports.remote_port import RemoteStoreError
from spliteasy.ports.view_port import NullViewObserver

if TYPE_CHECKING:
    from spliteasy.core.schema import SchemaAdapter
    from spliteasy.core.sync_engine import SyncEngine
    from spliteasy.data.db import GroupCache
    from spliteasy.data.models import Group, User
    from spliteasy.ports.remote_port import ChangeEvent, RealtimePort
    from spliteasy.ports.view_port import ViewObserver

logger = logging.getLogger(__name__)


class RealtimeRouter:
    """Single-instance subscription that routes change events into the cache."""

    def __init__(
        self,
        engine: SyncEngine,
        realtime: RealtimePort | None,
        groups: GroupCache,
        schema: SchemaAdapter,
        current_user: Callable[[], User | None],
        observer: ViewObserver | None = None,
    ) -> None:
        self._engine = engine
        self._realtime = realtime
        self._groups = groups
        self._schema = schema
        self._current_user = current_user
        self._observer = observer or NullViewObserver()
        self._handle: Any = None
        self._starting = False

    @property
    def subscribed(self) -> bool:
        return self._handle is not None

    # ------------------------------------------------------------------
    # Subscription lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Subscribe to group and expense changes. No-op if already subscribed."""
        if self._handle is not None or self._starting:
            logger.debug("Realtime already subscribed")
            return True
        if self._realtime is None:
            logger.info("Realtime not configured, skipping subscription")
            return False
        if self._current_user() is None:
            logger.debug("No current user, skipping realtime subscription")
            return False

        self._starting = True
        try:
            await self._schema.detect()
            self._handle = await self._realtime.subscribe([GROUPS, EXPENSES], self.handle_event)
        except Exception as exc:
            logger.error("Failed to set up realtime subscription: %s", exc)
            self._handle = None
            return False
        finally:
            self._starting = False

        logger.info("Realtime subscription active")
        return True

    async def stop(self) -> None:
        """Tear down the subscription and clear the handle."""
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        try:
            await self._realtime.unsubscribe(handle)
        except Exception as exc:
            logger.warning("Error while unsubscribing from realtime: %s", exc)
        logger.info("Realtime subscription stopped")

    async def on_connectivity(self, online: bool) -> None:
        if online:
            await self.start()
        else:
            await self.stop()

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    async def handle_event(self, event: ChangeEvent) -> None:
        user = self._current_user()
        if user is None:
            return
        try:
            if event.table == GROUPS:
                await self._on_group_event(event, user)
            elif event.table == EXPENSES:
                await self._on_expense_event(event)
            else:
                logger.debug("Ignoring change on table %s", event.table)
        except RemoteStoreError as exc:
            logger.warning("Failed to apply %s change on %s: %s", event.type, event.table, exc)

    def _is_open(self, group: Group | None, remote_id: str) -> bool:
        open_id = self._observer.open_group_id()
        if not open_id:
            return False
        if open_id == remote_id:
            return True
        return group is not None and open_id == group.local_id

    def _is_own_group_change(self, row: dict[str, Any], remote_id: str, user: User) -> bool:
        author = self._schema.schema_map.read(GROUPS, row, "updatedBy")
        if author:
            return str(author) == user.id
        stamp = self._schema.schema_map.read(GROUPS, row, "updatedAt")
        return self._engine.context.is_echo(GROUPS, remote_id, stamp)

    def _purge(self, group: Group) -> None:
        self._engine.remove_local_group(group)
        self._observer.refresh_group_list()

    async def _on_group_event(self, event: ChangeEvent, user: User) -> None:
        smap = self._schema.schema_map
        row = event.row
        remote_id = smap.read(GROUPS, row, "id")
        if not remote_id:
            return
        remote_id = str(remote_id)
        if self._is_own_group_change(row, remote_id, user):
            logger.debug("Ignoring echo of own change to group %s", remote_id)
            return

        cached = self._groups.get(remote_id)

        if event.type == "DELETE":
            if cached is not None:
                logger.info("Group %s deleted remotely", remote_id)
                self._purge(cached)
            return

        members = as_list(smap.read(GROUPS, row, "members"))
        is_member = user.id in members or smap.read(GROUPS, row, "createdBy") == user.id
        if not is_member:
            if cached is not None:
                logger.info("No longer a member of group %s, removing it", remote_id)
                self._purge(cached)
            return

        if self._is_open(cached, remote_id):
            group = await self._engine.pull_group(remote_id)
            if group is None:
                if cached is not None:
                    self._purge(cached)
                return
            self._observer.refresh_open_group()
        else:
            group = self._engine.apply_group_row(row)
            self._observer.refresh_group_list()

        if (
            group is not None
            and group.deletion_state.pending
            and user.id not in group.deletion_state.confirmed_by
        ):
            self._observer.prompt_deletion(group)

    async def _on_expense_event(self, event: ChangeEvent) -> None:
        smap = self._schema.schema_map
        row = event.row
        expense_id = smap.read(EXPENSES, row, "id")
        stamp = smap.read(EXPENSES, row, "updatedAt")
        if expense_id and self._engine.context.is_echo(EXPENSES, str(expense_id), stamp):
            logger.debug("Ignoring echo of own change to expense %s", expense_id)
            return

        group_ref = smap.read(EXPENSES, row, "groupId")
        if group_ref:
            cached = self._groups.get(str(group_ref))
        else:
            # Delete events may carry only the primary key
            cached = self._find_group_of_expense(str(expense_id)) if expense_id else None
        if cached is None:
            return

        remote_id = cached.remote_id or str(group_ref)
        if self._is_open(cached, remote_id):
            group = await self._engine.pull_group(remote_id)
            if group is None:
                self._purge(cached)
                return
            self._observer.refresh_open_group()
        else:
            self._observer.refresh_group_list()

    def _find_group_of_expense(self, expense_id: str) -> Group | None:
        for group in self._groups.load():
            if group.find_expense(expense_id) is not None:
                return group
        return None
