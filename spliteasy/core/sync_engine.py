"""
SplitEasy — Sync Engine.

Reconciles the local-first cache with the remote store:

- push: upsert the current user, then every group followed by its expenses
- pull: re-fetch a group (with expenses) or the group list into the cache
- delete: remote delete when online, a persisted FIFO queue when offline

Triggers: every local mutation schedules a debounced full sync, coming
back online syncs right away, and a periodic timer catches anything stale.
All state lives in the engine's SyncContext, never in module globals.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from spliteasy.core.context import SyncContext
from spliteasy.core.records import (
    build_expense_record,
    build_group_record,
    build_user_record,
    group_from_row,
)
from spliteasy.core.schema import EXPENSES, GROUPS, USERS
from spliteasy.data.models import SyncState
from spliteasy.ports.remote_port import RemoteStoreError, RemoteUnavailableError
from spliteasy.ports.view_port import NullViewObserver

if TYPE_CHECKING:
    from spliteasy.core.identity import IdentityResolver
    from spliteasy.core.schema import SchemaAdapter
    from spliteasy.data.db import DeleteQueue, GroupCache, SyncMetaStore
    from spliteasy.data.models import Expense, Group, User
    from spliteasy.ports.notification_port import NotificationPort
    from spliteasy.ports.remote_port import RemoteStorePort
    from spliteasy.ports.view_port import ViewObserver

logger = logging.getLogger(__name__)


class SyncError(Exception):
    """Raised when a sync operation cannot even be attempted."""


class NotAuthenticatedError(SyncError):
    """No current user."""


class ClientNotConfiguredError(SyncError):
    """No remote store configured."""


@dataclass
class SyncReport:
    """Outcome of one full sync pass."""

    started: bool = True
    deletions_processed: int = 0
    groups_synced: int = 0
    expenses_synced: int = 0
    failures: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.started and not self.failures


class SyncEngine:
    """Pushes local mutations, pulls remote state and replays deletions."""

    def __init__(
        self,
        remote: RemoteStorePort | None,
        groups: GroupCache,
        queue: DeleteQueue,
        meta: SyncMetaStore,
        schema: SchemaAdapter,
        identity: IdentityResolver,
        current_user: Callable[[], User | None],
        notifier: NotificationPort | None = None,
        observer: ViewObserver | None = None,
        context: SyncContext | None = None,
        debounce_seconds: float | None = None,
        pacing_seconds: float | None = None,
        interval_seconds: float | None = None,
        reconnect_delay_seconds: float | None = None,
    ) -> None:
        from spliteasy.config import settings

        self._remote = remote
        self._groups = groups
        self._queue = queue
        self._meta = meta
        self._schema = schema
        self._identity = identity
        self._current_user = current_user
        self._notifier = notifier
        self._observer = observer or NullViewObserver()

        self._debounce = settings.SYNC_DEBOUNCE_SECONDS if debounce_seconds is None else debounce_seconds
        self._pacing = settings.SYNC_PACING_SECONDS if pacing_seconds is None else pacing_seconds
        self._interval = settings.SYNC_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        self._reconnect_delay = (
            settings.RECONNECT_DELAY_SECONDS
            if reconnect_delay_seconds is None else reconnect_delay_seconds
        )

        self.context = context or SyncContext(echo_window=settings.ECHO_WINDOW_SECONDS)
        if self.context.last_sync is None:
            self.context.last_sync = meta.get_last_sync()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def configured(self) -> bool:
        return self._remote is not None

    def _require(self) -> User:
        """Fail fast before any network call when preconditions are missing."""
        if self._remote is None:
            raise ClientNotConfiguredError("Supabase client not available")
        user = self._current_user()
        if user is None:
            raise NotAuthenticatedError("No current user, log in before syncing")
        return user

    async def notify(self, text: str, level: str = "success") -> None:
        """Tell the user something. A failing or missing sink only logs."""
        if self._notifier is None:
            logger.info("[%s] %s", level.upper(), text)
            return
        try:
            await self._notifier.send_message(text, level)
        except Exception as exc:
            logger.warning("Notification failed (%s): %s", text, exc)

    def _mark_group(self, local_id: str, state: SyncState, snapshot_updated_at: str | None) -> None:
        """Persist a group's sync state; a group edited since the snapshot stays local_only."""
        def _apply(g: Group) -> None:
            if state == SyncState.SYNCED and g.updated_at != snapshot_updated_at:
                g.sync_state = SyncState.LOCAL_ONLY
            else:
                g.sync_state = state

        self._groups.update(local_id, _apply)

    def _mark_expense(
        self, group_ref: str, expense_local_id: str,
        state: SyncState, snapshot_updated_at: str | None,
    ) -> None:
        parent = self._groups.get(group_ref)
        if parent is None:
            return

        def _apply(g: Group) -> None:
            expense = g.find_expense(expense_local_id)
            if expense is None:
                return
            if state == SyncState.SYNCED and expense.updated_at != snapshot_updated_at:
                expense.sync_state = SyncState.LOCAL_ONLY
            else:
                expense.sync_state = state

        self._groups.update(parent.local_id, _apply)

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def sync_user(self, user: User) -> dict | None:
        """Upsert the user profile. Best-effort: failures are logged only."""
        if self.context.is_offline or self._remote is None:
            return None
        try:
            smap = await self._schema.detect()
            row = await self._remote.upsert(USERS, build_user_record(user, smap))
            logger.info("User %s synced", user.id)
            return row
        except Exception as exc:
            logger.error("Failed to sync user %s: %s", user.id, exc)
            return None

    async def sync_group(self, group: Group) -> dict | None:
        """Upsert one group and return the remote row.

        Returns None when offline. Remote failures propagate: callers need
        the confirmed remote id before syncing child expenses.
        """
        user = self._require()
        if self.context.is_offline:
            return None

        remote_id = self._identity.resolve_group_remote_id(group)
        smap = await self._schema.detect()
        record = build_group_record(group, remote_id, user.id, smap)
        snapshot_updated_at = group.updated_at

        group.sync_state = SyncState.SYNCING
        self.context.remember_push(GROUPS, remote_id, smap.read(GROUPS, record, "updatedAt"))
        try:
            row = await self._remote.upsert(GROUPS, record)
        except RemoteStoreError as exc:
            logger.error("Failed to sync group '%s' (%s): %s", group.name, remote_id, exc)
            group.sync_state = SyncState.LOCAL_ONLY
            self._mark_group(group.local_id, SyncState.LOCAL_ONLY, None)
            raise

        group.sync_state = SyncState.SYNCED
        self._mark_group(group.local_id, SyncState.SYNCED, snapshot_updated_at)
        logger.info("Group '%s' synced as %s", group.name, remote_id)
        return row

    async def sync_expense(self, expense: Expense, group_local_ref: str) -> dict | None:
        """Upsert one expense under its parent group's remote id.

        Returns None when offline or when the parent's remote id can't be
        resolved (logged with the full record; siblings are unaffected).
        """
        user = self._require()
        if self.context.is_offline:
            return None

        group_remote_id = self._identity.group_remote_id_for(group_local_ref)
        if not group_remote_id:
            logger.error(
                "sync_expense: no remote id for group %r, skipping expense %s: %s",
                group_local_ref, expense.local_id, expense.model_dump(),
            )
            return None

        remote_id = self._identity.resolve_expense_remote_id(expense)
        smap = await self._schema.detect()
        parent = self._groups.get(group_local_ref)
        record = build_expense_record(
            expense, remote_id, group_remote_id, user.id, smap,
            fallback_split=parent.all_people() if parent else None,
        )
        snapshot_updated_at = expense.updated_at

        self.context.remember_push(EXPENSES, remote_id, smap.read(EXPENSES, record, "updatedAt"))
        try:
            row = await self._remote.upsert(EXPENSES, record)
        except RemoteStoreError as exc:
            logger.error("Failed to sync expense %s: %s (record=%s)", expense.local_id, exc, record)
            self._mark_expense(group_local_ref, expense.local_id, SyncState.LOCAL_ONLY, None)
            raise

        expense.sync_state = SyncState.SYNCED
        self._mark_expense(group_local_ref, expense.local_id, SyncState.SYNCED, snapshot_updated_at)
        logger.debug("Expense '%s' synced as %s", expense.description, remote_id)
        return row

    async def sync_all(self) -> SyncReport:
        """Full push: queued deletions, user, then each group and its expenses.

        A second call while one is running is a silent no-op. Partial
        progress is never rolled back.
        """
        ctx = self.context
        if ctx.is_syncing or ctx.is_offline or self._remote is None:
            return SyncReport(started=False)
        user = self._current_user()
        if user is None:
            return SyncReport(started=False)

        ctx.is_syncing = True
        report = SyncReport()
        logger.info("Starting full data sync for %s", user.id)
        try:
            report.deletions_processed = await self.process_delete_queue()
            await self.sync_user(user)

            groups = self._groups.load()
            for index, group in enumerate(groups):
                if index:
                    await asyncio.sleep(self._pacing)
                if ctx.is_offline:
                    report.failures.append("went offline during sync")
                    break

                # Removed locally while an earlier push was in flight
                current = self._groups.get(group.local_id)
                if current is None:
                    logger.info("Group %s removed during sync, skipping", group.local_id)
                    continue

                try:
                    row = await self.sync_group(current)
                except RemoteStoreError as exc:
                    report.failures.append(f"group {group.local_id}: {exc}")
                    continue
                if row is None:
                    continue
                report.groups_synced += 1

                for snapshot in current.expenses:
                    fresh = self._groups.get(group.local_id)
                    if fresh is None:
                        break
                    expense = fresh.find_expense(snapshot.local_id)
                    if expense is None:
                        logger.info("Expense %s removed during sync, skipping", snapshot.local_id)
                        continue
                    try:
                        synced = await self.sync_expense(expense, group.local_id)
                    except RemoteStoreError as exc:
                        report.failures.append(f"expense {expense.local_id}: {exc}")
                        continue
                    if synced is None:
                        report.failures.append(f"expense {expense.local_id}: not synced")
                    else:
                        report.expenses_synced += 1

            if report.failures:
                logger.warning("Sync finished with %d failures", len(report.failures))
                await self.notify("Sync failed, will retry later", "error")
            else:
                ctx.last_sync = time.time()
                self._meta.set_last_sync(ctx.last_sync)
                logger.info(
                    "Full sync finished: %d groups, %d expenses",
                    report.groups_synced, report.expenses_synced,
                )
                await self.notify("All data synced to cloud successfully!")
        except Exception as exc:
            logger.error("Complete data sync failed: %s", exc)
            report.failures.append(str(exc))
            await self.notify("Sync failed, will retry later", "error")
        finally:
            ctx.is_syncing = False
        return report

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_expense(self, expense_id: str) -> bool:
        """Delete an expense remotely, or queue it while offline.

        Returns True if the remote delete happened now, False if queued.
        """
        return await self._delete("expense", expense_id)

    async def delete_group(self, group_id: str) -> bool:
        """Delete a group and its expenses remotely, or queue it while offline."""
        return await self._delete("group", group_id)

    async def _delete(self, entity_type: str, entity_id: str) -> bool:
        if not entity_id:
            raise ValueError(f"{entity_type.capitalize()} ID is required for deletion")

        if self.context.is_offline:
            self._queue.append(entity_type, entity_id)
            return False

        if self._remote is None:
            raise ClientNotConfiguredError("Supabase client not available")

        try:
            await self._remote_delete(entity_type, entity_id)
        except RemoteUnavailableError as exc:
            logger.warning(
                "Backend unreachable, queuing %s deletion %s: %s", entity_type, entity_id, exc,
            )
            if not self._queue.contains(entity_type, entity_id):
                self._queue.append(entity_type, entity_id)
            return False

        self._queue.remove(entity_type, entity_id)
        return True

    async def _remote_delete(self, entity_type: str, entity_id: str) -> None:
        smap = await self._schema.detect()

        if entity_type == "expense":
            self.context.remember_push(EXPENSES, entity_id)
            rows = await self._remote.delete(EXPENSES, smap.column(EXPENSES, "id"), entity_id)
            if not rows:
                logger.info("No expense rows deleted for %s, already gone", entity_id)
            else:
                logger.info("Expense %s deleted from backend", entity_id)
            return

        if entity_type == "group":
            self.context.remember_push(GROUPS, entity_id)
            # Expenses first (foreign key constraint)
            try:
                await self._remote.delete(EXPENSES, smap.column(EXPENSES, "groupId"), entity_id)
            except RemoteUnavailableError:
                raise
            except RemoteStoreError as exc:
                logger.warning("Failed to delete expenses of group %s: %s", entity_id, exc)
            rows = await self._remote.delete(GROUPS, smap.column(GROUPS, "id"), entity_id)
            if not rows:
                logger.info("No group rows deleted for %s, already gone", entity_id)
            else:
                logger.info("Group %s deleted from backend", entity_id)
            return

        raise ValueError(f"Unknown deletion type: {entity_type!r}")

    async def process_delete_queue(self) -> int:
        """Replay queued deletions in FIFO order. Returns how many succeeded.

        An entry is removed only once its delete succeeded; failures stay
        queued for the next attempt.
        """
        if self.context.is_offline or self._remote is None:
            return 0

        items = self._queue.items()
        if not items:
            return 0

        logger.info("Processing %d queued deletions", len(items))
        processed = 0
        for item in items:
            try:
                await self._remote_delete(item.type, item.id)
            except RemoteStoreError as exc:
                logger.warning("Failed to process queued deletion %s %s: %s", item.type, item.id, exc)
                continue
            self._queue.remove(item.type, item.id)
            processed += 1
        return processed

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def pull_group(self, remote_id: str) -> Group | None:
        """Re-fetch a group and its expenses, overwriting the local entry.

        Returns None if the group no longer exists remotely. Raises
        RemoteUnavailableError when offline, so "absent" stays unambiguous.
        """
        if self._remote is None:
            raise ClientNotConfiguredError("Supabase client not available")
        if self.context.is_offline:
            raise RemoteUnavailableError("offline")

        smap = await self._schema.detect()
        row = await self._remote.fetch_one(GROUPS, smap.column(GROUPS, "id"), remote_id)
        if row is None:
            return None
        expense_rows = await self._remote.fetch_by(
            EXPENSES, smap.column(EXPENSES, "groupId"), remote_id,
        )

        existing = self._groups.get(remote_id)
        group = group_from_row(row, smap, existing, expense_rows)
        self._groups.upsert(group)
        logger.info("Pulled group '%s' with %d expenses", group.name, len(group.expenses))
        return group

    def apply_group_row(self, row: dict) -> Group | None:
        """Merge group-level fields from a remote row, keeping local expenses.

        A group with unsynced local edits is left alone; the next push wins.
        """
        smap = self._schema.schema_map
        remote_id = smap.read(GROUPS, row, "id")
        if not remote_id:
            return None
        existing = self._groups.get(str(remote_id))
        if existing is not None and existing.sync_state == SyncState.LOCAL_ONLY:
            logger.debug("Group %s has unsynced local edits, not merging", existing.local_id)
            return existing
        group = group_from_row(row, smap, existing)
        self._groups.upsert(group)
        return group

    async def pull_group_list(self) -> list[Group]:
        """Fetch every group the current user belongs to and merge it locally."""
        user = self._require()
        if self.context.is_offline:
            return []
        smap = await self._schema.detect()
        rows = await self._remote.fetch_containing(GROUPS, smap.column(GROUPS, "members"), user.id)
        merged = [g for g in (self.apply_group_row(row) for row in rows) if g is not None]
        logger.info("Group list refreshed: %d remote groups", len(merged))
        return merged

    def remove_local_group(self, group: Group) -> bool:
        """Purge a group from the local cache (no remote call)."""
        self._identity.forget_group(group)
        return self._groups.remove(group.local_id)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def schedule_sync(self) -> None:
        """Debounce a full sync after local mutations."""
        ctx = self.context
        if ctx.is_offline or self._remote is None or self._current_user() is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; sync deferred to the next trigger")
            return
        ctx.cancel_pending()
        ctx.pending_sync = loop.create_task(self._debounced_sync())

    async def _debounced_sync(self) -> None:
        await asyncio.sleep(self._debounce)
        # Detach first so a new schedule_sync() can't cancel a running pass
        self.context.pending_sync = None
        logger.debug("Auto-sync triggered")
        await self.sync_all()

    async def set_online(self, online: bool) -> None:
        """Connectivity signal: going offline pauses sync, reconnecting syncs."""
        ctx = self.context
        was_offline = ctx.is_offline
        ctx.is_offline = not online

        if online and was_offline:
            logger.info("Back online, resuming sync")
            await self.notify("Back online - data sync resumed")
            if self._reconnect_delay:
                await asyncio.sleep(self._reconnect_delay)
            await self.sync_all()
        elif not online and not was_offline:
            logger.info("Gone offline, sync paused")
            ctx.cancel_pending()
            await self.notify("You are offline - changes will sync when reconnected", "info")

    def sync_due(self, now: float | None = None) -> bool:
        last = self.context.last_sync
        if last is None:
            return True
        return (now if now is not None else time.time()) - last >= self._interval

    async def run_periodic(self) -> None:
        """Force a sync whenever the last successful one is too old."""
        while True:
            await asyncio.sleep(self._interval)
            if self.sync_due():
                logger.info("Periodic sync: last sync is stale")
                await self.sync_all()

    async def force_sync(self) -> SyncReport:
        """User-requested sync, explaining via notifications why it can't run."""
        ctx = self.context
        if ctx.is_syncing:
            await self.notify("Sync already in progress...", "info")
            return SyncReport(started=False)
        if ctx.is_offline or self._remote is None:
            await self.notify("Cannot sync - you are offline", "error")
            return SyncReport(started=False)
        if self._current_user() is None:
            await self.notify("Please log in to sync data", "error")
            return SyncReport(started=False)
        await self.notify("Starting sync...", "info")
        return await self.sync_all()

    def status(self) -> dict:
        ctx = self.context
        user = self._current_user()
        return {
            "syncing": ctx.is_syncing,
            "online": ctx.is_online,
            "configured": self._remote is not None,
            "user": user.id if user else None,
            "can_sync": (
                ctx.is_online and self._remote is not None
                and user is not None and not ctx.is_syncing
            ),
            "last_sync": ctx.last_sync,
            "queued_deletions": len(self._queue),
        }
