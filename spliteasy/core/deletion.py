"""
SplitEasy — Collaborative Deletion Protocol.

Deleting a shared group needs every member's consent, while a single
restore vote cancels it for everyone:

    Active --initiate--> PendingDeletion --all confirmed--> Deleted
                               |
                               +--restore--> Active

A confirming member other than the creator leaves the group immediately.
When only the creator is left the group is deleted.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Callable

from spliteasy.core.sync_engine import NotAuthenticatedError, SyncError
from spliteasy.data.models import DeletionState, SyncState, utc_now_iso
from spliteasy.ports.view_port import NullViewObserver

if TYPE_CHECKING:
    from spliteasy.core.sync_engine import SyncEngine
    from spliteasy.data.db import GroupCache
    from spliteasy.data.models import Group, User
    from spliteasy.ports.view_port import ViewObserver

logger = logging.getLogger(__name__)


class DeletionError(SyncError):
    """A deletion transition isn't allowed in the group's current state."""


class DeletionOutcome(Enum):
    PENDING = "pending"                  # waiting for other members
    DELETED = "deleted"                  # physically deleted (or queued while offline)
    LEFT = "left"                        # the current user left the group
    RESTORED = "restored"
    ALREADY_DELETED = "already_deleted"  # someone else deleted it first


class DeletionProtocol:
    def __init__(
        self,
        engine: SyncEngine,
        groups: GroupCache,
        current_user: Callable[[], User | None],
        observer: ViewObserver | None = None,
    ) -> None:
        self._engine = engine
        self._groups = groups
        self._current_user = current_user
        self._observer = observer or NullViewObserver()

    def _require_user(self) -> User:
        user = self._current_user()
        if user is None:
            raise NotAuthenticatedError("No current user")
        return user

    def _can_reach_remote(self) -> bool:
        return self._engine.configured and self._engine.context.is_online

    async def _refresh(self, group: Group) -> Group | None:
        """Latest state of the group, or None if it's already gone remotely.

        Only synced groups are re-fetched; a not-found answer purges the
        local copy. Real remote faults propagate.
        """
        if self._can_reach_remote() and group.remote_id and group.sync_state == SyncState.SYNCED:
            fresh = await self._engine.pull_group(group.remote_id)
            if fresh is None:
                logger.info("Group '%s' was already deleted remotely", group.name)
                self._engine.remove_local_group(group)
                self._observer.refresh_group_list()
                return None
            return fresh
        return self._groups.get(group.local_id) or group

    async def _persist(self, group: Group) -> None:
        group.updated_at = utc_now_iso()
        group.sync_state = SyncState.LOCAL_ONLY
        self._groups.upsert(group)
        if self._can_reach_remote():
            await self._engine.sync_group(group)

    async def _physical_delete(self, group: Group) -> DeletionOutcome:
        if group.remote_id and self._engine.configured:
            await self._engine.delete_group(group.remote_id)
        self._engine.remove_local_group(group)
        self._observer.refresh_group_list()
        logger.info("Group '%s' deleted", group.name)
        await self._engine.notify(f"Group '{group.name}' deleted")
        return DeletionOutcome.DELETED

    async def initiate(self, group: Group) -> DeletionOutcome:
        """Start a deletion vote, or delete right away if the creator is alone."""
        user = self._require_user()
        group = await self._refresh(group)
        if group is None:
            return DeletionOutcome.ALREADY_DELETED

        if user.id not in group.effective_members():
            raise DeletionError(f"{user.id} is not a member of '{group.name}'")
        if group.deletion_state.pending:
            logger.info("Deletion of '%s' already pending", group.name)
            return DeletionOutcome.PENDING

        if group.effective_members() == {group.created_by}:
            return await self._physical_delete(group)

        group.deletion_state = DeletionState(
            pending=True,
            initiated_by=user.id,
            confirmed_by=[user.id],
            restored_by=[],
            initiated_at=utc_now_iso(),
        )
        await self._persist(group)
        logger.info("Deletion of '%s' initiated by %s", group.name, user.id)
        await self._engine.notify(
            f"Deletion requested for '{group.name}'. Waiting for other members.", "info",
        )
        return DeletionOutcome.PENDING

    async def confirm(self, group: Group, user_id: str) -> DeletionOutcome:
        """Record `user_id`'s consent; delete once every member has confirmed."""
        current = self._require_user()
        group = await self._refresh(group)
        if group is None:
            return DeletionOutcome.ALREADY_DELETED

        state = group.deletion_state
        if not state.pending:
            raise DeletionError(f"No deletion pending for '{group.name}'")
        if user_id not in group.effective_members():
            raise DeletionError(f"{user_id} is not a member of '{group.name}'")

        if user_id not in state.confirmed_by:
            state.confirmed_by.append(user_id)

        if group.effective_members() <= set(state.confirmed_by):
            return await self._physical_delete(group)

        # The creator already confirmed at initiation and never leaves
        if user_id == group.created_by:
            await self._persist(group)
            return DeletionOutcome.PENDING

        group.members = [m for m in group.members if m != user_id]
        if not set(group.members) - {group.created_by}:
            return await self._physical_delete(group)

        # Leaving purges the local copy, so the change must reach the remote now
        leaving_self = user_id == current.id
        if leaving_self and not self._can_reach_remote():
            raise DeletionError("Cannot leave a group while offline")

        await self._persist(group)
        logger.info("%s confirmed deletion of '%s' and left it", user_id, group.name)

        if leaving_self:
            self._engine.remove_local_group(group)
            self._observer.refresh_group_list()
            return DeletionOutcome.LEFT
        return DeletionOutcome.PENDING

    async def restore(self, group: Group, user_id: str) -> DeletionOutcome:
        """Cancel a pending deletion for everyone."""
        self._require_user()
        group = await self._refresh(group)
        if group is None:
            return DeletionOutcome.ALREADY_DELETED

        state = group.deletion_state
        if not state.pending:
            raise DeletionError(f"No deletion pending for '{group.name}'")
        if user_id not in group.effective_members():
            raise DeletionError(f"{user_id} is not a member of '{group.name}'")

        restored_by = list(state.restored_by)
        if user_id not in restored_by:
            restored_by.append(user_id)
        group.deletion_state = DeletionState(pending=False, restored_by=restored_by)

        await self._persist(group)
        logger.info("Deletion of '%s' cancelled by %s", group.name, user_id)
        await self._engine.notify(f"Group '{group.name}' restored")
        return DeletionOutcome.RESTORED
