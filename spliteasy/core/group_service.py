"""
SplitEasy — Group Service.

User-intent mutations on groups and expenses. Every change is written to
the local cache first (so it works offline) and then handed to the Sync
Engine as a debounced sync request.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import TYPE_CHECKING, Any, Callable

from pydantic import ValidationError

from spliteasy.core.sync_engine import NotAuthenticatedError
from spliteasy.data.models import Expense, Group, SyncState, utc_now_iso

if TYPE_CHECKING:
    from spliteasy.core.deletion import DeletionOutcome, DeletionProtocol
    from spliteasy.core.sync_engine import SyncEngine
    from spliteasy.data.db import GroupCache
    from spliteasy.data.models import User

logger = logging.getLogger(__name__)

_EDITABLE_EXPENSE_FIELDS = {"description", "amount", "paid_by", "split_between", "per_person_amount"}

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(number: int) -> str:
    digits = ""
    while number:
        number, rem = divmod(number, 36)
        digits = _BASE36[rem] + digits
    return digits or "0"


def generate_local_id() -> str:
    """Time-ordered local id: base-36 milliseconds plus a random suffix."""
    return _base36(int(time.time() * 1000)) + uuid.uuid4().hex[:10]


def _touch(group: Group) -> None:
    group.updated_at = utc_now_iso()
    group.sync_state = SyncState.LOCAL_ONLY


class GroupService:
    def __init__(
        self,
        groups: GroupCache,
        engine: SyncEngine,
        deletion: DeletionProtocol,
        current_user: Callable[[], User | None],
    ) -> None:
        self._groups = groups
        self._engine = engine
        self._deletion = deletion
        self._current_user = current_user

    def _require_user(self) -> User:
        user = self._current_user()
        if user is None:
            raise NotAuthenticatedError("No current user")
        return user

    def _require_group(self, group_id: str) -> Group:
        group = self._groups.get(group_id)
        if group is None:
            raise KeyError(f"Unknown group: {group_id}")
        return group

    def _mutate(self, group_id: str, fn: Callable[[Group], Any]) -> Group:
        """Apply `fn` to the stored group, persist, and schedule a sync."""
        group = self._require_group(group_id)

        def _apply(g: Group) -> None:
            fn(g)
            _touch(g)

        updated = self._groups.update(group.local_id, _apply)
        self._engine.schedule_sync()
        return updated

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def list_groups(self) -> list[Group]:
        return self._groups.load()

    def get_group(self, group_id: str) -> Group | None:
        return self._groups.get(group_id)

    def create_group(
        self,
        name: str,
        members: list[str] | None = None,
        participants: list[str] | None = None,
    ) -> Group:
        user = self._require_user()
        name = name.strip()
        if not name:
            raise ValueError("Group name is required")

        member_ids = [user.id]
        for member in members or []:
            if member and member not in member_ids:
                member_ids.append(member)

        group = Group(
            local_id=generate_local_id(),
            name=name,
            members=member_ids,
            participants=[p for p in (participants or []) if p],
            created_by=user.id,
        )
        self._groups.upsert(group)
        logger.info("Group '%s' created locally (%s)", name, group.local_id)
        self._engine.schedule_sync()
        return group

    def rename_group(self, group_id: str, name: str) -> Group:
        name = name.strip()
        if not name:
            raise ValueError("Group name is required")

        def _rename(g: Group) -> None:
            g.name = name

        return self._mutate(group_id, _rename)

    def add_member(self, group_id: str, user_id: str) -> Group:
        def _add(g: Group) -> None:
            if user_id not in g.members:
                g.members.append(user_id)

        return self._mutate(group_id, _add)

    def add_participant(self, group_id: str, name: str) -> Group:
        name = name.strip()
        if not name:
            raise ValueError("Participant name is required")

        def _add(g: Group) -> None:
            if name not in g.participants:
                g.participants.append(name)

        return self._mutate(group_id, _add)

    # ------------------------------------------------------------------
    # Expenses
    # ------------------------------------------------------------------

    def add_expense(
        self,
        group_id: str,
        description: str,
        amount: float,
        paid_by: str,
        split_between: list[str] | None = None,
        per_person_amount: float | None = None,
    ) -> Expense:
        """Add an expense. The split defaults to everyone in the group."""
        user = self._require_user()
        group = self._require_group(group_id)

        expense = Expense(
            local_id=generate_local_id(),
            group_ref=group.local_id,
            description=description.strip(),
            amount=amount,
            paid_by=paid_by,
            split_between=list(split_between) if split_between else group.all_people(),
            created_by=user.id,
        )
        if per_person_amount is not None:
            expense.per_person_amount = per_person_amount
            expense.per_person_override = True

        def _append(g: Group) -> None:
            g.expenses.append(expense)

        self._mutate(group.local_id, _append)
        logger.info("Expense '%s' (%.2f) added to '%s'", expense.description, amount, group.name)
        return expense

    def update_expense(self, group_id: str, expense_id: str, **changes: Any) -> Expense:
        unknown = set(changes) - _EDITABLE_EXPENSE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update expense fields: {sorted(unknown)}")

        group = self._require_group(group_id)
        current = group.find_expense(expense_id)
        if current is None:
            raise KeyError(f"Unknown expense: {expense_id}")

        data = current.model_dump()
        data.update(changes)
        if "per_person_amount" in changes:
            data["per_person_override"] = True
        elif "amount" in changes or "split_between" in changes:
            data["per_person_override"] = False
        data["updated_at"] = utc_now_iso()
        data["sync_state"] = SyncState.LOCAL_ONLY
        try:
            updated = Expense.model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"Invalid expense update: {exc}") from exc

        def _replace(g: Group) -> None:
            g.expenses = [updated if e.local_id == current.local_id else e for e in g.expenses]

        self._mutate(group.local_id, _replace)
        return updated

    async def remove_expense(self, group_id: str, expense_id: str) -> bool:
        """Remove an expense locally and delete (or queue) its remote row."""
        group = self._require_group(group_id)
        expense = group.find_expense(expense_id)
        if expense is None:
            raise KeyError(f"Unknown expense: {expense_id}")

        def _drop(g: Group) -> None:
            g.expenses = [e for e in g.expenses if e.local_id != expense.local_id]

        self._mutate(group.local_id, _drop)
        if expense.remote_id and self._engine.configured:
            await self._engine.delete_expense(expense.remote_id)
        logger.info("Expense '%s' removed from '%s'", expense.description, group.name)
        return True

    async def request_group_deletion(self, group_id: str) -> DeletionOutcome:
        return await self._deletion.initiate(self._require_group(group_id))
