"""
SplitEasy — Remote record translation.

Builds remote rows from local models (and back) through the SchemaMap, so
no other module needs to know the physical column names.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import ValidationError

from spliteasy.core.schema import EXPENSES, GROUPS, USERS, SchemaMap
from spliteasy.data.models import (
    DeletionState,
    Expense,
    Group,
    SyncState,
    User,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

# A remote per-person amount further than this from the even split is
# treated as an explicit override
_SHARE_TOLERANCE = 0.005


def as_list(value: Any) -> list[str]:
    """Normalize an array column (list, JSON text, scalar or NULL)."""
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v) for v in value]
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except ValueError:
            return [value] if value else []
        if isinstance(decoded, list):
            return [str(v) for v in decoded]
        return [str(decoded)]
    return [str(value)]


# ---------------------------------------------------------------------------
# Local → remote
# ---------------------------------------------------------------------------


def build_user_record(user: User, smap: SchemaMap) -> dict:
    return smap.to_remote(USERS, {
        "id": user.id,
        "name": user.name,
        "createdAt": user.created_at or utc_now_iso(),
        "updatedAt": utc_now_iso(),
    })


def build_group_record(
    group: Group, remote_id: str, acting_user_id: str, smap: SchemaMap,
) -> dict:
    state = group.deletion_state
    return smap.to_remote(GROUPS, {
        "id": remote_id,
        "name": group.name,
        "createdBy": group.created_by or acting_user_id,
        "updatedBy": acting_user_id,
        "members": list(group.members) or [acting_user_id],
        "participants": list(group.participants),
        "pendingDeletion": state.pending,
        "deletionInitiatedBy": state.initiated_by,
        "deletionConfirmedBy": list(state.confirmed_by),
        "deletionRestoredBy": list(state.restored_by),
        "deletionInitiatedAt": state.initiated_at,
        "createdAt": group.created_at or utc_now_iso(),
        "updatedAt": utc_now_iso(),
        "totalExpenses": group.total_expenses,
        "expenseCount": len(group.expenses),
    })


def build_expense_record(
    expense: Expense,
    remote_id: str,
    group_remote_id: str,
    acting_user_id: str,
    smap: SchemaMap,
    fallback_split: list[str] | None = None,
) -> dict:
    split = list(expense.split_between) or list(fallback_split or [])
    per_person = expense.per_person_amount or expense.amount / max(1, len(split))
    return smap.to_remote(EXPENSES, {
        "id": remote_id,
        "groupId": group_remote_id,
        "description": expense.description,
        "amount": float(expense.amount),
        "paidBy": expense.paid_by or "unknown",
        "splitBetween": split,
        "createdBy": expense.created_by or acting_user_id,
        "createdAt": expense.created_at or utc_now_iso(),
        "updatedAt": utc_now_iso(),
        "perPersonAmount": per_person,
    })


# ---------------------------------------------------------------------------
# Remote → local
# ---------------------------------------------------------------------------


def user_from_row(row: dict, smap: SchemaMap) -> User:
    return User(
        id=str(smap.read(USERS, row, "id")),
        name=smap.read(USERS, row, "name") or "",
        created_at=smap.read(USERS, row, "createdAt") or utc_now_iso(),
    )


def expense_from_row(
    row: dict, smap: SchemaMap, group_ref: str, existing: Expense | None = None,
) -> Expense:
    """Build a local Expense from a remote row, keeping the local id if known."""
    remote_id = str(smap.read(EXPENSES, row, "id"))
    amount = float(smap.read(EXPENSES, row, "amount") or 0)
    split = as_list(smap.read(EXPENSES, row, "splitBetween"))
    remote_share = smap.read(EXPENSES, row, "perPersonAmount")
    even_share = amount / max(1, len(split))

    override = False
    per_person = even_share
    if remote_share is not None:
        per_person = float(remote_share)
        override = abs(per_person - even_share) > _SHARE_TOLERANCE

    return Expense(
        local_id=existing.local_id if existing else remote_id,
        remote_id=remote_id,
        group_ref=group_ref,
        description=smap.read(EXPENSES, row, "description") or "",
        amount=amount,
        paid_by=str(smap.read(EXPENSES, row, "paidBy") or "unknown"),
        split_between=split,
        created_by=str(smap.read(EXPENSES, row, "createdBy") or ""),
        created_at=smap.read(EXPENSES, row, "createdAt") or utc_now_iso(),
        updated_at=smap.read(EXPENSES, row, "updatedAt") or utc_now_iso(),
        per_person_amount=per_person,
        per_person_override=override,
        sync_state=SyncState.SYNCED,
    )


def group_from_row(
    row: dict,
    smap: SchemaMap,
    existing: Group | None = None,
    expense_rows: list[dict] | None = None,
) -> Group:
    """Build a local Group from a remote row.

    With `expense_rows` the expenses are replaced by the remote ones
    (matched to existing local ids by remote id); without, the existing
    local expenses are kept (list-level refresh).
    """
    remote_id = str(smap.read(GROUPS, row, "id"))
    local_id = existing.local_id if existing else remote_id

    state = DeletionState(
        pending=bool(smap.read(GROUPS, row, "pendingDeletion", False)),
        initiated_by=smap.read(GROUPS, row, "deletionInitiatedBy"),
        confirmed_by=as_list(smap.read(GROUPS, row, "deletionConfirmedBy")),
        restored_by=as_list(smap.read(GROUPS, row, "deletionRestoredBy")),
        initiated_at=smap.read(GROUPS, row, "deletionInitiatedAt"),
    )

    if expense_rows is None:
        expenses = list(existing.expenses) if existing else []
    else:
        expenses = []
        for expense_row in expense_rows:
            expense_remote_id = str(smap.read(EXPENSES, expense_row, "id"))
            known = existing.find_expense(expense_remote_id) if existing else None
            try:
                expenses.append(expense_from_row(expense_row, smap, local_id, known))
            except ValidationError as exc:
                logger.warning(
                    "Skipping invalid remote expense %s in group %s: %s",
                    expense_remote_id, remote_id, exc,
                )

    return Group(
        local_id=local_id,
        remote_id=remote_id,
        name=smap.read(GROUPS, row, "name") or "",
        members=as_list(smap.read(GROUPS, row, "members")),
        participants=as_list(smap.read(GROUPS, row, "participants")),
        created_by=str(smap.read(GROUPS, row, "createdBy") or ""),
        created_at=smap.read(GROUPS, row, "createdAt") or utc_now_iso(),
        updated_at=smap.read(GROUPS, row, "updatedAt") or utc_now_iso(),
        deletion_state=state,
        expenses=expenses,
        sync_state=SyncState.SYNCED,
    )
