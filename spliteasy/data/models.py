"""
SplitEasy — Data Models.

Groups (with their nested expenses) live in the local cache first and reach
the remote store lazily. Every group and expense carries two identifiers:
`local_id` for local lookups and the UI, `remote_id` (a UUID) for the
backend once the entity has been synced.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_validator


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


class SyncState(str, Enum):
    LOCAL_ONLY = "local_only"
    SYNCING = "syncing"
    SYNCED = "synced"


class User(BaseModel):
    """A local identity. `id` is human-chosen and case-insensitively unique."""

    id: str
    name: str
    created_at: str = Field(default_factory=utc_now_iso)


class PreviousUser(BaseModel):
    """An entry in the recently-used identities list."""

    id: str
    name: str
    last_used: str = Field(default_factory=utc_now_iso)


class DeletionState(BaseModel):
    """Collaborative deletion sub-record of a group.

    `restored_by` is a historical log of restore votes, not a threshold.
    """

    pending: bool = False
    initiated_by: str | None = None
    confirmed_by: list[str] = Field(default_factory=list)
    restored_by: list[str] = Field(default_factory=list)
    initiated_at: str | None = None


class Expense(BaseModel):
    """A single shared expense inside a group."""

    local_id: str
    remote_id: str | None = None
    group_ref: str                       # local id (or remote id) of the parent group
    description: str
    amount: float
    paid_by: str                         # user id or free-text participant name
    split_between: list[str] = Field(default_factory=list)
    created_by: str
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)
    per_person_amount: float = 0.0
    per_person_override: bool = False    # set when per_person_amount was given explicitly
    sync_state: SyncState = SyncState.LOCAL_ONLY

    @field_validator("amount")
    @classmethod
    def amount_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("amount must be positive")
        return v

    def recompute_share(self) -> None:
        """Recompute `per_person_amount` unless it was explicitly overridden."""
        if self.per_person_override:
            return
        self.per_person_amount = self.amount / max(1, len(self.split_between))


class Group(BaseModel):
    """A shared group of people and their expenses.

    `members` holds registered user ids; `participants` holds display-only
    names. Legacy data may have names in `members`, so the two can overlap.
    """

    local_id: str
    remote_id: str | None = None
    name: str
    members: list[str] = Field(default_factory=list)
    participants: list[str] = Field(default_factory=list)
    created_by: str
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)
    total_expenses: float = 0.0
    deletion_state: DeletionState = Field(default_factory=DeletionState)
    expenses: list[Expense] = Field(default_factory=list)
    sync_state: SyncState = SyncState.LOCAL_ONLY

    def effective_members(self) -> set[str]:
        """Members including the creator, who is always implicitly a member."""
        return set(self.members) | {self.created_by}

    def all_people(self) -> list[str]:
        """Members followed by participants, de-duplicated, order preserved."""
        seen: list[str] = []
        for person in [*self.members, *self.participants]:
            if person not in seen:
                seen.append(person)
        return seen

    def recompute_totals(self) -> None:
        """Recompute derived fields: group total and per-expense shares."""
        for expense in self.expenses:
            if expense.split_between:
                expense.recompute_share()
        self.total_expenses = sum(expense.amount for expense in self.expenses)

    def find_expense(self, expense_id: str) -> Expense | None:
        """Find an expense by local or remote id."""
        for expense in self.expenses:
            if expense_id in (expense.local_id, expense.remote_id):
                return expense
        return None


class QueuedDeletion(BaseModel):
    """A deletion deferred while offline, replayed in FIFO order."""

    type: Literal["expense", "group"]
    id: str
    timestamp: float
