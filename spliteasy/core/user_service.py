"""
SplitEasy — User Service.

Local identities: user id validation and generation, availability checks
against the recently-used list and the remote `users` table, creating and
switching identities, and deleting an account with its remote data.
"""

from __future__ import annotations

import logging
import random
import re
import time
from typing import TYPE_CHECKING

from spliteasy.core.records import build_user_record
from spliteasy.core.schema import EXPENSES, GROUPS, USERS
from spliteasy.core.sync_engine import NotAuthenticatedError
from spliteasy.data.models import User, utc_now_iso
from spliteasy.ports.remote_port import RemoteStoreError

if TYPE_CHECKING:
    from spliteasy.core.context import SyncContext
    from spliteasy.core.schema import SchemaAdapter
    from spliteasy.data.db import UserStore
    from spliteasy.data.models import PreviousUser
    from spliteasy.ports.remote_port import RemoteStorePort

logger = logging.getLogger(__name__)

USER_ID_PATTERN = re.compile(r"^[a-zA-Z0-9]{3,20}$")


class UserIdError(ValueError):
    """Invalid, unknown or unavailable user id."""


def is_valid_user_id(user_id: str) -> bool:
    return bool(USER_ID_PATTERN.match(user_id or ""))


def generate_user_id(name: str) -> str:
    """Suggest an id: up to 8 cleaned name chars, 4 clock digits, 2 random digits."""
    clean = re.sub(r"[^a-z0-9]", "", name.lower())[:8]
    timestamp = str(int(time.time() * 1000))[-4:]
    suffix = f"{random.randint(0, 99):02d}"
    return (clean or "user") + timestamp + suffix


class UserService:
    def __init__(
        self,
        users: UserStore,
        remote: RemoteStorePort | None,
        schema: SchemaAdapter,
        context: SyncContext,
    ) -> None:
        self._users = users
        self._remote = remote
        self._schema = schema
        self._context = context
        self._current: User | None = users.get_current()

    def current_user(self) -> User | None:
        """The authenticated local identity, or None before login."""
        return self._current

    def previous_users(self) -> list[PreviousUser]:
        return self._users.previous_users()

    def _known_locally(self, user_id: str) -> bool:
        wanted = user_id.lower()
        return any(u.id.lower() == wanted for u in self._users.previous_users())

    def _remote_ready(self) -> bool:
        return self._remote is not None and self._context.is_online

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def check_user_id_exists(self, user_id: str) -> bool:
        """True if the remote `users` table has this id. Offline or on error: False."""
        if not self._remote_ready():
            logger.info("Offline or no client, cannot check user id %s", user_id)
            return False
        try:
            smap = await self._schema.detect()
            row = await self._remote.fetch_one(USERS, smap.column(USERS, "id"), user_id)
        except RemoteStoreError as exc:
            logger.warning("User id check failed for %s: %s", user_id, exc)
            return False
        return row is not None

    async def is_user_id_available(self, user_id: str) -> bool:
        if not is_valid_user_id(user_id):
            return False
        if self._known_locally(user_id):
            return False
        return not await self.check_user_id_exists(user_id)

    def generate_unique_user_id(self, name: str) -> str:
        """Generate an id that doesn't collide with any recently-used identity."""
        base = generate_user_id(name)
        user_id = base
        counter = 1
        while self._known_locally(user_id):
            user_id = f"{base}{counter}"
            counter += 1
        return user_id

    # ------------------------------------------------------------------
    # Identity lifecycle
    # ------------------------------------------------------------------

    def _activate(self, user: User) -> None:
        self._users.set_current(user)
        self._users.remember(user)
        self._current = user

    async def create_user(self, name: str, user_id: str) -> User:
        """Register a new identity (remotely when online) and make it current."""
        name = name.strip()
        user_id = user_id.strip()
        if not name:
            raise UserIdError("Please enter your name")
        if not is_valid_user_id(user_id):
            raise UserIdError(f"Invalid user id: {user_id!r}")
        if not await self.is_user_id_available(user_id):
            raise UserIdError(f"User id {user_id!r} is unavailable")

        user = User(id=user_id, name=name, created_at=utc_now_iso())
        if self._remote_ready():
            smap = await self._schema.detect()
            await self._remote.insert(USERS, build_user_record(user, smap))
            logger.info("User created in database: %s", user_id)

        self._activate(user)
        return user

    def switch_to_user(self, user_id: str) -> User:
        for previous in self._users.previous_users():
            if previous.id == user_id:
                user = User(id=previous.id, name=previous.name)
                self._activate(user)
                logger.info("Switched to user %s", user_id)
                return user
        raise UserIdError(f"User not found: {user_id}")

    def remove_previous_user(self, user_id: str) -> bool:
        return self._users.forget(user_id)

    def sign_out(self) -> None:
        self._users.clear_current()
        self._current = None

    async def delete_account(self) -> None:
        """Delete the user's expenses, groups and profile remotely, then sign out.

        Failing to delete expenses or groups is logged; failing to delete the
        user row propagates and leaves the local identity in place.
        """
        user = self._current
        if user is None:
            raise NotAuthenticatedError("No current user")

        if self._remote_ready():
            smap = await self._schema.detect()
            try:
                await self._remote.delete(EXPENSES, smap.column(EXPENSES, "createdBy"), user.id)
            except RemoteStoreError as exc:
                logger.warning("Failed to delete user expenses: %s", exc)
            try:
                await self._remote.delete(GROUPS, smap.column(GROUPS, "createdBy"), user.id)
            except RemoteStoreError as exc:
                logger.warning("Failed to delete user groups: %s", exc)
            await self._remote.delete(USERS, smap.column(USERS, "id"), user.id)
            logger.info("User %s deleted from database", user.id)

        self._users.forget(user.id)
        self.sign_out()
