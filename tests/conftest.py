"""Shared test fixtures and configuration.

Sets up environment variables so spliteasy.config runs in local-only mode,
and provides in-memory fakes for the remote store, the realtime feed, the
view observer and the notifier, plus a Harness wiring a full sync core
against a temp SQLite file.
"""

import os

# Patch env vars BEFORE any spliteasy imports
os.environ["SUPABASE_URL"] = ""
os.environ["SUPABASE_ANON_KEY"] = ""
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["TELEGRAM_CHAT_ID"] = ""

import pytest

from spliteasy.core.context import SyncContext
from spliteasy.core.deletion import DeletionProtocol
from spliteasy.core.group_service import GroupService
from spliteasy.core.identity import IdentityResolver
from spliteasy.core.realtime_router import RealtimeRouter
from spliteasy.core.schema import TABLE_FIELDS, SchemaAdapter, default_column
from spliteasy.core.sync_engine import SyncEngine
from spliteasy.data.db import DeleteQueue, GroupCache, LocalStore, SyncMetaStore, UserStore
from spliteasy.data.models import User
from spliteasy.ports.remote_port import RemoteStoreError, RemoteUnavailableError


ALICE = User(id="alice", name="Alice")
BOB = User(id="bob", name="Bob")
CAROL = User(id="carol", name="Carol")


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeRemoteStore:
    """In-memory RemoteStorePort. Rows are keyed by their `id` column."""

    def __init__(self, columns=None):
        self.tables = {"users": {}, "groups": {}, "expenses": {}}
        self.columns = columns or {
            table: {default_column(f) for f in fields} for table, fields in TABLE_FIELDS.items()
        }
        self.calls = []
        self.offline = False
        self.fail_tables = set()
        self.closed = False

    def _check(self, table=None, write=False):
        if self.offline:
            raise RemoteUnavailableError("network down")
        if write and table in self.fail_tables:
            raise RemoteStoreError(f"write to {table} rejected", code="42501")

    def count(self, method, table=None):
        return sum(
            1 for call in self.calls
            if call[0] == method and (table is None or call[1] == table)
        )

    async def fetch_one(self, table, column, value):
        self.calls.append(("fetch_one", table, value))
        self._check()
        for row in self.tables[table].values():
            if row.get(column) == value:
                return dict(row)
        return None

    async def fetch_by(self, table, column, value):
        self.calls.append(("fetch_by", table, value))
        self._check()
        return [dict(r) for r in self.tables[table].values() if r.get(column) == value]

    async def fetch_containing(self, table, column, value):
        self.calls.append(("fetch_containing", table, value))
        self._check()
        return [dict(r) for r in self.tables[table].values() if value in (r.get(column) or [])]

    async def insert(self, table, record):
        self.calls.append(("insert", table, record.get("id")))
        self._check(table, write=True)
        if record["id"] in self.tables[table]:
            raise RemoteStoreError("duplicate key value", code="23505")
        self.tables[table][record["id"]] = dict(record)
        return dict(record)

    async def upsert(self, table, record, on_conflict="id"):
        self.calls.append(("upsert", table, record.get(on_conflict)))
        self._check(table, write=True)
        key = record[on_conflict]
        merged = {**self.tables[table].get(key, {}), **record}
        self.tables[table][key] = merged
        return dict(merged)

    async def delete(self, table, column, value):
        self.calls.append(("delete", table, value))
        self._check(table, write=True)
        doomed = [k for k, r in self.tables[table].items() if r.get(column) == value]
        return [self.tables[table].pop(k) for k in doomed]

    async def probe(self, table, column):
        self.calls.append(("probe", table, column))
        self._check()
        return column in self.columns.get(table, set())

    async def ping(self):
        return not self.offline

    async def aclose(self):
        self.closed = True


class FakeRealtime:
    """In-memory RealtimePort; `emit` delivers an event to subscribers."""

    def __init__(self, fail=False):
        self.fail = fail
        self.subscriptions = {}
        self.subscribe_calls = 0

    async def subscribe(self, tables, callback):
        self.subscribe_calls += 1
        if self.fail:
            raise RemoteUnavailableError("realtime down")
        handle = f"sub-{self.subscribe_calls}"
        self.subscriptions[handle] = (list(tables), callback)
        return handle

    async def unsubscribe(self, handle):
        self.subscriptions.pop(handle, None)

    async def emit(self, event):
        for tables, callback in list(self.subscriptions.values()):
            if event.table in tables:
                await callback(event)


class RecordingObserver:
    def __init__(self, open_id=None):
        self.open_id = open_id
        self.list_refreshes = 0
        self.open_refreshes = 0
        self.prompts = []

    def refresh_group_list(self):
        self.list_refreshes += 1

    def refresh_open_group(self):
        self.open_refreshes += 1

    def open_group_id(self):
        return self.open_id

    def prompt_deletion(self, group):
        self.prompts.append(group.remote_id)


class RecordingNotifier:
    def __init__(self):
        self.messages = []

    async def send_message(self, text, level="success"):
        self.messages.append((level, text))


# ---------------------------------------------------------------------------
# Harness
# ---------------------------------------------------------------------------


class Harness:
    """One client device: local store plus a fully wired sync core."""

    def __init__(
        self, db_path, remote=None, realtime=None, user=ALICE,
        offline=False, observer=None, debounce_seconds=60.0, interval_seconds=300,
    ):
        self.store = LocalStore(db_path)
        self.groups = GroupCache(self.store, ttl_seconds=0)
        self.queue = DeleteQueue(self.store)
        self.meta = SyncMetaStore(self.store)
        self.users = UserStore(self.store)
        self.remote = remote
        self.realtime = realtime
        self.user = user
        self.observer = observer or RecordingObserver()
        self.notifier = RecordingNotifier()
        self.context = SyncContext(is_offline=offline)
        self.schema = SchemaAdapter(remote)
        self.identity = IdentityResolver(self.groups, self.meta)
        self.engine = SyncEngine(
            remote, self.groups, self.queue, self.meta, self.schema, self.identity,
            current_user=lambda: self.user,
            notifier=self.notifier,
            observer=self.observer,
            context=self.context,
            debounce_seconds=debounce_seconds,
            pacing_seconds=0,
            interval_seconds=interval_seconds,
            reconnect_delay_seconds=0,
        )
        self.router = RealtimeRouter(
            self.engine, realtime, self.groups, self.schema, lambda: self.user, self.observer,
        )
        self.deletion = DeletionProtocol(self.engine, self.groups, lambda: self.user, self.observer)
        self.service = GroupService(self.groups, self.engine, self.deletion, lambda: self.user)


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "spliteasy.db")


@pytest.fixture
def store(tmp_db_path):
    return LocalStore(db_path=tmp_db_path)


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def make_harness(tmp_path):
    """Factory for Harness instances, each with its own SQLite file."""
    counter = {"n": 0}

    def _make(**kwargs):
        counter["n"] += 1
        return Harness(str(tmp_path / f"device{counter['n']}.db"), **kwargs)

    return _make
