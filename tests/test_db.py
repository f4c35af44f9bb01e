"""Tests for spliteasy.data.db — SQLite key/value store and its typed views."""

import pytest

from spliteasy.data.db import (
    DELETE_QUEUE_KEY,
    GROUPS_KEY,
    MAX_PREVIOUS_USERS,
    DeleteQueue,
    GroupCache,
    LocalStore,
    SyncMetaStore,
    UserStore,
)
from spliteasy.data.models import Expense, Group, User


def _group(local_id="g1", amounts=(), **kwargs):
    expenses = [
        Expense(
            local_id=f"{local_id}-e{i}",
            group_ref=local_id,
            description=f"Item {i}",
            amount=amount,
            paid_by="alice",
            split_between=["alice", "bob"],
            created_by="alice",
        )
        for i, amount in enumerate(amounts)
    ]
    return Group(
        local_id=local_id, name=kwargs.pop("name", "Trip"),
        members=["alice", "bob"], created_by="alice", expenses=expenses, **kwargs,
    )


class TestLocalStore:
    def test_raw_roundtrip(self, store):
        store.set_raw("k", '{"a": 1}')
        assert store.get_raw("k") == '{"a": 1}'
        assert store.get_json("k") == {"a": 1}

    def test_missing_key(self, store):
        assert store.get_raw("missing") is None
        assert store.get_json("missing", default=[]) == []

    def test_overwrite_and_delete(self, store):
        store.set_json("k", 1)
        store.set_json("k", 2)
        assert store.get_json("k") == 2
        assert store.delete("k") is True
        assert store.delete("k") is False

    def test_persists_across_instances(self, tmp_db_path):
        LocalStore(tmp_db_path).set_json("k", [1, 2])
        assert LocalStore(tmp_db_path).get_json("k") == [1, 2]

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "cache.db"
        LocalStore(str(path)).set_json("k", True)
        assert path.exists()


class TestGroupCache:
    def test_empty(self, store):
        assert GroupCache(store, ttl_seconds=0).load() == []

    @pytest.mark.parametrize("amounts", [(90.0,), (12.5, 7.5, 80.0), (0.01, 1000.0)])
    def test_save_recomputes_derived_fields(self, store, amounts):
        cache = GroupCache(store, ttl_seconds=0)
        cache.save([_group(amounts=amounts)])
        group = cache.load()[0]
        assert group.total_expenses == pytest.approx(sum(amounts))
        for expense in group.expenses:
            assert expense.per_person_amount == pytest.approx(expense.amount / 2)

    def test_corrupted_storage_is_cleared(self, store):
        store.set_raw(GROUPS_KEY, "{not json")
        cache = GroupCache(store, ttl_seconds=0)
        assert cache.load() == []
        assert store.get_raw(GROUPS_KEY) is None

    def test_load_returns_copies(self, store):
        cache = GroupCache(store, ttl_seconds=60)
        cache.upsert(_group())
        cache.load()[0].name = "Changed"
        assert cache.load()[0].name == "Trip"

    def test_read_cache_serves_until_invalidated(self, store):
        reader = GroupCache(store, ttl_seconds=60)
        assert reader.load() == []
        GroupCache(store, ttl_seconds=60).upsert(_group())
        assert reader.load() == []
        reader.invalidate()
        assert len(reader.load()) == 1

    def test_own_writes_invalidate(self, store):
        cache = GroupCache(store, ttl_seconds=60)
        assert cache.load() == []
        cache.upsert(_group())
        assert len(cache.load()) == 1

    def test_get_by_local_or_remote_id(self, store):
        cache = GroupCache(store, ttl_seconds=0)
        cache.upsert(_group(remote_id="0b8e4a4e-1111-4222-8333-444455556666"))
        assert cache.get("g1").local_id == "g1"
        assert cache.get("0b8e4a4e-1111-4222-8333-444455556666").local_id == "g1"
        assert cache.find_by_remote_id("g1") is None
        assert cache.get("nope") is None

    def test_upsert_replaces_by_local_id(self, store):
        cache = GroupCache(store, ttl_seconds=0)
        cache.upsert(_group(name="Trip"))
        cache.upsert(_group(name="Road trip"))
        groups = cache.load()
        assert len(groups) == 1
        assert groups[0].name == "Road trip"

    def test_update(self, store):
        cache = GroupCache(store, ttl_seconds=0)
        cache.upsert(_group())

        def _rename(g):
            g.name = "Renamed"

        assert cache.update("g1", _rename).name == "Renamed"
        assert cache.get("g1").name == "Renamed"
        assert cache.update("missing", _rename) is None

    def test_remove(self, store):
        cache = GroupCache(store, ttl_seconds=0)
        cache.upsert(_group("g1"))
        cache.upsert(_group("g2"))
        assert cache.remove("g1") is True
        assert cache.remove("g1") is False
        assert [g.local_id for g in cache.load()] == ["g2"]


class TestDeleteQueue:
    def test_fifo_order(self, store):
        queue = DeleteQueue(store)
        queue.append("expense", "e1")
        queue.append("group", "g1")
        assert [(i.type, i.id) for i in queue.items()] == [("expense", "e1"), ("group", "g1")]
        assert len(queue) == 2

    def test_contains_and_remove(self, store):
        queue = DeleteQueue(store)
        queue.append("expense", "e1")
        queue.append("expense", "e1")
        queue.append("group", "e1")
        assert queue.contains("expense", "e1")
        assert queue.remove("expense", "e1") == 2
        assert queue.remove("expense", "e1") == 0
        assert [(i.type, i.id) for i in queue.items()] == [("group", "e1")]

    def test_corrupted_queue_is_cleared(self, store):
        store.set_raw(DELETE_QUEUE_KEY, '[{"type": "user"}]')
        queue = DeleteQueue(store)
        assert queue.items() == []
        assert store.get_raw(DELETE_QUEUE_KEY) is None


class TestUserStore:
    def test_current_user_roundtrip(self, store):
        users = UserStore(store)
        assert users.get_current() is None
        users.set_current(User(id="alice", name="Alice"))
        assert users.get_current().id == "alice"
        users.clear_current()
        assert users.get_current() is None

    def test_remember_is_most_recent_first(self, store):
        users = UserStore(store)
        users.remember(User(id="alice", name="Alice"))
        users.remember(User(id="bob", name="Bob"))
        users.remember(User(id="alice", name="Alice"))
        assert [u.id for u in users.previous_users()] == ["alice", "bob"]

    def test_remember_keeps_ten(self, store):
        users = UserStore(store)
        for i in range(MAX_PREVIOUS_USERS + 3):
            users.remember(User(id=f"user{i}", name=f"User {i}"))
        previous = users.previous_users()
        assert len(previous) == MAX_PREVIOUS_USERS
        assert previous[0].id == f"user{MAX_PREVIOUS_USERS + 2}"

    def test_forget(self, store):
        users = UserStore(store)
        users.remember(User(id="alice", name="Alice"))
        assert users.forget("alice") is True
        assert users.forget("alice") is False
        assert users.previous_users() == []


class TestSyncMetaStore:
    def test_last_sync(self, store):
        meta = SyncMetaStore(store)
        assert meta.get_last_sync() is None
        meta.set_last_sync(1700000000.5)
        assert meta.get_last_sync() == 1700000000.5

    def test_identity_map_has_both_scopes(self, store):
        meta = SyncMetaStore(store)
        assert meta.get_identity_map() == {"group": {}, "expense": {}}
        meta.set_identity_map({"group": {"g1": "r1"}, "expense": {}})
        assert meta.get_identity_map()["group"] == {"g1": "r1"}
