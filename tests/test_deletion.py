"""Tests for spliteasy.core.deletion — unanimous deletion, leave and restore."""

import pytest

from conftest import BOB, CAROL
from spliteasy.core.deletion import DeletionError, DeletionOutcome
from spliteasy.data.models import DeletionState, Group


def _shared_group(members=("alice", "bob", "carol"), **kwargs):
    return Group(local_id="g-shared", name="Flat", members=list(members), created_by="alice", **kwargs)


async def _synced_trip(h, members=("bob",)):
    group = h.service.create_group("Trip", members=list(members))
    h.service.add_expense(group.local_id, "Dinner", 90.0, paid_by="alice", split_between=["alice", "bob"])
    await h.engine.sync_all()
    return h.groups.get(group.local_id)


class TestTwoDevices:
    @pytest.mark.asyncio
    async def test_trip_deleted_after_both_confirm(self, make_harness, remote):
        alice = make_harness(remote=remote)
        trip = await _synced_trip(alice)
        assert trip.total_expenses == pytest.approx(90.0)
        assert trip.expenses[0].per_person_amount == pytest.approx(45.0)

        assert await alice.deletion.initiate(trip) == DeletionOutcome.PENDING
        row = remote.tables["groups"][trip.remote_id]
        assert row["pendingdeletion"] is True
        assert row["deletionconfirmedby"] == ["alice"]

        bob = make_harness(remote=remote, user=BOB)
        [listed] = await bob.engine.pull_group_list()
        assert listed.deletion_state.pending

        assert await bob.deletion.confirm(listed, "bob") == DeletionOutcome.DELETED

        assert remote.tables["groups"] == {}
        assert remote.tables["expenses"] == {}
        assert bob.groups.load() == []
        assert ("success", "Group 'Trip' deleted") in bob.notifier.messages

    @pytest.mark.asyncio
    async def test_confirming_member_leaves_while_others_pending(self, make_harness, remote):
        alice = make_harness(remote=remote)
        trip = await _synced_trip(alice, members=("bob", "carol"))
        await alice.deletion.initiate(trip)

        bob = make_harness(remote=remote, user=BOB)
        [listed] = await bob.engine.pull_group_list()

        assert await bob.deletion.confirm(listed, "bob") == DeletionOutcome.LEFT

        row = remote.tables["groups"][trip.remote_id]
        assert row["members"] == ["alice", "carol"]
        assert row["deletionconfirmedby"] == ["alice", "bob"]
        assert bob.groups.load() == []

    @pytest.mark.asyncio
    async def test_already_deleted_elsewhere(self, make_harness, remote):
        alice = make_harness(remote=remote)
        trip = await _synced_trip(alice)
        remote.tables["groups"].clear()

        assert await alice.deletion.initiate(trip) == DeletionOutcome.ALREADY_DELETED
        assert alice.groups.load() == []


class TestLocalOnly:
    @pytest.mark.asyncio
    async def test_unanimity_across_three_members(self, make_harness):
        h = make_harness()
        group = h.service.create_group("Flat", members=["bob", "carol"])

        assert await h.deletion.initiate(group) == DeletionOutcome.PENDING
        assert await h.deletion.confirm(h.groups.get(group.local_id), "bob") == DeletionOutcome.PENDING

        pending = h.groups.get(group.local_id)
        assert pending.members == ["alice", "carol"]
        assert pending.deletion_state.confirmed_by == ["alice", "bob"]

        assert await h.deletion.confirm(pending, "carol") == DeletionOutcome.DELETED
        assert h.groups.load() == []

    @pytest.mark.asyncio
    async def test_sole_creator_deletes_immediately(self, make_harness):
        h = make_harness()
        group = h.service.create_group("Solo")
        assert await h.deletion.initiate(group) == DeletionOutcome.DELETED
        assert h.groups.load() == []

    @pytest.mark.asyncio
    async def test_second_initiate_is_noop(self, make_harness):
        h = make_harness()
        group = h.service.create_group("Flat", members=["bob"])
        await h.deletion.initiate(group)
        assert await h.deletion.initiate(h.groups.get(group.local_id)) == DeletionOutcome.PENDING
        assert h.groups.get(group.local_id).deletion_state.confirmed_by == ["alice"]

    @pytest.mark.asyncio
    async def test_restore_cancels_for_everyone(self, make_harness):
        h = make_harness()
        group = h.service.create_group("Flat", members=["bob", "carol"])
        await h.deletion.initiate(group)

        outcome = await h.deletion.restore(h.groups.get(group.local_id), "bob")

        assert outcome == DeletionOutcome.RESTORED
        state = h.groups.get(group.local_id).deletion_state
        assert state.pending is False
        assert state.confirmed_by == []
        assert state.restored_by == ["bob"]

    @pytest.mark.asyncio
    async def test_creator_confirming_again_stays_pending(self, make_harness):
        h = make_harness()
        group = h.service.create_group("Flat", members=["bob"])
        await h.deletion.initiate(group)

        outcome = await h.deletion.confirm(h.groups.get(group.local_id), "alice")

        assert outcome == DeletionOutcome.PENDING
        assert h.groups.get(group.local_id).members == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_non_member_cannot_initiate(self, make_harness):
        h = make_harness(user=CAROL)
        h.groups.upsert(_shared_group(members=("alice", "bob")))
        with pytest.raises(DeletionError):
            await h.deletion.initiate(h.groups.get("g-shared"))

    @pytest.mark.asyncio
    async def test_confirm_requires_pending(self, make_harness):
        h = make_harness()
        h.groups.upsert(_shared_group())
        with pytest.raises(DeletionError):
            await h.deletion.confirm(h.groups.get("g-shared"), "bob")

    @pytest.mark.asyncio
    async def test_restore_requires_pending(self, make_harness):
        h = make_harness()
        h.groups.upsert(_shared_group())
        with pytest.raises(DeletionError):
            await h.deletion.restore(h.groups.get("g-shared"), "bob")

    @pytest.mark.asyncio
    async def test_leaving_while_unreachable_is_refused(self, make_harness):
        h = make_harness(user=BOB)
        pending = DeletionState(pending=True, initiated_by="alice", confirmed_by=["alice"])
        h.groups.upsert(_shared_group(deletion_state=pending))

        with pytest.raises(DeletionError):
            await h.deletion.confirm(h.groups.get("g-shared"), "bob")

        assert h.groups.get("g-shared").members == ["alice", "bob", "carol"]
