"""Tests for spliteasy.core.schema — column probing and the schema map."""

import asyncio
import re

import pytest

from conftest import FakeRemoteStore
from spliteasy.core.schema import (
    EXPENSES,
    GROUPS,
    TABLE_FIELDS,
    SchemaAdapter,
    SchemaMap,
    candidate_columns,
    default_column,
)


def _snake(field):
    return re.sub(r"(?<!^)(?=[A-Z])", "_", field).lower()


def _snake_case_remote():
    columns = {
        table: {_snake(f) for f in fields}
        for table, fields in TABLE_FIELDS.items()
    }
    columns[GROUPS] |= {"total_expenses"}
    return FakeRemoteStore(columns=columns)


class TestCandidateColumns:
    def test_camel_case_field(self):
        assert candidate_columns("createdBy") == ["createdby", "created_by", "createdBy"]

    def test_single_word_field(self):
        assert candidate_columns("name") == ["name"]

    def test_default_column_is_lowercase(self):
        assert default_column("deletionConfirmedBy") == "deletionconfirmedby"


class TestSchemaMap:
    def test_unresolved_falls_back_to_lowercase(self):
        assert SchemaMap().column(GROUPS, "createdBy") == "createdby"

    def test_resolved_column(self):
        smap = SchemaMap({"groups.createdBy": "created_by"})
        assert smap.column(GROUPS, "createdBy") == "created_by"

    def test_to_remote_skips_unresolved_optional_fields(self):
        record = SchemaMap().to_remote(GROUPS, {"id": "x", "totalExpenses": 5.0})
        assert record == {"id": "x"}

    def test_to_remote_keeps_resolved_optional_fields(self):
        smap = SchemaMap({"groups.totalExpenses": "total_expenses"})
        record = smap.to_remote(GROUPS, {"id": "x", "totalExpenses": 5.0})
        assert record == {"id": "x", "total_expenses": 5.0}

    def test_read_falls_back_to_any_candidate(self):
        row = {"paid_by": "alice"}
        assert SchemaMap().read(EXPENSES, row, "paidBy") == "alice"
        assert SchemaMap().read(EXPENSES, row, "amount", 0) == 0


class TestSchemaAdapterDetect:
    @pytest.mark.asyncio
    async def test_detects_lowercase_columns(self, remote):
        adapter = SchemaAdapter(remote)
        smap = await adapter.detect()
        assert adapter.checked is True
        assert smap.column(GROUPS, "createdBy") == "createdby"
        assert smap.resolved(GROUPS, "totalExpenses") is None

    @pytest.mark.asyncio
    async def test_detects_snake_case_columns(self):
        adapter = SchemaAdapter(_snake_case_remote())
        smap = await adapter.detect()
        assert smap.column(GROUPS, "createdBy") == "created_by"
        assert smap.column(EXPENSES, "perPersonAmount") == "per_person_amount"
        assert smap.column(GROUPS, "totalExpenses") == "total_expenses"
        assert smap.resolved(GROUPS, "expenseCount") is None

    @pytest.mark.asyncio
    async def test_concurrent_detect_runs_one_probe_round(self):
        baseline = FakeRemoteStore()
        await SchemaAdapter(baseline).detect()
        single_round = baseline.count("probe")

        remote = FakeRemoteStore()
        adapter = SchemaAdapter(remote)
        maps = await asyncio.gather(*(adapter.detect() for _ in range(8)))

        assert remote.count("probe") == single_round
        assert all(m == maps[0] for m in maps)

    @pytest.mark.asyncio
    async def test_detects_only_once(self, remote):
        adapter = SchemaAdapter(remote)
        await adapter.detect()
        probes = remote.count("probe")
        await adapter.detect()
        assert remote.count("probe") == probes

    @pytest.mark.asyncio
    async def test_failed_detection_keeps_defaults_and_retries(self, remote):
        remote.offline = True
        adapter = SchemaAdapter(remote)
        smap = await adapter.detect()
        assert adapter.checked is False
        assert smap.column(GROUPS, "createdBy") == "createdby"

        remote.offline = False
        await adapter.detect()
        assert adapter.checked is True

    @pytest.mark.asyncio
    async def test_no_remote_returns_empty_map(self):
        adapter = SchemaAdapter(None)
        smap = await adapter.detect()
        assert smap == SchemaMap()
