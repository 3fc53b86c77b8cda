"""
Unit Tests for cancellation flags, credit ledgers and the table store
"""

import time
from unittest.mock import AsyncMock

import pytest

from conftest import build_table
from enrichment.models import CellVersion, Run, RunStatus
from enrichment.stores import (
    InMemoryCancellationChecker,
    InMemoryCreditLedger,
    InMemoryTableStore,
    RedisCancellationChecker,
    RedisCreditLedger,
)


class TestCancellation:

    @pytest.mark.asyncio
    async def test_in_memory_flag_lifecycle(self):
        checker = InMemoryCancellationChecker(ttl_seconds=3600)

        assert not await checker.is_cancelled("run_1")
        await checker.request_cancellation("run_1")
        assert await checker.is_cancelled("run_1")
        assert not await checker.is_cancelled("run_2")
        await checker.clear("run_1")
        assert not await checker.is_cancelled("run_1")

    @pytest.mark.asyncio
    async def test_in_memory_flag_expires(self):
        checker = InMemoryCancellationChecker(ttl_seconds=60)
        await checker.request_cancellation("run_1")

        checker._flags["run_1"] = time.monotonic() - 1

        assert not await checker.is_cancelled("run_1")
        assert "run_1" not in checker._flags

    @pytest.mark.asyncio
    async def test_redis_flag_keys_and_ttl(self):
        redis_client = AsyncMock()
        redis_client.get.return_value = "1"
        checker = RedisCancellationChecker(redis_client, ttl_seconds=3600)

        await checker.request_cancellation("run_1")
        cancelled = await checker.is_cancelled("run_1")
        await checker.clear("run_1")

        redis_client.set.assert_awaited_once_with("cancel:run_1", "1", ex=3600)
        redis_client.get.assert_awaited_once_with("cancel:run_1")
        redis_client.delete.assert_awaited_once_with("cancel:run_1")
        assert cancelled

    @pytest.mark.asyncio
    async def test_redis_missing_flag(self):
        redis_client = AsyncMock()
        redis_client.get.return_value = None

        assert not await RedisCancellationChecker(redis_client, ttl_seconds=10).is_cancelled("run_1")


class TestCredits:

    @pytest.mark.asyncio
    async def test_in_memory_ledger(self):
        ledger = InMemoryCreditLedger({"org_1": 5})

        assert await ledger.get_balance("org_1") == 5
        assert await ledger.get_balance("org_2") == 0
        assert await ledger.deduct("org_1", 7) == -2

    @pytest.mark.asyncio
    async def test_redis_ledger(self):
        redis_client = AsyncMock()
        redis_client.get.return_value = "12"
        redis_client.decrby.return_value = 10
        ledger = RedisCreditLedger(redis_client)

        assert await ledger.get_balance("org_1") == 12
        assert await ledger.deduct("org_1", 2) == 10
        redis_client.decrby.assert_awaited_once_with("credits:org_1", 2)

    @pytest.mark.asyncio
    async def test_redis_ledger_unknown_org(self):
        redis_client = AsyncMock()
        redis_client.get.return_value = None
        assert await RedisCreditLedger(redis_client).get_balance("org_x") == 0


class TestTableStore:

    @pytest.fixture
    def store(self):
        return InMemoryTableStore(tables=[build_table(["Acme"])], runs=[Run(id="run_1", table_id="tbl_1")])

    @pytest.mark.asyncio
    async def test_run_timestamps(self, store):
        run = await store.update_run("run_1", RunStatus.RUNNING)
        assert run.started_at is not None
        assert run.finished_at is None

        run = await store.update_run("run_1", RunStatus.COMPLETED)
        assert run.finished_at is not None

    @pytest.mark.asyncio
    async def test_terminal_status_is_final(self, store):
        await store.update_run("run_1", RunStatus.CANCELLED)

        run = await store.update_run("run_1", RunStatus.RUNNING)

        assert run.status == RunStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_failed_run_keeps_error(self, store):
        run = await store.update_run("run_1", RunStatus.FAILED, error="Insufficient credits: 0 remaining")
        assert run.error == "Insufficient credits: 0 remaining"

    @pytest.mark.asyncio
    async def test_new_version_unpicks_previous(self, store):
        first = await store.create_cell_version(CellVersion(cell_id="cell_1_col_email", run_id="run_0", value="old@acme.com"))
        second = await store.create_cell_version(CellVersion(cell_id="cell_1_col_email", run_id="run_1", value="new@acme.com"))

        assert not first.picked
        assert second.picked
        cell = store.tables["tbl_1"].rows[0].cell_for("col_email")
        assert cell.value == "new@acme.com"

    @pytest.mark.asyncio
    async def test_cached_table_uses_none_for_missing(self, store):
        await store.create_cell_version(CellVersion(cell_id="cell_1_col_email", run_id="run_1", value="a@acme.com"))

        await store.rebuild_cached_table("tbl_1")

        assert store.cached_tables["tbl_1"] == {
            "row_1": {"Company": "Acme", "Email": "a@acme.com", "Website": None}
        }

    @pytest.mark.asyncio
    async def test_reopen_failed_run(self, store):
        await store.update_run("run_1", RunStatus.RUNNING)
        await store.update_run("run_1", RunStatus.FAILED, error="connection reset")

        run = await store.reopen_run("run_1")

        assert run.status == RunStatus.RUNNING
        assert run.error is None
        assert run.finished_at is None
        assert run.started_at is not None
        run = await store.update_run("run_1", RunStatus.COMPLETED)
        assert run.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_only_failed_runs_can_be_reopened(self, store):
        await store.update_run("run_1", RunStatus.COMPLETED)

        with pytest.raises(ValueError):
            await store.reopen_run("run_1")
