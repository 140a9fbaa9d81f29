"""Tests for transaction coordination."""

import asyncio

import asyncpg
import pytest
from loguru import logger

from shopcore.core.exceptions import QueryExecutionError, TransactionError
from shopcore.core.result import Failure, Success
from tests.fakes import KV_INSERT, KV_SELECT


class InventoryError(Exception):
    """Domain error raised by a unit of work."""


async def read_value(db, key):
    return await db.fetch_value(KV_SELECT, [key], label="readKv")


class TestCommit:
    @pytest.mark.asyncio
    async def test_committed_writes_visible(self, db):
        async def unit_of_work(tx):
            await tx.insert(KV_INSERT, ["sku-1", 5])
            await tx.insert(KV_INSERT, ["sku-2", 7])
            return "done"

        assert await db.with_transaction(unit_of_work) == "done"

        assert await read_value(db, "sku-1") == 5
        assert await read_value(db, "sku-2") == 7

    @pytest.mark.asyncio
    async def test_uncommitted_writes_invisible_to_other_connections(self, db):
        observed = {}

        async def unit_of_work(tx):
            await tx.insert(KV_INSERT, ["sku-1", 5])
            observed["inside"] = await tx.fetch_value(KV_SELECT, ["sku-1"])
            observed["outside"] = await read_value(db, "sku-1")

        await db.with_transaction(unit_of_work)

        assert observed == {"inside": 5, "outside": None}

    @pytest.mark.asyncio
    async def test_all_statements_on_one_connection(self, db, server):
        async def unit_of_work(tx):
            await tx.select("SELECT 1")
            await tx.update("UPDATE t SET a = 1")
            await tx.delete("DELETE FROM t")

        await db.with_transaction(unit_of_work)

        tx_log = server.log[server.statements().index("BEGIN"):]
        assert [query for _, query, _ in tx_log] == [
            "BEGIN",
            "SELECT 1",
            "UPDATE t SET a = 1",
            "DELETE FROM t",
            "COMMIT",
        ]
        assert len({conn_id for conn_id, _, _ in tx_log}) == 1

    @pytest.mark.asyncio
    async def test_success_result_returned_unchanged(self, db):
        async def unit_of_work(tx):
            await tx.insert(KV_INSERT, ["sku-1", 1])
            return Success(41)

        outcome = await db.with_transaction(unit_of_work)

        assert outcome == Success(41)
        assert await read_value(db, "sku-1") == 1

    @pytest.mark.asyncio
    async def test_connection_released_after_commit(self, db):
        async def unit_of_work(tx):
            return None

        await db.with_transaction(unit_of_work)

        assert db.get_pool_stats()["leased"] == 0


class TestRollback:
    @pytest.mark.asyncio
    async def test_error_rolls_back_and_propagates_unchanged(self, db, server):
        error = InventoryError("out of stock")

        async def unit_of_work(tx):
            await tx.insert(KV_INSERT, ["sku-1", 5])
            raise error

        with pytest.raises(InventoryError) as exc_info:
            await db.with_transaction(unit_of_work)

        assert exc_info.value is error
        assert "ROLLBACK" in server.statements()
        assert "COMMIT" not in server.statements()
        assert await read_value(db, "sku-1") is None
        assert db.get_pool_stats()["leased"] == 0

    @pytest.mark.asyncio
    async def test_query_failure_rolls_back(self, db, server):
        server.fail("INSERT INTO broken VALUES ($1)", asyncpg.exceptions.NotNullViolationError("null"))

        async def unit_of_work(tx):
            await tx.insert(KV_INSERT, ["sku-1", 5])
            await tx.insert("INSERT INTO broken VALUES ($1)", [None])

        with pytest.raises(QueryExecutionError):
            await db.with_transaction(unit_of_work)

        assert await read_value(db, "sku-1") is None

    @pytest.mark.asyncio
    async def test_failure_result_with_exception(self, db):
        cause = InventoryError("only 2 left")

        async def unit_of_work(tx):
            await tx.insert(KV_INSERT, ["sku-1", 5])
            return Failure("insufficient stock", cause)

        with pytest.raises(InventoryError) as exc_info:
            await db.with_transaction(unit_of_work)

        assert exc_info.value is cause
        assert await read_value(db, "sku-1") is None

    @pytest.mark.asyncio
    async def test_failure_result_without_exception(self, db):
        async def unit_of_work(tx):
            await tx.insert(KV_INSERT, ["sku-1", 5])
            return Failure("cart is locked")

        with pytest.raises(TransactionError, match="cart is locked"):
            await db.with_transaction(unit_of_work)

        assert await read_value(db, "sku-1") is None

    @pytest.mark.asyncio
    async def test_rollback_failure_logged_and_original_error_raised(self, db, server):
        server.fail("ROLLBACK", OSError("socket closed"))
        errors = []
        sink_id = logger.add(lambda m: errors.append(m.record["message"]), level="ERROR")

        async def unit_of_work(tx):
            raise InventoryError("boom")

        try:
            with pytest.raises(InventoryError):
                await db.with_transaction(unit_of_work)
        finally:
            logger.remove(sink_id)

        assert any("ROLLBACK failed" in m and "boom" in m for m in errors)
        # Connection in unknown state is discarded
        assert server.connections[0].closed


class TestControlStatements:
    @pytest.mark.asyncio
    async def test_begin_failure(self, db, server):
        server.fail("BEGIN", asyncpg.exceptions.ReadOnlySQLTransactionError("read only"))
        called = False

        async def unit_of_work(tx):
            nonlocal called
            called = True

        with pytest.raises(QueryExecutionError) as exc_info:
            await db.with_transaction(unit_of_work)

        assert exc_info.value.label == "BEGIN"
        assert called is False
        assert db.get_pool_stats()["leased"] == 0

    @pytest.mark.asyncio
    async def test_commit_failure(self, db, server):
        server.fail("COMMIT", asyncpg.exceptions.SerializationError("could not serialize"))

        async def unit_of_work(tx):
            await tx.insert(KV_INSERT, ["sku-1", 5])

        with pytest.raises(QueryExecutionError) as exc_info:
            await db.with_transaction(unit_of_work)

        assert exc_info.value.label == "COMMIT"
        assert server.connections[0].closed


class TestContextLifetime:
    @pytest.mark.asyncio
    async def test_context_invalid_after_commit(self, db):
        captured = {}

        async def unit_of_work(tx):
            captured["tx"] = tx
            assert tx.is_active

        await db.with_transaction(unit_of_work)

        assert captured["tx"].is_active is False
        with pytest.raises(TransactionError):
            await captured["tx"].select("SELECT 1")

    @pytest.mark.asyncio
    async def test_context_invalid_after_rollback(self, db):
        captured = {}

        async def unit_of_work(tx):
            captured["tx"] = tx
            raise InventoryError("boom")

        with pytest.raises(InventoryError):
            await db.with_transaction(unit_of_work)

        with pytest.raises(TransactionError):
            await captured["tx"].fetch_value("SELECT 1")

    @pytest.mark.asyncio
    async def test_cancellation_discards_connection(self, db, server):
        started = asyncio.Event()

        async def unit_of_work(tx):
            await tx.insert(KV_INSERT, ["sku-1", 5])
            started.set()
            await asyncio.sleep(10)

        task = asyncio.create_task(db.with_transaction(unit_of_work))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert server.connections[0].closed
        assert "COMMIT" not in server.statements()
        assert db.get_pool_stats()["leased"] == 0
        assert await read_value(db, "sku-1") is None
