"""Tests for the Database facade and query execution."""

import asyncio
from typing import Optional

import asyncpg
import pytest
from loguru import logger
from pydantic import BaseModel

from shopcore.core.exceptions import (
    NotInitializedError,
    PoolClosedError,
    PoolTimeoutError,
    QueryExecutionError,
    RowDecodeError,
)
from shopcore.core.settings import AppSettings
from shopcore.models.database import Database
from shopcore.models.db_state import DatabaseState
from shopcore.models.query import QueryRequest, QueryResult

PRODUCTS_QUERY = "SELECT id, name, price FROM products WHERE category_id = $1"


class ProductRow(BaseModel):
    id: int
    name: str
    price: float
    note: Optional[str] = None


@pytest.fixture
def captured_logs():
    messages = []
    sink_id = logger.add(lambda message: messages.append(message.record), level="DEBUG")
    yield messages
    logger.remove(sink_id)


class TestNotInitialized:
    @pytest.mark.asyncio
    async def test_query_before_connect_raises(self, pool_config, settings, server):
        database = Database(pool_config, settings=settings, connector=server.connect)

        with pytest.raises(NotInitializedError):
            await database.select("SELECT 1")

        assert server.connections == []

    @pytest.mark.asyncio
    async def test_transaction_before_connect_raises(self, pool_config, settings, server):
        database = Database(pool_config, settings=settings, connector=server.connect)

        async def unit_of_work(tx):
            return None

        with pytest.raises(NotInitializedError):
            await database.with_transaction(unit_of_work)

    @pytest.mark.asyncio
    async def test_health_before_connect(self, pool_config, settings, server):
        database = Database(pool_config, settings=settings, connector=server.connect)

        assert database.is_healthy() is False
        assert await database.ping() is False
        assert database.state == DatabaseState.DISCONNECTED
        assert database.get_pool_stats() == {"initialized": False}


class TestSelect:
    @pytest.mark.asyncio
    async def test_rows_returned_in_order(self, db, server):
        rows = [{"id": 2, "name": "Mug", "price": 9.5}, {"id": 1, "name": "Pen", "price": 1.0}]
        server.returns(PRODUCTS_QUERY, rows)

        result = await db.select(PRODUCTS_QUERY, [7], label="productsByCategory")

        assert isinstance(result, QueryResult)
        assert result == rows
        assert result.label == "productsByCategory"
        assert result.elapsed_ms >= 0

    @pytest.mark.asyncio
    async def test_params_sent_separately_from_text(self, db, server):
        await db.select(PRODUCTS_QUERY, ["1; DROP TABLE products"])

        _, query, args = server.log[-1]
        assert query == PRODUCTS_QUERY
        assert args == ("1; DROP TABLE products",)

    @pytest.mark.asyncio
    async def test_empty_result(self, db):
        result = await db.select("SELECT * FROM products WHERE false")

        assert len(result) == 0
        assert result.first() is None

    @pytest.mark.asyncio
    async def test_typed_rows(self, db, server):
        server.returns(PRODUCTS_QUERY, [{"id": 1, "name": "Pen", "price": "1.25"}])

        products = await db.select(PRODUCTS_QUERY, [7], row_type=ProductRow)

        assert products == [ProductRow(id=1, name="Pen", price=1.25)]

    @pytest.mark.asyncio
    async def test_row_decode_error(self, db, server):
        server.returns(
            PRODUCTS_QUERY,
            [{"id": 1, "name": "Pen", "price": 1.0}, {"id": "x", "name": None, "price": 1.0}],
        )

        with pytest.raises(RowDecodeError) as exc_info:
            await db.select(PRODUCTS_QUERY, [7], row_type=ProductRow)

        assert exc_info.value.row_index == 1
        assert exc_info.value.row_type == "ProductRow"

    @pytest.mark.asyncio
    async def test_fetch_one_and_value(self, db, server):
        server.returns("SELECT COUNT(*) FROM products", [{"count": 42}])

        assert await db.fetch_value("SELECT COUNT(*) FROM products") == 42
        assert await db.fetch_one("SELECT COUNT(*) FROM products") == {"count": 42}
        assert await db.fetch_value("SELECT nothing") is None

    @pytest.mark.asyncio
    async def test_execute_with_request(self, db, server):
        server.returns("SELECT 2", [{"n": 2}])

        result = await db.execute(QueryRequest("SELECT 2", [], "two"))

        assert result.scalar() == 2

    @pytest.mark.asyncio
    async def test_insert_update_delete_labels(self, db, server, captured_logs):
        await db.insert("INSERT INTO t VALUES ($1)", [1])
        await db.update("UPDATE t SET a = $1", [1])
        await db.delete("DELETE FROM t WHERE a = $1", [1], label="purge")

        messages = " ".join(record["message"] for record in captured_logs)
        assert "[insert]" in messages
        assert "[update]" in messages
        assert "[purge]" in messages


class TestQueryFailures:
    @pytest.mark.asyncio
    async def test_backing_store_error_wrapped(self, db, server):
        original = asyncpg.exceptions.UndefinedTableError('relation "nope" does not exist')
        server.fail("SELECT * FROM nope WHERE id = $1", original)

        with pytest.raises(QueryExecutionError) as exc_info:
            await db.select("SELECT * FROM nope WHERE id = $1", [5], label="findNope")

        error = exc_info.value
        assert error.query == "SELECT * FROM nope WHERE id = $1"
        assert error.params == [5]
        assert error.label == "findNope"
        assert error.elapsed_ms >= 0
        assert 'relation "nope" does not exist' in error.original_message
        assert error.__cause__ is original

    @pytest.mark.asyncio
    async def test_long_query_truncated(self, db, server):
        query = "SELECT " + ", ".join(f"column_{i}" for i in range(100)) + " FROM wide"
        server.fail(query, asyncpg.exceptions.SyntaxOrAccessError("bad"))

        with pytest.raises(QueryExecutionError) as exc_info:
            await db.select(query)

        assert exc_info.value.query == query[:200] + "..."

    @pytest.mark.asyncio
    async def test_connection_released_exactly_once(self, db, server):
        server.fail("SELECT broken", asyncpg.exceptions.DataError("bad"))

        for _ in range(5):
            with pytest.raises(QueryExecutionError):
                await db.select("SELECT broken")
            await db.select("SELECT 1")

        stats = db.get_pool_stats()
        assert stats["leased"] == 0
        assert stats["size"] == 1

    @pytest.mark.asyncio
    async def test_server_error_keeps_connection(self, db, server):
        server.fail("SELECT broken", asyncpg.exceptions.DataError("bad"))

        with pytest.raises(QueryExecutionError):
            await db.select("SELECT broken")

        assert server.open_connections == server.connections[:1]

    @pytest.mark.asyncio
    async def test_transport_error_discards_connection(self, db, server):
        server.fail("SELECT broken", OSError("connection reset by peer"))

        with pytest.raises(QueryExecutionError):
            await db.select("SELECT broken")
        await db.select("SELECT 1")

        assert server.connections[0].closed
        assert server.log[-1][0] != server.connections[0].id

    @pytest.mark.asyncio
    async def test_degraded_after_consecutive_failures(self, db, server):
        server.fail("SELECT broken", asyncpg.exceptions.DataError("bad"))

        for _ in range(3):
            with pytest.raises(QueryExecutionError):
                await db.select("SELECT broken")
        assert db.state == DatabaseState.DEGRADED

        await db.select("SELECT 1")
        assert db.state == DatabaseState.CONNECTED

    @pytest.mark.asyncio
    async def test_pool_exhaustion_surfaces(self, db):
        async with db.get_connection(), db.get_connection(), db.get_connection():
            with pytest.raises(PoolTimeoutError):
                await db.select("SELECT 1")

    @pytest.mark.asyncio
    async def test_connection_unusable_after_block(self, db, server):
        async with db.get_connection() as conn:
            assert await conn.fetch("SELECT 1") == [{"?column?": 1}]
        queries_before = len(server.log)

        with pytest.raises(asyncpg.InterfaceError):
            await conn.fetch("SELECT 1")

        assert len(server.log) == queries_before
        assert db.get_pool_stats()["idle"] == 1


class TestInstrumentation:
    @pytest.mark.asyncio
    async def test_slow_query_warning(self, pool_config, server, captured_logs):
        settings = AppSettings(env="testing", slow_query_threshold_ms=1, query_logging=False)
        database = Database(pool_config, settings=settings, connector=server.connect)
        await database.connect()
        server.delays["SELECT pg_sleep(0.02)"] = 0.02

        await database.select("SELECT pg_sleep(0.02)", label="sleepy")

        warnings = [r for r in captured_logs if r["level"].name == "WARNING"]
        assert any("Slow query [sleepy]" in r["message"] for r in warnings)
        await database.close(timeout=1)

    @pytest.mark.asyncio
    async def test_failure_logged_with_params(self, db, server, captured_logs):
        server.fail("SELECT broken WHERE a = $1", asyncpg.exceptions.DataError("bad"))

        with pytest.raises(QueryExecutionError):
            await db.select("SELECT broken WHERE a = $1", ["x"], label="brokenQuery")

        errors = [r["message"] for r in captured_logs if r["level"].name == "ERROR"]
        assert any("brokenQuery" in m and "['x']" in m for m in errors)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_health_check_report(self, db):
        report = await db.health_check()

        assert report["status"] == "healthy"
        assert report["state"] == DatabaseState.CONNECTED
        assert report["pool"]["initialized"] is True
        assert report["latency_ms"] is not None

    @pytest.mark.asyncio
    async def test_connection_info_hides_password(self, db):
        info = db.get_connection_info()

        assert "localhost:5432/shop_test" in info
        assert "secret" not in info

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self, db, server):
        await db.connect()

        assert server.statements().count("SELECT NOW()") == 1

    @pytest.mark.asyncio
    async def test_failed_connect_leaves_no_pool(self, pool_config, settings, server):
        server.connect_error = OSError("connection refused")
        database = Database(pool_config, settings=settings, connector=server.connect)

        with pytest.raises(Exception):
            await database.connect()

        assert database.pool is None
        with pytest.raises(NotInitializedError):
            await database.select("SELECT 1")

    @pytest.mark.asyncio
    async def test_queries_after_close_fail(self, db):
        await db.close(timeout=1)

        assert db.is_healthy() is False
        with pytest.raises(PoolClosedError):
            await db.select("SELECT 1")

    @pytest.mark.asyncio
    async def test_context_manager(self, pool_config, settings, server):
        async with Database(pool_config, settings=settings, connector=server.connect) as database:
            assert database.is_healthy()

        assert server.open_connections == []

    @pytest.mark.asyncio
    async def test_close_waits_for_leased_connection(self, db, server):
        released = asyncio.Event()

        async def slow_query():
            async with db.get_connection():
                await asyncio.sleep(0.05)
            released.set()

        task = asyncio.create_task(slow_query())
        await asyncio.sleep(0.01)
        await db.close(timeout=2)

        assert released.is_set()
        await task

    @pytest.mark.asyncio
    async def test_health_check_before_connect(self, pool_config, settings, server):
        database = Database(pool_config, settings=settings, connector=server.connect)

        report = await database.health_check()

        assert report["status"] == "not_initialized"
        assert report["state"] == DatabaseState.DISCONNECTED
        assert "secret" not in report["connection"]
        assert report["timestamp"]

    @pytest.mark.asyncio
    async def test_pool_faults_counted(self, db, server):
        server.connections[0].drop()

        report = await db.health_check()

        assert report["pool_faults"] == 1
        assert report["status"] == "healthy"
