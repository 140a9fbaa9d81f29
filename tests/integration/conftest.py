"""Shared fixtures for integration tests requiring a real PostgreSQL."""

import asyncio
import os
from typing import AsyncGenerator, Optional

import asyncpg
import pytest
import pytest_asyncio
from loguru import logger

from shopcore.constants import Database as DatabaseConfig
from shopcore.core.settings import AppSettings
from shopcore.models.database import Database
from shopcore.models.pool_config import PoolConfig, parse_database_url, validate_pool_config
from shopcore.models.query import QueryRequest


# Read at import time; the root autouse fixture clears DATABASE_URL per test
TEST_DB_URL: Optional[str] = os.getenv("TEST_DATABASE_URL") or os.getenv("DATABASE_URL")


def pytest_collection_modifyitems(config, items):
    """
    Automatically skip integration tests if the database is unavailable.

    This prevents test failures in environments without PostgreSQL.
    """
    test_db_url = TEST_DB_URL

    if not test_db_url:
        reason = "TEST_DATABASE_URL or DATABASE_URL not set - skipping integration tests"
    else:

        async def check_db() -> bool:
            try:
                conn = await asyncio.wait_for(asyncpg.connect(test_db_url), timeout=5.0)
                await conn.close()
                return True
            except (OSError, asyncio.TimeoutError, asyncpg.PostgresError) as e:
                logger.warning(f"Database connection failed: {e}")
                return False

        if asyncio.run(check_db()):
            return
        reason = "PostgreSQL database is not available - skipping integration tests"

    skip_integration = pytest.mark.skip(reason=reason)
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


@pytest.fixture
def real_pool_config() -> PoolConfig:
    database_url = TEST_DB_URL or DatabaseConfig.TEST_URL
    return validate_pool_config(
        {**parse_database_url(database_url), "max_connections": 4, "connect_timeout_ms": 5000}
    )


@pytest_asyncio.fixture
async def test_db(real_pool_config: PoolConfig) -> AsyncGenerator[Database, None]:
    """
    Provide a real database with a scratch ``it_kv`` table.

    The table is dropped after each test.

    Yields:
        Database instance connected to the test database
    """
    database = Database(
        real_pool_config, settings=AppSettings(env="testing", query_logging=True)
    )
    await database.connect()
    await database.execute(
        QueryRequest.of(
            "CREATE TABLE IF NOT EXISTS it_kv (key TEXT PRIMARY KEY, value INTEGER NOT NULL)",
            label="createScratchTable",
        )
    )
    try:
        yield database
    finally:
        await database.execute(QueryRequest.of("DROP TABLE IF EXISTS it_kv"))
        await database.close(timeout=5)
