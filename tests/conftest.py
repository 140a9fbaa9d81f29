"""Pytest configuration and common fixtures."""

import os
import sys
import warnings
from pathlib import Path

from dotenv import load_dotenv

# Try to load test-specific environment file if it exists
test_env_file = Path(__file__).parent / ".env.test"
if test_env_file.exists():
    load_dotenv(test_env_file)

# Bootstrap variables must exist before shopcore settings are imported.
# Per-test isolation is provided by the setup_test_environment fixture.
os.environ.setdefault("ENV", "testing")

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from typing import Any, AsyncGenerator, Dict

import pytest
import pytest_asyncio

from shopcore.core.settings import AppSettings
from shopcore.models.connection_pool import ConnectionPool
from shopcore.models.database import Database
from shopcore.models.db_factory import DatabaseFactory
from shopcore.models.pool_config import PoolConfig, validate_pool_config
from tests.fakes import FakeServer


def pytest_configure(config):
    """Configure pytest environment before tests run."""
    warnings.filterwarnings("ignore", message="coroutine.*was never awaited")
    config.addinivalue_line(
        "markers", "integration: tests that need a real PostgreSQL (TEST_DATABASE_URL)"
    )


@pytest.fixture(autouse=True)
def setup_test_environment(monkeypatch):
    """Automatically set up test environment for all tests."""
    monkeypatch.setenv("ENV", "testing")
    for key in ("DATABASE_URL", "DB_HOST", "DB_PORT", "DB_USER", "DB_PASSWORD", "DB_NAME"):
        monkeypatch.delenv(key, raising=False)

    # Reset singletons so each test starts clean
    from shopcore.core.settings import reset_settings

    reset_settings()
    DatabaseFactory.reset_instance()
    yield
    DatabaseFactory.reset_instance()
    reset_settings()


@pytest.fixture
def raw_config() -> Dict[str, Any]:
    """Complete raw connection parameters for a local database."""
    return {
        "host": "localhost",
        "port": "5432",
        "user": "shop",
        "password": "secret",
        "database": "shop_test",
    }


@pytest.fixture
def pool_config(raw_config: Dict[str, Any]) -> PoolConfig:
    """Small pool with short timeouts so exhaustion tests run fast."""
    return validate_pool_config(
        {**raw_config, "max_connections": 3, "connect_timeout_ms": 200, "idle_timeout_ms": 0}
    )


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings(env="testing", slow_query_threshold_ms=500, query_logging=True)


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest_asyncio.fixture
async def pool(pool_config: PoolConfig, server: FakeServer) -> AsyncGenerator[ConnectionPool, None]:
    """Opened pool backed by the fake server."""
    connection_pool = ConnectionPool(pool_config, connector=server.connect, close_timeout=0.5)
    await connection_pool.open()
    yield connection_pool
    await connection_pool.shutdown(timeout=1)


@pytest_asyncio.fixture
async def db(
    pool_config: PoolConfig, settings: AppSettings, server: FakeServer
) -> AsyncGenerator[Database, None]:
    """Connected Database backed by the fake server."""
    database = Database(pool_config, settings=settings, connector=server.connect)
    await database.connect()
    yield database
    await database.close(timeout=1)
