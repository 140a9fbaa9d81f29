"""PostgreSQL access core for shopcore with connection pooling."""

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Sequence, Type, TypeVar

from loguru import logger

from shopcore.constants import Database as DbConstants
from shopcore.core.exceptions import NotInitializedError, QueryExecutionError
from shopcore.core.settings import AppSettings, get_settings
from shopcore.models.connection_pool import (
    ConnectionLease,
    ConnectionPool,
    Connector,
    PooledConnection,
)
from shopcore.models.db_state import DatabaseState, require_connection
from shopcore.models.pool_config import PoolConfig
from shopcore.models.query import QueryRequest, QueryResult
from shopcore.models.query_executor import QueryExecutor
from shopcore.models.transaction import TransactionContext, TransactionCoordinator

T = TypeVar("T")


class Database:
    """
    PostgreSQL database manager with connection pooling.

    The only sanctioned way for application code to touch the database:
    parameterized queries, atomic units of work and health reporting.

    Example:
        ```python
        db = Database(pool_config_from_env())
        await db.connect()

        rows = await db.select(
            "SELECT * FROM products WHERE category_id = $1", [category_id],
            label="productsByCategory", row_type=Product,
        )

        async def move_item(tx: TransactionContext) -> None:
            await tx.update("UPDATE cart_items SET quantity = $1 WHERE id = $2", [2, item_id])

        await db.with_transaction(move_item)
        ```
    """

    def __init__(
        self,
        config: PoolConfig,
        settings: Optional[AppSettings] = None,
        connector: Optional[Connector] = None,
    ):
        """
        Initialize database manager (no connection is opened yet).

        Args:
            config: Validated pool configuration
            settings: Application settings (defaults to the settings singleton)
            connector: Override for opening raw connections (asyncpg by default)
        """
        self.config = config
        self.settings = settings or get_settings()
        self._connector = connector
        self.pool: Optional[ConnectionPool] = None
        self._executor: Optional[QueryExecutor] = None
        self._transactions: Optional[TransactionCoordinator] = None
        self._pool_lock = asyncio.Lock()

        # State tracking for health reporting
        self._last_successful_query: Optional[datetime] = None
        self._consecutive_failures: int = 0
        self._max_failures_before_degraded: int = 3
        self._pool_faults: int = 0

    @property
    def state(self) -> str:
        """
        Get current database state.

        Returns:
            Current state (CONNECTED, DEGRADED, or DISCONNECTED)
        """
        if self.pool is None or not self.pool.is_healthy():
            return DatabaseState.DISCONNECTED

        if self._consecutive_failures >= self._max_failures_before_degraded:
            return DatabaseState.DEGRADED

        return DatabaseState.CONNECTED

    async def connect(self) -> None:
        """
        Create the pool and run the liveness probe.

        Raises:
            DatabaseConnectionError: If the database is unreachable or the probe fails
            PoolTimeoutError: If the first connection could not be opened in time
        """
        async with self._pool_lock:
            if self.pool is not None and self.pool.is_healthy():
                return

            pool = ConnectionPool(self.config, connector=self._connector)
            try:
                await pool.open()
            except BaseException:
                # Clean up on error
                await pool.shutdown(timeout=DbConstants.CLOSE_TIMEOUT)
                raise

            pool.add_fault_listener(self._on_pool_fault)
            self.pool = pool
            self._executor = QueryExecutor(
                pool,
                slow_query_threshold_ms=self.settings.slow_query_threshold_ms,
                query_logging=bool(self.settings.query_logging),
                statement_timeout=self.config.statement_timeout,
            )
            self._transactions = TransactionCoordinator(pool, self._executor)
            self._consecutive_failures = 0

            logger.info(
                f"Database connected with max {self.config.max_connections} connections "
                f"(tls: {self.config.effective_tls_mode.value}): {self.config.display_target()}"
            )

    async def close(self, timeout: Optional[float] = None) -> None:
        """
        Close database connection pool.

        Args:
            timeout: Seconds to wait for leased connections (defaults to SHUTDOWN_TIMEOUT)
        """
        async with self._pool_lock:
            if self.pool is None:
                return
            await self.pool.shutdown(
                timeout=self.settings.shutdown_timeout if timeout is None else timeout
            )

    shutdown = close

    async def __aenter__(self) -> "Database":
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    @asynccontextmanager
    async def get_connection(self, timeout: Optional[float] = None) -> AsyncIterator[ConnectionLease]:
        """
        Lease a connection for the duration of the block.

        Args:
            timeout: Maximum time to wait (defaults to the configured connect timeout)

        Yields:
            Connection lease, released on every exit path and unusable afterwards

        Raises:
            NotInitializedError: If connect() has not completed
            PoolTimeoutError: If no connection became available in time
        """
        if self.pool is None:
            raise NotInitializedError()
        async with self.pool.lease(timeout) as conn:
            yield conn

    @require_connection
    async def execute(self, request: QueryRequest) -> QueryResult:
        """
        Run one parameterized query on a leased connection.

        Raises:
            NotInitializedError: If connect() has not completed
            PoolTimeoutError: If no connection became available in time
            QueryExecutionError: If the backing store rejected the query
        """
        assert self._executor is not None
        try:
            result = await self._executor.execute(request)
        except QueryExecutionError:
            self._record_failure()
            raise
        self._consecutive_failures = 0
        self._last_successful_query = datetime.now(timezone.utc)
        return result

    def _on_pool_fault(self, error: Exception, conn: Optional[PooledConnection]) -> None:
        # Already logged by the pool; counted for health reporting
        self._pool_faults += 1

    def _record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._consecutive_failures == self._max_failures_before_degraded:
            logger.warning(
                f"Database entering DEGRADED state after {self._consecutive_failures} "
                "consecutive query failures"
            )

    async def _run(
        self,
        kind: str,
        query: str,
        params: Optional[Sequence[Any]],
        label: Optional[str],
        row_type: Optional[Type[T]],
    ) -> Any:
        result = await self.execute(QueryRequest.of(query, params, label or kind))
        return result if row_type is None else result.as_type(row_type)

    async def select(
        self,
        query: str,
        params: Optional[Sequence[Any]] = None,
        label: Optional[str] = None,
        row_type: Optional[Type[T]] = None,
    ) -> Any:
        """
        Run a SELECT.

        Returns:
            QueryResult of dict rows, or a list of ``row_type`` instances
        """
        return await self._run("select", query, params, label, row_type)

    async def insert(
        self,
        query: str,
        params: Optional[Sequence[Any]] = None,
        label: Optional[str] = None,
        row_type: Optional[Type[T]] = None,
    ) -> Any:
        """Run an INSERT (use RETURNING to get rows back)."""
        return await self._run("insert", query, params, label, row_type)

    async def update(
        self,
        query: str,
        params: Optional[Sequence[Any]] = None,
        label: Optional[str] = None,
        row_type: Optional[Type[T]] = None,
    ) -> Any:
        return await self._run("update", query, params, label, row_type)

    async def delete(
        self,
        query: str,
        params: Optional[Sequence[Any]] = None,
        label: Optional[str] = None,
        row_type: Optional[Type[T]] = None,
    ) -> Any:
        return await self._run("delete", query, params, label, row_type)

    async def fetch_one(
        self,
        query: str,
        params: Optional[Sequence[Any]] = None,
        label: Optional[str] = None,
        row_type: Optional[Type[T]] = None,
    ) -> Any:
        """First row of a query (decoded when ``row_type`` is given), or None."""
        result = await self.execute(QueryRequest.of(query, params, label or "select"))
        row = result.first()
        if row is None or row_type is None:
            return row
        return QueryResult([row]).as_type(row_type)[0]

    async def fetch_value(
        self, query: str, params: Optional[Sequence[Any]] = None, label: Optional[str] = None
    ) -> Any:
        """First column of the first row, or None."""
        result = await self.execute(QueryRequest.of(query, params, label or "select"))
        return result.scalar()

    @require_connection
    async def with_transaction(self, unit_of_work: Callable[[TransactionContext], Awaitable[T]]) -> T:
        """
        Run ``unit_of_work`` atomically on one connection.

        Commits when the unit of work returns normally (a ``Failure`` result
        counts as failure), rolls back otherwise and re-raises the original
        error. Must not be called from inside another unit of work.

        Args:
            unit_of_work: Coroutine function receiving a TransactionContext

        Returns:
            The unit of work's return value
        """
        assert self._transactions is not None
        return await self._transactions.run(unit_of_work)

    def is_healthy(self) -> bool:
        """Whether the pool exists and has not been shut down."""
        return self.pool is not None and self.pool.is_healthy()

    async def ping(self, timeout: float = 5.0) -> bool:
        """
        Round-trip a trivial query.

        Returns:
            True if the database answered
        """
        if self.pool is None:
            return False
        try:
            async with self.pool.lease(timeout) as conn:
                await conn.fetch(DbConstants.PING_QUERY, timeout=timeout)
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    async def health_check(self) -> Dict[str, Any]:
        """
        Detailed health report for monitoring endpoints.

        Returns:
            Dictionary with status, latency, state and pool statistics
        """
        timestamp = datetime.now(timezone.utc).isoformat()
        if self.pool is None:
            return {
                "status": "not_initialized",
                "state": self.state,
                "timestamp": timestamp,
                "connection": self.get_connection_info(),
                "pool": self.get_pool_stats(),
            }

        start = time.perf_counter()
        reachable = await self.ping()
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        return {
            "status": "healthy" if reachable else "unhealthy",
            "timestamp": timestamp,
            "connection": self.get_connection_info(),
            "state": self.state,
            "latency_ms": latency_ms if reachable else None,
            "pool_faults": self._pool_faults,
            "last_successful_query": (
                self._last_successful_query.isoformat() if self._last_successful_query else None
            ),
            "pool": self.get_pool_stats(),
        }

    def get_connection_info(self) -> str:
        """Credential-free connection description, safe for logs."""
        return (
            f"{self.config.display_target()} (user: {self.config.user}, "
            f"tls: {self.config.effective_tls_mode.value}, max: {self.config.max_connections})"
        )

    def get_pool_stats(self) -> Dict[str, Any]:
        if self.pool is None:
            return {"initialized": False}
        return {"initialized": True, **self.pool.get_stats()}
