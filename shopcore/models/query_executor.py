"""Instrumented query execution on pooled connections."""

import asyncio
import time
from typing import Optional

import asyncpg
from loguru import logger

from shopcore.core.exceptions import QueryExecutionError
from shopcore.models.connection_pool import ConnectionLease, ConnectionPool
from shopcore.models.query import QueryRequest, QueryResult
from shopcore.utils.masking import truncate_query


class QueryExecutor:
    """
    Runs parameterized queries with timing, slow-query warnings and error translation.

    Every backing-store fault surfaces as QueryExecutionError carrying the
    truncated query text, the bound parameters, the elapsed time and the
    query label. Parameters are always sent separately from the text.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        slow_query_threshold_ms: int = 500,
        query_logging: bool = False,
        statement_timeout: Optional[float] = None,
    ):
        """
        Initialize query executor.

        Args:
            pool: Pool that leases connections
            slow_query_threshold_ms: Warn when a query takes at least this long (0 disables)
            query_logging: Log every query at DEBUG level
            statement_timeout: Per-query timeout in seconds (None for no timeout)
        """
        self.pool = pool
        self.slow_query_threshold_ms = slow_query_threshold_ms
        self.query_logging = query_logging
        self.statement_timeout = statement_timeout

    async def execute(self, request: QueryRequest) -> QueryResult:
        """
        Lease a connection, run one query, and release the connection.

        Raises:
            PoolTimeoutError: If no connection became available
            PoolClosedError: If the pool is shut down
            QueryExecutionError: If the query failed
        """
        async with self.pool.lease() as conn:
            return await self.run(conn, request)

    async def run(self, conn: ConnectionLease, request: QueryRequest) -> QueryResult:
        """Run one query on a connection the caller already holds."""
        if self.query_logging:
            logger.debug(
                f"Executing query [{request.display_label}] on connection #{conn.id}: "
                f"{truncate_query(request.text)}"
            )

        start = time.perf_counter()
        try:
            records = await conn.fetch(request.text, *request.params, timeout=self.statement_timeout)
        except asyncio.CancelledError:
            # Protocol state unknown after cancellation
            conn.mark_broken()
            raise
        except Exception as e:
            elapsed_ms = (time.perf_counter() - start) * 1000
            if not isinstance(e, asyncpg.PostgresError):
                conn.mark_broken()
            query = truncate_query(request.text)
            logger.error(
                f"PostgreSQL query failed [{request.display_label}] after {elapsed_ms:.1f}ms: {e} "
                f"| query: {query} | params: {list(request.params)}"
            )
            raise QueryExecutionError(
                str(e), query, request.params, elapsed_ms, request.label
            ) from e

        elapsed_ms = (time.perf_counter() - start) * 1000
        result = QueryResult.from_records(records, elapsed_ms=elapsed_ms, label=request.label)

        if self.slow_query_threshold_ms and elapsed_ms >= self.slow_query_threshold_ms:
            logger.warning(
                f"Slow query [{request.display_label}] took {elapsed_ms:.1f}ms "
                f"(threshold {self.slow_query_threshold_ms}ms, {len(result)} rows): "
                f"{truncate_query(request.text)}"
            )
        elif self.query_logging:
            logger.debug(
                f"Query [{request.display_label}] completed in {elapsed_ms:.1f}ms ({len(result)} rows)"
            )
        return result
