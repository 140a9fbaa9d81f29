"""Transaction coordination: one connection, BEGIN, unit of work, COMMIT or ROLLBACK."""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, Sequence, Type, TypeVar

import asyncpg
from loguru import logger

from shopcore.core.exceptions import QueryExecutionError, TransactionError
from shopcore.core.result import Failure
from shopcore.models.connection_pool import ConnectionLease, ConnectionPool
from shopcore.models.query import QueryRequest, QueryResult
from shopcore.models.query_executor import QueryExecutor

T = TypeVar("T")


class TransactionContext:
    """
    Query handle bound to the connection of one open transaction.

    Statements run strictly in the order they are issued. The context is
    only valid until the coordinator commits or rolls back; any use after
    that raises TransactionError.
    """

    def __init__(self, conn: ConnectionLease, executor: QueryExecutor):
        self._conn = conn
        self._executor = executor
        self._active = True
        self._lock = asyncio.Lock()

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def connection_id(self) -> int:
        return self._conn.id

    def _finish(self) -> None:
        self._active = False

    def _require_active(self) -> None:
        if not self._active:
            raise TransactionError(
                "Transaction context is no longer valid (already committed or rolled back)"
            )

    async def execute(self, request: QueryRequest) -> QueryResult:
        self._require_active()
        async with self._lock:
            self._require_active()
            return await self._executor.run(self._conn, request)

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

    async def select(self, query: str, params: Optional[Sequence[Any]] = None,
                     label: Optional[str] = None, row_type: Optional[Type[T]] = None) -> Any:
        return await self._run("select", query, params, label, row_type)

    async def insert(self, query: str, params: Optional[Sequence[Any]] = None,
                     label: Optional[str] = None, row_type: Optional[Type[T]] = None) -> Any:
        return await self._run("insert", query, params, label, row_type)

    async def update(self, query: str, params: Optional[Sequence[Any]] = None,
                     label: Optional[str] = None, row_type: Optional[Type[T]] = None) -> Any:
        return await self._run("update", query, params, label, row_type)

    async def delete(self, query: str, params: Optional[Sequence[Any]] = None,
                     label: Optional[str] = None, row_type: Optional[Type[T]] = None) -> Any:
        return await self._run("delete", query, params, label, row_type)

    async def fetch_one(self, query: str, params: Optional[Sequence[Any]] = None,
                        label: Optional[str] = None, row_type: Optional[Type[T]] = None) -> Any:
        """First row (decoded when ``row_type`` is given) or None."""
        result = await self.execute(QueryRequest.of(query, params, label or "select"))
        row = result.first()
        if row is None or row_type is None:
            return row
        return QueryResult([row]).as_type(row_type)[0]

    async def fetch_value(self, query: str, params: Optional[Sequence[Any]] = None,
                          label: Optional[str] = None) -> Any:
        result = await self.execute(QueryRequest.of(query, params, label or "select"))
        return result.scalar()


class TransactionCoordinator:
    """
    Runs units of work atomically on a single pooled connection.

    Commit happens only if the unit of work returns normally without a
    ``Failure`` result. Any raised error or ``Failure`` rolls back; the
    caller sees the original error. Nested transactions are not supported:
    a unit of work must not call ``run`` again.
    """

    def __init__(self, pool: ConnectionPool, executor: QueryExecutor):
        self.pool = pool
        self.executor = executor

    async def run(self, unit_of_work: Callable[[TransactionContext], Awaitable[T]]) -> T:
        """
        Execute ``unit_of_work`` inside BEGIN ... COMMIT/ROLLBACK.

        Args:
            unit_of_work: Coroutine function receiving the TransactionContext

        Returns:
            Whatever the unit of work returned

        Raises:
            QueryExecutionError: If BEGIN or COMMIT failed
            TransactionError: If the unit of work returned a Failure without an exception
            Exception: The unit of work's own error, unchanged
        """
        async with self.pool.lease() as conn:
            transaction = conn.transaction()
            await self._control(conn, "BEGIN", transaction.start)

            context = TransactionContext(conn, self.executor)
            try:
                outcome = await unit_of_work(context)
            except asyncio.CancelledError:
                context._finish()
                # Dropping the connection makes the server abort the transaction
                conn.mark_broken()
                logger.warning(f"Transaction on connection #{conn.id} cancelled; discarding connection")
                raise
            except Exception as e:
                context._finish()
                await self._rollback(conn, transaction, e)
                raise
            except BaseException:
                context._finish()
                conn.mark_broken()
                raise

            context._finish()
            if isinstance(outcome, Failure):
                await self._rollback(conn, transaction, outcome.exception or outcome.error)
                raise outcome.rollback_error()

            await self._control(conn, "COMMIT", transaction.commit)
            return outcome

    async def _control(
        self, conn: ConnectionLease, statement: str, operation: Callable[[], Awaitable[Any]]
    ) -> None:
        start = time.perf_counter()
        try:
            await operation()
        except asyncio.CancelledError:
            conn.mark_broken()
            raise
        except Exception as e:
            elapsed_ms = (time.perf_counter() - start) * 1000
            # A failed COMMIT leaves the transaction state unknown
            if statement == "COMMIT" or not isinstance(e, asyncpg.PostgresError):
                conn.mark_broken()
            logger.error(f"{statement} failed on connection #{conn.id}: {e}")
            raise QueryExecutionError(str(e), statement, (), elapsed_ms, statement) from e

    async def _rollback(self, conn: ConnectionLease, transaction: Any, cause: Any) -> None:
        try:
            await transaction.rollback()
        except asyncio.CancelledError:
            conn.mark_broken()
            raise
        except Exception as rollback_error:
            conn.mark_broken()
            logger.error(
                f"ROLLBACK failed on connection #{conn.id} ({rollback_error}); "
                f"original error: {cause}"
            )
        else:
            logger.warning(f"Transaction on connection #{conn.id} rolled back: {cause}")
