"""Bounded PostgreSQL connection pool."""

import asyncio
import itertools
import time
from contextlib import asynccontextmanager
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Set,
    Union,
)

import asyncpg
from loguru import logger

from shopcore.constants import Database as DbConstants
from shopcore.core.exceptions import (
    DatabaseConnectionError,
    PoolClosedError,
    PoolTimeoutError,
)
from shopcore.models.pool_config import PoolConfig

Connector = Callable[[PoolConfig, Optional[float]], Awaitable[Any]]
FaultListener = Callable[[Exception, Optional["PooledConnection"]], None]

# Queue marker that wakes every waiter once the pool is shut down
_CLOSED = object()


async def connect_asyncpg(config: PoolConfig, timeout: Optional[float]) -> asyncpg.Connection:
    """
    Open one asyncpg connection for the pool.

    Args:
        config: Pool configuration
        timeout: Connect timeout in seconds (asyncpg default when None)

    Returns:
        Open asyncpg connection
    """
    kwargs: Dict[str, Any] = {
        "host": config.host,
        "port": config.port,
        "user": config.user,
        "password": config.password.get_secret_value(),
        "database": config.database,
        "ssl": config.ssl_argument(),
        "statement_cache_size": 100,
    }
    if timeout is not None:
        kwargs["timeout"] = timeout
    return await asyncpg.connect(**kwargs)


class PooledConnection:
    """One backing-store connection owned by the pool."""

    _ids = itertools.count(1)

    def __init__(self, raw: Any):
        self.id = next(self._ids)
        self.raw = raw
        self.created_at = time.monotonic()
        self.last_released_at = self.created_at
        self.uses = 0
        self.broken = False
        # Set once the pool itself starts closing this connection
        self.retiring = False

    def is_closed(self) -> bool:
        return self.raw.is_closed()

    def mark_broken(self) -> None:
        """Flag the connection so the pool discards it on release."""
        self.broken = True

    def idle_seconds(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.monotonic()) - self.last_released_at

    async def fetch(self, query: str, *args: Any, timeout: Optional[float] = None) -> List[Any]:
        return await self.raw.fetch(query, *args, timeout=timeout)

    def transaction(self) -> Any:
        """Create a driver transaction object bound to this connection."""
        return self.raw.transaction()

    async def close(self, timeout: float) -> None:
        """Close gracefully, falling back to terminate."""
        self.retiring = True
        if self.raw.is_closed():
            return
        try:
            await self.raw.close(timeout=timeout)
        except Exception as e:
            logger.warning(f"Graceful close of connection #{self.id} failed ({e}); terminating")
            self.raw.terminate()

    def terminate(self) -> None:
        self.retiring = True
        if not self.raw.is_closed():
            self.raw.terminate()

    def __repr__(self) -> str:
        return f"<PooledConnection #{self.id} uses={self.uses} broken={self.broken}>"


class ConnectionLease:
    """
    One caller's hold on a pooled connection.

    Every acquire() hands out a fresh lease. release() detaches it, after
    which the lease no longer reaches the connection: queries raise and a
    second release is ignored, even when the same connection has since been
    leased to someone else.
    """

    def __init__(self, conn: PooledConnection):
        self.id = conn.id
        self._conn: Optional[PooledConnection] = conn

    @property
    def detached(self) -> bool:
        return self._conn is None

    def _connection(self) -> PooledConnection:
        if self._conn is None:
            raise asyncpg.InterfaceError(
                f"connection #{self.id} has been released back to the pool"
            )
        return self._conn

    def _detach(self) -> PooledConnection:
        conn = self._connection()
        self._conn = None
        return conn

    @property
    def raw(self) -> Any:
        return self._connection().raw

    @property
    def uses(self) -> int:
        return self._connection().uses

    @property
    def broken(self) -> bool:
        return self._connection().broken

    def is_closed(self) -> bool:
        return self._connection().is_closed()

    def mark_broken(self) -> None:
        # A released lease must not affect the connection's next holder
        if self._conn is not None:
            self._conn.mark_broken()

    async def fetch(self, query: str, *args: Any, timeout: Optional[float] = None) -> List[Any]:
        return await self._connection().fetch(query, *args, timeout=timeout)

    def transaction(self) -> Any:
        return self._connection().transaction()

    def __repr__(self) -> str:
        state = "released" if self._conn is None else "active"
        return f"<ConnectionLease #{self.id} {state}>"


class ConnectionPool:
    """
    Owns up to ``max_connections`` live connections and leases them to callers.

    Every lease occupies one slot of an internal LIFO queue. A slot is either
    empty, holds an idle connection, or is the closed marker. Taking a slot is
    the only way to lease or open a connection, so the number of live
    connections never exceeds the maximum. Releasing puts the slot back
    without awaiting, so a release cannot be lost to cancellation.

    Features:
    - Acquire with connect timeout (PoolTimeoutError)
    - Connection retirement after ``max_uses`` leases, on breakage, or on close
    - Opportunistic replacement of retired connections
    - Idle connection reclamation
    - Fault notifications for connections dying outside of a query
    - Graceful shutdown that drains leased connections
    """

    def __init__(
        self,
        config: PoolConfig,
        connector: Optional[Connector] = None,
        close_timeout: float = DbConstants.CLOSE_TIMEOUT,
    ):
        """
        Initialize connection pool (no connection is opened yet).

        Args:
            config: Validated pool configuration
            connector: Coroutine opening one raw connection (asyncpg by default)
            close_timeout: Seconds allowed for a graceful connection close
        """
        self.config = config
        self.max_size = config.max_connections
        self._connector: Connector = connector or connect_asyncpg
        self._close_timeout = close_timeout

        self._slots: "asyncio.LifoQueue[Any]" = asyncio.LifoQueue()
        for _ in range(self.max_size):
            self._slots.put_nowait(None)
        self._idle_ids: Set[int] = set()
        self._leased: Dict[int, ConnectionLease] = {}
        self._waiting = 0

        self._opened = False
        self._closing = False
        self._closed = False
        self._drained = asyncio.Event()

        self._fault_listeners: List[FaultListener] = []
        self._background: Set["asyncio.Task[Any]"] = set()
        self._reaper_task: Optional["asyncio.Task[None]"] = None

        self._created = 0
        self._retired = 0
        self._timeouts = 0

    # ------------------------------------------------------------------ lifecycle

    async def open(self) -> None:
        """
        Run the liveness probe and start background maintenance.

        Raises:
            DatabaseConnectionError: If no connection can be opened or the probe fails
            PoolTimeoutError: If the first connection cannot be opened in time
            PoolClosedError: If the pool was already shut down
        """
        if self._opened:
            return

        async with self.lease() as conn:
            try:
                await conn.fetch(DbConstants.LIVENESS_QUERY, timeout=self.config.connect_timeout)
            except Exception as e:
                conn.mark_broken()
                raise DatabaseConnectionError(
                    f"Database liveness probe failed: {e}", host=self.config.host
                ) from e

        self._opened = True
        if self.config.idle_timeout is not None:
            self._reaper_task = asyncio.create_task(self._reap_idle_connections())

        logger.info(
            f"PostgreSQL connection pool established (max connections: {self.max_size}): "
            f"{self.config.display_target()}"
        )

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Close the pool.

        New acquires and current waiters fail with PoolClosedError, idle
        connections are closed at once, and leased connections are closed as
        their holders release them.

        Args:
            timeout: Seconds to wait for leased connections (forever when None);
                connections still leased afterwards are terminated
        """
        if self._closing:
            await self._drained.wait()
            return

        self._closing = True
        idle: List[PooledConnection] = []
        while True:
            try:
                item = self._take_nowait()
            except asyncio.QueueEmpty:
                break
            if isinstance(item, PooledConnection):
                idle.append(item)
        self._slots.put_nowait(_CLOSED)
        if not self._leased:
            self._drained.set()

        tasks = list(self._background)
        if self._reaper_task is not None:
            tasks.append(self._reaper_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for conn in idle:
            await self._discard(conn, "pool shutdown")

        if self._leased:
            logger.info(f"Waiting for {len(self._leased)} leased connection(s) to be released")
            try:
                await asyncio.wait_for(self._drained.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"{len(self._leased)} connection(s) still leased after {timeout}s; terminating"
                )
                for lease in list(self._leased.values()):
                    lease._connection().terminate()
                self._drained.set()

        self._closed = True
        logger.info("Database connection pool closed")

    def is_healthy(self) -> bool:
        """Whether the pool is open and not shut down."""
        return self._opened and not self._closing

    @property
    def closed(self) -> bool:
        return self._closing

    # ------------------------------------------------------------------ leasing

    async def acquire(self, timeout: Optional[float] = None) -> ConnectionLease:
        """
        Lease a connection.

        Args:
            timeout: Seconds to wait (defaults to the configured connect timeout)

        Returns:
            A lease held exclusively by the caller until release()

        Raises:
            PoolTimeoutError: If no connection became available in time
            PoolClosedError: If the pool is shut down
            DatabaseConnectionError: If a new connection could not be opened
        """
        if self._closing:
            raise PoolClosedError()

        wait_timeout = self.config.connect_timeout if timeout is None else timeout
        deadline = None if wait_timeout is None else time.monotonic() + wait_timeout

        self._waiting += 1
        try:
            if wait_timeout is None:
                item = await self._slots.get()
            else:
                item = await asyncio.wait_for(self._slots.get(), timeout=wait_timeout)
        except asyncio.TimeoutError:
            self._timeouts += 1
            logger.error(
                f"Database connection pool exhausted "
                f"(timeout: {wait_timeout}s, leased: {len(self._leased)}/{self.max_size})"
            )
            raise PoolTimeoutError(timeout=wait_timeout or 0.0, pool_size=self.max_size) from None
        finally:
            self._waiting -= 1

        if item is _CLOSED:
            # Pass the marker on to the next waiter
            self._slots.put_nowait(_CLOSED)
            raise PoolClosedError()
        if isinstance(item, PooledConnection):
            self._idle_ids.discard(item.id)
        if self._closing:
            if isinstance(item, PooledConnection):
                await self._discard(item, "pool shutdown")
            raise PoolClosedError()

        # From here on this coroutine owns one slot
        try:
            conn = await self._ready_connection(item, deadline)
        except BaseException:
            self._return_slot(None)
            raise

        if self._closing:
            await self._discard(conn, "pool shutdown")
            raise PoolClosedError()

        lease = ConnectionLease(conn)
        self._leased[conn.id] = lease
        return lease

    async def release(self, lease: ConnectionLease) -> None:
        """
        Return a leased connection.

        The connection goes back to the idle set unless it must be retired
        (max uses reached, broken, closed, or pool closing). A retired
        connection is closed and a replacement is opened in the background.

        Args:
            lease: Lease obtained from acquire(); releasing it again, or
                releasing a lease from before the connection was re-leased,
                is ignored
        """
        if lease.detached or self._leased.get(lease.id) is not lease:
            logger.warning(f"Ignoring release of connection #{lease.id}: lease already released")
            return

        del self._leased[lease.id]
        conn = lease._detach()

        conn.uses += 1
        reason = self._retire_reason(conn)
        if reason is None:
            conn.last_released_at = time.monotonic()
            self._return_slot(conn)
            return

        if self._closing:
            if not self._leased:
                self._drained.set()
        else:
            self._return_slot(None)

        await self._discard(conn, reason)
        if self._opened and not self._closing:
            self._spawn(self._replenish())

    @asynccontextmanager
    async def lease(self, timeout: Optional[float] = None) -> AsyncIterator[ConnectionLease]:
        """
        Acquire a connection for the duration of the block.

        The connection is released exactly once on every exit path,
        cancellation included.
        """
        conn = await self.acquire(timeout)
        try:
            yield conn
        finally:
            await self.release(conn)

    # ------------------------------------------------------------------ faults

    def add_fault_listener(self, listener: FaultListener) -> None:
        """Register a callback for asynchronous pool-level faults."""
        self._fault_listeners.append(listener)

    def remove_fault_listener(self, listener: FaultListener) -> None:
        if listener in self._fault_listeners:
            self._fault_listeners.remove(listener)

    def _emit_fault(self, error: Exception, conn: Optional[PooledConnection]) -> None:
        where = f"connection #{conn.id}" if conn is not None else "pool"
        logger.error(f"Database pool fault on {where}: {error}")
        for listener in list(self._fault_listeners):
            try:
                listener(error, conn)
            except Exception as e:
                logger.error(f"Pool fault listener failed: {e}")

    def _on_connection_terminated(self, conn: PooledConnection) -> None:
        if conn.retiring:
            return
        conn.mark_broken()
        state = "leased" if conn.id in self._leased else "idle"
        self._emit_fault(
            DatabaseConnectionError(
                f"Connection #{conn.id} terminated unexpectedly while {state}",
                host=self.config.host,
            ),
            conn,
        )

    # ------------------------------------------------------------------ stats

    def get_stats(self) -> Dict[str, Any]:
        """
        Get current pool statistics.

        Returns:
            Dictionary with size, idle, leased, waiting and lifetime counters
        """
        idle = len(self._idle_ids)
        leased = len(self._leased)
        return {
            "max_size": self.max_size,
            "size": idle + leased,
            "idle": idle,
            "leased": leased,
            "waiting": self._waiting,
            "created": self._created,
            "retired": self._retired,
            "timeouts": self._timeouts,
            "closed": self._closing,
        }

    # ------------------------------------------------------------------ internals

    def _take_nowait(self) -> Any:
        item = self._slots.get_nowait()
        if isinstance(item, PooledConnection):
            self._idle_ids.discard(item.id)
        return item

    def _return_slot(self, item: Optional[PooledConnection]) -> None:
        if self._closing:
            return
        if item is not None:
            self._idle_ids.add(item.id)
        self._slots.put_nowait(item)

    def _retire_reason(self, conn: PooledConnection) -> Optional[str]:
        if self._closing:
            return "pool closing"
        if conn.broken:
            return "broken"
        if conn.is_closed():
            return "closed"
        if self.config.max_uses and conn.uses >= self.config.max_uses:
            return f"reached max uses ({self.config.max_uses})"
        return None

    def _stale_reason(self, conn: PooledConnection, now: float) -> Optional[str]:
        if conn.broken:
            return "broken"
        if conn.is_closed():
            return "closed"
        idle_timeout = self.config.idle_timeout
        if idle_timeout is not None and conn.idle_seconds(now) > idle_timeout:
            return "idle timeout"
        return None

    async def _ready_connection(
        self, item: Optional[PooledConnection], deadline: Optional[float]
    ) -> PooledConnection:
        if item is not None:
            reason = self._stale_reason(item, time.monotonic())
            if reason is None:
                return item
            await self._discard(item, reason)

        remaining = None if deadline is None else deadline - time.monotonic()
        if remaining is not None and remaining <= 0:
            self._timeouts += 1
            raise PoolTimeoutError(timeout=self.config.connect_timeout or 0.0, pool_size=self.max_size)
        return await self._open_connection(remaining)

    async def _open_connection(self, timeout: Optional[float]) -> PooledConnection:
        try:
            if timeout is None:
                raw = await self._connector(self.config, None)
            else:
                raw = await asyncio.wait_for(self._connector(self.config, timeout), timeout=timeout)
        except asyncio.TimeoutError:
            self._timeouts += 1
            logger.error(f"Timed out opening a database connection to {self.config.display_target()}")
            raise PoolTimeoutError(
                timeout=timeout or 0.0, pool_size=self.max_size
            ) from None
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            logger.error(f"Could not open database connection to {self.config.display_target()}: {e}")
            raise DatabaseConnectionError(
                f"Could not open database connection: {e}", host=self.config.host
            ) from e

        conn = PooledConnection(raw)
        raw.add_termination_listener(lambda _raw: self._on_connection_terminated(conn))
        self._created += 1
        logger.debug(f"Opened connection #{conn.id} ({self._created} created so far)")
        return conn

    async def _discard(self, conn: PooledConnection, reason: str) -> None:
        self._retired += 1
        logger.debug(f"Retiring connection #{conn.id}: {reason}")
        await conn.close(self._close_timeout)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _replenish(self) -> None:
        """Refill one empty slot with a fresh connection, if one is free right now."""
        if self._closing:
            return
        try:
            item = self._take_nowait()
        except asyncio.QueueEmpty:
            return
        if item is not None:
            if item is _CLOSED:
                self._slots.put_nowait(item)
            else:
                self._return_slot(item)
            return

        conn: Optional[PooledConnection] = None
        try:
            conn = await self._open_connection(self.config.connect_timeout)
        except (DatabaseConnectionError, PoolTimeoutError) as e:
            logger.warning(f"Could not open replacement connection: {e}")
        finally:
            if conn is None:
                self._return_slot(None)

        if conn is None:
            return
        if self._closing:
            await self._discard(conn, "pool shutdown")
            return
        conn.last_released_at = time.monotonic()
        self._return_slot(conn)
        logger.debug(f"Replacement connection #{conn.id} added to the idle set")

    def _collect_stale(self) -> List[PooledConnection]:
        """Pull stale idle connections out of their slots without awaiting."""
        items: List[Union[PooledConnection, None, object]] = []
        while True:
            try:
                items.append(self._take_nowait())
            except asyncio.QueueEmpty:
                break

        now = time.monotonic()
        stale: List[PooledConnection] = []
        # Put slots back bottom-first to keep the LIFO order
        for item in reversed(items):
            if item is _CLOSED:
                self._slots.put_nowait(item)
                continue
            if isinstance(item, PooledConnection) and self._stale_reason(item, now) is not None:
                stale.append(item)
                item = None
            self._return_slot(item)  # type: ignore[arg-type]
        return stale

    async def _reap_idle_connections(self) -> None:
        """Periodic cleanup of idle connections past the idle timeout."""
        idle_timeout = self.config.idle_timeout or 0.0
        interval = min(max(idle_timeout / 2, 0.05), 30.0)
        try:
            while not self._closing:
                await asyncio.sleep(interval)
                stale = self._collect_stale()
                for conn in stale:
                    await self._discard(conn, "idle timeout")
                if stale:
                    logger.debug(f"Reclaimed {len(stale)} idle connection(s)")
        except asyncio.CancelledError:
            logger.debug("Idle connection reaper cancelled")
            raise
        except Exception as e:
            logger.error(f"Error in idle connection reaper: {e}")
