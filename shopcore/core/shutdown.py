"""
Shutdown and signal handling module.

Drains the database pool on SIGTERM/SIGINT so leased connections finish
their work before the process exits.
"""

import asyncio
import os
import signal
import threading
from typing import Any, Optional

from loguru import logger

from shopcore.core.exceptions import ShutdownTimeoutError
from shopcore.core.settings import get_settings

# Global shutdown event for coordinating graceful shutdown - thread-safe singleton
_shutdown_event: Optional[asyncio.Event] = None
_shutdown_lock = threading.Lock()


def get_shutdown_event() -> Optional[asyncio.Event]:
    """Get shutdown event - thread-safe singleton pattern."""
    with _shutdown_lock:
        return _shutdown_event


def set_shutdown_event(event: Optional[asyncio.Event]) -> None:
    """Set shutdown event - thread-safe singleton pattern."""
    global _shutdown_event
    with _shutdown_lock:
        _shutdown_event = event


def setup_signal_handlers() -> asyncio.Event:
    """
    Install SIGTERM/SIGINT handlers.

    The first signal sets the shutdown event so the application can call
    shutdown_database(). A second signal closes the pool quickly and exits.

    Returns:
        The shutdown event the handlers set
    """
    event = asyncio.Event()
    set_shutdown_event(event)

    def handle_signal(signum: int, frame: Any) -> None:
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        shutdown_event = get_shutdown_event()
        if shutdown_event and not shutdown_event.is_set():
            shutdown_event.set()
            logger.info("Shutdown event set, waiting for leased connections to be released...")
            return

        logger.warning("Second signal received, attempting fast cleanup before exit...")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            try:
                asyncio.run(fast_emergency_cleanup())
            except Exception as e:
                logger.error(f"Emergency cleanup failed: {e}")
            logger.warning("Forcing exit after emergency cleanup")
            os._exit(0)

        cleanup_task = loop.create_task(fast_emergency_cleanup())

        def _on_cleanup_done(task: "asyncio.Task[None]") -> None:
            logger.warning("Emergency cleanup completed, forcing exit")
            os._exit(0)

        cleanup_task.add_done_callback(_on_cleanup_done)

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)
    return event


async def fast_emergency_cleanup() -> None:
    """Terminate the pool with a very short drain timeout (second signal)."""
    logger.warning("Executing fast emergency cleanup...")
    from shopcore.models.db_factory import DatabaseFactory

    try:
        await asyncio.wait_for(DatabaseFactory.close_instance(timeout=1), timeout=5)
        logger.info("DatabaseFactory instance closed")
    except asyncio.TimeoutError:
        logger.error("DatabaseFactory close timed out after 5s")
    except Exception as e:
        logger.error(f"Error closing DatabaseFactory: {e}")


async def shutdown_database(timeout: Optional[float] = None) -> None:
    """
    Drain and close the process-wide database pool.

    Args:
        timeout: Seconds to wait for leased connections (defaults to SHUTDOWN_TIMEOUT)

    Raises:
        ShutdownTimeoutError: If the pool could not be closed in time
    """
    from shopcore.models.db_factory import DatabaseFactory

    drain_timeout = float(get_settings().shutdown_timeout if timeout is None else timeout)
    logger.info(f"Shutting down database pool (timeout: {drain_timeout}s)")
    try:
        # Leased connections are terminated after drain_timeout; allow time for that
        await asyncio.wait_for(
            DatabaseFactory.close_instance(timeout=drain_timeout), timeout=drain_timeout + 5
        )
    except asyncio.TimeoutError:
        logger.error(f"Database shutdown timed out after {drain_timeout}s")
        raise ShutdownTimeoutError(
            f"Database shutdown timed out after {drain_timeout}s", timeout=int(drain_timeout)
        ) from None
    finally:
        set_shutdown_event(None)
    logger.info("Graceful shutdown complete")
