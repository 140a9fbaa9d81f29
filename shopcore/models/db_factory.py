"""Database factory with singleton pattern for connection management."""

import asyncio
import threading
from typing import Optional

from loguru import logger

from shopcore.core.exceptions import NotInitializedError
from shopcore.core.settings import AppSettings
from shopcore.models.connection_pool import Connector
from shopcore.models.database import Database
from shopcore.models.pool_config import PoolConfig, pool_config_from_env


class DatabaseFactory:
    """
    Singleton factory for the process-wide Database.

    Concurrent first callers of ``init`` share one connect attempt; exactly
    one pool is ever created per process until ``shutdown``. A failed
    initialization leaves no instance behind, so a later call may retry.

    Example:
        ```python
        # At startup
        db = await DatabaseFactory.init()

        # Anywhere else
        db = DatabaseFactory.get_instance()  # Same instance
        ```
    """

    _instance: Optional[Database] = None
    _async_lock: Optional[asyncio.Lock] = None
    _class_lock = threading.Lock()  # Thread-safe guard for async lock creation

    @classmethod
    def _get_async_lock(cls) -> asyncio.Lock:
        """Get or create the async lock (lazy initialization for event loop safety)."""
        with cls._class_lock:
            if cls._async_lock is None:
                cls._async_lock = asyncio.Lock()
        return cls._async_lock

    @classmethod
    async def init(
        cls,
        config: Optional[PoolConfig] = None,
        settings: Optional[AppSettings] = None,
        connector: Optional[Connector] = None,
    ) -> Database:
        """
        Create, connect and register the singleton, or return the existing one.

        Args:
            config: Pool configuration (read from DATABASE_URL and DB_* variables when None;
                ignored once an instance exists)
            settings: Application settings
            connector: Override for opening raw connections

        Returns:
            Connected Database singleton

        Raises:
            ConfigurationError: If configuration is missing or invalid
            DatabaseConnectionError: If the liveness probe failed
        """
        async with cls._get_async_lock():
            if cls._instance is not None:
                return cls._instance

            db = Database(config or pool_config_from_env(), settings=settings, connector=connector)
            await db.connect()
            cls._instance = db
            logger.info("Created new database singleton instance")
            return db

    get_or_create = init

    @classmethod
    def get_instance(cls) -> Database:
        """
        Get the initialized singleton.

        Raises:
            NotInitializedError: If init() has not completed
        """
        instance = cls._instance
        if instance is None:
            raise NotInitializedError()
        return instance

    @classmethod
    def is_initialized(cls) -> bool:
        return cls._instance is not None

    @classmethod
    def reset_instance(cls) -> None:
        """
        Reset singleton instance (useful for testing).

        Warning: This will NOT close the existing pool.
        Call close_instance() before resetting.
        """
        cls._instance = None
        with cls._class_lock:
            cls._async_lock = None  # Reset lock too
        logger.info("Reset database singleton instance")

    @classmethod
    async def close_instance(cls, timeout: Optional[float] = None) -> None:
        """
        Shut down the singleton's pool and forget the instance.

        This should be called during application shutdown.
        """
        async with cls._get_async_lock():
            if cls._instance is not None:
                instance_to_close = cls._instance
                cls._instance = None
                await instance_to_close.close(timeout)
                logger.info("Closed and reset database singleton instance")

    shutdown = close_instance
