"""Core infrastructure module."""

from .exceptions import (
    # Base exception
    ShopCoreError,
    # Configuration
    ConfigurationError,
    # Database
    DatabaseError,
    DatabaseConnectionError,
    NotInitializedError,
    PoolClosedError,
    PoolTimeoutError,
    QueryExecutionError,
    RecordNotFoundError,
    RowDecodeError,
    TransactionError,
    # Shutdown
    ShutdownTimeoutError,
)
from .logger import setup_logging
from .result import Failure, Result, Success
from .settings import AppSettings, get_settings, reset_settings

__all__ = [
    "ShopCoreError",
    "ConfigurationError",
    "DatabaseError",
    "DatabaseConnectionError",
    "NotInitializedError",
    "PoolClosedError",
    "PoolTimeoutError",
    "QueryExecutionError",
    "RecordNotFoundError",
    "RowDecodeError",
    "TransactionError",
    "ShutdownTimeoutError",
    "setup_logging",
    "Success",
    "Failure",
    "Result",
    "AppSettings",
    "get_settings",
    "reset_settings",
]
