"""Custom exception classes for shopcore."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence


class ShopCoreError(Exception):
    """Base exception for shopcore."""

    def __init__(
        self, message: str, recoverable: bool = False, details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize shopcore error.

        Args:
            message: Error message
            recoverable: Whether the caller may retry the operation
            details: Additional error details
        """
        self.message = message
        self.recoverable = recoverable
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "recoverable": self.recoverable,
            "details": self.details,
            "timestamp": self.timestamp,
        }


# Configuration Errors
class ConfigurationError(ShopCoreError):
    """Missing or invalid configuration. Fatal at startup."""

    def __init__(
        self,
        message: str = "Configuration error",
        missing_keys: Optional[Sequence[str]] = None,
        invalid: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize configuration error.

        Args:
            message: Error message
            missing_keys: Every required key that was absent
            invalid: Mapping of key to validation message for present but bad values
        """
        self.missing_keys: List[str] = list(missing_keys or [])
        self.invalid: Dict[str, str] = dict(invalid or {})
        details: Dict[str, Any] = {}
        if self.missing_keys:
            details["missing_keys"] = self.missing_keys
        if self.invalid:
            details["invalid"] = self.invalid
        super().__init__(message, recoverable=False, details=details)


# Database Errors
class DatabaseError(ShopCoreError):
    """Base class for database-related errors."""

    def __init__(
        self,
        message: str = "Database error occurred",
        recoverable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, recoverable, details)


class NotInitializedError(DatabaseError):
    """Raised when a query is attempted before the pool exists."""

    def __init__(self, message: Optional[str] = None):
        super().__init__(
            message
            or "Database pool is not initialized. Call DatabaseFactory.init() or connect() first.",
            recoverable=False,
        )


class DatabaseConnectionError(DatabaseError):
    """Raised when a connection to the database cannot be opened."""

    def __init__(self, message: str = "Failed to connect to database", host: Optional[str] = None):
        super().__init__(message, recoverable=True, details={"host": host} if host else {})


class PoolTimeoutError(DatabaseError):
    """Raised when no connection became free within the connect timeout."""

    def __init__(self, timeout: float, pool_size: int):
        self.timeout = timeout
        self.pool_size = pool_size
        super().__init__(
            f"Database connection pool exhausted after {timeout}s (pool size: {pool_size}). "
            "Consider increasing DB_POOL_MAX or optimizing database queries.",
            recoverable=True,
            details={"timeout": timeout, "pool_size": pool_size},
        )


class PoolClosedError(DatabaseError):
    """Raised when acquiring from a pool that has been shut down."""

    def __init__(self, message: str = "Database connection pool is closed"):
        super().__init__(message, recoverable=False)


class QueryExecutionError(DatabaseError):
    """Wraps any backing-store fault raised while running a query."""

    def __init__(
        self,
        original_message: str,
        query: str,
        params: Sequence[Any] = (),
        elapsed_ms: float = 0.0,
        label: Optional[str] = None,
    ):
        """
        Initialize query execution error.

        Args:
            original_message: Message of the underlying driver error
            query: Query text, already truncated for logging
            params: Bound parameters
            elapsed_ms: Time spent before the failure
            label: Query identifier used for logging
        """
        self.original_message = original_message
        self.query = query
        self.params = list(params)
        self.elapsed_ms = elapsed_ms
        self.label = label
        super().__init__(
            f"PostgreSQL query execution failed ({label or 'unlabelled'}): {original_message}",
            recoverable=False,
            details={
                "label": label,
                "query": query,
                "params": self.params,
                "elapsed_ms": round(elapsed_ms, 2),
                "original_message": original_message,
            },
        )


class TransactionError(DatabaseError):
    """Raised when a unit of work reports failure or a finished transaction is reused."""

    def __init__(self, message: str = "Transaction failed"):
        super().__init__(message, recoverable=False)


class RowDecodeError(DatabaseError):
    """Raised when a result row does not match the declared row type."""

    def __init__(self, row_type: str, row_index: int, error: str):
        self.row_type = row_type
        self.row_index = row_index
        super().__init__(
            f"Row {row_index} could not be decoded as {row_type}: {error}",
            recoverable=False,
            details={"row_type": row_type, "row_index": row_index},
        )


class RecordNotFoundError(DatabaseError):
    """Raised when a database record is not found."""

    def __init__(self, resource_type: str, resource_id: Any):
        super().__init__(
            f"{resource_type} with id '{resource_id}' not found",
            recoverable=False,
            details={"resource_type": resource_type, "resource_id": str(resource_id)},
        )


class ShutdownTimeoutError(ShopCoreError):
    """Raised when graceful shutdown exceeds its timeout."""

    def __init__(self, message: str = "Graceful shutdown timed out", timeout: Optional[int] = None):
        self.timeout = timeout
        super().__init__(message, recoverable=False, details={"timeout": timeout} if timeout else {})
