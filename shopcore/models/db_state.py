"""Database state tracking and utilities."""

from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

from shopcore.core.exceptions import NotInitializedError

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


class DatabaseState:
    """Database connection state constants."""

    CONNECTED = "connected"
    DEGRADED = "degraded"
    DISCONNECTED = "disconnected"


def require_connection(func: F) -> F:
    """
    Decorator to ensure the pool exists before method execution.

    Args:
        func: Function to wrap

    Returns:
        Wrapped function that checks for the pool

    Raises:
        NotInitializedError: If connect() has not completed
    """

    @wraps(func)
    async def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
        if self.pool is None:
            raise NotInitializedError()
        return await func(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]
