"""Outcomes a unit of work may return instead of raising.

The transaction coordinator commits on ``Success`` and rolls back on
``Failure``, then raises the failure's error to the caller.
"""

from dataclasses import dataclass
from typing import Generic, NoReturn, Optional, TypeVar, Union

from shopcore.core.exceptions import TransactionError

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class Success(Generic[T]):
    """Outcome whose value is committed."""

    value: T

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Failure(Generic[E]):
    """Outcome that rolls the transaction back."""

    error: E
    exception: Optional[BaseException] = None

    def rollback_error(self) -> BaseException:
        """
        Error raised once the transaction has been rolled back.

        Returns:
            The carried exception, or a TransactionError built from ``error``
        """
        if self.exception is not None:
            return self.exception
        return TransactionError(str(self.error))

    def unwrap(self) -> NoReturn:
        raise self.rollback_error()

    def __repr__(self) -> str:
        if self.exception is not None:
            return f"Failure(error={self.error!r}, exception={type(self.exception).__name__})"
        return f"Failure(error={self.error!r})"


Result = Union[Success[T], Failure[E]]
