"""Query request and result value types."""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Type, TypeVar, overload

from pydantic import TypeAdapter, ValidationError
from pydantic.errors import PydanticSchemaGenerationError, PydanticUserError

from shopcore.core.exceptions import RowDecodeError

T = TypeVar("T")

Row = Dict[str, Any]


@dataclass(frozen=True)
class QueryRequest:
    """Query text plus positional parameters ($1, $2, ...) and a logging label."""

    text: str
    params: Tuple[Any, ...] = ()
    label: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.params, tuple):
            object.__setattr__(self, "params", tuple(self.params))

    @classmethod
    def of(
        cls, text: str, params: Optional[Sequence[Any]] = None, label: Optional[str] = None
    ) -> "QueryRequest":
        return cls(text, tuple(params or ()), label)

    @property
    def display_label(self) -> str:
        return self.label or "unlabelled"


class QueryResult(Sequence[Row]):
    """Rows returned by a query, in server order, as plain dictionaries."""

    def __init__(self, rows: List[Row], elapsed_ms: float = 0.0, label: Optional[str] = None):
        self._rows = rows
        self.elapsed_ms = elapsed_ms
        self.label = label

    @classmethod
    def from_records(
        cls, records: Iterable[Any], elapsed_ms: float = 0.0, label: Optional[str] = None
    ) -> "QueryResult":
        """Build a result from driver records (anything ``dict()`` accepts)."""
        return cls([dict(record) for record in records], elapsed_ms=elapsed_ms, label=label)

    @overload
    def __getitem__(self, index: int) -> Row: ...

    @overload
    def __getitem__(self, index: slice) -> List[Row]: ...

    def __getitem__(self, index: Any) -> Any:
        return self._rows[index]

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[Row]:
        return iter(self._rows)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, QueryResult):
            return self._rows == other._rows
        if isinstance(other, list):
            return self._rows == other
        return NotImplemented

    def __repr__(self) -> str:
        return f"QueryResult(rows={len(self._rows)}, label={self.label!r}, elapsed_ms={self.elapsed_ms:.1f})"

    @property
    def rows(self) -> List[Row]:
        return list(self._rows)

    def first(self) -> Optional[Row]:
        """First row, or None for an empty result."""
        return self._rows[0] if self._rows else None

    def scalar(self) -> Any:
        """First column of the first row, or None for an empty result."""
        row = self.first()
        if not row:
            return None
        return next(iter(row.values()))

    def as_type(self, row_type: Type[T]) -> List[T]:
        """
        Decode every row into ``row_type``.

        Args:
            row_type: Pydantic model, dataclass, ``typing_extensions.TypedDict``
                or any type pydantic can validate a mapping into

        Returns:
            Decoded rows in the same order

        Raises:
            RowDecodeError: On the first row that does not match, or at row 0
                when pydantic cannot build a validator for ``row_type``
        """
        name = getattr(row_type, "__name__", repr(row_type))
        try:
            adapter: TypeAdapter[T] = TypeAdapter(row_type)
        except (PydanticSchemaGenerationError, PydanticUserError) as e:
            raise RowDecodeError(name, 0, f"unsupported row type: {e}") from e

        decoded: List[T] = []
        for index, row in enumerate(self._rows):
            try:
                decoded.append(adapter.validate_python(row))
            except ValidationError as e:
                raise RowDecodeError(name, index, str(e)) from e
        return decoded
