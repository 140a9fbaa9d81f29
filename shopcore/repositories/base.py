"""Base repository class."""

from abc import ABC, abstractmethod
from typing import Any, Dict, FrozenSet, Generic, List, Optional, Tuple, TypeVar
from uuid import UUID

from shopcore.models.database import Database

T = TypeVar("T")


class BaseRepository(ABC, Generic[T]):
    """Base repository with common CRUD operations."""

    def __init__(self, database: Database):
        """
        Initialize repository with database connection.

        Args:
            database: Database instance
        """
        self.db = database

    @abstractmethod
    async def get_by_id(self, id: UUID) -> Optional[T]:
        """
        Get entity by ID.

        Args:
            id: Entity ID

        Returns:
            Entity or None if not found
        """
        pass

    @abstractmethod
    async def get_all(self, limit: int = 100) -> List[T]:
        """
        Get all entities.

        Args:
            limit: Maximum number of entities to return

        Returns:
            List of entities
        """
        pass

    @abstractmethod
    async def create(self, data: Dict[str, Any]) -> T:
        """
        Create new entity.

        Args:
            data: Entity data

        Returns:
            Created entity
        """
        pass

    @abstractmethod
    async def update(self, id: UUID, data: Dict[str, Any]) -> T:
        """
        Update entity.

        Args:
            id: Entity ID
            data: Update data

        Returns:
            Updated entity

        Raises:
            RecordNotFoundError: If the entity does not exist
        """
        pass

    @abstractmethod
    async def delete(self, id: UUID) -> bool:
        """
        Delete entity.

        Args:
            id: Entity ID

        Returns:
            True if deleted, False otherwise
        """
        pass


def build_update_clause(
    data: Dict[str, Any], allowed_fields: FrozenSet[str]
) -> Tuple[List[str], List[Any]]:
    """
    Build ``column = $n`` assignments for a dynamic UPDATE.

    Column names come only from ``allowed_fields`` (SQL injection prevention);
    values are always bound parameters.

    Args:
        data: Column -> new value
        allowed_fields: Columns callers may change

    Returns:
        Tuple of (assignments, params); the next placeholder is len(params) + 1

    Raises:
        ValueError: If data contains a column outside allowed_fields
    """
    invalid = sorted(set(data) - allowed_fields)
    if invalid:
        raise ValueError(f"Invalid update fields: {', '.join(invalid)}")

    updates: List[str] = []
    params: List[Any] = []
    for param_num, (column, value) in enumerate(sorted(data.items()), start=1):
        updates.append(f"{column} = ${param_num}")
        params.append(value)
    return updates, params
