"""Category repository implementation."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from loguru import logger
from pydantic import BaseModel, ConfigDict

from shopcore.core.exceptions import RecordNotFoundError
from shopcore.models.database import Database
from shopcore.repositories.base import BaseRepository, build_update_clause

ALLOWED_CATEGORY_UPDATE_FIELDS = frozenset(
    {"name", "slug", "description", "image_url", "parent_id", "sort_order", "is_active"}
)


class Category(BaseModel):
    """Category entity model."""

    model_config = ConfigDict(extra="ignore")

    id: UUID
    name: str
    slug: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    parent_id: Optional[UUID] = None
    level: int = 0
    sort_order: int = 0
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CategoryRepository(BaseRepository[Category]):
    """Repository for category operations."""

    def __init__(self, database: Database):
        super().__init__(database)

    async def get_by_id(self, id: UUID) -> Optional[Category]:
        return await self.db.fetch_one(
            "SELECT * FROM categories WHERE id = $1 AND is_active = true",
            [id],
            label="findCategoryById",
            row_type=Category,
        )

    async def get_by_slug(self, slug: str) -> Optional[Category]:
        """
        Get an active category by its URL slug.

        Args:
            slug: Category slug

        Returns:
            Category or None if not found
        """
        return await self.db.fetch_one(
            "SELECT * FROM categories WHERE slug = $1 AND is_active = true",
            [slug],
            label="findCategoryBySlug",
            row_type=Category,
        )

    async def get_all(self, limit: int = 100) -> List[Category]:
        """
        Get active categories, shallowest first.

        Args:
            limit: Maximum number of categories to return

        Returns:
            List of Category entities
        """
        return await self.db.select(
            """
            SELECT * FROM categories
            WHERE is_active = true
            ORDER BY level ASC, sort_order ASC, name ASC
            LIMIT $1
            """,
            [limit],
            label="findAllActiveCategories",
            row_type=Category,
        )

    async def get_children(self, parent_id: UUID) -> List[Category]:
        return await self.db.select(
            """
            SELECT * FROM categories
            WHERE parent_id = $1 AND is_active = true
            ORDER BY sort_order ASC, name ASC
            """,
            [parent_id],
            label="findChildCategories",
            row_type=Category,
        )

    async def create(self, data: Dict[str, Any]) -> Category:
        """
        Create a category.

        Args:
            data: Category data (name and slug required)

        Returns:
            Created Category

        Raises:
            ValueError: If name or slug is missing
        """
        if not data.get("name") or not data.get("slug"):
            raise ValueError("Both name and slug are required")

        parent_id = data.get("parent_id")
        created = await self.db.insert(
            """
            INSERT INTO categories (id, name, slug, description, image_url, parent_id, level, sort_order)
            VALUES (
                $1, $2, $3, $4, $5, $6,
                COALESCE((SELECT level + 1 FROM categories WHERE id = $6), 0),
                $7
            )
            RETURNING *
            """,
            [
                uuid4(),
                data["name"],
                data["slug"],
                data.get("description"),
                data.get("image_url"),
                parent_id,
                data.get("sort_order", 0),
            ],
            label="createCategory",
            row_type=Category,
        )
        logger.info(f"Created category {created[0].id} ({created[0].slug})")
        return created[0]

    async def update(self, id: UUID, data: Dict[str, Any]) -> Category:
        """
        Update a category.

        Raises:
            RecordNotFoundError: If the category does not exist
            ValueError: If data contains fields that cannot be updated
        """
        updates, params = build_update_clause(data, ALLOWED_CATEGORY_UPDATE_FIELDS)
        updates.append("updated_at = NOW()")
        params.append(id)

        rows = await self.db.update(
            f"UPDATE categories SET {', '.join(updates)} WHERE id = ${len(params)} RETURNING *",
            params,
            label="updateCategory",
            row_type=Category,
        )
        if not rows:
            raise RecordNotFoundError("Category", id)
        return rows[0]

    async def delete(self, id: UUID) -> bool:
        """Deactivate a category (products keep their reference)."""
        rows = await self.db.update(
            "UPDATE categories SET is_active = false, updated_at = NOW() "
            "WHERE id = $1 AND is_active = true RETURNING id",
            [id],
            label="deactivateCategory",
        )
        return len(rows) > 0
