"""Product repository implementation."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from loguru import logger
from pydantic import BaseModel, ConfigDict

from shopcore.core.exceptions import RecordNotFoundError
from shopcore.models.database import Database
from shopcore.repositories.base import BaseRepository, build_update_clause

ALLOWED_PRODUCT_UPDATE_FIELDS = frozenset(
    {
        "category_id",
        "name",
        "slug",
        "description",
        "short_description",
        "price",
        "compare_price",
        "sku",
        "stock_quantity",
        "status",
        "visibility",
    }
)


class ProductStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class ProductVisibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    PASSWORD_PROTECTED = "password_protected"


class Product(BaseModel):
    """Product entity model."""

    model_config = ConfigDict(extra="ignore")

    id: UUID
    seller_id: UUID
    category_id: Optional[UUID] = None
    name: str
    slug: str
    description: Optional[str] = None
    short_description: Optional[str] = None
    price: Decimal
    compare_price: Optional[Decimal] = None
    sku: Optional[str] = None
    stock_quantity: int = 0
    status: str = ProductStatus.DRAFT.value
    visibility: str = ProductVisibility.PUBLIC.value
    view_count: int = 0
    average_rating: Decimal = Decimal("0")
    review_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def in_stock(self) -> bool:
        return self.stock_quantity > 0


class ProductRepository(BaseRepository[Product]):
    """Repository for product catalog operations."""

    def __init__(self, database: Database):
        super().__init__(database)

    async def get_by_id(self, id: UUID) -> Optional[Product]:
        return await self.db.fetch_one(
            "SELECT * FROM products WHERE id = $1 AND deleted_at IS NULL",
            [id],
            label="findProductById",
            row_type=Product,
        )

    async def get_all(self, limit: int = 100) -> List[Product]:
        """
        Get the newest active, public products.

        Args:
            limit: Maximum number of products to return

        Returns:
            List of Product entities
        """
        return await self.db.select(
            """
            SELECT * FROM products
            WHERE status = $1 AND visibility = $2 AND deleted_at IS NULL
            ORDER BY created_at DESC
            LIMIT $3
            """,
            [ProductStatus.ACTIVE.value, ProductVisibility.PUBLIC.value, limit],
            label="findLatestProducts",
            row_type=Product,
        )

    async def get_featured(self, limit: int = 12) -> List[Product]:
        """
        Get in-stock products ranked by views and rating.

        Args:
            limit: Maximum number of products to return

        Returns:
            List of Product entities
        """
        return await self.db.select(
            """
            SELECT * FROM products
            WHERE status = $1
              AND visibility = $2
              AND deleted_at IS NULL
              AND stock_quantity > 0
            ORDER BY view_count DESC, average_rating DESC, created_at DESC
            LIMIT $3
            """,
            [ProductStatus.ACTIVE.value, ProductVisibility.PUBLIC.value, limit],
            label="findFeaturedProducts",
            row_type=Product,
        )

    async def get_by_category(
        self, category_id: UUID, limit: int = 20, offset: int = 0
    ) -> List[Product]:
        """
        Get in-stock products of one category, newest first.

        Args:
            category_id: Category ID
            limit: Page size
            offset: Number of products to skip

        Returns:
            List of Product entities
        """
        return await self.db.select(
            """
            SELECT * FROM products
            WHERE category_id = $1
              AND status = $2
              AND visibility = $3
              AND deleted_at IS NULL
              AND stock_quantity > 0
            ORDER BY created_at DESC
            LIMIT $4 OFFSET $5
            """,
            [category_id, ProductStatus.ACTIVE.value, ProductVisibility.PUBLIC.value, limit, offset],
            label="findProductsByCategory",
            row_type=Product,
        )

    async def count_by_category(self, category_id: UUID) -> int:
        count = await self.db.fetch_value(
            "SELECT COUNT(*) FROM products WHERE category_id = $1 AND deleted_at IS NULL",
            [category_id],
            label="countProductsByCategory",
        )
        return int(count or 0)

    async def create(self, data: Dict[str, Any]) -> Product:
        """
        Create a product.

        Args:
            data: Product data (seller_id, name, slug and price required)

        Returns:
            Created Product

        Raises:
            ValueError: If a required field is missing or the price is negative
        """
        for field in ("seller_id", "name", "slug", "price"):
            if data.get(field) in (None, ""):
                raise ValueError(f"Missing required field: {field}")
        price = Decimal(str(data["price"]))
        if price < 0:
            raise ValueError("Price must not be negative")

        created = await self.db.insert(
            """
            INSERT INTO products (
                id, seller_id, category_id, name, slug, description, short_description,
                price, sku, stock_quantity, status, visibility
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            RETURNING *
            """,
            [
                uuid4(),
                data["seller_id"],
                data.get("category_id"),
                data["name"],
                data["slug"],
                data.get("description"),
                data.get("short_description"),
                price,
                data.get("sku"),
                data.get("stock_quantity", 0),
                data.get("status", ProductStatus.DRAFT.value),
                data.get("visibility", ProductVisibility.PUBLIC.value),
            ],
            label="createProduct",
            row_type=Product,
        )
        logger.info(f"Created product {created[0].id} ({created[0].slug})")
        return created[0]

    async def update(self, id: UUID, data: Dict[str, Any]) -> Product:
        """
        Update a product.

        Raises:
            RecordNotFoundError: If the product does not exist
            ValueError: If data contains fields that cannot be updated
        """
        updates, params = build_update_clause(data, ALLOWED_PRODUCT_UPDATE_FIELDS)
        updates.append("updated_at = NOW()")
        params.append(id)

        rows = await self.db.update(
            f"UPDATE products SET {', '.join(updates)} "
            f"WHERE id = ${len(params)} AND deleted_at IS NULL RETURNING *",
            params,
            label="updateProduct",
            row_type=Product,
        )
        if not rows:
            raise RecordNotFoundError("Product", id)
        return rows[0]

    async def delete(self, id: UUID) -> bool:
        """Soft-delete a product."""
        rows = await self.db.update(
            "UPDATE products SET deleted_at = NOW(), updated_at = NOW() "
            "WHERE id = $1 AND deleted_at IS NULL RETURNING id",
            [id],
            label="deleteProduct",
        )
        return len(rows) > 0
