"""Cart repository implementation."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID, uuid4

from loguru import logger
from pydantic import BaseModel, ConfigDict

from shopcore.core.result import Failure, Result, Success
from shopcore.models.database import Database
from shopcore.models.transaction import TransactionContext


class Cart(BaseModel):
    """Cart entity model."""

    model_config = ConfigDict(extra="ignore")

    id: UUID
    user_id: UUID
    status: str = "active"


class CartItem(BaseModel):
    """One product line of a cart."""

    model_config = ConfigDict(extra="ignore")

    id: UUID
    cart_id: UUID
    product_id: UUID
    quantity: int
    unit_price: Decimal
    total_price: Decimal


class CartLine(BaseModel):
    """Cart item joined with its product, as shown to the shopper."""

    model_config = ConfigDict(extra="ignore")

    id: UUID
    product_id: UUID
    product_name: str
    quantity: int
    price: Decimal
    total_price: Decimal
    added_at: datetime


_FIND_ACTIVE_CART = """
    SELECT id, user_id, status
    FROM carts
    WHERE user_id = $1 AND status = 'active'
    ORDER BY created_at DESC
    LIMIT 1
"""

_CREATE_CART = """
    INSERT INTO carts (id, user_id, status, created_at, updated_at)
    VALUES ($1, $2, 'active', NOW(), NOW())
    RETURNING id, user_id, status
"""


class CartRepository:
    """Repository for shopping cart operations.

    Multi-statement changes (find-or-create, quantity merges) run inside a
    single transaction so concurrent requests cannot leave duplicate lines.
    """

    def __init__(self, database: Database):
        """
        Initialize cart repository.

        Args:
            database: Database instance
        """
        self.db = database

    async def find_or_create_cart(self, user_id: UUID) -> Cart:
        """
        Get the user's active cart, creating one if needed.

        Args:
            user_id: Owner of the cart

        Returns:
            Active Cart
        """

        async def unit_of_work(tx: TransactionContext) -> Cart:
            return await self._find_or_create_in(tx, user_id)

        return await self.db.with_transaction(unit_of_work)

    async def add_item(
        self, cart_id: UUID, product_id: UUID, quantity: int, unit_price: Decimal
    ) -> CartItem:
        """
        Add a product to a cart, merging with an existing line.

        Args:
            cart_id: Cart ID
            product_id: Product ID
            quantity: Quantity to add (must be positive)
            unit_price: Price per unit

        Returns:
            The created or updated CartItem

        Raises:
            ValueError: If quantity is not positive
        """
        if quantity <= 0:
            raise ValueError("Quantity must be positive")

        async def unit_of_work(tx: TransactionContext) -> CartItem:
            return await self._upsert_item_in(tx, cart_id, product_id, quantity, Decimal(unit_price))

        item = await self.db.with_transaction(unit_of_work)
        logger.debug(f"Cart {cart_id}: product {product_id} quantity now {item.quantity}")
        return item

    async def add_product_for_user(self, user_id: UUID, product_id: UUID, quantity: int) -> CartItem:
        """
        Put a product into the user's cart at its current price.

        Cart lookup, stock check and line upsert happen in one transaction.

        Raises:
            ValueError: If the product is unavailable or has too little stock
        """
        if quantity <= 0:
            raise ValueError("Quantity must be positive")

        async def unit_of_work(tx: TransactionContext) -> Result[CartItem, str]:
            product = await tx.fetch_one(
                """
                SELECT price, stock_quantity FROM products
                WHERE id = $1 AND status = 'active' AND deleted_at IS NULL
                FOR SHARE
                """,
                [product_id],
                label="findProductForCart",
            )
            if product is None:
                message = f"Product {product_id} is not available"
                return Failure(message, ValueError(message))
            if product["stock_quantity"] < quantity:
                message = (
                    f"Insufficient stock for product {product_id}: "
                    f"{product['stock_quantity']} left, {quantity} requested"
                )
                return Failure(message, ValueError(message))

            cart = await self._find_or_create_in(tx, user_id)
            item = await self._upsert_item_in(tx, cart.id, product_id, quantity, product["price"])
            return Success(item)

        outcome = await self.db.with_transaction(unit_of_work)
        return outcome.unwrap()

    async def update_item_quantity(self, cart_id: UUID, product_id: UUID, quantity: int) -> bool:
        if quantity <= 0:
            raise ValueError("Quantity must be positive")
        rows = await self.db.update(
            """
            UPDATE cart_items
            SET quantity = $1, total_price = unit_price * $1, updated_at = NOW()
            WHERE cart_id = $2 AND product_id = $3
            RETURNING id
            """,
            [quantity, cart_id, product_id],
            label="updateCartItemQuantity",
        )
        return len(rows) > 0

    async def get_items(self, user_id: UUID) -> List[CartLine]:
        """
        Get the lines of the user's active cart, newest first.

        Args:
            user_id: Cart owner

        Returns:
            List of CartLine entities
        """
        return await self.db.select(
            """
            SELECT
                ci.id,
                ci.product_id,
                p.name AS product_name,
                ci.quantity,
                ci.unit_price AS price,
                ci.total_price,
                ci.created_at AS added_at
            FROM cart_items ci
            JOIN carts c ON ci.cart_id = c.id
            JOIN products p ON ci.product_id = p.id
            WHERE c.user_id = $1 AND c.status = 'active'
            ORDER BY ci.created_at DESC
            """,
            [user_id],
            label="getCartItems",
            row_type=CartLine,
        )

    async def remove_item(self, cart_item_id: UUID) -> bool:
        rows = await self.db.delete(
            "DELETE FROM cart_items WHERE id = $1 RETURNING id",
            [cart_item_id],
            label="removeCartItem",
        )
        return len(rows) > 0

    async def clear_cart(self, cart_id: UUID) -> int:
        """
        Remove every line of a cart.

        Returns:
            Number of removed lines
        """
        rows = await self.db.delete(
            "DELETE FROM cart_items WHERE cart_id = $1 RETURNING id",
            [cart_id],
            label="clearCart",
        )
        logger.debug(f"Cleared {len(rows)} item(s) from cart {cart_id}")
        return len(rows)

    async def _find_or_create_in(self, tx: TransactionContext, user_id: UUID) -> Cart:
        cart: Optional[Cart] = await tx.fetch_one(
            _FIND_ACTIVE_CART, [user_id], label="findCartByUserId", row_type=Cart
        )
        if cart is not None:
            return cart
        created = await tx.insert(_CREATE_CART, [uuid4(), user_id], label="createCart", row_type=Cart)
        logger.info(f"Created cart {created[0].id} for user {user_id}")
        return created[0]

    async def _upsert_item_in(
        self,
        tx: TransactionContext,
        cart_id: UUID,
        product_id: UUID,
        quantity: int,
        unit_price: Decimal,
    ) -> CartItem:
        existing = await tx.fetch_one(
            """
            SELECT id, quantity FROM cart_items
            WHERE cart_id = $1 AND product_id = $2
            FOR UPDATE
            """,
            [cart_id, product_id],
            label="findExistingCartItem",
        )

        if existing is not None:
            new_quantity = existing["quantity"] + quantity
            rows = await tx.update(
                """
                UPDATE cart_items
                SET quantity = $1, unit_price = $2, total_price = $3, updated_at = NOW()
                WHERE id = $4
                RETURNING id, cart_id, product_id, quantity, unit_price, total_price
                """,
                [new_quantity, unit_price, unit_price * new_quantity, existing["id"]],
                label="updateCartItem",
                row_type=CartItem,
            )
        else:
            rows = await tx.insert(
                """
                INSERT INTO cart_items (
                    id, cart_id, product_id, quantity, unit_price, total_price, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, NOW(), NOW())
                RETURNING id, cart_id, product_id, quantity, unit_price, total_price
                """,
                [uuid4(), cart_id, product_id, quantity, unit_price, unit_price * quantity],
                label="addCartItem",
                row_type=CartItem,
            )

        await tx.update(
            "UPDATE carts SET updated_at = NOW() WHERE id = $1",
            [cart_id],
            label="touchCart",
        )
        return rows[0]
