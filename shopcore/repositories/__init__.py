"""Repository pattern implementation."""

from .base import BaseRepository
from .cart_repository import Cart, CartItem, CartLine, CartRepository
from .category_repository import Category, CategoryRepository
from .product_repository import Product, ProductRepository, ProductStatus, ProductVisibility
from .user_entity import User
from .user_repository import UserRepository

__all__ = [
    "BaseRepository",
    "Cart",
    "CartItem",
    "CartLine",
    "CartRepository",
    "Category",
    "CategoryRepository",
    "Product",
    "ProductRepository",
    "ProductStatus",
    "ProductVisibility",
    "User",
    "UserRepository",
]
