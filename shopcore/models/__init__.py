"""Database models module."""

import importlib as _importlib
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .connection_pool import ConnectionLease as ConnectionLease
    from .connection_pool import ConnectionPool as ConnectionPool
    from .connection_pool import PooledConnection as PooledConnection
    from .database import Database as Database
    from .db_factory import DatabaseFactory as DatabaseFactory
    from .pool_config import PoolConfig as PoolConfig
    from .pool_config import TLSMode as TLSMode
    from .pool_config import parse_database_url as parse_database_url
    from .pool_config import pool_config_from_env as pool_config_from_env
    from .pool_config import validate_pool_config as validate_pool_config
    from .query import QueryRequest as QueryRequest
    from .query import QueryResult as QueryResult
    from .transaction import TransactionContext as TransactionContext

# Explicit lazy-loading map: name -> (module_path, attribute_name)
_LAZY_MODULE_MAP = {
    "ConnectionLease": ("shopcore.models.connection_pool", "ConnectionLease"),
    "ConnectionPool": ("shopcore.models.connection_pool", "ConnectionPool"),
    "PooledConnection": ("shopcore.models.connection_pool", "PooledConnection"),
    "Database": ("shopcore.models.database", "Database"),
    "DatabaseFactory": ("shopcore.models.db_factory", "DatabaseFactory"),
    "PoolConfig": ("shopcore.models.pool_config", "PoolConfig"),
    "TLSMode": ("shopcore.models.pool_config", "TLSMode"),
    "parse_database_url": ("shopcore.models.pool_config", "parse_database_url"),
    "pool_config_from_env": ("shopcore.models.pool_config", "pool_config_from_env"),
    "validate_pool_config": ("shopcore.models.pool_config", "validate_pool_config"),
    "QueryRequest": ("shopcore.models.query", "QueryRequest"),
    "QueryResult": ("shopcore.models.query", "QueryResult"),
    "TransactionContext": ("shopcore.models.transaction", "TransactionContext"),
}

# Auto-derive __all__ from _LAZY_MODULE_MAP to prevent manual sync issues
__all__ = list(_LAZY_MODULE_MAP.keys())


def __getattr__(name: str) -> Any:
    """Lazy import with explicit mapping - importlib based."""
    if name in _LAZY_MODULE_MAP:
        module_path, attr_name = _LAZY_MODULE_MAP[name]
        module = _importlib.import_module(module_path)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
