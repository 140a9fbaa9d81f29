"""shopcore - PostgreSQL data-access core for the shop backend."""

import importlib as _importlib
from typing import TYPE_CHECKING, Any

__version__ = "1.0.0"

if TYPE_CHECKING:
    from .core.logger import setup_logging as setup_logging
    from .core.result import Failure as Failure
    from .core.result import Success as Success
    from .models.database import Database as Database
    from .models.db_factory import DatabaseFactory as DatabaseFactory
    from .models.pool_config import PoolConfig as PoolConfig
    from .models.pool_config import pool_config_from_env as pool_config_from_env
    from .models.pool_config import validate_pool_config as validate_pool_config
    from .models.transaction import TransactionContext as TransactionContext

# Explicit lazy-loading map: name -> (module_path, attribute_name)
_LAZY_MODULE_MAP = {
    # Core
    "setup_logging": ("shopcore.core.logger", "setup_logging"),
    "Success": ("shopcore.core.result", "Success"),
    "Failure": ("shopcore.core.result", "Failure"),
    # Models
    "Database": ("shopcore.models.database", "Database"),
    "DatabaseFactory": ("shopcore.models.db_factory", "DatabaseFactory"),
    "PoolConfig": ("shopcore.models.pool_config", "PoolConfig"),
    "pool_config_from_env": ("shopcore.models.pool_config", "pool_config_from_env"),
    "validate_pool_config": ("shopcore.models.pool_config", "validate_pool_config"),
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
        # Cache in module globals to avoid repeated imports
        globals()[name] = attr
        return attr
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
