"""Constants for shopcore.

All classes and constants can be imported directly from this package:
    from shopcore.constants import Database, QueryLogging
"""

from .database import LOCAL_HOSTS, Database, QueryLogging

__all__ = ["Database", "QueryLogging", "LOCAL_HOSTS"]
