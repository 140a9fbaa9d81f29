"""Utility functions module."""

from .masking import mask_database_url, mask_sensitive_data, truncate_query

__all__ = [
    "mask_database_url",
    "mask_sensitive_data",
    "truncate_query",
]
