"""
Read-side caching.

Provides:
- QueryCache: TTL + LRU cache in front of arbitrary read operations
- CacheEntry: a single cached result with its timing metadata
"""

from .query_cache import CacheEntry, QueryCache

__all__ = [
    "CacheEntry",
    "QueryCache",
]
