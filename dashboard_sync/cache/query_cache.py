"""
TTL + size bounded cache for expensive read operations.

Sits in front of remote-store queries so repeated reads within the TTL are
served from memory. Entries are kept in access order, so the least recently
used entry is always at the front and eviction is O(1).
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import re
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300.0
DEFAULT_MAX_SIZE = 100
DEFAULT_SWEEP_INTERVAL = 60.0

_MISSING = object()


@dataclass
class CacheEntry:
    """One cached query result. Times are clock readings in seconds."""

    key: str
    data: Any
    created_at: float
    expires_at: float
    last_accessed: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class QueryCache:
    """
    Cache for query results with TTL expiry and LRU eviction.

    Features:
    - Deterministic keys from query name + parameters (order independent)
    - Per-entry TTL with lazy eviction on lookup and a periodic sweep
    - Least Recently Used eviction when full
    - Hit/miss/eviction statistics

    Example:
        >>> cache = QueryCache(default_ttl=120)
        >>> rows = await cache.wrap("read_all", lambda: store.read_all("t1"), {"table_id": "t1"})
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL,
        max_size: int = DEFAULT_MAX_SIZE,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        enabled: bool = True,
        clock: Callable[[], float] | None = None,
    ):
        """
        Initialize query cache.

        Args:
            default_ttl: Seconds an entry lives when set() gets no ttl
            max_size: Maximum number of entries held
            sweep_interval: Seconds between background expiry sweeps
            enabled: Start enabled or disabled
            clock: Monotonic time source in seconds (for tests)
        """
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        if default_ttl <= 0:
            raise ValueError(f"default_ttl must be > 0, got {default_ttl}")

        self.default_ttl = default_ttl
        self.max_size = max_size
        self.sweep_interval = sweep_interval
        self.enabled = enabled
        self._clock = clock or time.monotonic
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._cleanup_task: asyncio.Task[None] | None = None

    @staticmethod
    def key(query_name: str, params: dict[str, Any] | None = None) -> str:
        """
        Build the cache key for a query.

        Parameters are serialized with sorted keys (recursively), so two
        structurally equal parameter sets map to the same key whatever
        their insertion order.
        """
        serialized = json.dumps(
            params or {}, sort_keys=True, separators=(",", ":"), default=str
        )
        return f"{query_name}:{serialized}"

    def get(
        self,
        query_name: str,
        params: dict[str, Any] | None = None,
        default: Any = None,
    ) -> Any:
        """
        Get a cached result.

        Returns:
            Cached data, or ``default`` on a miss or expired entry
        """
        value = self._lookup(self.key(query_name, params))
        return default if value is _MISSING else value

    def set(
        self,
        query_name: str,
        params: dict[str, Any] | None,
        data: Any,
        ttl: float | None = None,
    ) -> None:
        """
        Store a result, evicting the least recently used entry if full.

        Args:
            query_name: Name of the query
            params: Query parameters
            data: Result to cache
            ttl: Seconds to live (default_ttl when omitted)
        """
        if not self.enabled:
            return

        key = self.key(query_name, params)
        now = self._clock()

        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_size:
            self._evict_lru()

        self._entries[key] = CacheEntry(
            key=key,
            data=data,
            created_at=now,
            expires_at=now + (ttl or self.default_ttl),
            last_accessed=now,
        )

    async def wrap(
        self,
        query_name: str,
        query_fn: Callable[[], Any],
        params: dict[str, Any] | None = None,
        *,
        ttl: float | None = None,
        force_refresh: bool = False,
        skip_cache: bool = False,
    ) -> Any:
        """
        Return the cached result or run ``query_fn`` and cache what it returns.

        ``query_fn`` runs at most once per call. Concurrent callers missing
        on the same key each run their own query.

        Args:
            query_name: Name of the query
            query_fn: Coroutine function or callable producing the result
            params: Query parameters (part of the cache key)
            ttl: Seconds to live for a newly stored result
            force_refresh: Bypass the cached value and re-run the query
            skip_cache: Do not store the result
        """
        key = self.key(query_name, params)

        if self.enabled and not force_refresh:
            cached = self._lookup(key)
            if cached is not _MISSING:
                return cached

        result = query_fn()
        if inspect.isawaitable(result):
            result = await result

        if not skip_cache:
            self.set(query_name, params, result, ttl)
        return result

    def invalidate(self, pattern: str | re.Pattern[str]) -> int:
        """
        Remove entries whose key starts with a prefix or matches a regex.

        Returns:
            Number of entries removed
        """
        if isinstance(pattern, str):
            doomed = [key for key in self._entries if key.startswith(pattern)]
        else:
            doomed = [key for key in self._entries if pattern.search(key)]

        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def invalidate_all(self) -> None:
        """Remove every entry."""
        self._entries.clear()

    def cleanup(self) -> int:
        """Remove all expired entries. Returns the number removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def start_auto_cleanup(self, interval: float | None = None) -> None:
        """Start the periodic expiry sweep, replacing any running one.

        Must be called from a running event loop.
        """
        if self._cleanup_task:
            self._cleanup_task.cancel()
        period = interval or self.sweep_interval
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop(period))

    async def stop_auto_cleanup(self) -> None:
        """Stop the periodic expiry sweep."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    @property
    def auto_cleanup_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    @property
    def size(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dict with hits, misses, evictions, size, max_size, hit_rate, enabled
        """
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "size": len(self._entries),
            "max_size": self.max_size,
            "hit_rate": self._hits / total if total else 0.0,
            "enabled": self.enabled,
        }

    def reset_stats(self) -> None:
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def enable(self) -> None:
        self.enabled = True

    def disable(self) -> None:
        self.enabled = False

    async def __aenter__(self) -> QueryCache:
        self.start_auto_cleanup()
        return self

    async def __aexit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        await self.stop_auto_cleanup()

    def _lookup(self, key: str) -> Any:
        if not self.enabled:
            return _MISSING

        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return _MISSING

        now = self._clock()
        if entry.is_expired(now):
            del self._entries[key]
            self._misses += 1
            return _MISSING

        entry.last_accessed = now
        self._entries.move_to_end(key)
        self._hits += 1
        return entry.data

    def _evict_lru(self) -> None:
        # Front of the ordered map holds the smallest last_accessed
        key, _ = self._entries.popitem(last=False)
        self._evictions += 1
        logger.debug(f"Evicted least recently used cache entry {key}")

    async def _cleanup_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            removed = self.cleanup()
            if removed:
                logger.info(f"QueryCache: cleaned up {removed} expired entries")
