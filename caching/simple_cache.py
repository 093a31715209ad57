"""
Simple In-Memory Caching System
Best-effort TTL cache in front of the payment store.

The cache is never authoritative: read_through() treats any cache error
as a miss and always falls back to the loader.
"""

import time
import logging
from typing import Any, Optional, Dict, Callable

logger = logging.getLogger(__name__)


class SimpleCache:
    """In-memory cache with TTL support"""

    def __init__(self, default_ttl: int = 300, clock: Callable[[], float] = time.monotonic):
        self._cache: Dict[str, Dict[str, Any]] = {}
        self.default_ttl = default_ttl
        self._clock = clock
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "evictions": 0}

    def get(self, key: str, default: Any = None) -> Any:
        """Get value from cache"""
        entry = self._cache.get(key)
        if entry is not None:
            if entry["expires_at"] > self._clock():
                self.stats["hits"] += 1
                return entry["value"]
            del self._cache[key]
            self.stats["evictions"] += 1

        self.stats["misses"] += 1
        return default

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Set value in cache with TTL"""
        if ttl is None:
            ttl = self.default_ttl

        now = self._clock()
        self._cache[key] = {"value": value, "created_at": now, "expires_at": now + ttl}
        self.stats["sets"] += 1

    def delete(self, key: str) -> bool:
        """Delete key from cache"""
        if key in self._cache:
            del self._cache[key]
            self.stats["deletes"] += 1
            return True
        return False

    def clear(self) -> None:
        cleared_count = len(self._cache)
        self._cache.clear()
        self.stats["deletes"] += cleared_count

    def cleanup_expired(self) -> int:
        """Remove expired entries, return how many were evicted"""
        current_time = self._clock()
        expired_keys = [key for key, entry in self._cache.items() if entry["expires_at"] <= current_time]
        for key in expired_keys:
            del self._cache[key]
        self.stats["evictions"] += len(expired_keys)
        return len(expired_keys)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        total_requests = self.stats["hits"] + self.stats["misses"]
        hit_rate = (self.stats["hits"] / total_requests * 100) if total_requests > 0 else 0

        return {
            **self.stats,
            "total_requests": total_requests,
            "hit_rate_percent": round(hit_rate, 2),
            "cache_size": len(self._cache),
        }


_MISSING = object()


def read_through(
    cache: Optional[SimpleCache],
    key: str,
    loader: Callable[[], Any],
    should_cache: Callable[[Any], bool] = lambda value: value is not None,
    ttl: Optional[int] = None,
) -> Any:
    """
    Return the cached value for key, or load it and cache it when allowed.

    Cache failures are logged and swallowed; the loader result is returned
    regardless of whether caching worked.
    """
    if cache is not None:
        try:
            cached = cache.get(key, _MISSING)
            if cached is not _MISSING:
                return cached
        except Exception as e:
            logger.warning(f"Cache read failed for {key}, falling through to store: {e}")

    value = loader()

    if cache is not None and should_cache(value):
        try:
            cache.set(key, value, ttl)
        except Exception as e:
            logger.warning(f"Cache write failed for {key}: {e}")
    return value


def invalidate(cache: Optional[SimpleCache], key: str) -> None:
    if cache is None:
        return
    try:
        cache.delete(key)
    except Exception as e:
        logger.warning(f"Cache invalidation failed for {key}: {e}")
