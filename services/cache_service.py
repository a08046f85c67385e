"""
CacheService - In-memory read-through cache with TTL and a size bound

Used for node lookups, execution rules and recent call-log lookups. The cache is
an optimisation only; callers always fall back to the repositories on a miss.
"""

from collections import OrderedDict
from typing import Any, Callable, Dict, Optional
import time
import threading
import logging

logger = logging.getLogger(__name__)

_MISSING = object()


class CacheEntry:
    """Represents a cached value with expiration."""

    def __init__(self, value: Any, ttl: Optional[float], now: float):
        self.value = value
        self.created_at = now
        self.ttl = ttl

    def is_expired(self, now: float) -> bool:
        if self.ttl is None:
            return False
        return now - self.created_at > self.ttl


class CacheService:
    """
    Thread-safe in-memory cache with per-entry TTL and a maximum size.

    When full, the least recently used entry is evicted.
    """

    def __init__(self, default_ttl: Optional[float] = 300, max_size: int = 1000,
                 name: str = 'cache', clock: Callable[[], float] = time.time):
        """
        Args:
            default_ttl: Seconds an entry lives when ``set`` gets no ttl (None = forever)
            max_size: Maximum number of entries kept
            name: Label used in log lines and stats
            clock: Time source, injectable for tests
        """
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.default_ttl = default_ttl
        self.max_size = max_size
        self.name = name
        self._clock = clock
        self._cache: 'OrderedDict[str, CacheEntry]' = OrderedDict()
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get value from cache.

        Returns:
            Cached value, or ``default`` if missing or expired
        """
        with self._lock:
            entry = self._cache.get(key)
            if entry is not None:
                if not entry.is_expired(self._clock()):
                    self._cache.move_to_end(key)
                    self._hits += 1
                    return entry.value
                del self._cache[key]
            self._misses += 1
            return default

    def set(self, key: str, value: Any, ttl: Optional[float] = _MISSING) -> None:
        """Set value in cache, evicting the least recently used entry when full"""
        if ttl is _MISSING:
            ttl = self.default_ttl
        with self._lock:
            if key in self._cache:
                del self._cache[key]
            elif len(self._cache) >= self.max_size:
                self._evict_one()
            self._cache[key] = CacheEntry(value, ttl, self._clock())

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            logger.debug(f"Cache '{self.name}' cleared")

    def exists(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def get_or_set(self, key: str, factory: Callable[[], Any], ttl: Optional[float] = _MISSING) -> Any:
        """
        Read-through helper.

        ``None`` results from the factory are not cached so a later call retries
        the authoritative store.
        """
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value
        value = factory()
        if value is not None:
            self.set(key, value, ttl)
        return value

    def cleanup_expired(self) -> int:
        """Drop expired entries, returning how many were removed"""
        with self._lock:
            now = self._clock()
            expired = [k for k, entry in self._cache.items() if entry.is_expired(now)]
            for key in expired:
                del self._cache[key]
            return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                'name': self.name,
                'size': len(self._cache),
                'max_size': self.max_size,
                'hits': self._hits,
                'misses': self._misses,
                'evictions': self._evictions,
                'hit_rate': (self._hits / total) if total else 0.0,
            }

    def __len__(self) -> int:
        return len(self._cache)

    def _evict_one(self) -> None:
        # Prefer dropping something already expired over a live entry
        if self.cleanup_expired():
            return
        key, _ = self._cache.popitem(last=False)
        self._evictions += 1
        logger.debug(f"Cache '{self.name}' full, evicted {key}")
