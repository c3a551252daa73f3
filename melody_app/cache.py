"""
In-memory TTL cache for catalog reads.

Sequences change only when the catalog is reseeded, so per-level lists and
the public demo catalog are cached for a few minutes per process.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class MemoryCache:
    """Thread-safe in-memory cache with TTL support"""

    def __init__(self):
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._stats = {'hits': 0, 'misses': 0, 'sets': 0, 'evictions': 0}

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._stats['misses'] += 1
                return None
            if time.time() > entry.expires_at:
                del self._cache[key]
                self._stats['misses'] += 1
                self._stats['evictions'] += 1
                return None
            self._stats['hits'] += 1
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: int = 300) -> None:
        with self._lock:
            self._cache[key] = CacheEntry(value=value, expires_at=time.time() + ttl_seconds)
            self._stats['sets'] += 1

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._cache if k.startswith(prefix)]
            for k in keys:
                del self._cache[k]
            self._stats['evictions'] += len(keys)
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._stats['evictions'] += len(self._cache)
            self._cache.clear()

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._stats['hits'] + self._stats['misses']
            hit_rate = (self._stats['hits'] / total * 100) if total > 0 else 0
            return {
                **self._stats,
                'total_requests': total,
                'hit_rate_percent': round(hit_rate, 2),
                'cache_size': len(self._cache),
            }


_cache = MemoryCache()


def get_cache() -> MemoryCache:
    return _cache


def cache_level_sequences(level_id: int, entries: list, ttl_minutes: int = 10) -> None:
    _cache.set(f"sequences:{level_id}", entries, ttl_minutes * 60)


def get_cached_level_sequences(level_id: int) -> Optional[list]:
    return _cache.get(f"sequences:{level_id}")


def cache_demo_sequences(level_id: Optional[int], entries: list, ttl_minutes: int = 10) -> None:
    _cache.set(f"demo:{level_id or 'all'}", entries, ttl_minutes * 60)


def get_cached_demo_sequences(level_id: Optional[int]) -> Optional[list]:
    return _cache.get(f"demo:{level_id or 'all'}")


def invalidate_catalog_cache() -> None:
    """Drop every cached catalog read, e.g. after reseeding."""
    _cache.delete_prefix("sequences:")
    _cache.delete_prefix("demo:")
