"""
extractor/cache_manager.py

In-process LRU caches shared by the extraction pipeline.

Features:
- Named caches with individual size limits (image validation, URL results, problem URLs)
- LRU eviction using OrderedDict; on overflow the cache is trimmed to its keep size
- Real hit/miss counters for the end-of-run summary
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheLimits:
    max_size: int
    keep_size: int


DEFAULT_LIMITS: Dict[str, CacheLimits] = {
    "image_validation": CacheLimits(max_size=10000, keep_size=5000),
    "url_results": CacheLimits(max_size=1000, keep_size=500),
    "problem_urls": CacheLimits(max_size=500, keep_size=250),
}

_MISSING = object()


class LRUCache:
    """Bounded LRU map with hit/miss accounting."""

    def __init__(self, name: str, limits: CacheLimits):
        self.name = name
        self.limits = limits
        self._data: OrderedDict = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __contains__(self, key) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key, default=None):
        value = self._data.get(key, _MISSING)
        if value is _MISSING:
            self.misses += 1
            return default
        self._data.move_to_end(key)
        self.hits += 1
        return value

    def set(self, key, value):
        if key in self._data:
            self._data.move_to_end(key)
        self._data[key] = value
        if len(self._data) > self.limits.max_size:
            self._trim()

    def clear(self):
        self._data.clear()

    def _trim(self):
        before = len(self._data)
        while len(self._data) > self.limits.keep_size:
            self._data.popitem(last=False)
        logger.debug(f"[CacheManager] Trimmed {self.name}: kept {len(self._data)}/{before} entries")

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._data),
            "max_size": self.limits.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hit_rate, 4),
        }


class CacheManager:
    """Registry of named LRU caches."""

    def __init__(self, limits: Optional[Dict[str, CacheLimits]] = None):
        self._caches: Dict[str, LRUCache] = {}
        for name, cache_limits in (limits or DEFAULT_LIMITS).items():
            self._caches[name] = LRUCache(name, cache_limits)

    def cache(self, name: str) -> LRUCache:
        """Get a cache by name, creating an unlisted one with url_results limits."""
        if name not in self._caches:
            self._caches[name] = LRUCache(name, DEFAULT_LIMITS["url_results"])
        return self._caches[name]

    def get(self, name: str, key, default=None):
        return self.cache(name).get(key, default)

    def set(self, name: str, key, value):
        self.cache(name).set(key, value)

    def clear(self, name: Optional[str] = None):
        if name:
            self.cache(name).clear()
            return
        for cache in self._caches.values():
            cache.clear()

    def get_stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: cache.stats() for name, cache in self._caches.items()}


# Global instance with thread-safe initialization
_cache_manager: Optional[CacheManager] = None
_cache_manager_lock = threading.Lock()


def get_cache_manager() -> CacheManager:
    """Get or create the global cache manager."""
    global _cache_manager
    if _cache_manager is None:
        with _cache_manager_lock:
            if _cache_manager is None:
                _cache_manager = CacheManager()
    return _cache_manager
