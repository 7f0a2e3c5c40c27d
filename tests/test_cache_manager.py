"""
Unit tests for the in-process caches and the strategy registry.

Tests apps/services/extractor/cache_manager.py and apps/services/extractor/strategies/
"""

from apps.services.extractor.cache_manager import CacheLimits, CacheManager, LRUCache, get_cache_manager
from apps.services.extractor.strategies import StrategyRegistry
from apps.services.extractor.strategies.base import EmptyStrategy, VendorStrategy


class TestLRUCache:
    def test_trims_to_keep_size_oldest_first(self):
        cache = LRUCache("t", CacheLimits(max_size=3, keep_size=2))
        for key in "abc":
            cache.set(key, key.upper())
        cache.get("a")

        cache.set("d", "D")

        assert len(cache) == 2
        assert "a" in cache
        assert "d" in cache
        assert "b" not in cache

    def test_hit_rate(self):
        cache = LRUCache("t", CacheLimits(max_size=10, keep_size=5))
        cache.set("a", 1)
        assert cache.get("a") == 1
        assert cache.get("missing", "fallback") == "fallback"
        assert cache.stats() == {"size": 1, "max_size": 10, "hits": 1, "misses": 1, "hit_rate": 0.5}


class TestCacheManager:
    def test_named_caches(self):
        manager = CacheManager()
        manager.set("url_results", "harrods:https://x", {"name": "Soap"})

        assert manager.get("url_results", "harrods:https://x") == {"name": "Soap"}
        assert set(manager.get_stats()) == {"image_validation", "url_results", "problem_urls"}

        manager.clear()
        assert manager.get("url_results", "harrods:https://x") is None

    def test_unlisted_cache_created_on_demand(self):
        manager = CacheManager()
        manager.set("extra", "k", 1)
        assert manager.get_stats()["extra"]["max_size"] == 1000

    def test_global_instance(self):
        assert get_cache_manager() is get_cache_manager()


class TestStrategyRegistry:
    def test_unknown_vendor_gets_empty_strategy(self):
        registry = StrategyRegistry()
        assert registry.has_strategy("superdrug")
        assert isinstance(registry.get("harrods"), EmptyStrategy)
        assert registry.custom_fields("harrods") == {}

    def test_register(self):
        class HarrodsStrategy(VendorStrategy):
            name = "harrods"

        registry = StrategyRegistry({})
        registry.register("harrods", HarrodsStrategy())

        assert registry.get("harrods").name == "harrods"
        assert not registry.has_strategy("superdrug")
