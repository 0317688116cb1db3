# tests/test_memory_cache.py
import pytest

from services.cache.keys import CacheClass
from services.cache.memory_cache import CacheRegion, MemoryCache


@pytest.fixture
def cache(clock):
    return MemoryCache(search_ttl=60, search_max_keys=2, stats_ttl=30, timer=clock)


def test_get_returns_stored_value(cache):
    cache.set(CacheClass.SEARCH, "search:a", {"ads": [1, 2]})
    assert cache.get(CacheClass.SEARCH, "search:a") == {"ads": [1, 2]}


def test_regions_are_independent(cache):
    cache.set(CacheClass.SEARCH, "k", "search value")
    assert cache.get(CacheClass.STATS, "k") is None
    assert cache.get(CacheClass.SEARCH, "k") == "search value"


def test_entries_expire_after_region_ttl(cache, clock):
    cache.set(CacheClass.STATS, "advertiser:1:ALL", {"pageId": "1"})
    clock.advance(29)
    assert cache.get(CacheClass.STATS, "advertiser:1:ALL") is not None
    clock.advance(2)
    assert cache.get(CacheClass.STATS, "advertiser:1:ALL") is None


def test_explicit_ttl_overrides_region_default(cache, clock):
    cache.set(CacheClass.SEARCH, "short", "v", ttl=5)
    clock.advance(6)
    assert cache.get(CacheClass.SEARCH, "short") is None


def test_least_recently_used_key_is_evicted(cache):
    cache.set(CacheClass.SEARCH, "a", 1)
    cache.set(CacheClass.SEARCH, "b", 2)
    cache.get(CacheClass.SEARCH, "a")
    cache.set(CacheClass.SEARCH, "c", 3)

    assert cache.get(CacheClass.SEARCH, "b") is None
    assert cache.get(CacheClass.SEARCH, "a") == 1
    assert cache.get(CacheClass.SEARCH, "c") == 3


def test_values_are_copied_in_and_out(cache):
    value = {"ads": [1]}
    cache.set(CacheClass.SEARCH, "k", value)
    value["ads"].append(2)
    assert cache.get(CacheClass.SEARCH, "k") == {"ads": [1]}

    cache.get(CacheClass.SEARCH, "k")["ads"].append(3)
    assert cache.get(CacheClass.SEARCH, "k") == {"ads": [1]}


def test_hit_rate_and_stats(cache):
    cache.set(CacheClass.SEARCH, "k", "v")
    cache.get(CacheClass.SEARCH, "k")
    cache.get(CacheClass.SEARCH, "missing")
    cache.get(CacheClass.SEARCH, "missing")

    stats = cache.stats()
    assert stats.hits == 1
    assert stats.misses == 2
    assert stats.hit_rate == 33.33
    assert stats.keys == 1


def test_clear_all_resets_counters(cache):
    cache.set(CacheClass.AI, "ai:x", ["idea"])
    cache.get(CacheClass.AI, "ai:x")
    cache.clear_all()
    assert cache.stats().keys == 0
    assert cache.hits == 0
    assert cache.hit_rate() == 0.0


def test_delete_prefix_only_touches_matching_keys(clock):
    region = CacheRegion("stats", ttl=60, max_keys=10, timer=clock)
    region.set("advertiser:1:US", {})
    region.set("advertiser:1:DE", {})
    region.set("advertiser:12:US", {})

    assert region.delete_prefix("advertiser:1:") == 2
    assert region.keys() == ["advertiser:12:US"]


def test_sweep_clears_when_over_memory_limit(clock):
    cache = MemoryCache(memory_limit_mb=1, timer=clock)
    cache.set(CacheClass.SEARCH, "big", "x" * (2 * 1024 * 1024))
    assert cache.memory_usage_mb() >= 2
    assert cache.sweep() is True
    assert cache.stats().keys == 0


def test_sweep_keeps_entries_under_limit(cache):
    cache.set(CacheClass.SEARCH, "k", "v")
    assert cache.sweep() is False
    assert cache.get(CacheClass.SEARCH, "k") == "v"
    assert cache.is_healthy()


def test_health_follows_configured_memory_limit(clock):
    cache = MemoryCache(memory_limit_mb=1, timer=clock)
    cache.set(CacheClass.SEARCH, "big", "x" * (2 * 1024 * 1024))
    assert not cache.is_healthy()

    roomy = MemoryCache(memory_limit_mb=10, timer=clock)
    roomy.set(CacheClass.SEARCH, "big", "x" * (2 * 1024 * 1024))
    assert roomy.is_healthy()
