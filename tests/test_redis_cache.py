# tests/test_redis_cache.py
from services.cache.keys import CacheClass
from services.cache.redis_cache import RedisCache


async def test_without_url_every_call_is_a_miss():
    cache = RedisCache(None)
    assert await cache.connect() is False
    await cache.set(CacheClass.SEARCH, "search:a", {"x": 1})
    assert await cache.get(CacheClass.SEARCH, "search:a") is None
    assert await cache.stats() == {"connected": False, "totalKeys": 0, "memoryUsage": "0B"}


async def test_unreachable_server_degrades_instead_of_raising(redis_client):
    redis_client.reachable = False
    cache = RedisCache("redis://localhost:6379/0", client=redis_client)
    assert await cache.connect() is False
    assert not cache.connected
    assert await cache.get(CacheClass.STATS, "advertiser:1:ALL") is None
    assert await cache.is_healthy() is False


async def test_round_trip_uses_class_ttl(redis_client):
    cache = RedisCache("redis://cache", client=redis_client)
    assert await cache.connect()

    await cache.set(CacheClass.STATS, "advertiser:1:ALL", {"pageId": "1", "totalActiveAds": 3})
    assert redis_client.expiry["advertiser:1:ALL"] == 15 * 60
    assert await cache.get(CacheClass.STATS, "advertiser:1:ALL") == {"pageId": "1", "totalActiveAds": 3}


async def test_errors_after_connect_become_misses(redis_client):
    cache = RedisCache("redis://cache", client=redis_client)
    await cache.connect()
    await cache.set(CacheClass.SEARCH, "search:a", [1])

    redis_client.reachable = False
    assert await cache.get(CacheClass.SEARCH, "search:a") is None
    assert await cache.delete("search:a") is False


async def test_invalidate_advertiser_stats_matches_all_countries(redis_client):
    cache = RedisCache("redis://cache", client=redis_client)
    await cache.connect()
    for key in ("advertiser:1:US", "advertiser:1:DE", "advertiser:12:US", "search:abc"):
        await cache.set(CacheClass.STATS, key, {})

    assert await cache.invalidate_advertiser_stats("1") == 2
    assert sorted(redis_client.data) == ["advertiser:12:US", "search:abc"]


async def test_clear_only_removes_owned_prefixes(redis_client):
    redis_client.data["session:xyz"] = "{}"
    cache = RedisCache("redis://cache", client=redis_client)
    await cache.connect()
    await cache.set(CacheClass.SEARCH, "search:a", {})
    await cache.set(CacheClass.AI, "ai:snacks", [])

    assert await cache.clear() == 2
    assert list(redis_client.data) == ["session:xyz"]


async def test_stats_and_disconnect(redis_client):
    cache = RedisCache("redis://cache", client=redis_client)
    await cache.connect()
    await cache.set(CacheClass.SEARCH, "search:a", {})

    assert await cache.stats() == {"connected": True, "totalKeys": 1, "memoryUsage": "1.5M"}
    await cache.disconnect()
    assert redis_client.closed
    assert not cache.connected


async def test_remaining_ttl(redis_client, clock):
    cache = RedisCache("redis://cache", client=redis_client)
    await cache.connect()
    await cache.set(CacheClass.SEARCH, "search:a", {}, ttl=30)
    redis_client.data["search:forever"] = "{}"

    clock.advance(10)
    assert await cache.remaining_ttl("search:a") == 20
    assert await cache.remaining_ttl("search:forever") is None
    assert await cache.remaining_ttl("search:missing") == 0

    redis_client.reachable = False
    assert await cache.remaining_ttl("search:a") is None
