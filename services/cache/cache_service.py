# services/cache/cache_service.py
"""
Two‑tier cache facade.

Reads go memory → Redis → miss; a Redis hit is copied back into memory for
no longer than its remaining Redis TTL.
Writes go to both tiers. Redis trouble only ever turns into a miss.
"""

from typing import Any, Mapping, Optional

from loguru import logger

from models.advertiser import AdvertiserStats
from models.telemetry import CacheStats
from services.cache.keys import CacheClass, ai_key, search_key, stats_key, stats_prefix
from services.cache.memory_cache import MemoryCache
from services.cache.redis_cache import RedisCache


class CacheService:
    def __init__(self, memory: Optional[MemoryCache] = None, remote: Optional[RedisCache] = None):
        self.memory = memory or MemoryCache()
        self.remote = remote or RedisCache(None)

    async def connect(self) -> None:
        await self.remote.connect()
        self.memory.start()

    async def disconnect(self) -> None:
        await self.memory.stop()
        await self.remote.disconnect()

    # ------------------------------------------------------------------
    # Generic access
    # ------------------------------------------------------------------
    async def get(self, cache_class: CacheClass, key: str) -> Optional[Any]:
        value = self.memory.get(cache_class, key)
        if value is not None:
            return value

        value = await self.remote.get(cache_class, key)
        if value is None:
            return None

        # A promoted entry must not outlive its remote copy.
        ttl = self.memory.region(cache_class).ttl
        remaining = await self.remote.remaining_ttl(key)
        if remaining is not None:
            ttl = min(ttl, remaining)
        if ttl > 0:
            self.memory.set(cache_class, key, value, ttl)
            logger.debug(f"Promoted {key} from Redis to memory (TTL: {ttl:.0f}s)")
        return value

    async def set(self, cache_class: CacheClass, key: str, value: Any, ttl: Optional[float] = None) -> None:
        self.memory.set(cache_class, key, value, ttl)
        await self.remote.set(cache_class, key, value, int(ttl) if ttl else None)

    async def delete(self, cache_class: CacheClass, key: str) -> None:
        self.memory.delete(cache_class, key)
        await self.remote.delete(key)

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------
    async def get_advertiser_stats(self, page_id: str, country: str = "ALL") -> Optional[AdvertiserStats]:
        data = await self.get(CacheClass.STATS, stats_key(page_id, country))
        if data is None:
            return None
        return AdvertiserStats.model_validate(data)

    async def set_advertiser_stats(self, stats: AdvertiserStats, country: str = "ALL") -> None:
        await self.set(CacheClass.STATS, stats_key(stats.page_id, country), stats.model_dump())

    async def invalidate_advertiser_stats(self, page_id: str) -> int:
        removed = self.memory.region(CacheClass.STATS).delete_prefix(stats_prefix(page_id))
        removed += await self.remote.invalidate_advertiser_stats(page_id)
        return removed

    async def get_search_result(self, params: Mapping[str, Any]) -> Optional[Any]:
        return await self.get(CacheClass.SEARCH, search_key(params))

    async def set_search_result(self, params: Mapping[str, Any], result: Any) -> None:
        await self.set(CacheClass.SEARCH, search_key(params), result)

    async def get_ai_suggestion(self, idea: str) -> Optional[Any]:
        return await self.get(CacheClass.AI, ai_key(idea))

    async def set_ai_suggestion(self, idea: str, suggestions: Any) -> None:
        await self.set(CacheClass.AI, ai_key(idea), suggestions)

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------
    async def clear(self) -> None:
        self.memory.clear_all()
        await self.remote.clear()

    def stats(self) -> CacheStats:
        stats = self.memory.stats()
        stats.remote_connected = self.remote.connected
        return stats
