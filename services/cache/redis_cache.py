# services/cache/redis_cache.py
"""
Shared remote cache tier backed by Redis.

The remote tier is optional: without ``REDIS_URL``, before ``connect()`` or
after a failed connect every read misses and every write is a no‑op. Redis
errors are logged and swallowed here, never raised to callers.
"""

import json
import re
from typing import Any, Dict, Optional

import redis.asyncio as redis
from loguru import logger
from redis.exceptions import RedisError

from services.cache.keys import CacheClass, stats_prefix
from services.cache.memory_cache import CACHE_HITS, CACHE_MISSES

DEFAULT_REMOTE_TTLS: Dict[CacheClass, int] = {
    CacheClass.SEARCH: 30 * 60,
    CacheClass.STATS: 15 * 60,
    CacheClass.AI: 24 * 60 * 60,
}

KEY_PATTERNS = ("search:*", "advertiser:*", "ai:*")

_MEMORY_RE = re.compile(r"used_memory_human:([^\r\n]+)")


class RedisCache:
    def __init__(
        self,
        url: Optional[str] = None,
        *,
        ttls: Optional[Dict[CacheClass, int]] = None,
        client: Optional[Any] = None,
    ):
        self.url = url
        self.ttls = {**DEFAULT_REMOTE_TTLS, **(ttls or {})}
        self._client = client
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> bool:
        """Ping Redis; stay in degraded (always‑miss) mode if it is unreachable."""
        if self._connected:
            return True
        if self._client is None:
            if not self.url:
                logger.info("REDIS_URL not set, remote cache disabled")
                return False
            self._client = redis.from_url(self.url, decode_responses=True)
        try:
            await self._client.ping()
        except (RedisError, OSError) as exc:
            logger.warning(f"Failed to connect to Redis, continuing without remote cache: {exc}")
            self._connected = False
            return False
        self._connected = True
        logger.info("Redis connection established")
        return True

    async def disconnect(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            except (RedisError, OSError) as exc:
                logger.warning(f"Error closing Redis connection: {exc}")
        self._connected = False
        logger.info("Disconnected from Redis")

    # ------------------------------------------------------------------
    # Reads / writes
    # ------------------------------------------------------------------
    async def get(self, cache_class: CacheClass, key: str) -> Optional[Any]:
        if not self._connected:
            return None
        try:
            raw = await self._client.get(key)
        except (RedisError, OSError) as exc:
            logger.error(f"Error getting {key} from Redis: {exc}")
            return None

        if raw is None:
            CACHE_MISSES.labels(tier="redis", cache_class=cache_class.value).inc()
            return None
        try:
            value = json.loads(raw)
        except ValueError as exc:
            logger.error(f"Error parsing cached value for {key}: {exc}")
            return None
        CACHE_HITS.labels(tier="redis", cache_class=cache_class.value).inc()
        logger.debug(f"Redis cache hit: {key}")
        return value

    async def remaining_ttl(self, key: str) -> Optional[float]:
        """Seconds until ``key`` expires; 0 if it is gone, None if it never expires or is unknown."""
        if not self._connected:
            return None
        try:
            remaining_ms = await self._client.pttl(key)
        except (RedisError, OSError) as exc:
            logger.error(f"Error reading TTL of {key} from Redis: {exc}")
            return None
        if remaining_ms == -2:
            return 0.0
        if remaining_ms < 0:
            return None
        return remaining_ms / 1000

    async def set(
        self,
        cache_class: CacheClass,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
    ) -> None:
        if not self._connected:
            return
        ttl = ttl or self.ttls[cache_class]
        try:
            await self._client.set(key, json.dumps(value, default=str), ex=int(ttl))
        except (RedisError, OSError, TypeError, ValueError) as exc:
            logger.error(f"Error setting {key} in Redis: {exc}")
            return
        logger.debug(f"Cached {key} in Redis (TTL: {ttl}s)")

    async def delete(self, key: str) -> bool:
        if not self._connected:
            return False
        try:
            return bool(await self._client.delete(key))
        except (RedisError, OSError) as exc:
            logger.error(f"Error deleting {key} from Redis: {exc}")
            return False

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------
    async def invalidate_pattern(self, pattern: str) -> int:
        if not self._connected:
            return 0
        deleted = 0
        try:
            batch = []
            async for key in self._client.scan_iter(match=pattern, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    deleted += await self._client.delete(*batch)
                    batch = []
            if batch:
                deleted += await self._client.delete(*batch)
        except (RedisError, OSError) as exc:
            logger.error(f"Error invalidating {pattern}: {exc}")
            return deleted
        if deleted:
            logger.info(f"Invalidated {deleted} cache entries matching: {pattern}")
        return deleted

    async def invalidate_advertiser_stats(self, page_id: str) -> int:
        return await self.invalidate_pattern(f"{stats_prefix(page_id)}*")

    async def clear(self) -> int:
        total = 0
        for pattern in KEY_PATTERNS:
            total += await self.invalidate_pattern(pattern)
        return total

    # ------------------------------------------------------------------
    # Health & stats
    # ------------------------------------------------------------------
    async def is_healthy(self) -> bool:
        if not self._connected:
            return False
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError):
            return False

    async def stats(self) -> Dict[str, Any]:
        if not self._connected:
            return {"connected": False, "totalKeys": 0, "memoryUsage": "0B"}
        try:
            info = await self._client.info("memory")
            total = 0
            for pattern in KEY_PATTERNS:
                async for _ in self._client.scan_iter(match=pattern, count=500):
                    total += 1
        except (RedisError, OSError) as exc:
            logger.error(f"Error getting Redis cache stats: {exc}")
            return {"connected": True, "totalKeys": 0, "memoryUsage": "Error"}

        if isinstance(info, dict):
            memory = str(info.get("used_memory_human", "Unknown"))
        else:
            match = _MEMORY_RE.search(str(info))
            memory = match.group(1).strip() if match else "Unknown"
        return {"connected": True, "totalKeys": total, "memoryUsage": memory}
