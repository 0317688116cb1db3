# services/cache/memory_cache.py
"""
Process‑local cache tier.

Three independent regions (search results, advertiser stats, AI suggestions),
each a ``cachetools.TLRUCache``: entries carry their own TTL and the region
evicts least‑recently‑used keys once it reaches ``max_keys``. Values are
stored and returned as deep copies of plain data.
"""

import asyncio
import copy
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from cachetools import TLRUCache
from loguru import logger
from prometheus_client import Counter

from models.telemetry import CacheStats
from services.cache.keys import CacheClass

CACHE_HITS = Counter("cache_hits_total", "Cache hits", ["tier", "cache_class"])
CACHE_MISSES = Counter("cache_misses_total", "Cache misses", ["tier", "cache_class"])


@dataclass
class CacheEntry:
    key: str
    value: Any
    ttl: float
    created_at: float
    size_bytes: int = 0


class CacheRegion:
    def __init__(
        self,
        name: str,
        ttl: float,
        max_keys: int,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.ttl = ttl
        self.max_keys = max_keys
        self._timer = timer
        self._entries: TLRUCache = TLRUCache(maxsize=max_keys, ttu=self._ttu, timer=timer)

    @staticmethod
    def _ttu(_key: str, entry: CacheEntry, now: float) -> float:
        return now + entry.ttl

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        return copy.deepcopy(entry.value)

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        try:
            size = len(json.dumps(value, default=str))
        except (TypeError, ValueError):
            size = 0
        self._entries[key] = CacheEntry(
            key=key,
            value=copy.deepcopy(value),
            ttl=ttl if ttl is not None else self.ttl,
            created_at=self._timer(),
            size_bytes=size,
        )

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        doomed = [key for key in list(self._entries.keys()) if key.startswith(prefix)]
        for key in doomed:
            self._entries.pop(key, None)
        return len(doomed)

    def keys(self) -> List[str]:
        self._entries.expire()
        return list(self._entries.keys())

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        self._entries.expire()
        return len(self._entries)

    def size_bytes(self) -> int:
        self._entries.expire()
        return sum(entry.size_bytes + len(entry.key) for entry in self._entries.values())


class MemoryCache:
    def __init__(
        self,
        *,
        search_ttl: float = 60 * 60,
        search_max_keys: int = 1000,
        stats_ttl: float = 30 * 60,
        stats_max_keys: int = 500,
        ai_ttl: float = 24 * 60 * 60,
        ai_max_keys: int = 200,
        memory_limit_mb: float = 400,
        sweep_interval: float = 60 * 60,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.regions: Dict[CacheClass, CacheRegion] = {
            CacheClass.SEARCH: CacheRegion("search", search_ttl, search_max_keys, timer),
            CacheClass.STATS: CacheRegion("stats", stats_ttl, stats_max_keys, timer),
            CacheClass.AI: CacheRegion("ai", ai_ttl, ai_max_keys, timer),
        }
        self.memory_limit_mb = memory_limit_mb
        self.sweep_interval = sweep_interval
        self.hits = 0
        self.misses = 0
        self._sweeper: Optional[asyncio.Task] = None
        logger.info("Memory cache initialized")

    def region(self, cache_class: CacheClass) -> CacheRegion:
        return self.regions[cache_class]

    def get(self, cache_class: CacheClass, key: str) -> Optional[Any]:
        value = self.regions[cache_class].get(key)
        if value is None:
            self.misses += 1
            CACHE_MISSES.labels(tier="memory", cache_class=cache_class.value).inc()
            logger.debug(f"Cache MISS for {cache_class.value}: {key}")
            return None
        self.hits += 1
        CACHE_HITS.labels(tier="memory", cache_class=cache_class.value).inc()
        logger.debug(f"Cache HIT for {cache_class.value}: {key}")
        return value

    def set(self, cache_class: CacheClass, key: str, value: Any, ttl: Optional[float] = None) -> None:
        self.regions[cache_class].set(key, value, ttl)
        logger.debug(f"Cached {cache_class.value} entry: {key}")

    def delete(self, cache_class: CacheClass, key: str) -> bool:
        return self.regions[cache_class].delete(key)

    def clear_all(self) -> None:
        for region in self.regions.values():
            region.clear()
        self.hits = 0
        self.misses = 0
        logger.info("All caches cleared")

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return round(self.hits / total * 100, 2) if total else 0.0

    def memory_usage_mb(self) -> float:
        total = sum(region.size_bytes() for region in self.regions.values())
        return round(total / 1024 / 1024, 2)

    def stats(self) -> CacheStats:
        return CacheStats(
            keys=sum(len(region) for region in self.regions.values()),
            hits=self.hits,
            misses=self.misses,
            hit_rate=self.hit_rate(),
            memory_usage_mb=self.memory_usage_mb(),
        )

    def is_healthy(self) -> bool:
        return self.memory_usage_mb() < self.memory_limit_mb

    # ------------------------------------------------------------------
    # Periodic sweep
    # ------------------------------------------------------------------
    def sweep(self) -> bool:
        """Log stats; drop every entry when over the memory limit. Returns True if cleared."""
        stats = self.stats()
        logger.info(
            f"Cache stats - Keys: {stats.keys}, Hit rate: {stats.hit_rate}%, "
            f"Memory: {stats.memory_usage_mb}MB"
        )
        if stats.memory_usage_mb > self.memory_limit_mb:
            logger.warning("High cache memory usage detected, clearing all regions")
            for region in self.regions.values():
                region.clear()
            return True
        return False

    def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="memory-cache-sweep")

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception as exc:  # pylint: disable=broad-except
                logger.error(f"Cache sweep failed: {exc}")
