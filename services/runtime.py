# services/runtime.py
"""
Composition root.

Builds the process‑wide pools, queue and cache from :class:`Settings` and
injects them into the orchestrator. ``start()`` brings up the background
tasks and the Redis connection; ``shutdown()`` tears everything down in
reverse order and is safe to call more than once.
"""

import asyncio
import signal
from typing import Optional

from loguru import logger

from core.config import Settings, get_settings
from services.browser.browser_pool import BrowserPool
from services.browser.launcher import PlaywrightLauncher
from services.cache.cache_service import CacheService
from services.cache.keys import CacheClass
from services.cache.memory_cache import MemoryCache
from services.cache.redis_cache import RedisCache
from services.http.connection_pool import ConnectionPool
from services.queue.job_queue import JobQueue
from services.scraper.scraper import AdvertiserStatsScraper, UsageChecker


class ScraperRuntime:
    def __init__(
        self,
        settings: Settings,
        http_pool: ConnectionPool,
        browser_pool: BrowserPool,
        queue: JobQueue,
        cache: CacheService,
        scraper: AdvertiserStatsScraper,
    ):
        self.settings = settings
        self.http_pool = http_pool
        self.browser_pool = browser_pool
        self.queue = queue
        self.cache = cache
        self.scraper = scraper
        self._started = False
        self._shutdown_task: Optional[asyncio.Task] = None

    @classmethod
    def create(
        cls,
        settings: Optional[Settings] = None,
        *,
        usage_checker: Optional[UsageChecker] = None,
    ) -> "ScraperRuntime":
        settings = settings or get_settings()

        http_pool = ConnectionPool(
            settings.HTTP_MAX_CONCURRENT,
            max_queue_size=settings.HTTP_MAX_QUEUE,
            timeout=settings.HTTP_TIMEOUT,
            retries=settings.HTTP_RETRIES,
            backoff_base=settings.HTTP_BACKOFF_BASE,
            backoff_max=settings.HTTP_BACKOFF_MAX,
            keepalive_connections=settings.HTTP_KEEPALIVE_CONNECTIONS,
            keepalive_expiry=settings.HTTP_KEEPALIVE_EXPIRY,
            user_agent=settings.DEFAULT_USER_AGENT,
        )
        launcher = PlaywrightLauncher(
            headless=settings.BROWSER_HEADLESS,
            in_container=settings.BROWSER_IN_CONTAINER,
            viewport=(settings.BROWSER_VIEWPORT_WIDTH, settings.BROWSER_VIEWPORT_HEIGHT),
            user_agent=settings.DEFAULT_USER_AGENT,
            navigation_timeout=settings.BROWSER_NAVIGATION_TIMEOUT,
        )
        browser_pool = BrowserPool(
            settings.BROWSER_MAX,
            max_idle=settings.BROWSER_MAX_IDLE,
            max_lifetime=settings.BROWSER_MAX_LIFETIME,
            reap_interval=settings.BROWSER_REAP_INTERVAL,
            acquire_timeout=settings.BROWSER_ACQUIRE_TIMEOUT,
            launcher=launcher,
        )
        queue = JobQueue(settings.QUEUE_CONCURRENCY)
        cache = CacheService(
            MemoryCache(
                search_ttl=settings.CACHE_SEARCH_TTL,
                search_max_keys=settings.CACHE_SEARCH_MAX_KEYS,
                stats_ttl=settings.CACHE_STATS_TTL,
                stats_max_keys=settings.CACHE_STATS_MAX_KEYS,
                ai_ttl=settings.CACHE_AI_TTL,
                ai_max_keys=settings.CACHE_AI_MAX_KEYS,
                memory_limit_mb=settings.CACHE_MEMORY_LIMIT_MB,
                sweep_interval=settings.CACHE_SWEEP_INTERVAL,
            ),
            RedisCache(
                settings.REDIS_URL,
                ttls={
                    CacheClass.SEARCH: settings.REDIS_SEARCH_TTL,
                    CacheClass.STATS: settings.REDIS_STATS_TTL,
                    CacheClass.AI: settings.REDIS_AI_TTL,
                },
            ),
        )
        scraper = AdvertiserStatsScraper(
            http_pool=http_pool,
            browser_pool=browser_pool,
            queue=queue,
            cache=cache,
            ad_library_url=settings.AD_LIBRARY_URL,
            browser_fallback=settings.BROWSER_FALLBACK_ENABLED,
            navigation_timeout=settings.BROWSER_NAVIGATION_TIMEOUT,
            default_priority=settings.QUEUE_DEFAULT_PRIORITY,
            max_retries=settings.QUEUE_MAX_RETRIES,
            usage_checker=usage_checker,
        )
        return cls(settings, http_pool, browser_pool, queue, cache, scraper)

    async def start(self) -> None:
        if self._started:
            return
        await self.cache.connect()
        self.browser_pool.start()
        self._started = True
        logger.info("Scraper runtime started")

    async def shutdown(self) -> None:
        if not self._started:
            return
        self._started = False
        logger.info("Shutting down scraper runtime...")
        await self.queue.close(timeout=self.settings.HTTP_DRAIN_TIMEOUT)
        await self.http_pool.shutdown(drain_timeout=self.settings.HTTP_DRAIN_TIMEOUT)
        await self.browser_pool.close_all()
        await self.cache.disconnect()
        logger.info("Scraper runtime stopped")

    def install_signal_handlers(self) -> None:
        """Shut down on SIGTERM/SIGINT. Not for use under uvicorn, which owns signals."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Signal handlers unsupported on this platform ({sig.name})")

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, closing pools")
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.create_task(self.shutdown())
