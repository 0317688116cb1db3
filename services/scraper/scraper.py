# services/scraper/scraper.py
"""
Advertiser stats orchestration.

``get_advertiser_stats`` answers from the cache when it can; otherwise it
submits a job to the priority queue. The job fetches the Ad Library page
through the shared HTTP pool and, when the static HTML carries no count,
renders it in a pooled browser before parsing. Successful results are
written through both cache tiers.
"""

import time
from typing import Dict, Optional, Protocol

from loguru import logger
from prometheus_client import Counter, Histogram
from pydantic import ValidationError as PydanticValidationError

from core.exceptions import ExtractionError, ScraperException, UsageLimitExceededError
from models.advertiser import AdvertiserStats, AdvertiserStatsResult, ScrapeResult
from models.jobs import JobType, ScrapePayload, StatsFetchPayload
from models.telemetry import (
    BrowserPoolStats,
    CacheStats,
    ConnectionPoolStats,
    PerformanceStats,
    QueueStats,
)
from services.browser.browser_pool import BrowserPool
from services.cache.cache_service import CacheService
from services.cache.keys import CacheClass, scrape_key
from services.http.connection_pool import ConnectionPool, FetchRequest
from services.queue.cancellation import CancellationToken
from services.queue.job_queue import JobQueue
from services.scraper.extraction import (
    AD_LIBRARY_URL,
    build_ad_library_url,
    parse_advertiser_stats,
)

SCRAPE_REQUESTS = Counter('scraper_requests_total', 'Total number of scrape requests', ['kind'])
SCRAPE_CACHE_HITS = Counter('scraper_cache_hits_total', 'Requests answered from cache', ['kind'])
SCRAPE_ERRORS = Counter('scraper_errors_total', 'Total number of scrape errors', ['kind', 'code'])
SCRAPE_DURATION = Histogram('scraper_duration_seconds', 'Time spent answering scrape requests', ['kind'])
BROWSER_FALLBACKS = Counter('scraper_browser_fallback_total', 'Stats jobs that needed a rendered page')


class UsageChecker(Protocol):
    """Decides whether a user may trigger another uncached scrape."""

    async def check(self, user_id: str) -> bool: ...


class AdvertiserStatsScraper:
    def __init__(
        self,
        *,
        http_pool: ConnectionPool,
        browser_pool: BrowserPool,
        queue: JobQueue,
        cache: CacheService,
        ad_library_url: str = AD_LIBRARY_URL,
        browser_fallback: bool = True,
        navigation_timeout: float = 30.0,
        default_priority: int = 1,
        max_retries: int = 2,
        usage_checker: Optional[UsageChecker] = None,
    ):
        self.http_pool = http_pool
        self.browser_pool = browser_pool
        self.queue = queue
        self.cache = cache
        self.ad_library_url = ad_library_url
        self.browser_fallback = browser_fallback
        self.navigation_timeout = navigation_timeout
        self.default_priority = default_priority
        self.max_retries = max_retries
        self.usage_checker = usage_checker

        self.queue.register(JobType.STATS_FETCH, self._handle_stats_job)
        self.queue.register(JobType.SCRAPE, self._handle_scrape_job)

        self._total_requests = 0
        self._cache_hits = 0
        self._successful = 0
        self._errors = 0
        self._avg_response_time = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def get_advertiser_stats(
        self,
        page_id: str,
        country: str = "ALL",
        *,
        user_id: Optional[str] = None,
        priority: Optional[int] = None,
    ) -> AdvertiserStatsResult:
        """Return stats for one advertiser page; never raises."""
        started = time.perf_counter()
        self._total_requests += 1
        SCRAPE_REQUESTS.labels(kind="stats").inc()

        try:
            payload = StatsFetchPayload(page_id=page_id, country=country, user_id=user_id)
        except PydanticValidationError as exc:
            return self._stats_failure(started, f"Invalid request: {exc.errors()[0]['msg']}", "VALIDATION_ERROR")

        cached = await self.cache.get_advertiser_stats(payload.page_id, payload.country)
        if cached is not None:
            self._cache_hits += 1
            SCRAPE_CACHE_HITS.labels(kind="stats").inc()
            logger.info(f"Cache hit for {payload.page_id}: {cached.total_active_ads} ads")
            return AdvertiserStatsResult(
                success=True,
                stats=cached,
                cached=True,
                execution_time_ms=self._elapsed_ms(started),
            )

        refusal = await self._check_usage(user_id)
        if refusal is not None:
            return self._stats_failure(started, refusal.message, refusal.code)

        logger.info(f"Scraping pageId: {payload.page_id} ({payload.country})")
        try:
            with SCRAPE_DURATION.labels(kind="stats").time():
                stats: AdvertiserStats = await self.queue.submit(
                    JobType.STATS_FETCH,
                    payload,
                    priority=self.default_priority if priority is None else priority,
                    max_retries=self.max_retries,
                    user_id=user_id,
                )
        except ScraperException as exc:
            return self._stats_failure(started, exc.message, exc.code)
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception(f"Unexpected failure scraping {payload.page_id}")
            return self._stats_failure(started, str(exc) or exc.__class__.__name__, ScraperException.code)

        await self.cache.set_advertiser_stats(stats, payload.country)
        elapsed = self._elapsed_ms(started)
        self._record_success(elapsed)
        logger.info(f"Scrape completed for {payload.page_id}: {stats.total_active_ads} ads in {elapsed:.0f}ms")
        return AdvertiserStatsResult(success=True, stats=stats, execution_time_ms=elapsed)

    async def scrape_page(
        self,
        url: str,
        render_js: bool = False,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        user_id: Optional[str] = None,
        priority: Optional[int] = None,
        use_cache: bool = True,
    ) -> ScrapeResult:
        """Fetch raw page HTML through the queue; never raises."""
        started = time.perf_counter()
        self._total_requests += 1
        SCRAPE_REQUESTS.labels(kind="page").inc()
        key = scrape_key(url, render_js)

        if use_cache:
            cached = await self.cache.get(CacheClass.SEARCH, key)
            if cached is not None:
                self._cache_hits += 1
                SCRAPE_CACHE_HITS.labels(kind="page").inc()
                return ScrapeResult(
                    success=True,
                    url=url,
                    html=cached.get("html"),
                    rendered=render_js,
                    cached=True,
                    execution_time_ms=self._elapsed_ms(started),
                )

        refusal = await self._check_usage(user_id)
        if refusal is not None:
            return self._page_failure(started, url, refusal.message, refusal.code)

        try:
            payload = ScrapePayload(
                url=url,
                render_js=render_js,
                headers=headers or {},
                timeout=timeout,
                user_id=user_id,
            )
            with SCRAPE_DURATION.labels(kind="page").time():
                html: str = await self.queue.submit(
                    JobType.SCRAPE,
                    payload,
                    priority=self.default_priority if priority is None else priority,
                    max_retries=self.max_retries,
                    user_id=user_id,
                )
        except PydanticValidationError as exc:
            return self._page_failure(started, url, f"Invalid request: {exc.errors()[0]['msg']}", "VALIDATION_ERROR")
        except ScraperException as exc:
            return self._page_failure(started, url, exc.message, exc.code)
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception(f"Unexpected failure scraping {url}")
            return self._page_failure(started, url, str(exc) or exc.__class__.__name__, ScraperException.code)

        if use_cache:
            await self.cache.set(CacheClass.SEARCH, key, {"url": url, "html": html})
        elapsed = self._elapsed_ms(started)
        self._record_success(elapsed)
        return ScrapeResult(success=True, url=url, html=html, rendered=render_js, execution_time_ms=elapsed)

    def cancel_for_user(self, user_id: str) -> int:
        return self.queue.cancel_for_user(user_id)

    # ------------------------------------------------------------------
    # Job handlers (run inside the queue)
    # ------------------------------------------------------------------
    async def _handle_stats_job(self, payload: StatsFetchPayload, token: CancellationToken) -> AdvertiserStats:
        url = build_ad_library_url(payload.page_id, payload.country, self.ad_library_url)
        html = await self.http_pool.fetch(FetchRequest(url=url), cancel_token=token)
        logger.debug(f"HTML fetched: {len(html)} characters")

        stats = parse_advertiser_stats(html, payload.page_id)
        if stats is None and self.browser_fallback:
            token.raise_if_cancelled()
            BROWSER_FALLBACKS.inc()
            logger.info(f"No count in static HTML for {payload.page_id}, rendering in browser")
            async with self.browser_pool.lease() as browser:
                html = await browser.render(url, timeout=self.navigation_timeout)
            stats = parse_advertiser_stats(html, payload.page_id)

        if stats is None:
            raise ExtractionError(
                f"No active ads count found for page {payload.page_id}",
                details={"page_id": payload.page_id, "country": payload.country},
            )
        return stats

    async def _handle_scrape_job(self, payload: ScrapePayload, token: CancellationToken) -> str:
        if payload.render_js:
            async with self.browser_pool.lease() as browser:
                return await browser.render(payload.url, timeout=payload.timeout or self.navigation_timeout)
        request = FetchRequest(url=payload.url, headers=payload.headers, timeout=payload.timeout)
        return await self.http_pool.fetch(request, cancel_token=token)

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------
    def get_performance_stats(self) -> PerformanceStats:
        cache_hit_rate = self._cache_hits / self._total_requests * 100 if self._total_requests else 0.0
        return PerformanceStats(
            cache_hit_rate=round(cache_hit_rate, 1),
            cache_size=self.cache.stats().keys,
            active_connections=self.http_pool.stats().active_requests,
            queued_requests=self.http_pool.stats().queue_size,
            batch_queue_size=self.queue.stats().queued,
            avg_response_time=round(self._avg_response_time),
            total_requests=self._total_requests,
            errors=self._errors,
        )

    def get_pool_stats(self) -> BrowserPoolStats:
        return self.browser_pool.stats()

    def get_queue_stats(self) -> QueueStats:
        return self.queue.stats()

    def get_cache_stats(self) -> CacheStats:
        return self.cache.stats()

    def get_connection_stats(self) -> ConnectionPoolStats:
        return self.http_pool.stats()

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------
    async def clear_cache(self) -> None:
        await self.cache.clear()
        logger.info("Scraper cache cleared")

    def reset_metrics(self) -> None:
        self._total_requests = 0
        self._cache_hits = 0
        self._successful = 0
        self._errors = 0
        self._avg_response_time = 0.0
        self.http_pool.reset_stats()
        logger.info("Scraper metrics reset")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _check_usage(self, user_id: Optional[str]) -> Optional[ScraperException]:
        if self.usage_checker is None or not user_id:
            return None
        if await self.usage_checker.check(user_id):
            return None
        return UsageLimitExceededError(f"Usage limit reached for user {user_id}")

    def _record_success(self, elapsed_ms: float) -> None:
        self._successful += 1
        # Cumulative moving average over every uncached, successful request.
        self._avg_response_time += (elapsed_ms - self._avg_response_time) / self._successful

    def _record_failure(self, kind: str, code: str) -> None:
        SCRAPE_ERRORS.labels(kind=kind, code=code).inc()
        if code != "JOB_CANCELLED":
            self._errors += 1

    def _stats_failure(self, started: float, message: str, code: str) -> AdvertiserStatsResult:
        self._record_failure("stats", code)
        if code == "JOB_CANCELLED":
            logger.info(f"Stats request cancelled: {message}")
        else:
            logger.error(f"Stats request failed [{code}]: {message}")
        return AdvertiserStatsResult(
            success=False,
            error=message,
            error_code=code,
            execution_time_ms=self._elapsed_ms(started),
        )

    def _page_failure(self, started: float, url: str, message: str, code: str) -> ScrapeResult:
        self._record_failure("page", code)
        logger.error(f"Scrape failure for {url} [{code}]: {message}")
        return ScrapeResult(
            success=False,
            url=url,
            error=message,
            error_code=code,
            execution_time_ms=self._elapsed_ms(started),
        )

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 2)
