# services/browser/browser_pool.py
"""
Bounded pool of headless Chromium instances.

An instance is leased to one holder at a time. Idle instances are checked
before reuse and recycled by a background reaper once they have been idle
too long or lived too long. When every slot is leased, ``acquire()`` waits
for a ``release()`` (or a freed slot) up to ``acquire_timeout`` seconds.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, List, Optional, Protocol

from loguru import logger
from prometheus_client import Counter, Gauge, Histogram

from core.exceptions import BrowserPoolTimeoutError, PoolClosedError
from models.telemetry import BrowserPoolStats
from services.browser.instance import BrowserInstance

BROWSER_POOL_SIZE = Gauge('browser_pool_size', 'Current number of browsers in pool')
BROWSER_POOL_IN_USE = Gauge('browser_pool_in_use', 'Browsers currently leased')
BROWSER_REUSE_TOTAL = Counter('browser_reuse_total', 'Total number of times browsers were reused')
BROWSER_CLEANUP_TOTAL = Counter('browser_cleanup_total', 'Browsers closed by the pool', ['reason'])
BROWSER_ACQUIRE_WAIT = Histogram('browser_acquire_wait_seconds', 'Time spent waiting for a browser lease')


class Launcher(Protocol):
    async def launch(self) -> BrowserInstance: ...

    async def stop(self) -> None: ...


class BrowserPool:
    def __init__(
        self,
        max_browsers: int = 2,
        *,
        max_idle: float = 120.0,
        max_lifetime: float = 600.0,
        reap_interval: float = 120.0,
        acquire_timeout: float = 30.0,
        launcher: Optional[Launcher] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_browsers < 1:
            raise ValueError("max_browsers must be >= 1")
        self.max_browsers = max_browsers
        self.max_idle = max_idle
        self.max_lifetime = max_lifetime
        self.reap_interval = reap_interval
        self.acquire_timeout = acquire_timeout

        if launcher is None:
            from services.browser.launcher import PlaywrightLauncher

            launcher = PlaywrightLauncher()
        self._launcher = launcher
        self._clock = clock

        self._instances: List[BrowserInstance] = []
        self._launching = 0          # slots reserved by launches in progress
        self._cond = asyncio.Condition()
        self._reaper: Optional[asyncio.Task] = None
        self._closed = False

        logger.info(f"Browser pool initialized with max {max_browsers} browsers")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Start the background reaper (idempotent)."""
        if self._reaper is None and not self._closed:
            self._reaper = asyncio.create_task(self._reap_loop(), name="browser-pool-reaper")

    async def close_all(self) -> None:
        """Stop the reaper and force‑close every browser, leased or not."""
        self._closed = True
        if self._reaper is not None:
            self._reaper.cancel()
            await asyncio.gather(self._reaper, return_exceptions=True)
            self._reaper = None

        async with self._cond:
            instances, self._instances = self._instances, []
            self._cond.notify_all()

        await asyncio.gather(*(instance.close() for instance in instances))
        BROWSER_CLEANUP_TOTAL.labels(reason="shutdown").inc(len(instances))
        await self._launcher.stop()
        self._update_gauges()
        logger.info(f"All browsers closed ({len(instances)})")

    # ------------------------------------------------------------------
    # Lease / release
    # ------------------------------------------------------------------
    async def acquire(self) -> BrowserInstance:
        """Lease a live browser, launching or waiting for one as needed."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self.acquire_timeout

        while True:
            candidate: Optional[BrowserInstance] = None
            async with self._cond:
                if self._closed:
                    raise PoolClosedError("Browser pool is shut down")

                candidate = self._take_idle()
                if candidate is None:
                    if len(self._instances) + self._launching < self.max_browsers:
                        self._launching += 1
                    else:
                        remaining = deadline - loop.time()
                        if remaining <= 0:
                            raise self._timeout_error()
                        logger.info("Browser pool full, waiting for available browser...")
                        try:
                            await asyncio.wait_for(self._cond.wait(), remaining)
                        except asyncio.TimeoutError:
                            raise self._timeout_error() from None
                        continue

            if candidate is not None:
                if await candidate.is_responsive():
                    candidate.last_used_at = self._clock()
                    BROWSER_REUSE_TOTAL.inc()
                    BROWSER_ACQUIRE_WAIT.observe(loop.time() - started)
                    self._update_gauges()
                    logger.debug(
                        f"Reusing existing browser {candidate.id} "
                        f"({len(self._instances)}/{self.max_browsers} in pool)"
                    )
                    return candidate
                logger.info(f"Removing dead browser {candidate.id} from pool")
                await self._discard(candidate, reason="dead")
                continue

            return await self._launch_reserved(loop.time() - started)

    async def release(self, instance: BrowserInstance) -> None:
        """Hand a leased browser back. Never closes anything."""
        async with self._cond:
            if instance not in self._instances:
                logger.warning(f"Tried to release unknown browser {instance.id}")
                return
            instance.in_use = False
            instance.last_used_at = self._clock()
            self._cond.notify_all()
        self._update_gauges()
        logger.debug(f"Released browser {instance.id} back to pool")

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[BrowserInstance]:
        instance = await self.acquire()
        try:
            yield instance
        finally:
            await self.release(instance)

    # ------------------------------------------------------------------
    # Recycling
    # ------------------------------------------------------------------
    async def reap_idle(self) -> int:
        """Close idle browsers past their idle or lifetime limit."""
        now = self._clock()
        async with self._cond:
            stale = [
                instance
                for instance in self._instances
                if not instance.in_use
                and (
                    now - instance.last_used_at > self.max_idle
                    or now - instance.created_at > self.max_lifetime
                )
            ]
            for instance in stale:
                self._instances.remove(instance)
            if stale:
                self._cond.notify_all()

        for instance in stale:
            await instance.close()
        if stale:
            BROWSER_CLEANUP_TOTAL.labels(reason="expired").inc(len(stale))
            self._update_gauges()
            logger.info(f"Cleaned up {len(stale)} old browsers")
        return len(stale)

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(self.reap_interval)
            try:
                await self.reap_idle()
            except Exception as exc:  # pylint: disable=broad-except
                logger.error(f"Browser reaper failed: {exc}")

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------
    def stats(self) -> BrowserPoolStats:
        in_use = sum(1 for instance in self._instances if instance.in_use)
        return BrowserPoolStats(
            total=len(self._instances),
            in_use=in_use,
            available=len(self._instances) - in_use,
            max_browsers=self.max_browsers,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _take_idle(self) -> Optional[BrowserInstance]:
        for instance in self._instances:
            if not instance.in_use:
                instance.in_use = True
                return instance
        return None

    async def _launch_reserved(self, waited: float) -> BrowserInstance:
        try:
            instance = await self._launcher.launch()
        except BaseException:
            async with self._cond:
                self._launching -= 1
                self._cond.notify_all()
            raise

        now = self._clock()
        instance.created_at = now
        instance.last_used_at = now
        instance.in_use = True
        async with self._cond:
            self._launching -= 1
            closed = self._closed
            if not closed:
                self._instances.append(instance)
        if closed:
            await instance.close()
            raise PoolClosedError("Browser pool is shut down")

        BROWSER_ACQUIRE_WAIT.observe(waited)
        self._update_gauges()
        logger.info(f"Created new browser {instance.id} ({len(self._instances)}/{self.max_browsers} in pool)")
        return instance

    async def _discard(self, instance: BrowserInstance, reason: str) -> None:
        async with self._cond:
            if instance in self._instances:
                self._instances.remove(instance)
            self._cond.notify_all()
        await instance.close()
        BROWSER_CLEANUP_TOTAL.labels(reason=reason).inc()
        self._update_gauges()

    def _timeout_error(self) -> BrowserPoolTimeoutError:
        return BrowserPoolTimeoutError(
            f"Timeout waiting for available browser ({self.acquire_timeout:.0f}s)",
            {"max_browsers": self.max_browsers},
        )

    def _update_gauges(self) -> None:
        stats = self.stats()
        BROWSER_POOL_SIZE.set(stats.total)
        BROWSER_POOL_IN_USE.set(stats.in_use)
