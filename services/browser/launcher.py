# services/browser/launcher.py
import asyncio
from typing import Any, List, Optional, Tuple

from loguru import logger
from playwright.async_api import async_playwright
from prometheus_client import Counter

from core.exceptions import BrowserLaunchError
from services.browser.instance import BrowserInstance

BROWSER_CREATION_TOTAL = Counter('browser_creation_total', 'Total number of browsers created')
BROWSER_FAILURES = Counter('browser_failures_total', 'Total number of browser launch failures')

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

# Hide the most obvious automation fingerprints.
HARDENING_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', {get: () => undefined});
Object.defineProperty(navigator, 'languages', {get: () => ['en-US','en']});
window.chrome = {runtime: {}};
"""

BASE_ARGS = [
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-extensions",
    "--disable-blink-features=AutomationControlled",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--blink-settings=imagesEnabled=false",
]

CONTAINER_ARGS = ["--no-sandbox", "--disable-setuid-sandbox"]


class PlaywrightLauncher:
    """
    Starts headless Chromium instances for the browser pool.

    The Playwright driver is started lazily on the first launch and shared
    by every browser afterwards; ``stop()`` shuts it down.
    """

    def __init__(
        self,
        *,
        headless: bool = True,
        in_container: bool = False,
        viewport: Tuple[int, int] = (1920, 1080),
        user_agent: str = DEFAULT_USER_AGENT,
        navigation_timeout: float = 30.0,
    ):
        self.headless = headless
        self.in_container = in_container
        self.viewport = viewport
        self.user_agent = user_agent
        self.navigation_timeout = navigation_timeout
        self._playwright: Optional[Any] = None
        self._driver_lock = asyncio.Lock()

    def launch_args(self) -> List[str]:
        # --no-sandbox only inside an isolated container.
        if self.in_container:
            return BASE_ARGS + CONTAINER_ARGS
        return list(BASE_ARGS)

    async def _driver(self) -> Any:
        async with self._driver_lock:
            if self._playwright is None:
                logger.info("Starting Playwright driver")
                self._playwright = await async_playwright().start()
            return self._playwright

    async def launch(self) -> BrowserInstance:
        """Launch Chromium with one context and page; raises BrowserLaunchError."""
        logger.info("Creating new Playwright Chromium instance")
        browser = None
        try:
            playwright = await self._driver()
            browser = await playwright.chromium.launch(
                headless=self.headless,
                args=self.launch_args(),
            )
            context = await browser.new_context(
                viewport={"width": self.viewport[0], "height": self.viewport[1]},
                user_agent=self.user_agent,
                ignore_https_errors=True,
                java_script_enabled=True,
            )
            timeout_ms = self.navigation_timeout * 1000
            context.set_default_timeout(timeout_ms)
            context.set_default_navigation_timeout(timeout_ms)
            await context.add_init_script(HARDENING_SCRIPT)
            page = await context.new_page()
        except BaseException as exc:
            # Cancellation included: a half-launched Chromium must not outlive the launch.
            if browser is not None:
                await self._close_quietly(browser)
            if not isinstance(exc, Exception):
                raise
            BROWSER_FAILURES.inc()
            raise BrowserLaunchError(f"Failed to launch Chromium: {exc}") from exc

        BROWSER_CREATION_TOTAL.inc()
        return BrowserInstance(browser, context, page)

    @staticmethod
    async def _close_quietly(browser: Any) -> None:
        try:
            await asyncio.shield(browser.close())
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning(f"Error closing half-launched browser: {exc}")

    async def stop(self) -> None:
        async with self._driver_lock:
            if self._playwright is not None:
                try:
                    await self._playwright.stop()
                except Exception as exc:  # pylint: disable=broad-except
                    logger.warning(f"Error stopping Playwright driver: {exc}")
                self._playwright = None
                logger.info("Playwright driver stopped")
