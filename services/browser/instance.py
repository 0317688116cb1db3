# services/browser/instance.py
import time
import uuid
from typing import Any, Optional

from loguru import logger
from playwright.async_api import Error as PlaywrightError

from core.exceptions import UpstreamError


class BrowserInstance:
    """
    One running Chromium process with a single context and page.

    The pool owns the instance and leases it to exactly one job at a time;
    ``in_use`` and the two timestamps are maintained by the pool, never by
    the lease holder.
    """

    def __init__(self, browser: Any, context: Any, page: Any, created_at: Optional[float] = None):
        self.id = uuid.uuid4().hex[:8]
        self.browser = browser      # Playwright Browser
        self.context = context      # Playwright BrowserContext
        self.page = page            # Playwright Page
        self.in_use = False
        self.created_at = created_at if created_at is not None else time.monotonic()
        self.last_used_at = self.created_at

    def __repr__(self) -> str:
        return f"<BrowserInstance {self.id} in_use={self.in_use}>"

    async def is_responsive(self) -> bool:
        """Cheap liveness check: run a trivial script in the page."""
        try:
            await self.page.evaluate("() => true")
            return True
        except Exception as exc:  # pylint: disable=broad-except
            logger.debug(f"Browser {self.id} failed liveness check: {exc}")
            return False

    async def render(self, url: str, timeout: Optional[float] = None) -> str:
        """Navigate to ``url`` and return the DOM after scripts have run."""
        logger.info(f"Rendering {url} in browser {self.id}")
        start = time.time()
        try:
            await self.page.goto(
                url,
                wait_until="domcontentloaded",
                timeout=timeout * 1000 if timeout else None,
            )
            html = await self.page.content()
        except PlaywrightError as exc:
            raise UpstreamError(f"Navigation to {url} failed: {exc}", details={"url": url}) from exc
        logger.debug(f"Render finished in {time.time() - start:.2f}s")
        return html

    async def close(self) -> None:
        """Close context then browser; failures are logged, never raised."""
        for target in (self.context, self.browser):
            try:
                await target.close()
            except Exception as exc:  # pylint: disable=broad-except
                logger.warning(f"Error closing browser {self.id}: {exc}")
