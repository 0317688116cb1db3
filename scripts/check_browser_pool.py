import asyncio
import sys
from pathlib import Path

# -------------------------------------------------------------------------
# Ensure the repository root (the folder that contains the top‑level
# `services` package) is on the import search path when run as a script.
# -------------------------------------------------------------------------
repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from core.config import get_settings
from services.browser.browser_pool import BrowserPool
from services.browser.launcher import PlaywrightLauncher


async def main(url: str = "https://example.com") -> None:
    settings = get_settings()
    # One browser is enough for a sanity check of the local Chromium install.
    pool = BrowserPool(
        max_browsers=1,
        launcher=PlaywrightLauncher(in_container=settings.BROWSER_IN_CONTAINER),
    )
    try:
        async with pool.lease() as browser:
            html = await browser.render(url)
            title = await browser.page.title()
            print("✅ Page title fetched:", title, f"({len(html)} chars)")
        print("Pool stats:", pool.stats().to_dict())

        # Second lease must reuse the same instance after a liveness check.
        async with pool.lease() as again:
            print("✅ Reused browser:", again.id == browser.id)
    finally:
        await pool.close_all()


if __name__ == "__main__":
    asyncio.run(main(*sys.argv[1:2]))
