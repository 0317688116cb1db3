"""Command line entry point: fetch advertiser stats for one or more page ids."""

import argparse
import asyncio
import json
import sys

from loguru import logger

from core.config import get_settings
from core.logging import configure_logging
from services.runtime import ScraperRuntime


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fetch Ad Library advertiser statistics")
    parser.add_argument("page_ids", nargs="+", help="Facebook page id(s)")
    parser.add_argument("--country", default="ALL", help="Two-letter country code or ALL")
    parser.add_argument("--user-id", default=None)
    parser.add_argument("--priority", type=int, default=None)
    parser.add_argument("--log-level", default=None)
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    configure_logging(args.log_level or settings.LOG_LEVEL)

    runtime = ScraperRuntime.create(settings)
    await runtime.start()
    runtime.install_signal_handlers()
    failures = 0
    try:
        results = await asyncio.gather(
            *(
                runtime.scraper.get_advertiser_stats(
                    page_id, args.country, user_id=args.user_id, priority=args.priority
                )
                for page_id in args.page_ids
            )
        )
        for result in results:
            print(json.dumps(result.to_dict(), indent=2))
            if not result.success:
                failures += 1
    finally:
        await runtime.shutdown()

    logger.info(f"Fetched {len(args.page_ids) - failures}/{len(args.page_ids)} page(s)")
    return 1 if failures else 0


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
