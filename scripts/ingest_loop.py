from __future__ import annotations

import argparse
import asyncio
import logging

from marketsync.config import settings
from marketsync.ingestion.fetcher import FetcherManager
from marketsync.ingestion.scheduler import FetchScheduler
from marketsync.storage import ParquetMarketStore

logging.basicConfig(level=settings.log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Continuous incremental fetch loop across platforms.")
    parser.add_argument(
        "--interval",
        type=int,
        default=settings.fetch_interval_seconds,
        help="Interval in seconds between runs (default: FETCH_INTERVAL_SECONDS).",
    )
    parser.add_argument(
        "--platform",
        action="append",
        dest="platforms",
        help="Platform to include; repeat for several (default: SCHEDULER_PLATFORMS or all).",
    )
    return parser.parse_args()


async def main() -> None:
    args = parse_args()
    manager = FetcherManager(ParquetMarketStore(settings.data_dir))
    scheduler = FetchScheduler(manager, platforms=args.platforms, interval_seconds=args.interval)
    logger.info("Starting fetch loop for %s", ", ".join(scheduler.platforms))

    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()
        await manager.aclose()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Fetch loop interrupted")
