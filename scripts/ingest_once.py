from __future__ import annotations

import argparse
import asyncio
import json
import logging

from marketsync.config import settings
from marketsync.ingestion.fetcher import FetcherManager
from marketsync.storage import ParquetMarketStore

logging.basicConfig(level=settings.log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a single fetch for one platform.")
    parser.add_argument("--platform", required=True, help="Platform id, e.g. hyperliquid or binance.")
    parser.add_argument(
        "--mode",
        choices=("initial", "incremental"),
        default="incremental",
        help="initial discovers assets and pulls full history; incremental refreshes stored assets.",
    )
    return parser.parse_args()


async def main() -> None:
    args = parse_args()
    manager = FetcherManager(ParquetMarketStore(settings.data_dir))
    try:
        if args.mode == "initial":
            result = await manager.run_initial(args.platform)
        else:
            result = await manager.run_incremental(args.platform)
    finally:
        await manager.aclose()

    logger.info("Fetch summary: %s", result.model_dump())
    print(json.dumps(result.model_dump(by_alias=True), indent=2, default=str))


if __name__ == "__main__":
    asyncio.run(main())
