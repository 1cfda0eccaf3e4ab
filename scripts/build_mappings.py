from __future__ import annotations

import asyncio
import json
import logging

from marketsync.assets.reconciliation import AssetMappingService
from marketsync.config import settings
from marketsync.storage import ParquetMarketStore

logging.basicConfig(level=settings.log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)


async def main() -> None:
    service = AssetMappingService(ParquetMarketStore(settings.data_dir))
    summary = await service.generate_mappings()
    print(json.dumps(summary.model_dump(by_alias=True), indent=2))


if __name__ == "__main__":
    asyncio.run(main())
