from __future__ import annotations

import argparse
import logging
from pathlib import Path

from marketsync.config import settings
from marketsync.storage import DATA_TYPE_TABLES, ParquetMarketStore

logging.basicConfig(level=settings.log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)

TABLES = [*DATA_TYPE_TABLES.values(), "assets", "unified_assets", "asset_mappings", "fetch_logs"]


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Export one stored table to CSV.")
    parser.add_argument("--table", choices=TABLES, default="funding_rates", help="Table to export.")
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Destination CSV path (default: DATA_DIR/export/<table>.csv; directories will be created).",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    output = args.output or settings.data_dir / "export" / f"{args.table}.csv"
    store = ParquetMarketStore(settings.data_dir)
    rows = store.export_csv(args.table, output)
    logger.info("Export complete: %s rows -> %s", rows, output)


if __name__ == "__main__":
    main()
