from __future__ import annotations

import asyncio
import functools
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, TypeVar

import pandas as pd
from pydantic import BaseModel

from marketsync.models import (
    Asset,
    AssetFundingStats,
    AssetMapping,
    DataType,
    FetchLog,
    FetchResult,
    FundingRateRow,
    LiquidationRow,
    LongShortRatioRow,
    OHLCVRow,
    OpenInterestRow,
    PlatformAsset,
    ResampleResult,
    UnifiedAsset,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")

DATA_TYPE_TABLES: Dict[DataType, str] = {
    DataType.FUNDING: "funding_rates",
    DataType.OHLCV: "ohlcv",
    DataType.OPEN_INTEREST: "open_interest",
    DataType.LONG_SHORT_RATIO: "long_short_ratios",
    DataType.LIQUIDATION: "liquidations",
}

# Upsert identity per time-series table
TABLE_KEYS: Dict[str, List[str]] = {
    "funding_rates": ["asset_id", "platform", "timestamp", "sampling_interval"],
    "ohlcv": ["asset_id", "platform", "timestamp", "timeframe"],
    "open_interest": ["asset_id", "platform", "timestamp", "timeframe"],
    "long_short_ratios": ["asset_id", "platform", "timestamp", "type", "period"],
    "liquidations": ["asset_id", "platform", "timestamp", "side", "price", "quantity"],
}


class MarketDataStore(Protocol):
    """Storage contract used by the fetch pipelines and strategies."""

    async def find_by_symbol(self, symbol: str, platform: str) -> Optional[Asset]: ...

    async def find_asset(self, asset_id: int) -> Optional[Asset]: ...

    async def find_by_platform(self, platform: str) -> List[Asset]: ...

    async def find_all_active(self) -> List[Asset]: ...

    async def bulk_upsert_assets(self, assets: Sequence[PlatformAsset]) -> int: ...

    async def bulk_upsert_funding_rates(self, rows: Sequence[FundingRateRow]) -> int: ...

    async def bulk_upsert_ohlcv(self, rows: Sequence[OHLCVRow]) -> int: ...

    async def bulk_upsert_open_interest(self, rows: Sequence[OpenInterestRow]) -> int: ...

    async def bulk_upsert_long_short_ratios(self, rows: Sequence[LongShortRatioRow]) -> int: ...

    async def bulk_upsert_liquidations(self, rows: Sequence[LiquidationRow]) -> int: ...

    async def find_latest_timestamp(
        self,
        asset_id: int,
        platform: str,
        data_type: DataType,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> Optional[datetime]: ...

    async def resample_funding_to_8h(self, platform: str) -> ResampleResult: ...

    async def create_fetch_log(self, platform: str, fetch_type: str) -> FetchLog: ...

    async def complete_fetch_log(self, log_id: int, result: FetchResult) -> Optional[FetchLog]: ...


class AssetMappingStore(Protocol):
    """Storage contract for unified assets and their per-platform mappings."""

    async def find_all_active(self) -> List[Asset]: ...

    async def find_asset(self, asset_id: int) -> Optional[Asset]: ...

    async def find_unified_by_symbol(self, normalized_symbol: str) -> Optional[UnifiedAsset]: ...

    async def create_unified_asset(
        self,
        normalized_symbol: str,
        display_name: str,
        description: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> UnifiedAsset: ...

    async def find_mapping(self, unified_asset_id: int, asset_id: int) -> Optional[AssetMapping]: ...

    async def find_mappings_by_asset(self, asset_id: int) -> List[AssetMapping]: ...

    async def upsert_mapping(self, mapping: AssetMapping) -> AssetMapping: ...

    async def delete_mapping(self, mapping_id: int) -> bool: ...


def _blocking(fn: Callable[..., R]) -> Callable[..., Awaitable[R]]:
    """Expose a blocking store method as a coroutine run in a worker thread."""

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> R:
        return await asyncio.to_thread(fn, *args, **kwargs)

    return wrapper


def _utc(value: datetime) -> pd.Timestamp:
    ts = pd.Timestamp(value)
    return ts.tz_localize("UTC") if ts.tzinfo is None else ts.tz_convert("UTC")

class ParquetMarketStore:
    """Parquet-backed store, one file per table.

    File I/O runs in worker threads so the event loop keeps serving requests.
    Each table has its own lock, held across every read-modify-write.
    """

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = data_dir
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[str, threading.RLock] = {}

    # --- file helpers ---

    def _lock(self, table: str) -> threading.RLock:
        return self._locks.setdefault(table, threading.RLock())

    def _path(self, table: str) -> Path:
        return self.data_dir / f"{table}.parquet"

    def _safe_read(self, table: str) -> pd.DataFrame:
        """Read parquet defensively; if corrupted/unreadable, return empty df and log."""
        path = self._path(table)
        with self._lock(table):
            if not path.exists():
                return pd.DataFrame()
            try:
                df = pd.read_parquet(path)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Parquet file unreadable at %s, resetting: %s", path, exc)
                return pd.DataFrame()
        if "timestamp" in df.columns:
            df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
        return df

    def _write(self, table: str, df: pd.DataFrame) -> None:
        with self._lock(table):
            df.to_parquet(self._path(table), index=False)

    def _records(self, table: str) -> List[Dict[str, Any]]:
        df = self._safe_read(table)
        if df.empty:
            return []
        df = df.astype(object).where(pd.notna(df), None)
        return df.to_dict(orient="records")

    def _write_records(self, table: str, records: Iterable[Dict[str, Any]]) -> None:
        records = list(records)
        if not records:
            with self._lock(table):
                self._path(table).unlink(missing_ok=True)
            return
        self._write(table, pd.DataFrame(records))

    def _upsert_rows(self, table: str, rows: Sequence[BaseModel]) -> int:
        if not rows:
            return 0

        keys = TABLE_KEYS[table]
        df_new = pd.DataFrame([r.model_dump() for r in rows])
        df_new["timestamp"] = pd.to_datetime(df_new["timestamp"], utc=True)
        df_new.drop_duplicates(subset=keys, keep="last", inplace=True)

        with self._lock(table):
            df_existing = self._safe_read(table)
            if df_existing.empty:
                df = df_new
                inserted = len(df_new)
            else:
                existing_keys = set(df_existing[keys].itertuples(index=False, name=None))
                inserted = sum(1 for key in df_new[keys].itertuples(index=False, name=None) if key not in existing_keys)
                df = pd.concat([df_existing, df_new], ignore_index=True)
                df.drop_duplicates(subset=keys, keep="last", inplace=True)

            df.sort_values(by=["asset_id", "timestamp"], inplace=True)
            self._write(table, df)
        logger.debug("Upserted %s rows into %s (%s new)", len(df_new), table, inserted)
        return inserted

    # --- assets ---

    @staticmethod
    def _to_asset(row: Mapping[str, Any]) -> Asset:
        return Asset(
            id=int(row["id"]),
            symbol=row["symbol"],
            platform=row["platform"],
            name=row.get("name"),
            is_active=bool(row.get("is_active", True)),
        )

    @_blocking
    def find_by_symbol(self, symbol: str, platform: str) -> Optional[Asset]:
        for row in self._records("assets"):
            if row["symbol"] == symbol and row["platform"] == platform:
                return self._to_asset(row)
        return None

    @_blocking
    def find_asset(self, asset_id: int) -> Optional[Asset]:
        for row in self._records("assets"):
            if int(row["id"]) == asset_id:
                return self._to_asset(row)
        return None

    @_blocking
    def find_by_platform(self, platform: str) -> List[Asset]:
        assets = [self._to_asset(row) for row in self._records("assets") if row["platform"] == platform]
        return sorted((a for a in assets if a.is_active), key=lambda a: a.symbol)

    @_blocking
    def find_all_active(self) -> List[Asset]:
        assets = [self._to_asset(row) for row in self._records("assets")]
        return [a for a in assets if a.is_active]

    @_blocking
    def bulk_upsert_assets(self, assets: Sequence[PlatformAsset]) -> int:
        if not assets:
            return 0

        touched = set()
        with self._lock("assets"):
            index = {(row["platform"], row["symbol"]): row for row in self._records("assets")}
            next_id = max((int(row["id"]) for row in index.values()), default=0) + 1
            for asset in assets:
                key = (asset.platform, asset.symbol)
                touched.add(key)
                existing = index.get(key)
                if existing is not None:
                    existing["name"] = asset.name or existing.get("name")
                    existing["is_active"] = True
                    continue
                index[key] = {
                    "id": next_id,
                    "symbol": asset.symbol,
                    "platform": asset.platform,
                    "name": asset.name or asset.symbol,
                    "is_active": True,
                }
                next_id += 1

            self._write_records("assets", index.values())
        logger.info("Upserted %s assets", len(touched))
        return len(touched)

    # --- time series ---

    @_blocking
    def bulk_upsert_funding_rates(self, rows: Sequence[FundingRateRow]) -> int:
        return self._upsert_rows("funding_rates", rows)

    @_blocking
    def bulk_upsert_ohlcv(self, rows: Sequence[OHLCVRow]) -> int:
        return self._upsert_rows("ohlcv", rows)

    @_blocking
    def bulk_upsert_open_interest(self, rows: Sequence[OpenInterestRow]) -> int:
        return self._upsert_rows("open_interest", rows)

    @_blocking
    def bulk_upsert_long_short_ratios(self, rows: Sequence[LongShortRatioRow]) -> int:
        return self._upsert_rows("long_short_ratios", rows)

    @_blocking
    def bulk_upsert_liquidations(self, rows: Sequence[LiquidationRow]) -> int:
        return self._upsert_rows("liquidations", rows)

    @_blocking
    def find_latest_timestamp(
        self,
        asset_id: int,
        platform: str,
        data_type: DataType,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> Optional[datetime]:
        df = self._safe_read(DATA_TYPE_TABLES[data_type])
        if df.empty:
            return None

        mask = (df["asset_id"] == asset_id) & (df["platform"] == platform)
        for column, value in (filters or {}).items():
            mask &= df[column] == value
        matched = df.loc[mask, "timestamp"]
        if matched.empty:
            return None
        return matched.max().to_pydatetime()

    @_blocking
    def resample_funding_to_8h(self, platform: str) -> ResampleResult:
        """Aggregate complete 8h windows (00/08/16 UTC) of hourly funding into 8h rows."""
        df = self._safe_read("funding_rates")
        if df.empty:
            return ResampleResult()

        hourly = df[(df["platform"] == platform) & (df["sampling_interval"] == "1h")].copy()
        if hourly.empty:
            return ResampleResult()

        hourly["hour_ts"] = hourly["timestamp"].dt.floor("h")
        hourly["bucket_start"] = hourly["hour_ts"].dt.floor("8h")
        hourly["premium"] = pd.to_numeric(hourly["premium"], errors="coerce").fillna(0.0)

        buckets = (
            hourly.groupby(["asset_id", "bucket_start"])
            .agg(
                bucket_count=("hour_ts", "nunique"),
                funding_sum=("funding_rate", "sum"),
                premium_avg=("premium", "mean"),
            )
            .reset_index()
        )
        complete = buckets[buckets["bucket_count"] == 8]
        if complete.empty:
            return ResampleResult()

        rows = [
            FundingRateRow(
                asset_id=int(row.asset_id),
                platform=platform,
                timestamp=row.bucket_start.to_pydatetime(),
                funding_rate=float(row.funding_sum),
                premium=float(row.premium_avg),
                sampling_interval="8h",
            )
            for row in complete.itertuples(index=False)
        ]
        created = self._upsert_rows("funding_rates", rows)
        logger.info("Resampled %s funding buckets for %s (%s new)", len(rows), platform, created)
        return ResampleResult(records_created=created, assets_processed=int(complete["asset_id"].nunique()))

    # --- unified assets and mappings ---

    @staticmethod
    def _to_unified(row: Mapping[str, Any]) -> UnifiedAsset:
        return UnifiedAsset(
            id=int(row["id"]),
            normalized_symbol=row["normalized_symbol"],
            display_name=row["display_name"],
            description=row.get("description"),
            external_id=row.get("external_id"),
        )

    @staticmethod
    def _to_mapping(row: Mapping[str, Any]) -> AssetMapping:
        return AssetMapping(
            id=int(row["id"]),
            unified_asset_id=int(row["unified_asset_id"]),
            asset_id=int(row["asset_id"]),
            confidence_score=int(row["confidence_score"]),
            mapping_method=row["mapping_method"],
            price_used=row.get("price_used"),
        )

    @_blocking
    def list_unified_assets(self) -> List[UnifiedAsset]:
        return [self._to_unified(row) for row in self._records("unified_assets")]

    @_blocking
    def find_unified_by_symbol(self, normalized_symbol: str) -> Optional[UnifiedAsset]:
        for row in self._records("unified_assets"):
            if row["normalized_symbol"] == normalized_symbol:
                return self._to_unified(row)
        return None

    @_blocking
    def create_unified_asset(
        self,
        normalized_symbol: str,
        display_name: str,
        description: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> UnifiedAsset:
        with self._lock("unified_assets"):
            records = self._records("unified_assets")
            for row in records:
                if row["normalized_symbol"] == normalized_symbol:
                    return self._to_unified(row)

            row = {
                "id": max((int(r["id"]) for r in records), default=0) + 1,
                "normalized_symbol": normalized_symbol,
                "display_name": display_name,
                "description": description,
                "external_id": external_id,
            }
            records.append(row)
            self._write_records("unified_assets", records)
        return self._to_unified(row)

    @_blocking
    def list_mappings(self) -> List[AssetMapping]:
        return [self._to_mapping(row) for row in self._records("asset_mappings")]

    @_blocking
    def find_mapping(self, unified_asset_id: int, asset_id: int) -> Optional[AssetMapping]:
        for row in self._records("asset_mappings"):
            if int(row["unified_asset_id"]) == unified_asset_id and int(row["asset_id"]) == asset_id:
                return self._to_mapping(row)
        return None

    @_blocking
    def find_mappings_by_asset(self, asset_id: int) -> List[AssetMapping]:
        return [self._to_mapping(row) for row in self._records("asset_mappings") if int(row["asset_id"]) == asset_id]

    @_blocking
    def upsert_mapping(self, mapping: AssetMapping) -> AssetMapping:
        values = mapping.model_dump(exclude={"id"})
        with self._lock("asset_mappings"):
            records = self._records("asset_mappings")
            for row in records:
                if int(row["unified_asset_id"]) == mapping.unified_asset_id and int(row["asset_id"]) == mapping.asset_id:
                    row.update(values)
                    break
            else:
                row = {"id": max((int(r["id"]) for r in records), default=0) + 1, **values}
                records.append(row)

            self._write_records("asset_mappings", records)
        return self._to_mapping(row)

    @_blocking
    def delete_mapping(self, mapping_id: int) -> bool:
        with self._lock("asset_mappings"):
            records = self._records("asset_mappings")
            remaining = [row for row in records if int(row["id"]) != mapping_id]
            if len(remaining) == len(records):
                return False
            self._write_records("asset_mappings", remaining)
        return True

    # --- fetch logs ---

    @staticmethod
    def _to_fetch_log(row: Mapping[str, Any]) -> FetchLog:
        return FetchLog(
            id=int(row["id"]),
            platform=row["platform"],
            fetch_type=row["fetch_type"],
            status=row["status"],
            started_at=row["started_at"],
            completed_at=row.get("completed_at"),
            assets_processed=int(row.get("assets_processed") or 0),
            records_fetched=int(row.get("records_fetched") or 0),
            error_message=row.get("error_message"),
        )

    @_blocking
    def create_fetch_log(self, platform: str, fetch_type: str) -> FetchLog:
        with self._lock("fetch_logs"):
            records = self._records("fetch_logs")
            row = {
                "id": max((int(r["id"]) for r in records), default=0) + 1,
                "platform": platform,
                "fetch_type": fetch_type,
                "status": "running",
                "started_at": datetime.now(timezone.utc),
                "completed_at": None,
                "assets_processed": 0,
                "records_fetched": 0,
                "error_message": None,
            }
            records.append(row)
            self._write_records("fetch_logs", records)
        return self._to_fetch_log(row)

    @_blocking
    def complete_fetch_log(self, log_id: int, result: FetchResult) -> Optional[FetchLog]:
        with self._lock("fetch_logs"):
            records = self._records("fetch_logs")
            for row in records:
                if int(row["id"]) == log_id:
                    break
            else:
                logger.warning("Fetch log %s not found, cannot complete it", log_id)
                return None

            row.update(
                status=result.run_status,
                completed_at=datetime.now(timezone.utc),
                assets_processed=result.assets_processed,
                records_fetched=result.total_records,
                error_message="; ".join(result.errors) if result.errors else None,
            )
            self._write_records("fetch_logs", records)
        logger.info("Fetch log %s completed with status: %s", log_id, row["status"])
        return self._to_fetch_log(row)

    @_blocking
    def list_fetch_logs(
        self, platform: Optional[str] = None, limit: int = 10, errors_only: bool = False
    ) -> List[FetchLog]:
        """Most recent runs first."""
        logs = [self._to_fetch_log(row) for row in self._records("fetch_logs")]
        if platform:
            logs = [log for log in logs if log.platform == platform]
        if errors_only:
            logs = [log for log in logs if log.status in ("failed", "partial") or log.error_message]
        logs.sort(key=lambda log: log.id, reverse=True)
        return logs[:limit]

    @_blocking
    def last_successful_fetch(self, platform: str) -> Optional[FetchLog]:
        successful = [
            self._to_fetch_log(row)
            for row in self._records("fetch_logs")
            if row["platform"] == platform and row["status"] == "success"
        ]
        return max(successful, key=lambda log: log.completed_at, default=None)

    # --- stored data queries ---

    def _with_symbols(self, df: pd.DataFrame) -> pd.DataFrame:
        assets = self._safe_read("assets")
        if assets.empty:
            return df.assign(symbol=None)
        names = assets[["id", "symbol"]].rename(columns={"id": "asset_id"})
        return df.merge(names, on="asset_id", how="left")

    @_blocking
    def load_time_series(
        self,
        data_type: DataType,
        platform: Optional[str] = None,
        symbol: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        filters: Optional[Mapping[str, Any]] = None,
        limit: int = 1000,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Stored rows of one data type joined with their asset symbol, newest first."""
        df = self._safe_read(DATA_TYPE_TABLES[data_type])
        if df.empty:
            return []

        df = self._with_symbols(df)
        mask = pd.Series(True, index=df.index)
        if platform:
            mask &= df["platform"] == platform
        if symbol:
            mask &= df["symbol"] == symbol
        if start is not None:
            mask &= df["timestamp"] >= _utc(start)
        if end is not None:
            mask &= df["timestamp"] <= _utc(end)
        for column, value in (filters or {}).items():
            mask &= df[column] == value

        page = df.loc[mask].sort_values("timestamp", ascending=False).iloc[offset : offset + limit]
        page = page.astype(object).where(pd.notna(page), None)
        return page.to_dict(orient="records")

    @_blocking
    def funding_stats(self, symbol: str, platform: str) -> Optional[AssetFundingStats]:
        asset = next(
            (row for row in self._records("assets") if row["symbol"] == symbol and row["platform"] == platform),
            None,
        )
        if asset is None:
            return None

        stats = AssetFundingStats(symbol=symbol, platform=platform)
        df = self._safe_read("funding_rates")
        if df.empty:
            return stats
        rates = df.loc[(df["asset_id"] == int(asset["id"])) & (df["platform"] == platform)]
        if rates.empty:
            return stats

        funding = rates["funding_rate"]
        std_dev = funding.std()
        return stats.model_copy(
            update={
                "total_records": len(rates),
                "avg_funding_rate": float(funding.mean()),
                "min_funding_rate": float(funding.min()),
                "max_funding_rate": float(funding.max()),
                "std_dev": None if pd.isna(std_dev) else float(std_dev),
                "first_timestamp": rates["timestamp"].min().to_pydatetime(),
                "last_timestamp": rates["timestamp"].max().to_pydatetime(),
                "positive_count": int((funding > 0).sum()),
                "negative_count": int((funding < 0).sum()),
            }
        )

    # --- export ---

    def export_csv(self, table: str, destination: Path) -> int:
        destination.parent.mkdir(parents=True, exist_ok=True)
        df = self._safe_read(table)
        if df.empty:
            logger.warning("Table %s is empty or missing. Nothing to export.", table)
            return 0

        df.to_csv(destination, index=False)
        logger.info("Exported %s rows to %s", len(df), destination)
        return len(df)
