from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel

from marketsync.ingestion.clients import BatchOptions, PlatformClient
from marketsync.ingestion.platform_config import PlatformConfig
from marketsync.ingestion.progress import ProgressTracker
from marketsync.models import (
    DataType,
    FetchStage,
    FundingRateRow,
    LiquidationRow,
    LongShortRatioRow,
    OHLCVRow,
    OpenInterestRow,
    StageStatus,
)
from marketsync.storage import MarketDataStore
from marketsync.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

SKIPPED_NOT_SUPPORTED = "Skipped (not supported)"
SKIPPED_SNAPSHOT_ONLY = "Skipped (snapshot-only platform)"


@dataclass
class PipelineContext:
    """Collaborators shared by every pipeline of one run."""

    platform: str
    config: PlatformConfig
    client: PlatformClient
    store: MarketDataStore
    tracker: ProgressTracker
    rate_limiter: RateLimiter
    incremental: bool = False


class BasePipeline(ABC):
    """Fetch and persist one data type for a list of symbols.

    Reports two stages (fetch, store). A failure for one symbol is recorded
    on the tracker and counted as processed; it never aborts the batch.
    """

    data_type: ClassVar[DataType]
    fetch_stage: ClassVar[FetchStage]
    store_stage: ClassVar[FetchStage]
    label: ClassVar[str]

    def __init__(self, context: PipelineContext) -> None:
        self.ctx = context

    @property
    def stages(self) -> List[FetchStage]:
        return [self.fetch_stage, self.store_stage]

    def skip_reason(self) -> Optional[str]:
        if not self.ctx.client.capabilities.supports(self.data_type):
            return SKIPPED_NOT_SUPPORTED
        return None

    def batch_options(self) -> BatchOptions:
        return BatchOptions(concurrency=self.ctx.config.concurrency, rate_limiter=self.ctx.rate_limiter)

    def latest_filters(self) -> Optional[Mapping[str, Any]]:
        """Discriminator columns narrowing the incremental lookup."""
        return None

    @abstractmethod
    async def fetch_batch(self, symbols: Sequence[str], options: BatchOptions) -> Dict[str, List[Any]]:
        ...

    @abstractmethod
    def to_rows(self, asset_id: int, records: Sequence[Any]) -> List[BaseModel]:
        ...

    @abstractmethod
    async def store_rows(self, rows: Sequence[BaseModel]) -> int:
        ...

    async def asset_ids(self) -> Dict[str, int]:
        """Symbol to asset id for the platform, read once per run."""
        return {asset.symbol: asset.id for asset in await self.ctx.store.find_by_platform(self.ctx.platform)}

    async def start_times(self, symbols: Sequence[str], asset_ids: Mapping[str, int]) -> Dict[str, datetime]:
        """Latest stored timestamp per symbol; empty outside incremental runs."""
        if not self.ctx.incremental:
            return {}
        starts: Dict[str, datetime] = {}
        for symbol in symbols:
            asset_id = asset_ids.get(symbol)
            if asset_id is None:
                continue
            latest = await self.ctx.store.find_latest_timestamp(
                asset_id, self.ctx.platform, self.data_type, self.latest_filters()
            )
            if latest is not None:
                starts[symbol] = latest
        return starts

    def _skip(self, reason: str) -> int:
        tracker = self.ctx.tracker
        for stage in self.stages:
            tracker.complete_stage(stage, message=reason)
        tracker.emit_progress("progress", self.store_stage, f"{self.label}: {reason}")
        logger.info("%s %s pipeline skipped: %s", self.ctx.platform, self.data_type.value, reason)
        return 0

    async def execute(self, symbols: Sequence[str]) -> int:
        reason = self.skip_reason()
        if reason:
            return self._skip(reason)

        tracker = self.ctx.tracker
        total = len(symbols)
        tracker.update_stage(self.fetch_stage, total=total, status=StageStatus.ACTIVE, message=f"Fetching {self.label}...")
        tracker.update_stage(self.store_stage, total=total, status=StageStatus.ACTIVE, message=f"Storing {self.label}...")
        tracker.emit_progress("progress", self.fetch_stage)

        asset_ids = await self.asset_ids()
        stored_records = 0
        stored_symbols = 0

        def mark_stored(symbol: str) -> None:
            nonlocal stored_symbols
            stored_symbols += 1
            tracker.update_stage(self.store_stage, completed=stored_symbols, current_item=symbol)
            tracker.emit_progress("progress", self.store_stage)

        def on_progress(symbol: str, processed: int) -> None:
            tracker.update_stage(self.fetch_stage, completed=processed, current_item=symbol)
            tracker.emit_progress("progress", self.fetch_stage)

        async def on_item_fetched(symbol: str, records: List[Any]) -> None:
            nonlocal stored_records
            try:
                if records:
                    asset_id = asset_ids.get(symbol)
                    if asset_id is None:
                        raise LookupError(f"Asset not found: {symbol}")
                    stored_records += await self.store_rows(self.to_rows(asset_id, records))
                    tracker.set_records(self.data_type, stored_records)
            except Exception as exc:  # noqa: BLE001
                logger.warning("%s store failed for %s: %s", self.label, symbol, exc)
                tracker.add_error(f"{self.label} store error for {symbol}: {exc}")
            mark_stored(symbol)

        async def on_item_failed(symbol: str, exc: Exception) -> None:
            tracker.add_error(f"{self.label} fetch error for {symbol}: {exc}")
            mark_stored(symbol)

        options = self.batch_options()
        options.on_progress = on_progress
        options.on_item_fetched = on_item_fetched
        options.on_item_failed = on_item_failed
        options.start_times = await self.start_times(symbols, asset_ids)

        await self.fetch_batch(symbols, options)

        tracker.complete_stage(self.fetch_stage)
        tracker.complete_stage(self.store_stage, message=f"Stored {stored_records} {self.label} records")
        tracker.emit_progress("progress", self.store_stage)
        logger.info("%s: stored %s %s records for %s symbols", self.ctx.platform, stored_records, self.label, total)
        return stored_records


class FundingPipeline(BasePipeline):
    data_type = DataType.FUNDING
    fetch_stage = FetchStage.FUNDING_FETCH
    store_stage = FetchStage.FUNDING_STORE
    label = "Funding"

    def latest_filters(self) -> Optional[Mapping[str, Any]]:
        return {"sampling_interval": self.ctx.config.sampling_interval}

    async def fetch_batch(self, symbols, options):
        return await self.ctx.client.get_funding_history_batch(symbols, options)

    def to_rows(self, asset_id, records):
        return [
            FundingRateRow(
                asset_id=asset_id,
                platform=self.ctx.platform,
                timestamp=record.timestamp,
                funding_rate=record.funding_rate,
                premium=record.premium,
                sampling_interval=self.ctx.config.sampling_interval,
            )
            for record in records
        ]

    async def store_rows(self, rows):
        return await self.ctx.store.bulk_upsert_funding_rates(rows)


class OHLCVPipeline(BasePipeline):
    data_type = DataType.OHLCV
    fetch_stage = FetchStage.OHLCV_FETCH
    store_stage = FetchStage.OHLCV_STORE
    label = "OHLCV"

    @property
    def timeframe(self) -> str:
        return str(self.ctx.config.ohlcv_interval)

    def latest_filters(self) -> Optional[Mapping[str, Any]]:
        return {"timeframe": self.timeframe}

    async def fetch_batch(self, symbols, options):
        return await self.ctx.client.get_ohlcv_batch(symbols, self.ctx.config.ohlcv_interval, options)

    def to_rows(self, asset_id, records):
        return [
            OHLCVRow(
                asset_id=asset_id,
                platform=self.ctx.platform,
                timestamp=record.timestamp,
                timeframe=self.timeframe,
                open=record.open,
                high=record.high,
                low=record.low,
                close=record.close,
                volume=record.volume,
                quote_volume=record.quote_volume,
                trades_count=record.trades_count,
            )
            for record in records
        ]

    async def store_rows(self, rows):
        return await self.ctx.store.bulk_upsert_ohlcv(rows)


class OpenInterestPipeline(BasePipeline):
    data_type = DataType.OPEN_INTEREST
    fetch_stage = FetchStage.OI_FETCH
    store_stage = FetchStage.OI_STORE
    label = "Open Interest"

    @property
    def timeframe(self) -> str:
        return str(self.ctx.config.oi_interval)

    def skip_reason(self) -> Optional[str]:
        if self.ctx.config.is_snapshot_only_open_interest():
            return SKIPPED_SNAPSHOT_ONLY
        return super().skip_reason()

    def latest_filters(self) -> Optional[Mapping[str, Any]]:
        return {"timeframe": self.timeframe}

    async def fetch_batch(self, symbols, options):
        return await self.ctx.client.get_open_interest_batch(symbols, self.ctx.config.oi_interval, options)

    def to_rows(self, asset_id, records):
        return [
            OpenInterestRow(
                asset_id=asset_id,
                platform=self.ctx.platform,
                timestamp=record.timestamp,
                timeframe=self.timeframe,
                open_interest=record.open_interest,
                open_interest_value=record.open_interest_value,
            )
            for record in records
        ]

    async def store_rows(self, rows):
        return await self.ctx.store.bulk_upsert_open_interest(rows)


class LongShortRatioPipeline(BasePipeline):
    data_type = DataType.LONG_SHORT_RATIO
    fetch_stage = FetchStage.LS_RATIO_FETCH
    store_stage = FetchStage.LS_RATIO_STORE
    label = "L/S Ratio"

    def batch_options(self) -> BatchOptions:
        # Some exchanges throttle this endpoint harder than the rest
        return BatchOptions(
            concurrency=self.ctx.config.effective_ls_ratio_concurrency,
            delay_ms=self.ctx.config.ls_ratio_delay_ms,
            rate_limiter=self.ctx.rate_limiter,
        )

    def latest_filters(self) -> Optional[Mapping[str, Any]]:
        return {"period": self.ctx.config.ls_ratio_interval}

    async def fetch_batch(self, symbols, options):
        return await self.ctx.client.get_long_short_ratio_batch(symbols, self.ctx.config.ls_ratio_interval, options)

    def to_rows(self, asset_id, records):
        return [
            LongShortRatioRow(
                asset_id=asset_id,
                platform=self.ctx.platform,
                timestamp=record.timestamp,
                type=record.type,
                period=record.period,
                long_ratio=record.long_ratio,
                short_ratio=record.short_ratio,
                long_account=record.long_account,
                short_account=record.short_account,
            )
            for record in records
        ]

    async def store_rows(self, rows):
        return await self.ctx.store.bulk_upsert_long_short_ratios(rows)


class LiquidationPipeline(BasePipeline):
    data_type = DataType.LIQUIDATION
    fetch_stage = FetchStage.LIQUIDATION_FETCH
    store_stage = FetchStage.LIQUIDATION_STORE
    label = "Liquidation"

    async def fetch_batch(self, symbols, options):
        return await self.ctx.client.get_liquidations_batch(symbols, options)

    def to_rows(self, asset_id, records):
        return [
            LiquidationRow(
                asset_id=asset_id,
                platform=self.ctx.platform,
                timestamp=record.timestamp,
                side=record.side,
                price=record.price,
                quantity=record.quantity,
                volume_usd=record.volume_usd,
            )
            for record in records
        ]

    async def store_rows(self, rows):
        return await self.ctx.store.bulk_upsert_liquidations(rows)
