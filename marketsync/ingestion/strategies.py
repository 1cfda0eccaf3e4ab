from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import ClassVar, Dict, List, Tuple, Type

from marketsync.errors import MarketSyncError
from marketsync.ingestion.clients import PlatformClient
from marketsync.ingestion.pipelines import (
    BasePipeline,
    FundingPipeline,
    LiquidationPipeline,
    LongShortRatioPipeline,
    OHLCVPipeline,
    OpenInterestPipeline,
    PipelineContext,
)
from marketsync.ingestion.platform_config import PlatformConfig
from marketsync.ingestion.progress import ProgressTracker
from marketsync.models import DataType, FetchResult, FetchStage, StageStatus
from marketsync.storage import MarketDataStore
from marketsync.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# Funding and OHLCV stages always appear; the rest only where the client supports them.
_CORE_DATA_TYPES = (DataType.FUNDING, DataType.OHLCV)


class FetchStrategy(ABC):
    """Template for one fetch run: resolve symbols, then run pipelines one after another."""

    mode: ClassVar[str]
    incremental: ClassVar[bool] = False
    # Pipelines run strictly in this order, never concurrently with each other
    PIPELINES: ClassVar[Tuple[Type[BasePipeline], ...]] = (
        FundingPipeline,
        OHLCVPipeline,
        OpenInterestPipeline,
        LongShortRatioPipeline,
        LiquidationPipeline,
    )

    def __init__(
        self,
        platform: str,
        config: PlatformConfig,
        client: PlatformClient,
        store: MarketDataStore,
        tracker: ProgressTracker,
        rate_limiter: RateLimiter,
    ) -> None:
        self.platform = platform
        self.config = config
        self.client = client
        self.store = store
        self.tracker = tracker
        self.rate_limiter = rate_limiter

    def build_pipelines(self) -> List[BasePipeline]:
        context = PipelineContext(
            platform=self.platform,
            config=self.config,
            client=self.client,
            store=self.store,
            tracker=self.tracker,
            rate_limiter=self.rate_limiter,
            incremental=self.incremental,
        )
        return [
            pipeline_cls(context)
            for pipeline_cls in self.PIPELINES
            if pipeline_cls.data_type in _CORE_DATA_TYPES or self.client.capabilities.supports(pipeline_cls.data_type)
        ]

    def stage_order(self, pipelines: List[BasePipeline]) -> List[FetchStage]:
        return [stage for pipeline in pipelines for stage in pipeline.stages]

    @abstractmethod
    async def resolve_symbols(self) -> List[str]:
        """Symbol universe for this run."""

    async def after_pipelines(self) -> int:
        """Post-processing hook; returns the number of records it created."""
        return 0

    async def execute(self) -> FetchResult:
        try:
            return await self._run()
        except Exception as exc:  # noqa: BLE001
            logger.exception("%s fetch failed for %s", self.mode, self.platform)
            message = str(exc)
            order = self.tracker.stage_order
            self.tracker.add_error(message)
            self.tracker.emit_progress("error", order[0] if order else FetchStage.ASSET_DISCOVERY, message)
            return FetchResult.failed(message)

    async def _run(self) -> FetchResult:
        tracker = self.tracker
        pipelines = self.build_pipelines()
        order = self.stage_order(pipelines)
        tracker.initialize(order, {FetchStage.ASSET_DISCOVERY: 1, FetchStage.RESAMPLE: 1}, 0)
        tracker.emit_progress("start", order[0], f"Starting {self.mode} fetch for {self.platform}")
        logger.info("Starting %s fetch for %s", self.mode, self.platform)

        symbols = await self.resolve_symbols()
        tracker.set_total_assets(len(symbols))
        for pipeline in pipelines:
            for stage in pipeline.stages:
                tracker.update_stage(stage, total=len(symbols))

        counts: Dict[DataType, int] = {}
        for pipeline in pipelines:
            try:
                counts[pipeline.data_type] = await pipeline.execute(symbols)
            except Exception as exc:  # noqa: BLE001
                logger.exception("%s pipeline failed for %s", pipeline.label, self.platform)
                tracker.add_error(f"{pipeline.label} pipeline error: {exc}")
                for stage in pipeline.stages:
                    tracker.complete_stage(stage, message="Failed")
                tracker.emit_progress("progress", pipeline.store_stage)
            tracker.set_processed_assets(len(symbols))

        resampled = await self.after_pipelines()

        result = FetchResult(
            assets_processed=len(symbols),
            records_fetched=counts.get(DataType.FUNDING, 0),
            ohlcv_records_fetched=counts.get(DataType.OHLCV, 0),
            oi_records_fetched=counts.get(DataType.OPEN_INTEREST, 0),
            ls_ratio_records_fetched=counts.get(DataType.LONG_SHORT_RATIO, 0),
            liquidation_records_fetched=counts.get(DataType.LIQUIDATION, 0),
            resample_records_created=resampled,
            errors=tracker.errors,
        )
        tracker.emit_progress(
            "complete",
            order[-1],
            f"{self.mode.capitalize()} fetch complete: {len(symbols)} assets, {result.total_records} records",
        )
        logger.info(
            "%s fetch for %s complete: %s assets, %s records, %s errors",
            self.mode,
            self.platform,
            result.assets_processed,
            result.total_records,
            len(result.errors),
        )
        return result


class InitialFetchStrategy(FetchStrategy):
    """Discover the platform's assets and pull their full lookback history."""

    mode = "initial"

    def stage_order(self, pipelines: List[BasePipeline]) -> List[FetchStage]:
        order = [FetchStage.ASSET_DISCOVERY, *super().stage_order(pipelines)]
        if self.config.resample_funding:
            order.append(FetchStage.RESAMPLE)
        return order

    async def resolve_symbols(self) -> List[str]:
        tracker = self.tracker
        tracker.update_stage(FetchStage.ASSET_DISCOVERY, status=StageStatus.ACTIVE, message="Discovering assets...")
        tracker.emit_progress("progress", FetchStage.ASSET_DISCOVERY)

        assets = await self.client.get_assets()
        await self.store.bulk_upsert_assets(assets)
        symbols = list(dict.fromkeys(asset.symbol for asset in assets))

        tracker.update_stage(
            FetchStage.ASSET_DISCOVERY,
            completed=1,
            status=StageStatus.COMPLETE,
            message=f"Found {len(symbols)} assets",
        )
        tracker.emit_progress("progress", FetchStage.ASSET_DISCOVERY)
        return symbols

    async def after_pipelines(self) -> int:
        if not self.config.resample_funding:
            return 0

        tracker = self.tracker
        tracker.set_phase("resample")
        tracker.update_stage(FetchStage.RESAMPLE, status=StageStatus.ACTIVE, message="Generating 8h aggregates...")
        tracker.emit_progress("progress", FetchStage.RESAMPLE)
        try:
            result = await self.store.resample_funding_to_8h(self.platform)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Resampling failed for %s", self.platform)
            tracker.add_error(f"Resample error: {exc}")
            tracker.complete_stage(FetchStage.RESAMPLE, message="Resampling failed")
            tracker.emit_progress("progress", FetchStage.RESAMPLE)
            return 0

        tracker.set_resample_stats(result.records_created, result.assets_processed)
        tracker.update_stage(
            FetchStage.RESAMPLE,
            completed=1,
            status=StageStatus.COMPLETE,
            message=f"Created {result.records_created} 8h records for {result.assets_processed} assets",
        )
        tracker.emit_progress("progress", FetchStage.RESAMPLE)
        return result.records_created


class IncrementalFetchStrategy(FetchStrategy):
    """Refresh recent data for assets already stored for the platform."""

    mode = "incremental"
    incremental = True

    async def resolve_symbols(self) -> List[str]:
        assets = await self.store.find_by_platform(self.platform)
        if not assets:
            raise MarketSyncError(f"No assets found for {self.platform}. Run initial fetch first.")
        return [asset.symbol for asset in assets]
