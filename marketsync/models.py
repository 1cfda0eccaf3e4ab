from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class DataType(str, Enum):
    FUNDING = "funding"
    OHLCV = "ohlcv"
    OPEN_INTEREST = "open_interest"
    LONG_SHORT_RATIO = "long_short_ratio"
    LIQUIDATION = "liquidation"


class FetchStage(str, Enum):
    ASSET_DISCOVERY = "assetDiscovery"
    FUNDING_FETCH = "fundingFetch"
    FUNDING_STORE = "fundingStore"
    OHLCV_FETCH = "ohlcvFetch"
    OHLCV_STORE = "ohlcvStore"
    OI_FETCH = "oiFetch"
    OI_STORE = "oiStore"
    LS_RATIO_FETCH = "lsRatioFetch"
    LS_RATIO_STORE = "lsRatioStore"
    LIQUIDATION_FETCH = "liquidationFetch"
    LIQUIDATION_STORE = "liquidationStore"
    RESAMPLE = "resample"


class StageStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETE = "complete"


ProgressPhase = Literal["fetch", "resample"]
ProgressEventType = Literal["start", "progress", "complete", "error"]
MappingMethod = Literal["auto_symbol", "auto_price", "manual"]
RunStatus = Literal["success", "partial", "failed"]

STAGE_LABELS: Dict[FetchStage, str] = {
    FetchStage.ASSET_DISCOVERY: "Discover assets",
    FetchStage.FUNDING_FETCH: "Fetch funding rates",
    FetchStage.FUNDING_STORE: "Store funding rates",
    FetchStage.OHLCV_FETCH: "Fetch OHLCV data",
    FetchStage.OHLCV_STORE: "Store OHLCV data",
    FetchStage.OI_FETCH: "Fetch open interest",
    FetchStage.OI_STORE: "Store open interest",
    FetchStage.LS_RATIO_FETCH: "Fetch L/S Ratios",
    FetchStage.LS_RATIO_STORE: "Store L/S Ratios",
    FetchStage.LIQUIDATION_FETCH: "Fetch liquidations",
    FetchStage.LIQUIDATION_STORE: "Store liquidations",
    FetchStage.RESAMPLE: "Generate 8h aggregates",
}


class CamelModel(BaseModel):
    """Models serialized to the dashboard use camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Provider records (platform client output) ---


class FundingRecord(BaseModel):
    asset: str
    timestamp: datetime
    funding_rate: float
    premium: Optional[float] = None


class OHLCVRecord(BaseModel):
    asset: str
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    quote_volume: Optional[float] = None
    trades_count: Optional[int] = None


class OpenInterestRecord(BaseModel):
    asset: str
    timestamp: datetime
    open_interest: float
    open_interest_value: Optional[float] = None


class LongShortRatioRecord(BaseModel):
    asset: str
    timestamp: datetime
    long_ratio: float
    short_ratio: float
    long_account: Optional[float] = None
    short_account: Optional[float] = None
    type: str = "global_account"
    period: str


class LiquidationRecord(BaseModel):
    asset: str
    timestamp: datetime
    side: Literal["Long", "Short"]
    price: float
    quantity: float
    volume_usd: float


# --- Storage rows ---


class FundingRateRow(BaseModel):
    asset_id: int
    platform: str
    timestamp: datetime
    funding_rate: float
    premium: Optional[float] = None
    sampling_interval: str


class OHLCVRow(BaseModel):
    asset_id: int
    platform: str
    timestamp: datetime
    timeframe: str
    open: float
    high: float
    low: float
    close: float
    volume: float
    quote_volume: Optional[float] = None
    trades_count: Optional[int] = None


class OpenInterestRow(BaseModel):
    asset_id: int
    platform: str
    timestamp: datetime
    timeframe: str
    open_interest: float
    open_interest_value: Optional[float] = None


class LongShortRatioRow(BaseModel):
    asset_id: int
    platform: str
    timestamp: datetime
    type: str
    period: str
    long_ratio: float
    short_ratio: float
    long_account: Optional[float] = None
    short_account: Optional[float] = None


class LiquidationRow(BaseModel):
    asset_id: int
    platform: str
    timestamp: datetime
    side: Literal["Long", "Short"]
    price: float
    quantity: float
    volume_usd: float


# --- Assets and cross-platform identity ---


class PlatformAsset(BaseModel):
    """Asset descriptor as discovered on a platform, before it has an id."""

    symbol: str = Field(..., description="Platform-specific symbol, e.g. BTCUSDT.")
    platform: str
    name: Optional[str] = None


class Asset(BaseModel):
    id: int
    symbol: str
    platform: str
    name: Optional[str] = None
    is_active: bool = True


class UnifiedAsset(BaseModel):
    id: int
    normalized_symbol: str
    display_name: str
    description: Optional[str] = None
    external_id: Optional[str] = Field(None, description="External reference, e.g. a CoinGecko id.")


class AssetMapping(BaseModel):
    id: Optional[int] = None
    unified_asset_id: int
    asset_id: int
    confidence_score: int = Field(..., ge=0, le=100)
    mapping_method: MappingMethod
    price_used: Optional[float] = None


class MappingRunSummary(CamelModel):
    unified_assets_created: int = 0
    mappings_created: int = 0
    mappings_updated: int = 0


class ResampleResult(BaseModel):
    records_created: int = 0
    assets_processed: int = 0


# --- Progress reporting ---


class ProgressStageSnapshot(CamelModel):
    key: FetchStage
    label: str
    status: StageStatus = StageStatus.PENDING
    completed: int = 0
    total: int = 0
    percentage: int = 0
    current_item: Optional[str] = None
    message: Optional[str] = None


class ProgressEvent(CamelModel):
    type: ProgressEventType
    phase: ProgressPhase
    stage: FetchStage
    stages: List[ProgressStageSnapshot]
    total_assets: int
    processed_assets: int
    current_asset: Optional[str] = None
    records_fetched: int = 0
    ohlcv_records_fetched: int = 0
    oi_records_fetched: int = 0
    ls_ratio_records_fetched: int = 0
    liquidation_records_fetched: int = 0
    resample_records_created: int = 0
    resample_assets_processed: int = 0
    errors: List[str] = Field(default_factory=list)
    percentage: int = 0
    message: Optional[str] = None


# --- Run outcomes ---


class FetchResult(CamelModel):
    """Outcome of one strategy execution."""

    model_config = ConfigDict(frozen=True)

    assets_processed: int = 0
    records_fetched: int = 0
    ohlcv_records_fetched: int = 0
    oi_records_fetched: int = 0
    ls_ratio_records_fetched: int = 0
    liquidation_records_fetched: int = 0
    resample_records_created: int = 0
    errors: List[str] = Field(default_factory=list)

    @classmethod
    def failed(cls, error: str) -> "FetchResult":
        return cls(errors=[error])

    @property
    def total_records(self) -> int:
        return (
            self.records_fetched
            + self.ohlcv_records_fetched
            + self.oi_records_fetched
            + self.ls_ratio_records_fetched
            + self.liquidation_records_fetched
        )

    @property
    def run_status(self) -> RunStatus:
        if not self.errors:
            return "success"
        if self.assets_processed == 0:
            return "failed"
        return "partial"


class PlatformRunSummary(CamelModel):
    platform: str
    status: RunStatus
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    assets_processed: Optional[int] = None
    records_fetched: Optional[int] = None
    error: Optional[str] = None


class SchedulerRunSummary(CamelModel):
    model_config = ConfigDict(frozen=True)

    state: Literal["running", "success", "partial", "failed"]
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    results: List[PlatformRunSummary] = Field(default_factory=list)
    error: Optional[str] = None


class SchedulerStatus(CamelModel):
    interval_seconds: int
    is_scheduled: bool
    is_job_running: bool
    last_run: Optional[SchedulerRunSummary] = None


class FetcherStatus(CamelModel):
    platform: str
    is_running: bool
    mode: Optional[str] = None
    progress: Optional[ProgressEvent] = None


class FetchLog(CamelModel):
    """Persisted record of one initial or incremental run."""

    id: int
    platform: str
    fetch_type: Literal["initial", "incremental"]
    status: Literal["running", "success", "partial", "failed"]
    started_at: datetime
    completed_at: Optional[datetime] = None
    assets_processed: int = 0
    records_fetched: int = 0
    error_message: Optional[str] = None


# --- Stored data queries ---


class AssetFundingStats(CamelModel):
    symbol: str
    platform: str
    total_records: int = 0
    avg_funding_rate: Optional[float] = None
    min_funding_rate: Optional[float] = None
    max_funding_rate: Optional[float] = None
    std_dev: Optional[float] = None
    first_timestamp: Optional[datetime] = None
    last_timestamp: Optional[datetime] = None
    positive_count: int = 0
    negative_count: int = 0
