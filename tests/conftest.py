from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Set, Tuple

import pytest

from marketsync.ingestion.clients import BasePlatformClient, PlatformCapabilities
from marketsync.models import (
    DataType,
    FundingRecord,
    OHLCVRecord,
    OpenInterestRecord,
    PlatformAsset,
)
from marketsync.storage import ParquetMarketStore

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClient(BasePlatformClient):
    """In-process platform: three hourly funding prints, two candles and one OI point per symbol."""

    platform = "fakex"
    CAPABILITIES = PlatformCapabilities(supports_open_interest=True)

    def __init__(
        self,
        symbols: Iterable[str] = ("BTC", "ETH", "SOL"),
        failures: Iterable[Tuple[DataType, str]] = (),
        batch_errors: Iterable[DataType] = (),
        capabilities: Optional[PlatformCapabilities] = None,
        discovery_error: Optional[Exception] = None,
    ) -> None:
        super().__init__()
        if capabilities is not None:
            self.capabilities = capabilities
        self.symbols = list(symbols)
        self.failures: Set[Tuple[DataType, str]] = set(failures)
        self.batch_errors: Set[DataType] = set(batch_errors)
        self.discovery_error = discovery_error
        self.discovery_gate: Optional[asyncio.Event] = None
        self.calls: List[Tuple[DataType, str, datetime]] = []

    def _record_call(self, data_type: DataType, symbol: str, start: datetime) -> None:
        self.calls.append((data_type, symbol, start))
        if (data_type, symbol) in self.failures:
            raise RuntimeError(f"upstream rejected {symbol}")

    async def _run_batch(self, data_type, symbols, fetch_one, options):
        if data_type in self.batch_errors:
            raise RuntimeError(f"{data_type.value} endpoint unavailable")
        return await super()._run_batch(data_type, symbols, fetch_one, options)

    async def get_assets(self) -> List[PlatformAsset]:
        if self.discovery_gate is not None:
            await self.discovery_gate.wait()
        if self.discovery_error is not None:
            raise self.discovery_error
        return [PlatformAsset(symbol=symbol, platform=self.platform, name=symbol) for symbol in self.symbols]

    async def fetch_funding_history(self, symbol, start):
        self._record_call(DataType.FUNDING, symbol, start)
        return [
            FundingRecord(asset=symbol, timestamp=BASE_TIME + timedelta(hours=hour), funding_rate=0.0001 * (hour + 1))
            for hour in range(3)
        ]

    async def fetch_ohlcv(self, symbol, interval, start):
        self._record_call(DataType.OHLCV, symbol, start)
        return [
            OHLCVRecord(
                asset=symbol,
                timestamp=BASE_TIME + timedelta(hours=hour),
                open=100.0,
                high=110.0,
                low=95.0,
                close=105.0,
                volume=12.5,
            )
            for hour in range(2)
        ]

    async def fetch_open_interest(self, symbol, period, start):
        self._record_call(DataType.OPEN_INTEREST, symbol, start)
        return [OpenInterestRecord(asset=symbol, timestamp=BASE_TIME, open_interest=1_000.0, open_interest_value=None)]


@pytest.fixture
def store(tmp_path) -> ParquetMarketStore:
    return ParquetMarketStore(tmp_path / "data")


@pytest.fixture
def make_client():
    return FakeClient


@pytest.fixture
def seed_assets(store):
    """Register symbols for the fake platform and return their ids by symbol."""

    def _seed(symbols: Iterable[str], platform: str = "fakex"):
        async def _run():
            await store.bulk_upsert_assets([PlatformAsset(symbol=s, platform=platform) for s in symbols])
            return {asset.symbol: asset.id for asset in await store.find_by_platform(platform)}

        return asyncio.run(_run())

    return _seed
