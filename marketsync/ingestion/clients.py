from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Type,
    TypeVar,
    Union,
)

import httpx

from marketsync.config import settings
from marketsync.errors import PlatformAPIError, UnsupportedPlatformError
from marketsync.models import (
    DataType,
    FundingRecord,
    LiquidationRecord,
    LongShortRatioRecord,
    OHLCVRecord,
    OpenInterestRecord,
    PlatformAsset,
)
from marketsync.utils.pool import run_bounded
from marketsync.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

R = TypeVar("R")
Interval = Union[str, int]
OnProgress = Callable[[str, int], None]
OnItemFetched = Callable[[str, List[Any]], Awaitable[None]]
OnItemFailed = Callable[[str, Exception], Awaitable[None]]


@dataclass(frozen=True)
class PlatformCapabilities:
    supports_funding: bool = True
    supports_ohlcv: bool = True
    supports_open_interest: bool = False
    supports_long_short_ratio: bool = False
    supports_liquidations: bool = False

    def supports(self, data_type: DataType) -> bool:
        return {
            DataType.FUNDING: self.supports_funding,
            DataType.OHLCV: self.supports_ohlcv,
            DataType.OPEN_INTEREST: self.supports_open_interest,
            DataType.LONG_SHORT_RATIO: self.supports_long_short_ratio,
            DataType.LIQUIDATION: self.supports_liquidations,
        }[data_type]


@dataclass
class BatchOptions:
    """Scheduling knobs and per-symbol callbacks for a batch fetch."""

    delay_ms: int = 0
    concurrency: int = 1
    rate_limiter: Optional[RateLimiter] = None
    on_progress: Optional[OnProgress] = None
    on_item_fetched: Optional[OnItemFetched] = None
    on_item_failed: Optional[OnItemFailed] = None
    start_times: Mapping[str, datetime] = field(default_factory=dict)


class PlatformClient(Protocol):
    platform: str
    capabilities: PlatformCapabilities

    async def get_assets(self) -> List[PlatformAsset]: ...

    async def get_funding_history_batch(
        self, symbols: Sequence[str], options: BatchOptions
    ) -> Dict[str, List[FundingRecord]]: ...

    async def get_ohlcv_batch(
        self, symbols: Sequence[str], interval: Interval, options: BatchOptions
    ) -> Dict[str, List[OHLCVRecord]]: ...

    async def get_open_interest_batch(
        self, symbols: Sequence[str], period: Interval, options: BatchOptions
    ) -> Dict[str, List[OpenInterestRecord]]: ...

    async def get_long_short_ratio_batch(
        self, symbols: Sequence[str], period: Interval, options: BatchOptions
    ) -> Dict[str, List[LongShortRatioRecord]]: ...

    async def get_liquidations_batch(
        self, symbols: Sequence[str], options: BatchOptions
    ) -> Dict[str, List[LiquidationRecord]]: ...

    async def aclose(self) -> None: ...


def _from_ms(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def _to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class BasePlatformClient:
    """Shared batch machinery; subclasses implement the per-symbol fetchers."""

    platform: str = ""
    base_url: str = ""
    CAPABILITIES = PlatformCapabilities()
    REQUEST_WEIGHTS: Dict[DataType, int] = {}

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        lookback_days: Optional[int] = None,
    ) -> None:
        self.capabilities = self.CAPABILITIES
        self._client = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(settings.request_timeout_seconds),
            follow_redirects=True,
        )
        self.lookback = timedelta(days=lookback_days or settings.initial_lookback_days)

    async def aclose(self) -> None:
        await self._client.aclose()

    def default_start(self) -> datetime:
        return datetime.now(timezone.utc) - self.lookback

    # --- per-symbol fetchers ---

    async def get_assets(self) -> List[PlatformAsset]:
        raise NotImplementedError

    async def fetch_funding_history(self, symbol: str, start: datetime) -> List[FundingRecord]:
        raise NotImplementedError

    async def fetch_ohlcv(self, symbol: str, interval: Interval, start: datetime) -> List[OHLCVRecord]:
        raise NotImplementedError

    async def fetch_open_interest(self, symbol: str, period: Interval, start: datetime) -> List[OpenInterestRecord]:
        raise NotImplementedError

    async def fetch_long_short_ratio(
        self, symbol: str, period: Interval, start: datetime
    ) -> List[LongShortRatioRecord]:
        raise NotImplementedError

    async def fetch_liquidations(self, symbol: str, start: datetime) -> List[LiquidationRecord]:
        raise NotImplementedError

    # --- batch contract ---

    async def get_funding_history_batch(
        self, symbols: Sequence[str], options: BatchOptions
    ) -> Dict[str, List[FundingRecord]]:
        return await self._run_batch(DataType.FUNDING, symbols, self.fetch_funding_history, options)

    async def get_ohlcv_batch(
        self, symbols: Sequence[str], interval: Interval, options: BatchOptions
    ) -> Dict[str, List[OHLCVRecord]]:
        return await self._run_batch(
            DataType.OHLCV, symbols, lambda symbol, start: self.fetch_ohlcv(symbol, interval, start), options
        )

    async def get_open_interest_batch(
        self, symbols: Sequence[str], period: Interval, options: BatchOptions
    ) -> Dict[str, List[OpenInterestRecord]]:
        return await self._run_batch(
            DataType.OPEN_INTEREST,
            symbols,
            lambda symbol, start: self.fetch_open_interest(symbol, period, start),
            options,
        )

    async def get_long_short_ratio_batch(
        self, symbols: Sequence[str], period: Interval, options: BatchOptions
    ) -> Dict[str, List[LongShortRatioRecord]]:
        return await self._run_batch(
            DataType.LONG_SHORT_RATIO,
            symbols,
            lambda symbol, start: self.fetch_long_short_ratio(symbol, period, start),
            options,
        )

    async def get_liquidations_batch(
        self, symbols: Sequence[str], options: BatchOptions
    ) -> Dict[str, List[LiquidationRecord]]:
        return await self._run_batch(DataType.LIQUIDATION, symbols, self.fetch_liquidations, options)

    async def _run_batch(
        self,
        data_type: DataType,
        symbols: Sequence[str],
        fetch_one: Callable[[str, datetime], Awaitable[List[R]]],
        options: BatchOptions,
    ) -> Dict[str, List[R]]:
        if not self.capabilities.supports(data_type):
            raise NotImplementedError(f"{self.platform} does not support {data_type.value}")

        results: Dict[str, List[R]] = {}
        weight = self.REQUEST_WEIGHTS.get(data_type, 1)
        processed = 0

        async def worker(symbol: str, _index: int) -> None:
            nonlocal processed
            if options.rate_limiter is not None:
                await options.rate_limiter.acquire(weight)

            start = options.start_times.get(symbol) or self.default_start()
            try:
                records = await fetch_one(symbol, start)
            except Exception as exc:  # noqa: BLE001
                processed += 1
                logger.warning("%s %s fetch failed for %s: %s", self.platform, data_type.value, symbol, exc)
                if options.on_progress is not None:
                    options.on_progress(symbol, processed)
                if options.on_item_failed is not None:
                    await options.on_item_failed(symbol, exc)
                return

            results[symbol] = records
            processed += 1
            if options.on_progress is not None:
                options.on_progress(symbol, processed)
            if options.on_item_fetched is not None:
                await options.on_item_fetched(symbol, records)

        await run_bounded(symbols, worker, concurrency=options.concurrency, delay_ms=options.delay_ms)
        return results


class HyperliquidClient(BasePlatformClient):
    """Hyperliquid perps via the public ``/info`` endpoint."""

    platform = "hyperliquid"
    base_url = "https://api.hyperliquid.xyz"
    CAPABILITIES = PlatformCapabilities(supports_open_interest=True)
    REQUEST_WEIGHTS = {DataType.FUNDING: 20, DataType.OHLCV: 20, DataType.OPEN_INTEREST: 20}
    PAGE_SIZE = 500
    MAX_PAGES = 20

    async def _info(self, payload: Dict[str, Any]) -> Any:
        resp = await self._client.post("/info", json=payload)
        resp.raise_for_status()
        return resp.json()

    async def get_assets(self) -> List[PlatformAsset]:
        payload = await self._info({"type": "meta"})
        assets = [
            PlatformAsset(symbol=entry["name"], platform=self.platform, name=entry["name"])
            for entry in payload.get("universe", [])
            if entry.get("name") and not entry.get("isDelisted")
        ]
        logger.info("Fetched %s assets from %s", len(assets), self.platform)
        return assets

    async def fetch_funding_history(self, symbol: str, start: datetime) -> List[FundingRecord]:
        records: List[FundingRecord] = []
        start_ms = _to_ms(start)
        for _ in range(self.MAX_PAGES):
            page = await self._info({"type": "fundingHistory", "coin": symbol, "startTime": start_ms})
            records.extend(
                FundingRecord(
                    asset=symbol,
                    timestamp=_from_ms(entry["time"]),
                    funding_rate=float(entry["fundingRate"]),
                    premium=float(entry["premium"]) if entry.get("premium") is not None else None,
                )
                for entry in page
            )
            if len(page) < self.PAGE_SIZE:
                break
            start_ms = int(page[-1]["time"]) + 1
        return records

    async def fetch_ohlcv(self, symbol: str, interval: Interval, start: datetime) -> List[OHLCVRecord]:
        candles = await self._info(
            {
                "type": "candleSnapshot",
                "req": {
                    "coin": symbol,
                    "interval": str(interval),
                    "startTime": _to_ms(start),
                    "endTime": _to_ms(datetime.now(timezone.utc)),
                },
            }
        )
        return [
            OHLCVRecord(
                asset=symbol,
                timestamp=_from_ms(candle["t"]),
                open=float(candle["o"]),
                high=float(candle["h"]),
                low=float(candle["l"]),
                close=float(candle["c"]),
                volume=float(candle["v"]),
                trades_count=int(candle["n"]) if candle.get("n") is not None else None,
            )
            for candle in candles
        ]

    async def fetch_open_interest(self, symbol: str, period: Interval, start: datetime) -> List[OpenInterestRecord]:
        # Snapshot only: the current value, regardless of period/start
        meta, contexts = await self._info({"type": "metaAndAssetCtxs"})
        for entry, ctx in zip(meta.get("universe", []), contexts):
            if entry.get("name") != symbol:
                continue
            open_interest = float(ctx["openInterest"])
            mark = ctx.get("markPx")
            return [
                OpenInterestRecord(
                    asset=symbol,
                    timestamp=datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0),
                    open_interest=open_interest,
                    open_interest_value=open_interest * float(mark) if mark is not None else None,
                )
            ]
        return []


class BinanceClient(BasePlatformClient):
    """Binance USDⓈ-M futures public market data."""

    platform = "binance"
    base_url = "https://fapi.binance.com"
    CAPABILITIES = PlatformCapabilities(supports_open_interest=True, supports_long_short_ratio=True)
    REQUEST_WEIGHTS = {DataType.OHLCV: 5}
    # Binance serves futures statistics for the last 30 days only
    STATS_RETENTION = timedelta(days=29)

    async def _get(self, path: str, params: Dict[str, Any]) -> Any:
        resp = await self._client.get(path, params=params)
        resp.raise_for_status()
        return resp.json()

    def _stats_start(self, start: datetime) -> datetime:
        return max(start, datetime.now(timezone.utc) - self.STATS_RETENTION)

    async def get_assets(self) -> List[PlatformAsset]:
        payload = await self._get("/fapi/v1/exchangeInfo", {})
        assets = [
            PlatformAsset(symbol=entry["symbol"], platform=self.platform, name=entry.get("baseAsset") or entry["symbol"])
            for entry in payload.get("symbols", [])
            if entry.get("contractType") == "PERPETUAL" and entry.get("status") == "TRADING"
        ]
        logger.info("Fetched %s assets from %s", len(assets), self.platform)
        return assets

    async def fetch_funding_history(self, symbol: str, start: datetime) -> List[FundingRecord]:
        rows = await self._get("/fapi/v1/fundingRate", {"symbol": symbol, "startTime": _to_ms(start), "limit": 1000})
        return [
            FundingRecord(asset=symbol, timestamp=_from_ms(row["fundingTime"]), funding_rate=float(row["fundingRate"]))
            for row in rows
        ]

    async def fetch_ohlcv(self, symbol: str, interval: Interval, start: datetime) -> List[OHLCVRecord]:
        rows = await self._get(
            "/fapi/v1/klines",
            {"symbol": symbol, "interval": str(interval), "startTime": _to_ms(start), "limit": 1500},
        )
        return [
            OHLCVRecord(
                asset=symbol,
                timestamp=_from_ms(row[0]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
                quote_volume=float(row[7]),
                trades_count=int(row[8]),
            )
            for row in rows
        ]

    async def fetch_open_interest(self, symbol: str, period: Interval, start: datetime) -> List[OpenInterestRecord]:
        rows = await self._get(
            "/futures/data/openInterestHist",
            {"symbol": symbol, "period": str(period), "startTime": _to_ms(self._stats_start(start)), "limit": 500},
        )
        return [
            OpenInterestRecord(
                asset=symbol,
                timestamp=_from_ms(row["timestamp"]),
                open_interest=float(row["sumOpenInterest"]),
                open_interest_value=float(row["sumOpenInterestValue"]),
            )
            for row in rows
        ]

    async def fetch_long_short_ratio(
        self, symbol: str, period: Interval, start: datetime
    ) -> List[LongShortRatioRecord]:
        rows = await self._get(
            "/futures/data/globalLongShortAccountRatio",
            {"symbol": symbol, "period": str(period), "startTime": _to_ms(self._stats_start(start)), "limit": 500},
        )
        return [
            LongShortRatioRecord(
                asset=symbol,
                timestamp=_from_ms(row["timestamp"]),
                long_ratio=float(row["longAccount"]),
                short_ratio=float(row["shortAccount"]),
                long_account=float(row["longAccount"]),
                short_account=float(row["shortAccount"]),
                type="global_account",
                period=str(period),
            )
            for row in rows
        ]


class AsterClient(BinanceClient):
    """Aster perps. The futures API mirrors Binance's ``/fapi/v1`` surface."""

    platform = "aster"
    base_url = "https://fapi.asterdex.com"
    CAPABILITIES = PlatformCapabilities()
    REQUEST_WEIGHTS = {DataType.OHLCV: 5}


class BybitClient(BasePlatformClient):
    """Bybit V5 linear perpetuals."""

    platform = "bybit"
    base_url = "https://api.bybit.com"
    CAPABILITIES = PlatformCapabilities(supports_open_interest=True, supports_long_short_ratio=True)
    PAGE_SIZE = 200
    RATIO_PAGE_SIZE = 500
    MAX_PAGES = 20

    async def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self._client.get(path, params={"category": "linear", **params})
        resp.raise_for_status()
        payload = resp.json()
        if payload.get("retCode") != 0:
            raise PlatformAPIError(self.platform, payload.get("retMsg", "unknown error"))
        return payload.get("result") or {}

    async def _walk_back(
        self, path: str, params: Dict[str, Any], start: datetime, page_size: int, time_of: Callable[[Any], int]
    ) -> List[Any]:
        """Page a newest-first endpoint backwards from now until ``start``."""
        rows: List[Any] = []
        start_ms = _to_ms(start)
        end_ms = _to_ms(datetime.now(timezone.utc))
        for _ in range(self.MAX_PAGES):
            result = await self._get(path, {**params, "startTime": start_ms, "endTime": end_ms, "limit": page_size})
            page = result.get("list") or []
            rows.extend(page)
            if len(page) < page_size:
                break
            oldest = min(time_of(row) for row in page)
            if oldest <= start_ms:
                break
            end_ms = oldest - 1
        return rows

    async def get_assets(self) -> List[PlatformAsset]:
        result = await self._get("/v5/market/instruments-info", {"limit": 1000})
        assets = [
            PlatformAsset(symbol=entry["symbol"], platform=self.platform, name=entry.get("baseCoin") or entry["symbol"])
            for entry in result.get("list", [])
            if entry.get("status") == "Trading" and entry.get("contractType") == "LinearPerpetual"
        ]
        logger.info("Fetched %s assets from %s", len(assets), self.platform)
        return assets

    async def fetch_funding_history(self, symbol: str, start: datetime) -> List[FundingRecord]:
        rows = await self._walk_back(
            "/v5/market/funding/history",
            {"symbol": symbol},
            start,
            self.PAGE_SIZE,
            lambda row: int(row["fundingRateTimestamp"]),
        )
        return [
            FundingRecord(
                asset=symbol, timestamp=_from_ms(row["fundingRateTimestamp"]), funding_rate=float(row["fundingRate"])
            )
            for row in rows
        ]

    async def fetch_ohlcv(self, symbol: str, interval: Interval, start: datetime) -> List[OHLCVRecord]:
        result = await self._get(
            "/v5/market/kline",
            {
                "symbol": symbol,
                "interval": str(interval),
                "start": _to_ms(start),
                "end": _to_ms(datetime.now(timezone.utc)),
                "limit": 1000,
            },
        )
        # [startTime, open, high, low, close, volume, turnover], newest first
        return [
            OHLCVRecord(
                asset=symbol,
                timestamp=_from_ms(row[0]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
                quote_volume=float(row[6]),
            )
            for row in reversed(result.get("list") or [])
        ]

    async def fetch_open_interest(self, symbol: str, period: Interval, start: datetime) -> List[OpenInterestRecord]:
        rows = await self._walk_back(
            "/v5/market/open-interest",
            {"symbol": symbol, "intervalTime": str(period)},
            start,
            self.PAGE_SIZE,
            lambda row: int(row["timestamp"]),
        )
        return [
            OpenInterestRecord(asset=symbol, timestamp=_from_ms(row["timestamp"]), open_interest=float(row["openInterest"]))
            for row in rows
        ]

    async def fetch_long_short_ratio(
        self, symbol: str, period: Interval, start: datetime
    ) -> List[LongShortRatioRecord]:
        rows = await self._walk_back(
            "/v5/market/account-ratio",
            {"symbol": symbol, "period": str(period)},
            start,
            self.RATIO_PAGE_SIZE,
            lambda row: int(row["timestamp"]),
        )
        return [
            LongShortRatioRecord(
                asset=symbol,
                timestamp=_from_ms(row["timestamp"]),
                long_ratio=float(row["buyRatio"]),
                short_ratio=float(row["sellRatio"]),
                long_account=float(row["buyRatio"]),
                short_account=float(row["sellRatio"]),
                type="global_account",
                period=str(period),
            )
            for row in rows
        ]


class OKXClient(BasePlatformClient):
    """OKX USDT-margined perpetual swaps (``BTC-USDT-SWAP``)."""

    platform = "okx"
    base_url = "https://www.okx.com"
    CAPABILITIES = PlatformCapabilities(supports_open_interest=True, supports_long_short_ratio=True)
    PAGE_SIZE = 100
    MAX_PAGES = 20

    async def _get(self, path: str, params: Dict[str, Any]) -> List[Any]:
        resp = await self._client.get(path, params=params)
        resp.raise_for_status()
        payload = resp.json()
        if payload.get("code") != "0":
            raise PlatformAPIError(self.platform, payload.get("msg") or "unknown error")
        return payload.get("data") or []

    async def _walk_back(
        self, path: str, params: Dict[str, Any], start: datetime, time_of: Callable[[Any], int]
    ) -> List[Any]:
        """Page a newest-first endpoint with the ``after`` cursor (older than) until ``start``."""
        rows: List[Any] = []
        start_ms = _to_ms(start)
        cursor: Optional[int] = None
        for _ in range(self.MAX_PAGES):
            query = {**params, "limit": self.PAGE_SIZE}
            if cursor is not None:
                query["after"] = cursor
            page = await self._get(path, query)
            rows.extend(row for row in page if time_of(row) >= start_ms)
            if len(page) < self.PAGE_SIZE:
                break
            cursor = min(time_of(row) for row in page)
            if cursor <= start_ms:
                break
        return rows

    async def get_assets(self) -> List[PlatformAsset]:
        instruments = await self._get("/api/v5/public/instruments", {"instType": "SWAP"})
        assets = [
            PlatformAsset(symbol=entry["instId"], platform=self.platform, name=entry.get("ctValCcy") or entry["instId"])
            for entry in instruments
            if entry.get("state") == "live" and entry.get("ctType") == "linear" and entry.get("settleCcy") == "USDT"
        ]
        logger.info("Fetched %s assets from %s", len(assets), self.platform)
        return assets

    async def fetch_funding_history(self, symbol: str, start: datetime) -> List[FundingRecord]:
        rows = await self._walk_back(
            "/api/v5/public/funding-rate-history", {"instId": symbol}, start, lambda row: int(row["fundingTime"])
        )
        return [
            FundingRecord(asset=symbol, timestamp=_from_ms(row["fundingTime"]), funding_rate=float(row["fundingRate"]))
            for row in rows
        ]

    async def fetch_ohlcv(self, symbol: str, interval: Interval, start: datetime) -> List[OHLCVRecord]:
        rows = await self._walk_back(
            "/api/v5/market/history-candles", {"instId": symbol, "bar": str(interval)}, start, lambda row: int(row[0])
        )
        # [ts, open, high, low, close, vol, volCcy, volCcyQuote, confirm]
        return [
            OHLCVRecord(
                asset=symbol,
                timestamp=_from_ms(row[0]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
                quote_volume=float(row[7]) if len(row) > 7 else None,
            )
            for row in rows
        ]

    async def fetch_open_interest(self, symbol: str, period: Interval, start: datetime) -> List[OpenInterestRecord]:
        rows = await self._get(
            "/api/v5/rubik/stat/contracts/open-interest-history",
            {"instId": symbol, "period": str(period), "begin": _to_ms(start), "limit": self.PAGE_SIZE},
        )
        # [ts, oi (contracts), oiCcy, oiUsd]
        return [
            OpenInterestRecord(
                asset=symbol,
                timestamp=_from_ms(row[0]),
                open_interest=float(row[2]),
                open_interest_value=float(row[3]),
            )
            for row in rows
        ]

    async def fetch_long_short_ratio(
        self, symbol: str, period: Interval, start: datetime
    ) -> List[LongShortRatioRecord]:
        rows = await self._get(
            "/api/v5/rubik/stat/contracts/long-short-account-ratio-contract",
            {"instId": symbol, "period": str(period), "begin": _to_ms(start), "limit": self.PAGE_SIZE},
        )
        records = []
        for ts, raw_ratio in rows:
            ratio = float(raw_ratio)
            records.append(
                LongShortRatioRecord(
                    asset=symbol,
                    timestamp=_from_ms(ts),
                    long_ratio=ratio / (1 + ratio),
                    short_ratio=1 / (1 + ratio),
                    type="global_account",
                    period=str(period),
                )
            )
        return records


def _from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class DydxClient(BasePlatformClient):
    """dYdX v4 indexer. Open interest comes from the hourly candles."""

    platform = "dydx"
    base_url = "https://indexer.dydx.trade/v4"
    CAPABILITIES = PlatformCapabilities(supports_open_interest=True)
    PAGE_SIZE = 100
    CANDLE_PAGE_SIZE = 500
    MAX_PAGES = 20

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        resp = await self._client.get(path, params=params)
        resp.raise_for_status()
        return resp.json()

    async def get_assets(self) -> List[PlatformAsset]:
        payload = await self._get("/perpetualMarkets")
        assets = [
            PlatformAsset(symbol=ticker, platform=self.platform, name=ticker)
            for ticker, market in (payload.get("markets") or {}).items()
            if market.get("status") == "ACTIVE"
        ]
        logger.info("Fetched %s assets from %s", len(assets), self.platform)
        return assets

    async def fetch_funding_history(self, symbol: str, start: datetime) -> List[FundingRecord]:
        records: List[FundingRecord] = []
        before = datetime.now(timezone.utc)
        for _ in range(self.MAX_PAGES):
            payload = await self._get(
                f"/historicalFunding/{symbol}",
                {"effectiveBeforeOrAt": before.isoformat(), "limit": self.PAGE_SIZE},
            )
            page = payload.get("historicalFunding") or []
            for entry in page:
                timestamp = _from_iso(entry["effectiveAt"])
                if timestamp >= start:
                    records.append(FundingRecord(asset=symbol, timestamp=timestamp, funding_rate=float(entry["rate"])))
            if len(page) < self.PAGE_SIZE:
                break
            oldest = min(_from_iso(entry["effectiveAt"]) for entry in page)
            if oldest <= start:
                break
            before = oldest - timedelta(milliseconds=1)
        return records

    async def _candles(self, symbol: str, resolution: Interval, start: datetime) -> List[Dict[str, Any]]:
        candles: List[Dict[str, Any]] = []
        to = datetime.now(timezone.utc)
        for _ in range(self.MAX_PAGES):
            payload = await self._get(
                f"/candles/perpetualMarkets/{symbol}",
                {
                    "resolution": str(resolution),
                    "fromISO": start.isoformat(),
                    "toISO": to.isoformat(),
                    "limit": self.CANDLE_PAGE_SIZE,
                },
            )
            page = payload.get("candles") or []
            candles.extend(page)
            if len(page) < self.CANDLE_PAGE_SIZE:
                break
            oldest = min(_from_iso(candle["startedAt"]) for candle in page)
            if oldest <= start:
                break
            to = oldest - timedelta(milliseconds=1)
        return candles

    async def fetch_ohlcv(self, symbol: str, interval: Interval, start: datetime) -> List[OHLCVRecord]:
        return [
            OHLCVRecord(
                asset=symbol,
                timestamp=_from_iso(candle["startedAt"]),
                open=float(candle["open"]),
                high=float(candle["high"]),
                low=float(candle["low"]),
                close=float(candle["close"]),
                volume=float(candle["baseTokenVolume"]),
                quote_volume=float(candle["usdVolume"]),
                trades_count=int(candle["trades"]) if candle.get("trades") is not None else None,
            )
            for candle in await self._candles(symbol, interval, start)
        ]

    async def fetch_open_interest(self, symbol: str, period: Interval, start: datetime) -> List[OpenInterestRecord]:
        return [
            OpenInterestRecord(
                asset=symbol,
                timestamp=_from_iso(candle["startedAt"]),
                open_interest=float(candle["startingOpenInterest"]),
            )
            for candle in await self._candles(symbol, period, start)
            if candle.get("startingOpenInterest") is not None
        ]


CLIENT_REGISTRY: Dict[str, Type[BasePlatformClient]] = {
    client_cls.platform: client_cls
    for client_cls in (HyperliquidClient, BinanceClient, BybitClient, OKXClient, DydxClient, AsterClient)
}


def build_platform_client(platform: str, http_client: Optional[httpx.AsyncClient] = None) -> BasePlatformClient:
    """Factory for the client serving ``platform``."""
    try:
        client_cls = CLIENT_REGISTRY[platform.lower()]
    except KeyError:
        raise UnsupportedPlatformError(platform) from None
    return client_cls(http_client=http_client)
