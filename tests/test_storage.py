from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pandas as pd
import pytest

from marketsync.models import AssetMapping, DataType, FetchResult, FundingRateRow, OHLCVRow, PlatformAsset

T0 = datetime(2024, 3, 1, tzinfo=timezone.utc)


def _funding(asset_id, hours, platform="hyperliquid", interval="1h", rate=0.0001):
    return [
        FundingRateRow(
            asset_id=asset_id,
            platform=platform,
            timestamp=T0 + timedelta(hours=hour),
            funding_rate=rate,
            premium=0.0002,
            sampling_interval=interval,
        )
        for hour in hours
    ]


def test_assets_keep_stable_ids_across_upserts(store):
    async def scenario():
        first = await store.bulk_upsert_assets(
            [PlatformAsset(symbol="BTC", platform="hyperliquid"), PlatformAsset(symbol="ETH", platform="hyperliquid")]
        )
        second = await store.bulk_upsert_assets(
            [PlatformAsset(symbol="ETH", platform="hyperliquid"), PlatformAsset(symbol="BTCUSDT", platform="binance")]
        )
        return first, second, await store.find_all_active()

    first, second, assets = asyncio.run(scenario())

    assert (first, second) == (2, 2)
    ids = {(a.platform, a.symbol): a.id for a in assets}
    assert ids == {("hyperliquid", "BTC"): 1, ("hyperliquid", "ETH"): 2, ("binance", "BTCUSDT"): 3}


def test_find_by_symbol_and_platform(store, seed_assets):
    ids = seed_assets(["BTC", "ETH"])

    found = asyncio.run(store.find_by_symbol("ETH", "fakex"))
    missing = asyncio.run(store.find_by_symbol("ETH", "binance"))

    assert found is not None and found.id == ids["ETH"]
    assert missing is None


def test_funding_upsert_is_idempotent(store):
    async def scenario():
        inserted = await store.bulk_upsert_funding_rates(_funding(1, range(3)))
        repeated = await store.bulk_upsert_funding_rates(_funding(1, range(3), rate=0.0005))
        extended = await store.bulk_upsert_funding_rates(_funding(1, range(2, 5)))
        return inserted, repeated, extended

    assert asyncio.run(scenario()) == (3, 0, 2)

    df = pd.read_parquet(store.data_dir / "funding_rates.parquet")
    assert len(df) == 5
    assert df["funding_rate"].iloc[0] == pytest.approx(0.0005)


def test_latest_timestamp_respects_discriminator(store):
    async def scenario():
        rows = [
            OHLCVRow(
                asset_id=1,
                platform="binance",
                timestamp=T0 + timedelta(hours=hour),
                timeframe=timeframe,
                open=1,
                high=2,
                low=0.5,
                close=1.5,
                volume=10,
            )
            for hour, timeframe in ((0, "1h"), (1, "1h"), (4, "4h"))
        ]
        await store.bulk_upsert_ohlcv(rows)
        return (
            await store.find_latest_timestamp(1, "binance", DataType.OHLCV, {"timeframe": "1h"}),
            await store.find_latest_timestamp(1, "binance", DataType.OHLCV),
            await store.find_latest_timestamp(2, "binance", DataType.OHLCV),
            await store.find_latest_timestamp(1, "binance", DataType.FUNDING),
        )

    hourly, any_timeframe, other_asset, empty_table = asyncio.run(scenario())

    assert hourly == T0 + timedelta(hours=1)
    assert any_timeframe == T0 + timedelta(hours=4)
    assert other_asset is None
    assert empty_table is None


def test_resample_only_aggregates_complete_8h_buckets(store):
    async def scenario():
        # 00:00-07:00 complete, 08:00-10:00 partial
        await store.bulk_upsert_funding_rates(_funding(1, range(11)))
        first = await store.resample_funding_to_8h("hyperliquid")
        second = await store.resample_funding_to_8h("hyperliquid")
        return first, second

    first, second = asyncio.run(scenario())

    assert first.records_created == 1
    assert first.assets_processed == 1
    assert second.records_created == 0

    df = pd.read_parquet(store.data_dir / "funding_rates.parquet")
    eight_hour = df[df["sampling_interval"] == "8h"]
    assert len(eight_hour) == 1
    assert eight_hour["funding_rate"].iloc[0] == pytest.approx(0.0008)
    assert eight_hour["premium"].iloc[0] == pytest.approx(0.0002)
    assert pd.Timestamp(eight_hour["timestamp"].iloc[0]) == pd.Timestamp(T0)


def test_resample_without_hourly_data_is_empty(store):
    result = asyncio.run(store.resample_funding_to_8h("hyperliquid"))
    assert result.records_created == 0


def test_mapping_upsert_keeps_identity(store):
    async def scenario():
        unified = await store.create_unified_asset("BTC", "Bitcoin")
        again = await store.create_unified_asset("BTC", "ignored")
        created = await store.upsert_mapping(
            AssetMapping(unified_asset_id=unified.id, asset_id=5, confidence_score=95, mapping_method="auto_symbol")
        )
        updated = await store.upsert_mapping(
            AssetMapping(unified_asset_id=unified.id, asset_id=5, confidence_score=100, mapping_method="manual")
        )
        mappings = await store.list_mappings()
        deleted = await store.delete_mapping(created.id)
        deleted_again = await store.delete_mapping(created.id)
        return unified, again, created, updated, mappings, deleted, deleted_again

    unified, again, created, updated, mappings, deleted, deleted_again = asyncio.run(scenario())

    assert again.id == unified.id and again.display_name == "Bitcoin"
    assert updated.id == created.id
    assert len(mappings) == 1 and mappings[0].mapping_method == "manual"
    assert deleted is True
    assert deleted_again is False


def test_export_csv(store, tmp_path):
    asyncio.run(store.bulk_upsert_funding_rates(_funding(1, range(4))))

    destination = tmp_path / "out" / "funding.csv"
    assert store.export_csv("funding_rates", destination) == 4
    assert len(pd.read_csv(destination)) == 4
    assert store.export_csv("liquidations", tmp_path / "out" / "empty.csv") == 0


def test_concurrent_upserts_lose_no_rows(store):
    async def scenario():
        counts = await asyncio.gather(
            *(store.bulk_upsert_funding_rates(_funding(asset_id, range(24))) for asset_id in range(1, 7))
        )
        return counts, store._safe_read("funding_rates")

    counts, df = asyncio.run(scenario())

    assert counts == [24] * 6
    assert len(df) == 144
    assert sorted(df["asset_id"].unique()) == [1, 2, 3, 4, 5, 6]


def test_load_time_series_filters_and_pages_newest_first(store, seed_assets):
    ids = seed_assets(["BTC", "ETH"], platform="hyperliquid")

    async def scenario():
        await store.bulk_upsert_funding_rates(_funding(ids["BTC"], range(6)) + _funding(ids["ETH"], range(6), rate=-0.0001))
        btc = await store.load_time_series(
            DataType.FUNDING,
            platform="hyperliquid",
            symbol="BTC",
            start=T0 + timedelta(hours=1),
            end=T0 + timedelta(hours=4),
            limit=2,
            offset=1,
        )
        naive_start = await store.load_time_series(DataType.FUNDING, start=datetime(2024, 3, 1, 5))
        missing = await store.load_time_series(DataType.OHLCV)
        return btc, naive_start, missing

    btc, naive_start, missing = asyncio.run(scenario())

    assert [row["timestamp"] for row in btc] == [T0 + timedelta(hours=3), T0 + timedelta(hours=2)]
    assert {row["symbol"] for row in btc} == {"BTC"}
    assert btc[0]["asset_id"] == ids["BTC"]
    assert sorted(row["symbol"] for row in naive_start) == ["BTC", "ETH"]
    assert missing == []


def test_funding_stats_summarise_one_asset(store, seed_assets):
    ids = seed_assets(["BTC", "SOL"], platform="hyperliquid")

    async def scenario():
        await store.bulk_upsert_funding_rates(
            _funding(ids["BTC"], range(2), rate=0.0003) + _funding(ids["BTC"], range(2, 3), rate=-0.0003)
        )
        return (
            await store.funding_stats("BTC", "hyperliquid"),
            await store.funding_stats("SOL", "hyperliquid"),
            await store.funding_stats("DOGE", "hyperliquid"),
        )

    btc, sol, missing = asyncio.run(scenario())

    assert btc.total_records == 3
    assert (btc.positive_count, btc.negative_count) == (2, 1)
    assert btc.max_funding_rate == pytest.approx(0.0003)
    assert btc.avg_funding_rate == pytest.approx(0.0001)
    assert btc.first_timestamp == T0
    assert btc.last_timestamp == T0 + timedelta(hours=2)
    assert sol.total_records == 0 and sol.avg_funding_rate is None
    assert missing is None


def test_fetch_log_lifecycle(store):
    async def scenario():
        first = await store.create_fetch_log("binance", "initial")
        second = await store.create_fetch_log("binance", "incremental")
        other = await store.create_fetch_log("okx", "incremental")
        await store.complete_fetch_log(first.id, FetchResult(assets_processed=4, records_fetched=40))
        await store.complete_fetch_log(
            second.id, FetchResult(assets_processed=4, records_fetched=10, errors=["a", "b"])
        )
        return (
            first,
            await store.list_fetch_logs(),
            await store.list_fetch_logs(platform="binance", errors_only=True),
            await store.last_successful_fetch("binance"),
            await store.last_successful_fetch("okx"),
            await store.complete_fetch_log(99, FetchResult()),
            other,
        )

    first, recent, errors, last_ok, none_ok, unknown, other = asyncio.run(scenario())

    assert first.status == "running" and first.completed_at is None
    assert [log.id for log in recent] == [other.id, first.id + 1, first.id]
    assert recent[0].status == "running"
    assert [(log.status, log.error_message) for log in errors] == [("partial", "a; b")]
    assert last_ok.id == first.id and last_ok.records_fetched == 40
    assert none_ok is None
    assert unknown is None
