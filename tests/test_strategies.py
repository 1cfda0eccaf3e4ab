from __future__ import annotations

import asyncio

from marketsync.ingestion.clients import PlatformCapabilities
from marketsync.ingestion.platform_config import PlatformConfig
from marketsync.ingestion.progress import ProgressTracker
from marketsync.ingestion.strategies import IncrementalFetchStrategy, InitialFetchStrategy
from marketsync.models import DataType, FetchStage, StageStatus
from marketsync.utils.rate_limiter import RateLimiter


def _strategy(cls, store, client, **config):
    tracker = ProgressTracker()
    events = []
    tracker.subscribe(events.append)
    strategy = cls(
        "fakex",
        PlatformConfig(platform="fakex", concurrency=2, **config),
        client,
        store,
        tracker,
        RateLimiter(capacity=1000),
    )
    return strategy, tracker, events


def test_initial_fetch_on_snapshot_only_platform(store, make_client):
    strategy, tracker, events = _strategy(
        InitialFetchStrategy, store, make_client(), sampling_interval="1h", snapshot_only_open_interest=True
    )

    result = asyncio.run(strategy.execute())

    assert result.assets_processed == 3
    assert result.records_fetched == 9
    assert result.ohlcv_records_fetched == 6
    assert result.oi_records_fetched == 0
    assert result.errors == []

    for key in (FetchStage.FUNDING_FETCH, FetchStage.FUNDING_STORE, FetchStage.OHLCV_FETCH, FetchStage.OHLCV_STORE):
        stage = tracker.stage(key)
        assert (stage.completed, stage.total, stage.status) == (3, 3, StageStatus.COMPLETE)
    for key in (FetchStage.OI_FETCH, FetchStage.OI_STORE):
        stage = tracker.stage(key)
        assert stage.status == StageStatus.COMPLETE
        assert stage.message == "Skipped (snapshot-only platform)"

    assert events[0].type == "start"
    assert events[-1].type == "complete"
    assert events[-1].percentage == 100
    assert events[-1].processed_assets == 3
    assert events[-1].total_assets == 3


def test_stage_list_follows_client_capabilities(store, make_client):
    client = make_client(capabilities=PlatformCapabilities())
    strategy, tracker, _ = _strategy(InitialFetchStrategy, store, client, resample_funding=True)

    asyncio.run(strategy.execute())

    assert tracker.stage_order == [
        FetchStage.ASSET_DISCOVERY,
        FetchStage.FUNDING_FETCH,
        FetchStage.FUNDING_STORE,
        FetchStage.OHLCV_FETCH,
        FetchStage.OHLCV_STORE,
        FetchStage.RESAMPLE,
    ]


def test_pipelines_run_one_after_another(store, make_client):
    client = make_client(symbols=["BTC", "ETH"])
    strategy, _, _ = _strategy(InitialFetchStrategy, store, client)

    asyncio.run(strategy.execute())

    kinds = [data_type for data_type, _, _ in client.calls]
    assert kinds == [DataType.FUNDING] * 2 + [DataType.OHLCV] * 2 + [DataType.OPEN_INTEREST] * 2


def test_discovery_failure_is_the_only_error(store, make_client):
    client = make_client(discovery_error=RuntimeError("exchange unreachable"))
    strategy, _, events = _strategy(InitialFetchStrategy, store, client)

    result = asyncio.run(strategy.execute())

    assert result.errors == ["exchange unreachable"]
    assert result.assets_processed == 0
    assert result.total_records == 0
    assert events[-1].type == "error"
    assert client.calls == []


def test_pipeline_failure_does_not_stop_later_pipelines(store, make_client):
    client = make_client(batch_errors=[DataType.OHLCV])
    strategy, tracker, _ = _strategy(InitialFetchStrategy, store, client)

    result = asyncio.run(strategy.execute())

    assert result.records_fetched == 9
    assert result.ohlcv_records_fetched == 0
    assert result.oi_records_fetched == 3
    assert result.errors == ["OHLCV pipeline error: ohlcv endpoint unavailable"]
    assert tracker.stage(FetchStage.OHLCV_STORE).status == StageStatus.COMPLETE


def test_resample_failure_is_not_fatal(store, make_client):
    async def broken_resample(platform):
        raise RuntimeError("disk full")

    store.resample_funding_to_8h = broken_resample
    strategy, tracker, _ = _strategy(InitialFetchStrategy, store, make_client(), sampling_interval="1h", resample_funding=True)

    result = asyncio.run(strategy.execute())

    assert result.assets_processed == 3
    assert result.records_fetched == 9
    assert result.errors == ["Resample error: disk full"]
    assert tracker.stage(FetchStage.RESAMPLE).percentage == 100


def test_incremental_requires_previous_discovery(store, make_client):
    strategy, _, _ = _strategy(IncrementalFetchStrategy, store, make_client())

    result = asyncio.run(strategy.execute())

    assert result.assets_processed == 0
    assert len(result.errors) == 1
    assert "Run initial fetch first." in result.errors[0]


def test_incremental_reuses_stored_assets(store, make_client):
    client = make_client()
    initial, _, _ = _strategy(InitialFetchStrategy, store, client)
    asyncio.run(initial.execute())

    incremental, tracker, _ = _strategy(IncrementalFetchStrategy, store, make_client(symbols=[]))
    result = asyncio.run(incremental.execute())

    assert result.assets_processed == 3
    assert result.records_fetched == 0
    assert result.errors == []
    assert FetchStage.ASSET_DISCOVERY not in tracker.stage_order
