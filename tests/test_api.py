from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from marketsync.api.main import build_services, create_app
from marketsync.storage import ParquetMarketStore


@pytest.fixture
def client(tmp_path, make_client):
    services = build_services(
        store=ParquetMarketStore(tmp_path / "data"),
        client_factory=lambda platform: make_client(),
        platforms=["fakex"],
    )
    with TestClient(create_app(services)) as test_client:
        yield test_client


def test_health_and_platforms(client):
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/platforms").json() == ["fakex"]


def test_initial_fetch_then_assets(client):
    response = client.post("/fetch/fakex/initial")

    assert response.status_code == 200
    body = response.json()
    assert body["assetsProcessed"] == 3
    assert body["recordsFetched"] == 9
    assert body["ohlcvRecordsFetched"] == 6
    assert body["errors"] == []

    assets = client.get("/assets", params={"platform": "FAKEX"}).json()
    assert sorted(asset["symbol"] for asset in assets) == ["BTC", "ETH", "SOL"]


def test_unknown_platform_is_404(client):
    assert client.post("/fetch/mtgox/initial").status_code == 404
    assert client.get("/fetch/mtgox/progress").status_code == 404
    assert client.get("/fetch/mtgox/stream").status_code == 404


def test_incremental_before_initial_reports_error(client):
    body = client.post("/fetch/fakex/incremental").json()

    assert body["assetsProcessed"] == 0
    assert "Run initial fetch first." in body["errors"][0]


def test_background_fetch_is_accepted(client):
    response = client.post("/fetch/fakex/initial", params={"background": "true"})

    assert response.status_code == 202
    assert response.json() == {"status": "started", "platform": "fakex", "mode": "initial"}


def test_fetch_status_lists_platforms(client):
    statuses = client.get("/fetch/status").json()
    assert statuses == [{"platform": "fakex", "isRunning": False, "mode": None, "progress": None}]

    progress = client.get("/fetch/fakex/progress").json()
    assert progress["isRunning"] is False


def test_stream_with_trigger_runs_to_completion(client):
    response = client.get("/fetch/fakex/stream", params={"trigger": "initial"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    text = response.text
    assert '"type": "connected"' in text
    assert '"type": "complete"' in text
    assert text.rstrip().endswith('data: {"type": "done"}')


def test_scheduler_endpoints(client):
    status = client.get("/scheduler/status").json()
    assert set(status) == {"intervalSeconds", "isScheduled", "isJobRunning", "lastRun"}
    assert status["isJobRunning"] is False

    summary = client.post("/scheduler/run").json()
    assert summary["state"] == "failed"
    assert summary["results"][0]["platform"] == "fakex"
    assert summary["results"][0]["status"] == "failed"

    assert client.get("/scheduler/status").json()["lastRun"]["state"] == "failed"


def test_mapping_endpoints(client):
    client.post("/fetch/fakex/initial")
    assets = client.get("/assets").json()
    btc = next(asset for asset in assets if asset["symbol"] == "BTC")

    generated = client.post("/mappings/generate").json()
    assert generated == {"unifiedAssetsCreated": 0, "mappingsCreated": 0, "mappingsUpdated": 0}

    manual = client.post("/mappings/manual", json={"assetId": btc["id"], "normalizedSymbol": "xbt"})
    assert manual.status_code == 200
    mapping = manual.json()
    assert mapping["mapping_method"] == "manual"
    assert mapping["confidence_score"] == 100
    assert [u["normalized_symbol"] for u in client.get("/unified-assets").json()] == ["XBT"]

    assert client.delete(f"/mappings/{mapping['id']}").status_code == 200
    assert client.delete(f"/mappings/{mapping['id']}").status_code == 404


def test_manual_mapping_for_unknown_asset_is_404(client):
    response = client.post("/mappings/manual", json={"assetId": 999, "normalizedSymbol": "BTC"})

    assert response.status_code == 404
    assert response.json()["detail"] == "Asset not found: 999"


def test_second_background_trigger_is_refused(tmp_path, make_client):
    def gated_client(platform):
        client = make_client()
        client.discovery_gate = asyncio.Event()
        return client

    services = build_services(
        store=ParquetMarketStore(tmp_path / "data"), client_factory=gated_client, platforms=["fakex"]
    )
    with TestClient(create_app(services)) as client:
        first = client.post("/fetch/fakex/initial", params={"background": "true"})
        second = client.post("/fetch/fakex/incremental", params={"background": "true"})
        blocking = client.post("/fetch/fakex/incremental")

    assert first.status_code == 202
    assert second.status_code == 409
    assert second.json()["detail"] == "A initial fetch is already in progress for fakex"
    assert blocking.status_code == 409


def test_logs_record_each_run(client):
    client.post("/fetch/fakex/incremental")
    client.post("/fetch/fakex/initial")

    logs = client.get("/logs", params={"platform": "FAKEX"}).json()
    assert [(log["fetchType"], log["status"]) for log in logs] == [("initial", "success"), ("incremental", "failed")]
    assert logs[0]["assetsProcessed"] == 3

    errors = client.get("/logs", params={"errors_only": "true", "limit": 5}).json()
    assert [log["fetchType"] for log in errors] == ["incremental"]


def test_stored_series_and_analytics(client):
    client.post("/fetch/fakex/initial")

    funding = client.get("/funding-rates", params={"asset": "BTC", "platform": "fakex", "limit": 2}).json()
    assert funding["count"] == 2
    assert funding["query"]["asset"] == "BTC"
    assert [row["symbol"] for row in funding["data"]] == ["BTC", "BTC"]
    assert funding["data"][0]["timestamp"] > funding["data"][1]["timestamp"]

    candles = client.get("/series/ohlcv", params={"startDate": "2024-01-01T01:00:00Z"}).json()
    assert candles["count"] == 3
    assert client.get("/series/trades").status_code == 422

    stats = client.get("/analytics/ETH", params={"platform": "fakex"}).json()
    assert stats["totalRecords"] == 3
    assert stats["positiveCount"] == 3
    assert client.get("/analytics/DOGE", params={"platform": "fakex"}).status_code == 404
