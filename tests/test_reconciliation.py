from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

import pytest

from marketsync.assets.reconciliation import AssetMappingService, confidence_score, display_name
from marketsync.errors import AssetNotFoundError
from marketsync.models import Asset, AssetMapping, PlatformAsset, UnifiedAsset


class InMemoryMappingStore:
    def __init__(self, assets: List[Asset]) -> None:
        self.assets = {asset.id: asset for asset in assets}
        self.unified: Dict[str, UnifiedAsset] = {}
        self.mappings: Dict[int, AssetMapping] = {}

    async def find_all_active(self):
        return [asset for asset in self.assets.values() if asset.is_active]

    async def find_asset(self, asset_id):
        return self.assets.get(asset_id)

    async def find_unified_by_symbol(self, normalized_symbol):
        return self.unified.get(normalized_symbol)

    async def create_unified_asset(self, normalized_symbol, display_name, description=None, external_id=None):
        if normalized_symbol not in self.unified:
            self.unified[normalized_symbol] = UnifiedAsset(
                id=len(self.unified) + 1,
                normalized_symbol=normalized_symbol,
                display_name=display_name,
                description=description,
                external_id=external_id,
            )
        return self.unified[normalized_symbol]

    async def find_mapping(self, unified_asset_id, asset_id) -> Optional[AssetMapping]:
        return next(
            (m for m in self.mappings.values() if (m.unified_asset_id, m.asset_id) == (unified_asset_id, asset_id)),
            None,
        )

    async def find_mappings_by_asset(self, asset_id):
        return [m for m in self.mappings.values() if m.asset_id == asset_id]

    async def upsert_mapping(self, mapping):
        existing = await self.find_mapping(mapping.unified_asset_id, mapping.asset_id)
        mapping_id = existing.id if existing is not None else max(self.mappings, default=0) + 1
        stored = mapping.model_copy(update={"id": mapping_id})
        self.mappings[mapping_id] = stored
        return stored

    async def delete_mapping(self, mapping_id):
        return self.mappings.pop(mapping_id, None) is not None


def test_confidence_buckets_and_display_names():
    assert confidence_score("BTC", "BTC") == 100
    assert confidence_score("btcusdt", "BTC") == 95
    assert confidence_score("1000PEPEUSDT", "PEPE") == 90
    assert display_name("ETH") == "Ethereum"
    assert display_name("WIF") == "WIF"


def test_generate_mappings_groups_platforms(store):
    async def scenario():
        await store.bulk_upsert_assets(
            [
                PlatformAsset(symbol="BTC", platform="hyperliquid"),
                PlatformAsset(symbol="BTCUSDT", platform="binance"),
                PlatformAsset(symbol="BTC-USDT-SWAP", platform="okx"),
                PlatformAsset(symbol="DOGEUSDT", platform="binance"),
            ]
        )
        service = AssetMappingService(store)
        first = await service.generate_mappings()
        second = await service.generate_mappings()
        return first, second, await store.list_unified_assets(), await store.list_mappings()

    first, second, unified, mappings = asyncio.run(scenario())

    assert (first.unified_assets_created, first.mappings_created, first.mappings_updated) == (1, 3, 0)
    assert (second.unified_assets_created, second.mappings_created, second.mappings_updated) == (0, 0, 0)
    assert [(u.normalized_symbol, u.display_name) for u in unified] == [("BTC", "Bitcoin")]
    assert unified[0].description == "Perpetual futures contract for BTC"
    assert sorted(m.confidence_score for m in mappings) == [95, 95, 100]
    assert {m.mapping_method for m in mappings} == {"auto_symbol"}


def test_manual_mapping_survives_regeneration():
    store = InMemoryMappingStore(
        [
            Asset(id=42, symbol="FOOUSD", platform="kraken"),
            Asset(id=7, symbol="FOO", platform="hyperliquid"),
        ]
    )
    service = AssetMappingService(store)

    async def scenario():
        manual = await service.create_manual_mapping(42, " foo ")
        summary = await service.generate_mappings()
        return manual, summary, await service.mappings_for_asset(42), await service.mappings_for_asset(7)

    manual, summary, for_manual, for_other = asyncio.run(scenario())

    assert manual.confidence_score == 100
    assert manual.mapping_method == "manual"
    assert store.unified["FOO"].id == manual.unified_asset_id
    assert for_manual == [manual]
    assert summary.mappings_created == 1
    assert [m.mapping_method for m in for_other] == ["auto_symbol"]


def test_manual_mapping_replaces_heuristic_choice():
    store = InMemoryMappingStore(
        [
            Asset(id=1, symbol="ABCUSDT", platform="binance"),
            Asset(id=2, symbol="ABC", platform="hyperliquid"),
        ]
    )
    service = AssetMappingService(store)

    async def scenario():
        await service.generate_mappings()
        await service.create_manual_mapping(1, "ABCD")
        return await service.mappings_for_asset(1)

    mappings = asyncio.run(scenario())

    assert len(mappings) == 1
    assert mappings[0].unified_asset_id == store.unified["ABCD"].id
    assert mappings[0].mapping_method == "manual"


def test_manual_mapping_for_unknown_asset():
    service = AssetMappingService(InMemoryMappingStore([]))

    with pytest.raises(AssetNotFoundError):
        asyncio.run(service.create_manual_mapping(999, "BTC"))


def test_remove_mapping():
    store = InMemoryMappingStore([Asset(id=3, symbol="SOL", platform="hyperliquid")])
    service = AssetMappingService(store)

    async def scenario():
        mapping = await service.create_manual_mapping(3, "SOL")
        return await service.remove_mapping(mapping.id), await service.remove_mapping(mapping.id)

    assert asyncio.run(scenario()) == (True, False)
