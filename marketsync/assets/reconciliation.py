from __future__ import annotations

import logging
from typing import List, Sequence, Tuple

from marketsync.assets.symbols import group_by_normalized_symbol
from marketsync.errors import AssetNotFoundError
from marketsync.models import Asset, AssetMapping, MappingRunSummary, UnifiedAsset
from marketsync.storage import AssetMappingStore

logger = logging.getLogger(__name__)

DISPLAY_NAMES = {
    "BTC": "Bitcoin",
    "ETH": "Ethereum",
    "SOL": "Solana",
    "AVAX": "Avalanche",
    "MATIC": "Polygon",
    "BNB": "Binance Coin",
    "ADA": "Cardano",
    "DOT": "Polkadot",
    "LINK": "Chainlink",
    "UNI": "Uniswap",
    "ATOM": "Cosmos",
    "XRP": "Ripple",
    "DOGE": "Dogecoin",
    "LTC": "Litecoin",
    "BCH": "Bitcoin Cash",
}


def display_name(normalized_symbol: str) -> str:
    return DISPLAY_NAMES.get(normalized_symbol, normalized_symbol)


def confidence_score(symbol: str, normalized_symbol: str) -> int:
    """Three-bucket heuristic: exact 100, suffix stripped 95, anything else 90."""
    upper = symbol.upper()
    if upper == normalized_symbol:
        return 100
    if upper.startswith(normalized_symbol):
        return 95
    return 90


class AssetMappingService:
    """Groups per-platform assets under unified cross-platform assets."""

    def __init__(self, store: AssetMappingStore) -> None:
        self.store = store

    async def _get_or_create_unified(self, normalized_symbol: str) -> Tuple[UnifiedAsset, bool]:
        unified = await self.store.find_unified_by_symbol(normalized_symbol)
        if unified is not None:
            return unified, False
        unified = await self.store.create_unified_asset(
            normalized_symbol,
            display_name(normalized_symbol),
            description=f"Perpetual futures contract for {normalized_symbol}",
        )
        logger.info("Created unified asset: %s", normalized_symbol)
        return unified, True

    async def generate_mappings(self) -> MappingRunSummary:
        """Map every multi-platform symbol group. Safe to re-run."""
        assets = await self.store.find_all_active()
        groups = group_by_normalized_symbol(assets)
        logger.info("Grouped %s active assets into %s normalized symbols", len(assets), len(groups))

        summary = MappingRunSummary()
        for normalized_symbol, members in groups.items():
            if not normalized_symbol or len(members) < 2:
                continue
            try:
                created_unified, created, updated = await self._map_group(normalized_symbol, members)
            except Exception as exc:  # noqa: BLE001
                logger.error("Failed to create mappings for %s: %s", normalized_symbol, exc)
                continue
            summary.unified_assets_created += int(created_unified)
            summary.mappings_created += created
            summary.mappings_updated += updated

        logger.info(
            "Asset mapping generation complete: %s unified assets created, %s mappings created, %s updated",
            summary.unified_assets_created,
            summary.mappings_created,
            summary.mappings_updated,
        )
        return summary

    async def _map_group(self, normalized_symbol: str, members: Sequence[Asset]) -> Tuple[bool, int, int]:
        logger.debug(
            "Processing %s across %s", normalized_symbol, ", ".join(f"{a.platform}:{a.symbol}" for a in members)
        )
        unified, created_unified = await self._get_or_create_unified(normalized_symbol)
        created = updated = 0
        for asset in members:
            existing = await self.store.find_mappings_by_asset(asset.id)
            # Manual decisions are never revisited by the heuristic
            if any(mapping.mapping_method == "manual" for mapping in existing):
                continue

            score = confidence_score(asset.symbol, normalized_symbol)
            current = next((m for m in existing if m.unified_asset_id == unified.id), None)
            if current is not None and current.confidence_score == score and current.mapping_method == "auto_symbol":
                continue

            await self.store.upsert_mapping(
                AssetMapping(
                    unified_asset_id=unified.id,
                    asset_id=asset.id,
                    confidence_score=score,
                    mapping_method="auto_symbol",
                )
            )
            if current is None:
                created += 1
            else:
                updated += 1
        return created_unified, created, updated

    async def create_manual_mapping(self, asset_id: int, normalized_symbol: str) -> AssetMapping:
        asset = await self.store.find_asset(asset_id)
        if asset is None:
            raise AssetNotFoundError(asset_id)

        symbol = normalized_symbol.strip().upper()
        unified, _ = await self._get_or_create_unified(symbol)

        # The manual mapping replaces whatever the heuristic decided for this asset
        for mapping in await self.store.find_mappings_by_asset(asset_id):
            if mapping.unified_asset_id != unified.id and mapping.mapping_method != "manual" and mapping.id is not None:
                await self.store.delete_mapping(mapping.id)

        mapping = await self.store.upsert_mapping(
            AssetMapping(
                unified_asset_id=unified.id,
                asset_id=asset_id,
                confidence_score=100,
                mapping_method="manual",
            )
        )
        logger.info("Manual mapping created: asset_id=%s -> %s", asset_id, symbol)
        return mapping

    async def remove_mapping(self, mapping_id: int) -> bool:
        removed = await self.store.delete_mapping(mapping_id)
        if removed:
            logger.info("Removed mapping %s", mapping_id)
        return removed

    async def mappings_for_asset(self, asset_id: int) -> List[AssetMapping]:
        return await self.store.find_mappings_by_asset(asset_id)
