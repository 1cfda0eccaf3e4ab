from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional, Protocol, Sequence, TypeVar

logger = logging.getLogger(__name__)

QUOTE_SUFFIXES = (
    "USDT",
    "USDC",
    "USD",
    "BUSD",
    "PERP",
    "PERPETUAL",
    "-PERP",
    "-PERPETUAL",
    "-USD",
    "-USDT",
    "-USDC",
    "/USDT",
    "/USD",
    "/USDC",
)
# Longest first so "-USDT" wins over "USDT"
_SUFFIXES_BY_LENGTH = sorted(QUOTE_SUFFIXES, key=len, reverse=True)

# Patterns removed before the generic suffix pass, e.g. OKX "BTC-USDT-SWAP"
_PLATFORM_PATTERNS: Dict[str, re.Pattern[str]] = {
    "okx": re.compile(r"-SWAP$"),
}

_TRAILING_SEPARATORS = re.compile(r"[-/]+$")


class HasSymbol(Protocol):
    symbol: str
    platform: str


A = TypeVar("A", bound=HasSymbol)


def normalize_symbol(symbol: str, platform: Optional[str] = None) -> str:
    """Reduce a platform symbol to its base asset: ``BTCUSDT`` -> ``BTC``.

    Only one quote/perp suffix is stripped, so ``USDCUSDT`` becomes ``USDC``.
    """
    if not symbol:
        return ""

    normalized = symbol.strip().upper()
    pattern = _PLATFORM_PATTERNS.get((platform or "").lower())
    if pattern is not None:
        normalized = pattern.sub("", normalized)

    for suffix in _SUFFIXES_BY_LENGTH:
        if normalized.endswith(suffix):
            normalized = normalized[: -len(suffix)]
            break

    normalized = _TRAILING_SEPARATORS.sub("", normalized)
    logger.debug("Symbol normalized: %s -> %s (%s)", symbol, normalized, platform)
    return normalized


def is_same_asset(symbol_a: str, platform_a: str, symbol_b: str, platform_b: str) -> bool:
    return normalize_symbol(symbol_a, platform_a) == normalize_symbol(symbol_b, platform_b)


def group_by_normalized_symbol(assets: Sequence[A]) -> Dict[str, List[A]]:
    """Bucket assets by normalized symbol, preserving input order within each bucket."""
    grouped: Dict[str, List[A]] = {}
    for asset in assets:
        grouped.setdefault(normalize_symbol(asset.symbol, asset.platform), []).append(asset)
    return grouped
