from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, Tuple, Union

from marketsync.config import settings

Interval = Union[str, int]

SUPPORTED_PLATFORMS: Tuple[str, ...] = ("hyperliquid", "binance", "bybit", "okx", "dydx", "aster")


@dataclass(frozen=True)
class RateLimitConfig:
    capacity: int
    interval_seconds: float = 60.0


@dataclass(frozen=True)
class PlatformConfig:
    """Static fetch policy for one platform. Pure data, no I/O."""

    platform: str
    sampling_interval: str = "8h"
    ohlcv_interval: Interval = "1h"
    oi_interval: Interval = "1h"
    ls_ratio_interval: str = "1h"
    concurrency: int = 1
    ls_ratio_concurrency: int | None = None
    ls_ratio_delay_ms: int = 0
    rate_limit: RateLimitConfig = RateLimitConfig(capacity=600)
    snapshot_only_open_interest: bool = False
    resample_funding: bool = False

    def is_snapshot_only_open_interest(self) -> bool:
        """True when the platform exposes only a current OI value, not a history."""
        return self.snapshot_only_open_interest

    @property
    def effective_ls_ratio_concurrency(self) -> int:
        return self.ls_ratio_concurrency or self.concurrency


# Rate limits follow each exchange's published public-endpoint budget, kept conservative.
_PLATFORM_DEFAULTS: Dict[str, PlatformConfig] = {
    "hyperliquid": PlatformConfig(
        platform="hyperliquid",
        sampling_interval="1h",
        concurrency=5,
        rate_limit=RateLimitConfig(capacity=1200),
        snapshot_only_open_interest=True,
        resample_funding=True,
    ),
    "binance": PlatformConfig(
        platform="binance",
        ls_ratio_interval="5m",
        concurrency=1,
        rate_limit=RateLimitConfig(capacity=2400),
    ),
    "bybit": PlatformConfig(
        platform="bybit",
        ohlcv_interval=60,
        ls_ratio_interval="5min",
        concurrency=10,
        rate_limit=RateLimitConfig(capacity=7200),
    ),
    "okx": PlatformConfig(
        platform="okx",
        ohlcv_interval="1H",
        oi_interval="1H",
        ls_ratio_interval="1H",
        concurrency=2,
        ls_ratio_concurrency=1,
        ls_ratio_delay_ms=600,
        rate_limit=RateLimitConfig(capacity=600),
    ),
    "dydx": PlatformConfig(
        platform="dydx",
        ohlcv_interval="1HOUR",
        oi_interval="1HOUR",
        concurrency=1,
        rate_limit=RateLimitConfig(capacity=100),
    ),
    "aster": PlatformConfig(
        platform="aster",
        sampling_interval="1h",
        concurrency=2,
        rate_limit=RateLimitConfig(capacity=600),
        snapshot_only_open_interest=True,
    ),
}


def get_platform_config(platform: str) -> PlatformConfig:
    """Policy for ``platform``; unknown platforms get conservative defaults."""
    key = platform.lower()
    config = _PLATFORM_DEFAULTS.get(key) or PlatformConfig(platform=key)

    override = settings.concurrency_override(key)
    if override is not None:
        config = replace(config, concurrency=override)
    return config
