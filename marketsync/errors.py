from __future__ import annotations


class MarketSyncError(Exception):
    """Base class for domain errors raised by marketsync."""


class FetchInProgressError(MarketSyncError):
    def __init__(self, platform: str, mode: str) -> None:
        super().__init__(f"A {mode} fetch is already in progress for {platform}")
        self.platform = platform
        self.mode = mode


class UnsupportedPlatformError(MarketSyncError):
    def __init__(self, platform: str) -> None:
        super().__init__(f"Unsupported platform: {platform}")
        self.platform = platform


class AssetNotFoundError(MarketSyncError):
    def __init__(self, asset_id: int) -> None:
        super().__init__(f"Asset not found: {asset_id}")
        self.asset_id = asset_id


class UnknownStageError(MarketSyncError, KeyError):
    def __init__(self, stage: str) -> None:
        super().__init__(f"Unknown progress stage: {stage}")
        self.stage = stage

    def __str__(self) -> str:
        return self.args[0]


class PlatformAPIError(MarketSyncError):
    """A platform answered 200 but reported a failure in its response envelope."""

    def __init__(self, platform: str, message: str) -> None:
        super().__init__(f"{platform} API error: {message}")
        self.platform = platform
