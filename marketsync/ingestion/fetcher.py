from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Literal, Optional, Sequence, Type

from marketsync.errors import FetchInProgressError, UnsupportedPlatformError
from marketsync.ingestion.clients import CLIENT_REGISTRY, PlatformClient, build_platform_client
from marketsync.ingestion.platform_config import PlatformConfig, get_platform_config
from marketsync.ingestion.progress import ProgressListener, ProgressTracker
from marketsync.ingestion.strategies import FetchStrategy, IncrementalFetchStrategy, InitialFetchStrategy
from marketsync.models import FetcherStatus, FetchResult, ProgressEvent
from marketsync.storage import MarketDataStore
from marketsync.utils.guard import RunGuard
from marketsync.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], PlatformClient]
FetchMode = Literal["initial", "incremental"]

STRATEGIES: Dict[str, Type[FetchStrategy]] = {
    InitialFetchStrategy.mode: InitialFetchStrategy,
    IncrementalFetchStrategy.mode: IncrementalFetchStrategy,
}


class PlatformFetcher:
    """Runs fetch strategies for one platform, one run at a time.

    The rate limiter and progress tracker are created once here and shared by
    every run, so all requests to the platform draw from the same budget.
    """

    def __init__(
        self,
        platform: str,
        store: MarketDataStore,
        client: PlatformClient,
        config: Optional[PlatformConfig] = None,
    ) -> None:
        self.platform = platform.lower()
        self.store = store
        self.client = client
        self.config = config or get_platform_config(self.platform)
        self.rate_limiter = RateLimiter(self.config.rate_limit.capacity, self.config.rate_limit.interval_seconds)
        self.tracker = ProgressTracker()
        self._guard = RunGuard()
        self._mode: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._guard.held

    @property
    def mode(self) -> Optional[str]:
        return self._mode

    async def fetch_initial(self) -> FetchResult:
        return await self.start("initial")

    async def fetch_incremental(self) -> FetchResult:
        return await self.start("incremental")

    def start(self, mode: FetchMode) -> Awaitable[FetchResult]:
        """Claim the platform now and return the run to await.

        Raises ``FetchInProgressError`` before any await when another run holds
        the platform, so two callers can never both start. The returned
        coroutine releases the claim when it finishes and must be awaited.
        """
        strategy_cls = STRATEGIES[mode]
        if not self._guard.try_acquire():
            raise FetchInProgressError(self.platform, self._mode or mode)
        self._mode = mode
        return self._run(strategy_cls)

    async def _run(self, strategy_cls: Type[FetchStrategy]) -> FetchResult:
        log_id: Optional[int] = None
        try:
            log_id = (await self.store.create_fetch_log(self.platform, strategy_cls.mode)).id
            strategy = strategy_cls(
                self.platform, self.config, self.client, self.store, self.tracker, self.rate_limiter
            )
            result = await strategy.execute()
            await self.store.complete_fetch_log(log_id, result)
            return result
        except asyncio.CancelledError:
            if log_id is not None:
                await self.store.complete_fetch_log(log_id, FetchResult.failed("Fetch cancelled"))
            raise
        finally:
            self._mode = None
            self._guard.release()

    def current_progress(self) -> Optional[ProgressEvent]:
        return self.tracker.current_progress()

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        return self.tracker.subscribe(listener)

    def status(self) -> FetcherStatus:
        return FetcherStatus(
            platform=self.platform,
            is_running=self.is_running,
            mode=self._mode,
            progress=self.current_progress() if self.is_running else None,
        )

    async def aclose(self) -> None:
        await self.client.aclose()


class FetcherManager:
    """Lazily creates one fetcher per platform over a shared store."""

    def __init__(
        self,
        store: MarketDataStore,
        client_factory: ClientFactory = build_platform_client,
        platforms: Optional[Sequence[str]] = None,
    ) -> None:
        self.store = store
        self.client_factory = client_factory
        self._platforms = [p.lower() for p in (platforms if platforms is not None else CLIENT_REGISTRY)]
        self._fetchers: Dict[str, PlatformFetcher] = {}

    def platforms(self) -> List[str]:
        return list(self._platforms)

    def get(self, platform: str) -> PlatformFetcher:
        key = platform.lower()
        if key not in self._platforms:
            raise UnsupportedPlatformError(platform)
        fetcher = self._fetchers.get(key)
        if fetcher is None:
            fetcher = PlatformFetcher(key, self.store, self.client_factory(key))
            self._fetchers[key] = fetcher
            logger.info("Created fetcher for %s", key)
        return fetcher

    async def run_initial(self, platform: str) -> FetchResult:
        return await self.get(platform).fetch_initial()

    async def run_incremental(self, platform: str) -> FetchResult:
        return await self.get(platform).fetch_incremental()

    def status(self) -> List[FetcherStatus]:
        return [
            self._fetchers[p].status() if p in self._fetchers else FetcherStatus(platform=p, is_running=False)
            for p in self._platforms
        ]

    async def aclose(self) -> None:
        for fetcher in self._fetchers.values():
            await fetcher.aclose()
        self._fetchers.clear()
