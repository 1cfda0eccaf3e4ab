from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, Sequence, Set

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from marketsync.assets.reconciliation import AssetMappingService
from marketsync.config import settings
from marketsync.errors import AssetNotFoundError, FetchInProgressError, UnsupportedPlatformError
from marketsync.ingestion.clients import build_platform_client
from marketsync.ingestion.fetcher import ClientFactory, FetcherManager, FetchMode, PlatformFetcher
from marketsync.ingestion.scheduler import FetchScheduler
from marketsync.models import (
    Asset,
    AssetFundingStats,
    AssetMapping,
    CamelModel,
    DataType,
    FetcherStatus,
    FetchLog,
    FetchResult,
    MappingRunSummary,
    ProgressEvent,
    SchedulerRunSummary,
    SchedulerStatus,
    UnifiedAsset,
)
from marketsync.storage import ParquetMarketStore

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


class ManualMappingRequest(CamelModel):
    asset_id: int
    normalized_symbol: str


@dataclass
class Services:
    store: ParquetMarketStore
    manager: FetcherManager
    scheduler: FetchScheduler
    mappings: AssetMappingService
    background: Set[asyncio.Task] = field(default_factory=set)

    def launch(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        """Run ``coro`` detached, keeping a reference until it finishes."""
        task = asyncio.ensure_future(coro)
        self.background.add(task)

        def _done(finished: asyncio.Task) -> None:
            self.background.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                logger.error("Background task %s failed: %s", name, finished.exception())

        task.add_done_callback(_done)
        return task


def build_services(
    store: Optional[ParquetMarketStore] = None,
    client_factory: ClientFactory = build_platform_client,
    platforms: Optional[Sequence[str]] = None,
) -> Services:
    store = store or ParquetMarketStore(settings.data_dir)
    manager = FetcherManager(store, client_factory=client_factory, platforms=platforms)
    return Services(
        store=store,
        manager=manager,
        scheduler=FetchScheduler(manager),
        mappings=AssetMappingService(store),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def _fetcher(services: Services, platform: str) -> PlatformFetcher:
    try:
        return services.manager.get(platform)
    except UnsupportedPlatformError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


def _start(fetcher: PlatformFetcher, mode: FetchMode) -> Awaitable[FetchResult]:
    try:
        return fetcher.start(mode)
    except FetchInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


def _sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


router = APIRouter()


@router.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@router.get("/platforms", response_model=List[str])
async def list_platforms(services: Services = Depends(get_services)) -> List[str]:
    return services.manager.platforms()


async def _trigger(services: Services, platform: str, mode: FetchMode, background: bool):
    fetcher = _fetcher(services, platform)
    run = _start(fetcher, mode)
    if background:
        services.launch(run, f"{mode}:{fetcher.platform}")
        return JSONResponse(status_code=202, content={"status": "started", "platform": fetcher.platform, "mode": mode})
    return await run


@router.post("/fetch/{platform}/initial", response_model=FetchResult)
async def trigger_initial(
    platform: str,
    background: bool = Query(False, description="Run the fetch as a background task"),
    services: Services = Depends(get_services),
):
    """Discover assets and pull their full history. Use `background=true` to return immediately."""
    return await _trigger(services, platform, "initial", background)


@router.post("/fetch/{platform}/incremental", response_model=FetchResult)
async def trigger_incremental(
    platform: str,
    background: bool = Query(False, description="Run the fetch as a background task"),
    services: Services = Depends(get_services),
):
    return await _trigger(services, platform, "incremental", background)


@router.get("/fetch/status", response_model=List[FetcherStatus])
async def fetch_status(services: Services = Depends(get_services)) -> List[FetcherStatus]:
    return services.manager.status()


@router.get("/fetch/{platform}/progress", response_model=FetcherStatus)
async def fetch_progress(platform: str, services: Services = Depends(get_services)) -> FetcherStatus:
    return _fetcher(services, platform).status()


@router.get("/fetch/{platform}/stream")
async def stream_progress(
    platform: str,
    trigger: Optional[FetchMode] = Query(None, description="Start a fetch of this kind if none is running"),
    services: Services = Depends(get_services),
) -> StreamingResponse:
    """Server-sent progress events for one platform."""
    fetcher = _fetcher(services, platform)
    queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
    unsubscribe = fetcher.subscribe(queue.put_nowait)

    if trigger and not fetcher.is_running:
        services.launch(fetcher.start(trigger), f"{trigger}:{fetcher.platform}")

    async def events() -> AsyncIterator[str]:
        try:
            yield _sse({"type": "connected", "platform": fetcher.platform})
            current = fetcher.current_progress()
            if current is not None and fetcher.is_running:
                yield _sse(current.model_dump(by_alias=True, mode="json"))

            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=settings.sse_heartbeat_seconds)
                except asyncio.TimeoutError:
                    yield ": heartbeat\n\n"
                    continue
                yield _sse(event.model_dump(by_alias=True, mode="json"))
                if event.type in ("complete", "error"):
                    yield _sse({"type": "done"})
                    break
        finally:
            unsubscribe()

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/scheduler/status", response_model=SchedulerStatus)
async def scheduler_status(services: Services = Depends(get_services)) -> SchedulerStatus:
    return services.scheduler.status()


@router.post("/scheduler/run", response_model=SchedulerRunSummary)
async def scheduler_run(services: Services = Depends(get_services)) -> SchedulerRunSummary:
    summary = await services.scheduler.run_once()
    if summary is None:
        raise HTTPException(status_code=409, detail="A scheduled run is already in progress")
    return summary


@router.post("/mappings/generate", response_model=MappingRunSummary)
async def generate_mappings(services: Services = Depends(get_services)) -> MappingRunSummary:
    return await services.mappings.generate_mappings()


@router.post("/mappings/manual", response_model=AssetMapping)
async def create_manual_mapping(
    payload: ManualMappingRequest,
    services: Services = Depends(get_services),
) -> AssetMapping:
    try:
        return await services.mappings.create_manual_mapping(payload.asset_id, payload.normalized_symbol)
    except AssetNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.delete("/mappings/{mapping_id}")
async def delete_mapping(mapping_id: int, services: Services = Depends(get_services)) -> dict:
    if not await services.mappings.remove_mapping(mapping_id):
        raise HTTPException(status_code=404, detail=f"Mapping not found: {mapping_id}")
    return {"deleted": mapping_id}


@router.get("/assets", response_model=List[Asset])
async def list_assets(
    platform: Optional[str] = Query(None, description="Filter by platform"),
    services: Services = Depends(get_services),
) -> List[Asset]:
    if platform:
        return await services.store.find_by_platform(platform.lower())
    return await services.store.find_all_active()


@router.get("/unified-assets", response_model=List[UnifiedAsset])
async def list_unified_assets(services: Services = Depends(get_services)) -> List[UnifiedAsset]:
    return await services.store.list_unified_assets()


@router.get("/logs", response_model=List[FetchLog])
async def list_logs(
    platform: Optional[str] = Query(None, description="Filter by platform"),
    errors_only: bool = Query(False, description="Only failed or partial runs"),
    limit: int = Query(10, ge=1, le=500),
    services: Services = Depends(get_services),
) -> List[FetchLog]:
    """Recent fetch runs, newest first."""
    return await services.store.list_fetch_logs(
        platform=platform.lower() if platform else None, limit=limit, errors_only=errors_only
    )


async def _series(
    services: Services,
    data_type: DataType,
    platform: Optional[str],
    asset: Optional[str],
    start: Optional[datetime],
    end: Optional[datetime],
    limit: int,
    offset: int,
    filters: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    rows = await services.store.load_time_series(
        data_type,
        platform=platform.lower() if platform else None,
        symbol=asset,
        start=start,
        end=end,
        filters=filters,
        limit=limit,
        offset=offset,
    )
    return {
        "data": rows,
        "count": len(rows),
        "query": {
            "asset": asset or "all",
            "platform": platform or "all",
            "startDate": start,
            "endDate": end,
            "limit": limit,
            "offset": offset,
        },
    }


@router.get("/funding-rates")
async def funding_rates(
    asset: Optional[str] = Query(None, description="Platform symbol, e.g. BTC or BTCUSDT"),
    platform: Optional[str] = Query(None),
    sampling_interval: Optional[str] = Query(None, alias="samplingInterval", description="1h or 8h"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    limit: int = Query(1000, ge=1, le=10_000),
    offset: int = Query(0, ge=0),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    filters = {"sampling_interval": sampling_interval} if sampling_interval else None
    return await _series(services, DataType.FUNDING, platform, asset, start_date, end_date, limit, offset, filters)


@router.get("/series/{data_type}")
async def stored_series(
    data_type: DataType,
    asset: Optional[str] = Query(None),
    platform: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    limit: int = Query(1000, ge=1, le=10_000),
    offset: int = Query(0, ge=0),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Stored rows of any data type, newest first."""
    return await _series(services, data_type, platform, asset, start_date, end_date, limit, offset)


@router.get("/analytics/{asset}", response_model=AssetFundingStats)
async def asset_analytics(
    asset: str,
    platform: str = Query("hyperliquid"),
    services: Services = Depends(get_services),
) -> AssetFundingStats:
    stats = await services.store.funding_stats(asset, platform.lower())
    if stats is None:
        raise HTTPException(status_code=404, detail=f"Asset {asset} not found")
    return stats

def create_app(services: Optional[Services] = None) -> FastAPI:
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if settings.scheduler_enabled:
            services.scheduler.start()
        yield
        await services.scheduler.stop()
        pending = list(services.background)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        await services.manager.aclose()

    app = FastAPI(
        title="MarketSync API",
        version="0.1.0",
        description="Derivatives market data ingestion across perpetual futures exchanges.",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.services = services
    app.include_router(router)
    return app


app = create_app()
