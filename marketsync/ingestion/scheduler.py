from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Sequence, Set

from marketsync.config import settings
from marketsync.models import FetchResult, PlatformRunSummary, RunStatus, SchedulerRunSummary, SchedulerStatus
from marketsync.utils.guard import RunGuard

logger = logging.getLogger(__name__)


class IncrementalRunner(Protocol):
    def platforms(self) -> List[str]: ...

    async def run_incremental(self, platform: str) -> FetchResult: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(started: datetime, completed: datetime) -> int:
    return int((completed - started).total_seconds() * 1000)


def determine_run_state(results: Sequence[PlatformRunSummary]) -> RunStatus:
    if all(result.status == "success" for result in results):
        return "success"
    if any(result.status in ("success", "partial") for result in results):
        return "partial"
    return "failed"


class FetchScheduler:
    """Periodic incremental fetch across the configured platforms.

    Each tick runs the platforms one after another. A tick that fires while
    the previous run still holds the guard is dropped, not queued.
    """

    def __init__(
        self,
        runner: IncrementalRunner,
        platforms: Optional[Sequence[str]] = None,
        interval_seconds: Optional[int] = None,
    ) -> None:
        self.runner = runner
        self._platforms = list(platforms) if platforms is not None else None
        self.interval_seconds = interval_seconds or settings.fetch_interval_seconds
        self.guard = RunGuard()
        self._last_run: Optional[SchedulerRunSummary] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._ticks: Set[asyncio.Task] = set()

    @property
    def platforms(self) -> List[str]:
        if self._platforms is not None:
            return list(self._platforms)
        return settings.scheduler_platforms or self.runner.platforms()

    @property
    def last_run(self) -> Optional[SchedulerRunSummary]:
        return self._last_run

    async def run_once(self) -> Optional[SchedulerRunSummary]:
        """One tick. Returns None when skipped because a run is active."""
        if not self.guard.try_acquire():
            logger.warning("Scheduled incremental fetch is already running, skipping this tick")
            return None

        started = _now()
        try:
            platforms = self.platforms
            if not platforms:
                message = "No platforms configured for scheduler"
                logger.warning(message)
                self._last_run = SchedulerRunSummary(
                    state="failed", started_at=started, completed_at=_now(), duration_ms=0, error=message
                )
                return self._last_run

            logger.info("Scheduled incremental fetch started for %s", ", ".join(platforms))
            self._last_run = SchedulerRunSummary(state="running", started_at=started)
            results: List[PlatformRunSummary] = []
            try:
                for platform in platforms:
                    results.append(await self._run_platform(platform))
            except asyncio.CancelledError:
                completed = _now()
                self._last_run = SchedulerRunSummary(
                    state="failed",
                    started_at=started,
                    completed_at=completed,
                    duration_ms=_elapsed_ms(started, completed),
                    results=results,
                    error="Run cancelled",
                )
                logger.warning("Scheduled incremental fetch cancelled after %s platform(s)", len(results))
                raise

            completed = _now()
            self._last_run = SchedulerRunSummary(
                state=determine_run_state(results),
                started_at=started,
                completed_at=completed,
                duration_ms=_elapsed_ms(started, completed),
                results=results,
            )
            logger.info(
                "Scheduled incremental fetch finished: %s in %sms",
                self._last_run.state,
                self._last_run.duration_ms,
            )
            return self._last_run
        finally:
            self.guard.release()

    async def _run_platform(self, platform: str) -> PlatformRunSummary:
        started = _now()
        try:
            result = await self.runner.run_incremental(platform)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Scheduled incremental fetch failed for %s", platform)
            completed = _now()
            return PlatformRunSummary(
                platform=platform,
                status="failed",
                started_at=started,
                completed_at=completed,
                duration_ms=_elapsed_ms(started, completed),
                error=str(exc),
            )

        status = result.run_status
        completed = _now()
        logger.info(
            "Scheduled fetch for %s: %s (%s assets, %s records)",
            platform,
            status,
            result.assets_processed,
            result.total_records,
        )
        return PlatformRunSummary(
            platform=platform,
            status=status,
            started_at=started,
            completed_at=completed,
            duration_ms=_elapsed_ms(started, completed),
            assets_processed=result.assets_processed,
            records_fetched=result.total_records,
            error="; ".join(result.errors) if result.errors else None,
        )

    # --- periodic loop ---

    def _spawn_tick(self) -> None:
        task = asyncio.create_task(self.run_once())
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)

    async def _loop(self) -> None:
        logger.info("Scheduler started with interval %s seconds", self.interval_seconds)
        while True:
            self._spawn_tick()
            await asyncio.sleep(self.interval_seconds)

    @property
    def is_scheduled(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        if self.is_scheduled:
            return
        self._loop_task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        tasks = [task for task in (self._loop_task, *self._ticks) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_task = None
        logger.info("Scheduler stopped")

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            interval_seconds=self.interval_seconds,
            is_scheduled=self.is_scheduled,
            is_job_running=self.guard.held,
            last_run=self._last_run,
        )
