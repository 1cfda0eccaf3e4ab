from __future__ import annotations

import logging
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from marketsync.errors import UnknownStageError
from marketsync.models import (
    STAGE_LABELS,
    DataType,
    FetchStage,
    ProgressEvent,
    ProgressEventType,
    ProgressPhase,
    ProgressStageSnapshot,
    StageStatus,
)

logger = logging.getLogger(__name__)

ProgressListener = Callable[[ProgressEvent], None]

_UNSET = object()


class ProgressTracker:
    """Stage-oriented progress model for one fetch run at a time.

    The tracker knows nothing about what a stage means; pipelines drive it.
    It owns the percentage arithmetic, the run-wide counters and error list,
    and publishes full snapshots to subscribers synchronously.
    """

    def __init__(self) -> None:
        self._listeners: List[ProgressListener] = []
        self._last_event: Optional[ProgressEvent] = None
        self.initialize([], {}, 0)

    def initialize(
        self,
        stage_order: Sequence[FetchStage],
        stage_totals: Mapping[FetchStage, int],
        total_assets: int,
    ) -> None:
        """Reset all state for a new run. Mandatory before every run."""
        self._stage_order: List[FetchStage] = list(stage_order)
        self._stages: Dict[FetchStage, ProgressStageSnapshot] = {
            key: ProgressStageSnapshot(key=key, label=STAGE_LABELS[key], total=max(0, stage_totals.get(key, 0)))
            for key in self._stage_order
        }
        self._phase: ProgressPhase = "fetch"
        self._total_assets = total_assets
        self._processed_assets = 0
        self._current_asset: Optional[str] = None
        self._records: Dict[DataType, int] = {data_type: 0 for data_type in DataType}
        self._resample_records_created = 0
        self._resample_assets_processed = 0
        self._errors: List[str] = []
        self._last_event = None

    @property
    def stage_order(self) -> List[FetchStage]:
        return list(self._stage_order)

    def stage(self, key: FetchStage) -> ProgressStageSnapshot:
        try:
            return self._stages[key].model_copy()
        except KeyError:
            raise UnknownStageError(str(key)) from None

    def update_stage(
        self,
        key: FetchStage,
        *,
        completed: Optional[int] = None,
        total: Optional[int] = None,
        status: Optional[StageStatus] = None,
        message: object = _UNSET,
        current_item: object = _UNSET,
    ) -> ProgressStageSnapshot:
        current = self._stages.get(key)
        if current is None:
            raise UnknownStageError(str(key))

        next_total = current.total if total is None else max(0, total)
        next_completed = current.completed if completed is None else max(0, completed)
        if next_total == current.total:
            # Lanes may report out of order; never walk a stage backwards
            next_completed = max(next_completed, current.completed)
        if next_total > 0:
            next_completed = min(next_completed, next_total)

        next_status = current.status
        if status is not None:
            requested = StageStatus(status)
            if requested == StageStatus.PENDING and current.status != StageStatus.PENDING:
                logger.debug("Ignoring regression of stage %s to pending", key)
            else:
                next_status = requested

        if next_total > 0:
            percentage = min(100, round(100 * next_completed / next_total))
        elif next_status == StageStatus.COMPLETE or next_completed > 0:
            percentage = 100
        else:
            percentage = 0

        updates = {
            "completed": next_completed,
            "total": next_total,
            "status": next_status,
            "percentage": percentage,
        }
        if message is not _UNSET:
            updates["message"] = message
        if current_item is not _UNSET:
            updates["current_item"] = current_item
            self._current_asset = current_item  # type: ignore[assignment]

        snapshot = current.model_copy(update=updates)
        self._stages[key] = snapshot
        return snapshot.model_copy()

    def complete_stage(self, key: FetchStage, message: object = _UNSET) -> ProgressStageSnapshot:
        """Mark ``key`` complete with every unit accounted for."""
        return self.update_stage(key, completed=self.stage(key).total, status=StageStatus.COMPLETE, message=message)

    # --- counters ---

    def set_phase(self, phase: ProgressPhase) -> None:
        self._phase = phase

    def set_total_assets(self, count: int) -> None:
        self._total_assets = count

    def set_processed_assets(self, count: int) -> None:
        self._processed_assets = count

    def set_records(self, data_type: DataType, count: int) -> None:
        self._records[data_type] = count

    def set_resample_stats(self, records_created: int, assets_processed: int) -> None:
        self._resample_records_created = records_created
        self._resample_assets_processed = assets_processed

    def add_error(self, error: str) -> None:
        self._errors.append(error)

    @property
    def errors(self) -> List[str]:
        return list(self._errors)

    # --- publishing ---

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        """Register ``listener`` for every emitted event; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit_progress(
        self,
        event_type: ProgressEventType,
        stage: FetchStage,
        message: Optional[str] = None,
    ) -> ProgressEvent:
        event = self._build_event(event_type, stage, message)
        self._last_event = event
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Progress listener failed")
        return event

    def current_progress(self) -> Optional[ProgressEvent]:
        """Latest snapshot of the active run, or None before the first emit."""
        if self._last_event is None:
            return None
        stage = self._stage_order[0] if self._stage_order else FetchStage.ASSET_DISCOVERY
        return self._build_event("progress", stage, None)

    def overall_percentage(self) -> int:
        weighted = 0.0
        weights = 0
        for key in self._stage_order:
            stage = self._stages[key]
            weight = stage.total if stage.total > 0 else 1
            weights += weight
            weighted += stage.percentage * weight
        if weights == 0:
            return 0
        return min(100, round(weighted / weights))

    def _build_event(
        self,
        event_type: ProgressEventType,
        stage: FetchStage,
        message: Optional[str],
    ) -> ProgressEvent:
        return ProgressEvent(
            type=event_type,
            phase=self._phase,
            stage=stage,
            stages=[self._stages[key].model_copy() for key in self._stage_order],
            total_assets=self._total_assets,
            processed_assets=self._processed_assets,
            current_asset=self._current_asset,
            records_fetched=self._records[DataType.FUNDING],
            ohlcv_records_fetched=self._records[DataType.OHLCV],
            oi_records_fetched=self._records[DataType.OPEN_INTEREST],
            ls_ratio_records_fetched=self._records[DataType.LONG_SHORT_RATIO],
            liquidation_records_fetched=self._records[DataType.LIQUIDATION],
            resample_records_created=self._resample_records_created,
            resample_assets_processed=self._resample_assets_processed,
            errors=list(self._errors),
            percentage=self.overall_percentage(),
            message=message,
        )
