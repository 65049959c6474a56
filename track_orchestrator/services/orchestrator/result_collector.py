"""
Result Collector - accumulates unit results and derives the summary.

Skipped items (circuit breaker) are counted apart from failed ones: they
were never attempted and carry no error of their own.
"""

import logging
import time
from typing import Dict, Iterable, List, Optional

from track_orchestrator.services.orchestrator.models import (
    AggregateResult,
    CallStats,
    ItemOutcome,
    ItemResult,
    JobUnitResult,
    ProcessingSummary,
    UnitError,
    now_ms,
)

logger = logging.getLogger(__name__)


def summarize(
    units: Iterable[JobUnitResult],
    call_stats: Optional[CallStats] = None,
    duration_ms: Optional[float] = None,
    total_items: Optional[int] = None,
) -> ProcessingSummary:
    """
    Summary of a set of unit results.

    Args:
        units: unit results
        call_stats: merged analyzer call stats (zeros if None)
        duration_ms: wall-clock duration; defaults to the sum of unit durations
        total_items: items submitted; defaults to the items found in `units`
    """
    units = list(units)
    stats = call_stats or CallStats()
    counts = {outcome: 0 for outcome in ItemOutcome}
    processed_time = 0.0
    processed = 0
    units_complete = units_failed = units_broken = 0

    for unit in units:
        for item in unit.items:
            counts[item.outcome] += 1
            if item.outcome in (ItemOutcome.SUCCESS, ItemOutcome.FAILURE):
                processed += 1
                processed_time += item.duration_ms

        if unit.circuit_broken:
            units_broken += 1
        elif unit.items and unit.items_successful == 0:
            units_failed += 1
        else:
            units_complete += 1

    if duration_ms is None:
        duration_ms = sum(unit.duration_ms for unit in units)

    return ProcessingSummary(
        total_items=total_items if total_items is not None else sum(len(unit.items) for unit in units),
        successful=counts[ItemOutcome.SUCCESS],
        failed=counts[ItemOutcome.FAILURE],
        skipped=counts[ItemOutcome.SKIPPED],
        cancelled=counts[ItemOutcome.CANCELLED],
        duration_ms=duration_ms,
        total_calls=stats.total_calls,
        successful_calls=stats.successful_calls,
        failed_calls=stats.failed_calls,
        retries=stats.retries,
        avg_time_per_item_ms=processed_time / processed if processed else 0.0,
        units_complete=units_complete,
        units_failed=units_failed,
        units_circuit_broken=units_broken,
    )


def merge_unit_results(units: Iterable[JobUnitResult]) -> ProcessingSummary:
    """Summary of unit results produced outside a collector (no call stats)."""
    return summarize(units)


class ResultCollector:
    """Pure accumulator for one Coordinator run."""

    def __init__(self, job_id: str, total_items: int = 0):
        self.job_id = job_id
        self.total_items = total_items
        self.started_at = now_ms()
        self._t0 = time.perf_counter()
        self._units: List[JobUnitResult] = []
        self._call_stats = CallStats()
        self._errors: List[UnitError] = []
        self._completed_at: Optional[float] = None
        self._duration_ms = 0.0

    def add(self, unit_result: JobUnitResult) -> None:
        self._units.append(unit_result)
        logger.debug(
            f"[ResultCollector:{self.job_id}] Unit {unit_result.unit_id} collected "
            f"({len(self._units)} units so far)"
        )

    def merge_call_stats(self, stats: CallStats) -> None:
        self._call_stats = self._call_stats.merge(stats)

    def add_error(self, error: UnitError) -> None:
        """Job-level error (timeout, unexpected exception)."""
        self._errors.append(error)

    def mark_completed(self) -> None:
        if self._completed_at is None:
            self._completed_at = now_ms()
            self._duration_ms = (time.perf_counter() - self._t0) * 1000.0

    @property
    def units(self) -> List[JobUnitResult]:
        return list(self._units)

    @property
    def errors(self) -> List[UnitError]:
        return list(self._errors)

    @property
    def call_stats(self) -> CallStats:
        return self._call_stats

    def summary(self) -> ProcessingSummary:
        """Totals so far (the duration keeps growing until mark_completed)."""
        if self._completed_at is not None:
            duration_ms = self._duration_ms
        else:
            duration_ms = (time.perf_counter() - self._t0) * 1000.0
        return summarize(self._units, self._call_stats, duration_ms, total_items=self.total_items or None)

    def result(self) -> AggregateResult:
        self.mark_completed()
        return AggregateResult(
            units=tuple(self._units),
            summary=self.summary(),
            job_id=self.job_id,
            started_at=self.started_at,
            completed_at=self._completed_at,
            errors=tuple(self._errors),
        )

    # Queries

    def all_item_results(self) -> List[ItemResult]:
        return [item for unit in self._units for item in unit.items]

    def successful_item_results(self) -> List[ItemResult]:
        return [item for item in self.all_item_results() if item.outcome is ItemOutcome.SUCCESS]

    def failed_item_results(self) -> List[ItemResult]:
        return [item for item in self.all_item_results() if item.outcome is ItemOutcome.FAILURE]

    def results_by_unit(self) -> Dict[str, JobUnitResult]:
        return {unit.unit_id: unit for unit in self._units}

    def get_stats(self) -> dict:
        """Monitoring view of the summary, with success rate."""
        summary = self.summary()
        attempted = summary.successful + summary.failed
        return {
            "job_id": self.job_id,
            "units": len(self._units),
            "total_items": self.total_items,
            "processed": len(self.all_item_results()),
            "successful": summary.successful,
            "failed": summary.failed,
            "skipped": summary.skipped,
            "cancelled": summary.cancelled,
            "success_rate": round(summary.successful / attempted, 4) if attempted else 0.0,
            "total_calls": summary.total_calls,
            "retries": summary.retries,
            "avg_time_per_item_ms": round(summary.avg_time_per_item_ms, 1),
            "errors": len(self._errors),
        }
