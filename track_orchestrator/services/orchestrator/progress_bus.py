"""
Progress Bus - single publish/subscribe channel for progress events.

Every event is one of the variants of models.ProgressEvent. Observers either
subscribe a generic listener (receives everything) or pass ProgressCallbacks,
an adapter that dispatches each variant to a named callback on the same
channel.

Listener exceptions are logged and swallowed: an observer can never break a run.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from track_orchestrator.services.orchestrator.models import (
    AggregateResult,
    ErrorEvent,
    EventType,
    ItemCompleteEvent,
    ItemResult,
    ItemStartEvent,
    JobCompleteEvent,
    JobStartEvent,
    JobUnitResult,
    ProgressEvent,
    UnitCompleteEvent,
    UnitStartEvent,
    WarningEvent,
)

logger = logging.getLogger(__name__)

Listener = Callable[[ProgressEvent], Any]
Unsubscribe = Callable[[], None]


class ProgressBus:
    """Broadcast channel of progress events."""

    def __init__(self, name: str = "progress"):
        self._name = name
        self._listeners: List[Listener] = []
        self._published = 0
        self._listener_failures = 0

    def subscribe(self, listener: Listener) -> Unsubscribe:
        """
        Register a listener for every event.

        Returns:
            Function that removes the listener (idempotent)
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            self._listeners = [item for item in self._listeners if item is not listener]

        return unsubscribe

    def publish(self, event: ProgressEvent) -> None:
        """Deliver an event to every listener, in subscription order."""
        self._published += 1
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                self._listener_failures += 1
                logger.error(
                    f"[ProgressBus:{self._name}] Listener failed on {event.type.value}: {exc}",
                    exc_info=True,
                )

    def clear(self) -> None:
        self._listeners.clear()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def get_status(self) -> dict:
        return {
            "name": self._name,
            "listeners": len(self._listeners),
            "published": self._published,
            "listener_failures": self._listener_failures,
        }

    # Publishing helpers

    def job_start(self, job_id: str, units_total: int, items_total: int) -> None:
        self.publish(JobStartEvent(job_id=job_id, units_total=units_total, items_total=items_total))

    def unit_start(self, unit_id: str, items_total: int) -> None:
        self.publish(UnitStartEvent(unit_id=unit_id, items_total=items_total))

    def unit_complete(self, unit_id: str, result: JobUnitResult) -> None:
        self.publish(UnitCompleteEvent(unit_id=unit_id, result=result))

    def item_start(self, unit_id: str, item_id: str) -> None:
        self.publish(ItemStartEvent(unit_id=unit_id, item_id=item_id))

    def item_complete(self, unit_id: str, item_id: str, result: ItemResult) -> None:
        self.publish(ItemCompleteEvent(unit_id=unit_id, item_id=item_id, result=result))

    def error(
        self,
        message: str,
        unit_id: Optional[str] = None,
        item_id: Optional[str] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        self.publish(ErrorEvent(message=message, unit_id=unit_id, item_id=item_id, error=error))

    def warning(self, message: str, unit_id: Optional[str] = None, item_id: Optional[str] = None) -> None:
        self.publish(WarningEvent(message=message, unit_id=unit_id, item_id=item_id))

    def job_complete(self, job_id: str, result: AggregateResult) -> None:
        self.publish(JobCompleteEvent(job_id=job_id, result=result))


@dataclass
class ProgressCallbacks:
    """Named, single-purpose callbacks. All optional."""
    on_job_start: Optional[Callable[[str, int, int], Any]] = None
    on_unit_start: Optional[Callable[[str, int], Any]] = None
    on_unit_complete: Optional[Callable[[str, JobUnitResult], Any]] = None
    on_item_start: Optional[Callable[[str, str], Any]] = None
    on_item_complete: Optional[Callable[[str, str, ItemResult], Any]] = None
    on_error: Optional[Callable[[ErrorEvent], Any]] = None
    on_warning: Optional[Callable[[WarningEvent], Any]] = None
    on_job_complete: Optional[Callable[[AggregateResult], Any]] = None

    def __call__(self, event: ProgressEvent) -> None:
        """Dispatch one event to the matching callback."""
        if event.type is EventType.JOB_START and self.on_job_start:
            self.on_job_start(event.job_id, event.units_total, event.items_total)
        elif event.type is EventType.UNIT_START and self.on_unit_start:
            self.on_unit_start(event.unit_id, event.items_total)
        elif event.type is EventType.UNIT_COMPLETE and self.on_unit_complete:
            self.on_unit_complete(event.unit_id, event.result)
        elif event.type is EventType.ITEM_START and self.on_item_start:
            self.on_item_start(event.unit_id, event.item_id)
        elif event.type is EventType.ITEM_COMPLETE and self.on_item_complete:
            self.on_item_complete(event.unit_id, event.item_id, event.result)
        elif event.type is EventType.ERROR and self.on_error:
            self.on_error(event)
        elif event.type is EventType.WARNING and self.on_warning:
            self.on_warning(event)
        elif event.type is EventType.JOB_COMPLETE and self.on_job_complete:
            self.on_job_complete(event.result)


def attach_callbacks(bus: ProgressBus, callbacks: ProgressCallbacks) -> Unsubscribe:
    """Subscribe named callbacks through the generic channel."""
    return bus.subscribe(callbacks)


def attach_logging_listener(bus: ProgressBus, log: Optional[logging.Logger] = None) -> Unsubscribe:
    """Log every event: start/complete at INFO, warnings and errors at their level."""
    log = log or logger

    def _log_event(event: ProgressEvent) -> None:
        if event.type is EventType.JOB_START:
            log.info(
                f"[Progress] Job {event.job_id} started: "
                f"{event.units_total} units, {event.items_total} items"
            )
        elif event.type is EventType.UNIT_START:
            log.info(f"[Progress] Unit {event.unit_id} started ({event.items_total} items)")
        elif event.type is EventType.UNIT_COMPLETE:
            result = event.result
            log.info(
                f"[Progress] Unit {event.unit_id} done: {result.items_successful} ok, "
                f"{result.items_failed} failed, {result.items_skipped} skipped "
                f"in {result.duration_ms:.0f}ms"
            )
        elif event.type is EventType.ITEM_START:
            log.debug(f"[Progress] Item {event.unit_id}/{event.item_id} started")
        elif event.type is EventType.ITEM_COMPLETE:
            log.debug(
                f"[Progress] Item {event.unit_id}/{event.item_id}: "
                f"{event.result.outcome.value} ({event.result.duration_ms:.0f}ms)"
            )
        elif event.type is EventType.WARNING:
            log.warning(f"[Progress] {event.unit_id or '-'}: {event.message}")
        elif event.type is EventType.ERROR:
            log.error(f"[Progress] {event.unit_id or '-'}: {event.message}")
        elif event.type is EventType.JOB_COMPLETE:
            summary = event.result.summary
            log.info(
                f"[Progress] Job {event.job_id} complete: {summary.successful}/{summary.total_items} ok, "
                f"{summary.failed} failed, {summary.skipped} skipped in {summary.duration_ms:.0f}ms"
            )

    return bus.subscribe(_log_event)
