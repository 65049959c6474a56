"""
Unit Processor - runs every item of one unit (track) sequentially.

Per item:
1. Score the item (synchronous scorer)
2. Up to max_retries + 1 attempts: acquire a call slot, call the analyzer
   with a wall-clock timeout, release the slot
3. Recoverable errors are retried with the configured backoff; the others
   fail the item immediately

Features:
- Circuit breaker on consecutive item failures: later items are skipped
- Cooperative cancellation checked before every item
- Call statistics (calls, successes, failures, retries)
- Never raises: every failure ends up in the JobUnitResult
"""

import asyncio
import logging
import time
from collections.abc import Mapping
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from track_orchestrator.core.constants import (
    ERROR_CODE_CANCELLED,
    ERROR_CODE_CIRCUIT_BREAKER,
    ERROR_CODE_UNEXPECTED,
)
from track_orchestrator.services.concurrency_manager.admission_controller import (
    AdmissionController,
    SlotKind,
)
from track_orchestrator.services.orchestrator.config import OrchestratorConfig
from track_orchestrator.services.orchestrator.errors import (
    AnalyzerTimeoutError,
    ErrorKind,
    SlotUnavailableError,
    classify_error,
    is_recoverable,
)
from track_orchestrator.services.orchestrator.models import (
    CallStats,
    ItemError,
    ItemOutcome,
    ItemResult,
    Job,
    JobUnitResult,
    UnitError,
    WorkItem,
    now_ms,
)
from track_orchestrator.services.orchestrator.progress_bus import ProgressBus

logger = logging.getLogger(__name__)

Scorer = Callable[[WorkItem], Sequence[Any]]
Analyzer = Callable[[WorkItem, Sequence[Any]], Awaitable[Any]]
Sleep = Callable[[float], Awaitable[Any]]


def default_scorer(item: WorkItem) -> Sequence[Any]:
    """Use the precomputed "scores" entry of a mapping payload."""
    if isinstance(item.payload, Mapping):
        return list(item.payload.get("scores") or [])
    return []


class UnitProcessor:
    """
    Processes one Job. One instance per unit: a second run() raises.

    States: idle -> running -> done
    """

    def __init__(
        self,
        job: Job,
        admission: AdmissionController,
        config: OrchestratorConfig,
        analyzer: Analyzer,
        scorer: Scorer = default_scorer,
        bus: Optional[ProgressBus] = None,
        cancel_event: Optional[asyncio.Event] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._job = job
        self._admission = admission
        self._config = config
        self._analyzer = analyzer
        self._scorer = scorer
        self._bus = bus or ProgressBus(name=f"unit-{job.id}")
        self._cancel_event = cancel_event or asyncio.Event()
        self._sleep = sleep

        self.state = "idle"
        self._consecutive_failures = 0
        self._circuit_broken = False
        self._circuit_break_reason: Optional[str] = None

        self._total_calls = 0
        self._successful_calls = 0
        self._failed_calls = 0
        self._retries = 0

    @property
    def unit_id(self) -> str:
        return self._job.id

    @property
    def circuit_broken(self) -> bool:
        return self._circuit_broken

    def get_stats(self) -> CallStats:
        return CallStats(
            total_calls=self._total_calls,
            successful_calls=self._successful_calls,
            failed_calls=self._failed_calls,
            retries=self._retries,
        )

    async def run(self) -> JobUnitResult:
        """
        Process every item of the job.

        Returns:
            JobUnitResult with one ItemResult per item
        """
        if self.state != "idle":
            raise RuntimeError(f"UnitProcessor for {self.unit_id} already used (state={self.state})")
        self.state = "running"

        started_at = now_ms()
        t0 = time.perf_counter()
        items = list(self._job.items)
        results: List[ItemResult] = []
        errors: List[UnitError] = []
        label = f"[UnitProcessor:{self.unit_id}]"

        logger.info(f"{label} Starting: {len(items)} items")
        self._bus.unit_start(self.unit_id, len(items))

        for index, item in enumerate(items):
            if self._cancel_event.is_set():
                errors.append(UnitError("Processing cancelled", ERROR_CODE_CANCELLED, item_id=item.id))
                results.extend(self._cancelled_result(pending) for pending in items[index:])
                logger.info(f"{label} Cancelled with {len(items) - index} items remaining")
                break

            if self._circuit_broken:
                result = ItemResult(
                    item_id=item.id,
                    outcome=ItemOutcome.SKIPPED,
                    skip_reason=self._circuit_break_reason,
                )
                results.append(result)
                self._bus.item_complete(self.unit_id, item.id, result)
                continue

            unexpected = False
            try:
                result = await self._process_item(item)
            except Exception as exc:
                unexpected = True
                message = f"Unexpected error processing item {item.id}: {exc}"
                logger.error(f"{label} {message}", exc_info=True)
                errors.append(UnitError(message, ERROR_CODE_UNEXPECTED, item_id=item.id))
                self._bus.error(message, unit_id=self.unit_id, item_id=item.id, error=exc)
                result = ItemResult(
                    item_id=item.id,
                    outcome=ItemOutcome.FAILURE,
                    errors=(ItemError(
                        kind=ErrorKind.UNKNOWN.value,
                        message=str(exc),
                        retryable=False,
                        attempt=0,
                    ),),
                )

            results.append(result)

            if result.succeeded:
                self._consecutive_failures = 0
            else:
                self._consecutive_failures += 1
                if not unexpected and result.errors:
                    last = result.errors[-1]
                    errors.append(UnitError(last.message, last.kind.upper(), item_id=item.id))
                if self._consecutive_failures >= self._config.circuit_breaker_threshold:
                    self._trip_circuit(item.id, errors)

            self._bus.item_complete(self.unit_id, item.id, result)

        completed_at = now_ms()
        unit_result = JobUnitResult(
            unit_id=self.unit_id,
            items=tuple(results),
            errors=tuple(errors),
            circuit_broken=self._circuit_broken,
            circuit_break_reason=self._circuit_break_reason,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=(time.perf_counter() - t0) * 1000.0,
        )
        self.state = "done"

        logger.info(
            f"{label} Done in {unit_result.duration_ms:.0f}ms: "
            f"{unit_result.items_successful} ok, {unit_result.items_failed} failed, "
            f"{unit_result.items_skipped} skipped, {unit_result.items_cancelled} cancelled"
        )
        self._bus.unit_complete(self.unit_id, unit_result)
        return unit_result

    def _trip_circuit(self, item_id: str, errors: List[UnitError]) -> None:
        self._circuit_broken = True
        self._circuit_break_reason = (
            f"Circuit breaker triggered after {self._consecutive_failures} consecutive failures"
        )
        errors.append(UnitError(self._circuit_break_reason, ERROR_CODE_CIRCUIT_BREAKER, item_id=item_id))
        logger.warning(f"[UnitProcessor:{self.unit_id}] {self._circuit_break_reason}")
        self._bus.warning(self._circuit_break_reason, unit_id=self.unit_id, item_id=item_id)

    @staticmethod
    def _cancelled_result(item: WorkItem) -> ItemResult:
        return ItemResult(item_id=item.id, outcome=ItemOutcome.CANCELLED, skip_reason="Processing cancelled")

    # ------------------------------------------------------------------
    # Item processing
    # ------------------------------------------------------------------

    async def _process_item(self, item: WorkItem) -> ItemResult:
        t0 = time.perf_counter()
        self._bus.item_start(self.unit_id, item.id)
        scores = self._scorer(item)

        attempt_errors: List[ItemError] = []
        attempts = 0
        analysis: Any = None

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.max_retries + 1),
            wait=self._backoff,
            retry=retry_if_exception(is_recoverable),
            before_sleep=self._before_retry,
            sleep=self._sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    analysis = await self._attempt(item, scores, attempts, attempt_errors)
        except Exception as exc:
            duration_ms = (time.perf_counter() - t0) * 1000.0
            logger.warning(
                f"[UnitProcessor:{self.unit_id}] Item {item.id} failed after "
                f"{attempts} attempt(s): {classify_error(exc).value}: {exc}"
            )
            return ItemResult(
                item_id=item.id,
                outcome=ItemOutcome.FAILURE,
                errors=tuple(attempt_errors),
                duration_ms=duration_ms,
                attempts=attempts,
            )

        return ItemResult(
            item_id=item.id,
            outcome=ItemOutcome.SUCCESS,
            analysis=analysis,
            errors=tuple(attempt_errors),
            duration_ms=(time.perf_counter() - t0) * 1000.0,
            attempts=attempts,
        )

    async def _attempt(
        self,
        item: WorkItem,
        scores: Sequence[Any],
        attempt_number: int,
        attempt_errors: List[ItemError],
    ) -> Any:
        """One attempt: call slot -> analyzer (with timeout) -> release."""
        timeout_ms = self._config.item_timeout_ms
        acquisition = await self._admission.acquire(SlotKind.CALL, tag=self.unit_id, timeout_ms=timeout_ms)
        if not acquisition.acquired:
            exc = SlotUnavailableError(acquisition.reason)
            attempt_errors.append(self._item_error(exc, attempt_number))
            raise exc

        had_error = False
        self._total_calls += 1
        try:
            try:
                analysis = await asyncio.wait_for(self._analyzer(item, scores), timeout=timeout_ms / 1000.0)
            except asyncio.TimeoutError as exc:
                raise AnalyzerTimeoutError(f"Analyzer timed out after {timeout_ms:.0f}ms") from exc
        except Exception as exc:
            had_error = True
            self._failed_calls += 1
            attempt_errors.append(self._item_error(exc, attempt_number))
            raise
        finally:
            self._admission.release(acquisition.slot.id, had_error=had_error)

        self._successful_calls += 1
        return analysis

    @staticmethod
    def _item_error(exc: BaseException, attempt_number: int) -> ItemError:
        return ItemError(
            kind=classify_error(exc).value,
            message=str(exc) or type(exc).__name__,
            retryable=is_recoverable(exc),
            attempt=attempt_number,
        )

    def _backoff(self, retry_state: RetryCallState) -> float:
        """Seconds to wait before the next attempt."""
        return self._config.retry_delay_ms(retry_state.attempt_number + 1) / 1000.0

    def _before_retry(self, retry_state: RetryCallState) -> None:
        self._retries += 1
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.info(
            f"[UnitProcessor:{self.unit_id}] Attempt {retry_state.attempt_number} failed "
            f"({exc}); retrying in {delay:.2f}s"
        )
