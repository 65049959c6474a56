"""
Coordinator - runs a batch of jobs through a bounded worker pool.

Flow of one run:
1. Validate jobs, assign a job id, open the progress channel
2. Sort jobs by ascending priority (no priority = last)
3. Start min(max_concurrent_units, len(jobs)) workers; each one repeatedly
   acquires a track slot, pops the next job, runs a UnitProcessor and feeds
   the ResultCollector
4. Build the AggregateResult

Features:
- Graceful degradation: unexpected errors never escape run(); the partial
  result is returned with state "failed"
- Cooperative cancellation and job deadline (job_timeout_ms)
- Immutable status snapshots with ETA
- Explicit instances: create one Coordinator per independent batch,
  reset() before reusing it
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Iterable, List, Optional

from track_orchestrator.core.constants import (
    ERROR_CODE_JOB_TIMEOUT,
    ERROR_CODE_UNEXPECTED,
    TRACK_SLOT_RETRY_DELAY_MS,
)
from track_orchestrator.services.concurrency_manager.adaptive_throttle import ThrottleSettings
from track_orchestrator.services.concurrency_manager.admission_controller import (
    REASON_RESET,
    AdmissionController,
    SlotKind,
)
from track_orchestrator.services.concurrency_manager.config_loader import get_section
from track_orchestrator.services.orchestrator.config import OrchestratorConfig
from track_orchestrator.services.orchestrator.models import (
    TERMINAL_STATES,
    AggregateResult,
    EventType,
    Job,
    JobUnitResult,
    ProcessingState,
    ProcessingStatus,
    ProgressEvent,
    UnitError,
    now_ms,
)
from track_orchestrator.services.orchestrator.progress_bus import (
    Listener,
    ProgressBus,
    ProgressCallbacks,
    Unsubscribe,
    attach_callbacks,
)
from track_orchestrator.services.orchestrator.result_collector import ResultCollector
from track_orchestrator.services.orchestrator.unit_processor import (
    Analyzer,
    Scorer,
    Sleep,
    UnitProcessor,
    default_scorer,
)

logger = logging.getLogger(__name__)


def _new_job_id() -> str:
    return f"job-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


@dataclass
class _RunContext:
    """State owned by one run. reset() detaches it without tearing it down."""
    job_id: str
    collector: ResultCollector
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    timed_out: bool = False
    failed: bool = False


class Coordinator:
    """
    Root of the orchestrator: one instance per batch run.

    A Coordinator runs once; call reset() (or build a new one) for the next run.
    """

    def __init__(
        self,
        analyzer: Analyzer,
        scorer: Scorer = default_scorer,
        config: Optional[OrchestratorConfig] = None,
        admission: Optional[AdmissionController] = None,
        sleep: Sleep = asyncio.sleep,
        track_retry_delay_ms: Optional[float] = None,
    ):
        """
        Args:
            analyzer: async analyzer collaborator
            scorer: sync scorer collaborator
            config: orchestrator config (default: configs/orchestrator.json)
            admission: admission controller (default: built from config)
            sleep: coroutine used for backoff and track-slot retry delays
            track_retry_delay_ms: wait before retrying a refused track slot
        """
        self._config = config or OrchestratorConfig.load()
        self._analyzer = analyzer
        self._scorer = scorer
        self._sleep = sleep

        if track_retry_delay_ms is None:
            track_retry_delay_ms = get_section("admission").get(
                "track_slot_retry_delay_ms", TRACK_SLOT_RETRY_DELAY_MS
            )
        self._track_retry_delay_ms = float(track_retry_delay_ms)

        self._admission = admission or AdmissionController(
            max_concurrent_units=self._config.max_concurrent_units,
            max_concurrent_calls=self._config.max_concurrent_calls,
            rate_limit_per_minute=self._config.rate_limit_per_minute,
            adaptive_throttling=self._config.adaptive_throttling,
            throttle_settings=ThrottleSettings.from_dict(
                get_section("throttle"), enabled=self._config.adaptive_throttling
            ),
        )

        self._bus = ProgressBus(name="coordinator")
        self._bus.subscribe(self._track_progress)

        self._clear_run_state()

    def _clear_run_state(self) -> None:
        self._state = ProcessingState.IDLE
        self._job_id: Optional[str] = None
        self._units_total = 0
        self._units_complete = 0
        self._items_total = 0
        self._items_processed = 0
        self._current_unit: Optional[str] = None
        self._started_at: Optional[float] = None
        self._t0: Optional[float] = None
        self._run: Optional[_RunContext] = None

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def admission(self) -> AdmissionController:
        return self._admission

    @property
    def collector(self) -> Optional[ResultCollector]:
        return self._run.collector if self._run else None

    async def run(
        self,
        jobs: Iterable[Job],
        callbacks: Optional[ProgressCallbacks] = None,
        job_id: Optional[str] = None,
    ) -> AggregateResult:
        """
        Process a batch of jobs.

        Args:
            jobs: jobs to run (unique ids)
            callbacks: optional named callbacks for this run
            job_id: id to use instead of a generated one

        Returns:
            AggregateResult, partial when the run was cancelled or failed

        Raises:
            RuntimeError: the coordinator already ran (call reset())
            TypeError / ValueError: invalid jobs
        """
        if self._state is not ProcessingState.IDLE:
            raise RuntimeError(
                f"Coordinator is {self._state.value}; call reset() before starting a new run"
            )

        jobs = list(jobs)
        self._validate(jobs)

        job_id = job_id or _new_job_id()
        total_items = sum(len(job.items) for job in jobs)

        self._state = ProcessingState.STARTING
        self._job_id = job_id
        self._units_total = len(jobs)
        self._items_total = total_items
        self._started_at = now_ms()
        self._t0 = time.perf_counter()
        run = _RunContext(job_id=job_id, collector=ResultCollector(job_id, total_items))
        self._run = run

        unsubscribe = attach_callbacks(self._bus, callbacks) if callbacks else None
        loop = asyncio.get_running_loop()
        deadline = loop.call_later(self._config.job_timeout_ms / 1000.0, self._on_job_timeout, run)

        worker_count = min(self._config.max_concurrent_units, len(jobs))
        logger.info(
            f"[Coordinator] Job {job_id} starting: {len(jobs)} units, {total_items} items, "
            f"{worker_count} workers"
        )

        try:
            self._bus.job_start(job_id, len(jobs), total_items)
            queue: Deque[Job] = deque(sorted(jobs, key=lambda job: job.sort_key))
            self._state = ProcessingState.PROCESSING

            workers = [asyncio.create_task(self._worker(run, index, queue)) for index in range(worker_count)]
            outcomes = await asyncio.gather(*workers, return_exceptions=True)

            for outcome in outcomes:
                if isinstance(outcome, Exception):
                    self._record_failure(run, outcome)
        except asyncio.CancelledError:
            # The caller's task was cancelled: stop the workers and propagate
            run.cancel_event.set()
            run.collector.mark_completed()
            if self._run is run:
                self._state = ProcessingState.CANCELLED
            if unsubscribe:
                unsubscribe()
            raise
        except Exception as exc:
            self._record_failure(run, exc)
        finally:
            deadline.cancel()

        current = self._run is run
        if current:
            self._state = ProcessingState.COMPLETING
            self._current_unit = None
        result = run.collector.result()
        final_state = self._final_state(run)
        if current:
            self._state = final_state

        logger.info(
            f"[Coordinator] Job {job_id} {final_state.value} in {result.summary.duration_ms:.0f}ms: "
            f"{result.summary.successful} ok, {result.summary.failed} failed, "
            f"{result.summary.skipped} skipped, {result.summary.cancelled} cancelled"
        )
        self._bus.job_complete(job_id, result)
        if unsubscribe:
            unsubscribe()
        return result

    async def run_single(self, job: Job, callbacks: Optional[ProgressCallbacks] = None) -> JobUnitResult:
        """Run one job and return its unit result."""
        result = await self.run([job], callbacks)
        if result.units:
            return result.units[0]
        return JobUnitResult(unit_id=job.id, errors=result.errors)

    def cancel(self) -> bool:
        """
        Stop starting new units and items. In-flight analyzer calls finish
        (bounded by item_timeout_ms).

        Returns:
            False when nothing is running
        """
        run = self._run
        if run is None or self._state in TERMINAL_STATES or self._state is ProcessingState.IDLE:
            return False
        if not run.cancel_event.is_set():
            logger.info(f"[Coordinator] Cancellation requested for job {run.job_id}")
            run.cancel_event.set()
        return True

    def status(self) -> ProcessingStatus:
        """Immutable snapshot of the current run."""
        eta: Optional[float] = None
        if self._state is ProcessingState.PROCESSING and self._items_processed and self._t0 is not None:
            elapsed_ms = (time.perf_counter() - self._t0) * 1000.0
            remaining = max(0, self._items_total - self._items_processed)
            eta = elapsed_ms / self._items_processed * remaining

        return ProcessingStatus(
            active=self._state in (
                ProcessingState.STARTING,
                ProcessingState.PROCESSING,
                ProcessingState.COMPLETING,
            ),
            state=self._state,
            units_complete=self._units_complete,
            units_total=self._units_total,
            items_processed=self._items_processed,
            items_total=self._items_total,
            current_unit=self._current_unit,
            job_id=self._job_id,
            started_at=self._started_at,
            estimated_time_remaining_ms=eta,
        )

    def subscribe(self, listener: Listener) -> Unsubscribe:
        """Listen to every progress event of this coordinator (all runs)."""
        return self._bus.subscribe(listener)

    def update_config(self, **partial: Any) -> OrchestratorConfig:
        """
        Change configuration. Limits apply immediately; other fields apply
        to units started afterwards.
        """
        self._config = self._config.merged(**partial)
        self._admission.update_config(
            max_concurrent_units=partial.get("max_concurrent_units"),
            max_concurrent_calls=partial.get("max_concurrent_calls"),
            rate_limit_per_minute=partial.get("rate_limit_per_minute"),
            adaptive_throttling=partial.get("adaptive_throttling"),
        )
        logger.info(f"[Coordinator] Config updated: {sorted(k for k, v in partial.items() if v is not None)}")
        return self._config

    def reset(self) -> None:
        """
        Back to idle: cancels a running job and resets admission state.

        A run still in flight is detached: it stops at the next item and its
        run() returns its own partial result without touching this status.
        """
        if self._run is not None:
            self._run.cancel_event.set()
        self._admission.reset()
        self._clear_run_state()
        logger.info("[Coordinator] Reset")

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker(self, run: _RunContext, worker_id: int, queue: Deque[Job]) -> None:
        tag = f"worker-{worker_id}"
        while queue:
            if run.cancel_event.is_set():
                return

            acquisition = await self._admission.acquire(
                SlotKind.TRACK, tag=tag, timeout_ms=self._config.job_timeout_ms
            )
            if not acquisition.acquired:
                if acquisition.reason == REASON_RESET:
                    return
                logger.debug(
                    f"[Coordinator] {tag}: track slot refused ({acquisition.reason}); "
                    f"retrying in {self._track_retry_delay_ms:.0f}ms"
                )
                await self._sleep(self._track_retry_delay_ms / 1000.0)
                continue

            try:
                if run.cancel_event.is_set() or not queue:
                    continue
                job = queue.popleft()
                await self._run_unit(run, job)
            finally:
                self._admission.release(acquisition.slot.id)

    async def _run_unit(self, run: _RunContext, job: Job) -> None:
        if self._run is run:
            self._current_unit = job.id
        processor = UnitProcessor(
            job,
            admission=self._admission,
            config=self._config,
            analyzer=self._analyzer,
            scorer=self._scorer,
            bus=self._bus,
            cancel_event=run.cancel_event,
            sleep=self._sleep,
        )
        try:
            unit_result = await processor.run()
        except Exception as exc:
            message = f"Unexpected error processing unit {job.id}: {exc}"
            logger.error(f"[Coordinator] {message}", exc_info=True)
            self._bus.error(message, unit_id=job.id, error=exc)
            unit_result = JobUnitResult(
                unit_id=job.id,
                errors=(UnitError(message, ERROR_CODE_UNEXPECTED),),
                started_at=now_ms(),
                completed_at=now_ms(),
            )

        run.collector.add(unit_result)
        run.collector.merge_call_stats(processor.get_stats())
        if self._run is run:
            self._units_complete += 1

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(jobs: List[Job]) -> None:
        seen = set()
        for job in jobs:
            if not isinstance(job, Job):
                raise TypeError(f"Expected Job, got {type(job).__name__}")
            if job.id in seen:
                raise ValueError(f"Duplicate unit id: {job.id}")
            seen.add(job.id)

    def _track_progress(self, event: ProgressEvent) -> None:
        if self._run is None:
            return
        if event.type is EventType.ITEM_COMPLETE:
            self._items_processed += 1
        elif event.type is EventType.UNIT_START:
            self._current_unit = event.unit_id

    def _on_job_timeout(self, run: _RunContext) -> None:
        if run.cancel_event.is_set():
            return
        run.timed_out = True
        message = f"Job timed out after {self._config.job_timeout_ms:.0f}ms"
        logger.error(f"[Coordinator] {run.job_id}: {message}")
        run.collector.add_error(UnitError(message, ERROR_CODE_JOB_TIMEOUT))
        self._bus.error(message)
        run.cancel_event.set()

    def _record_failure(self, run: _RunContext, exc: BaseException) -> None:
        run.failed = True
        message = f"Unexpected error in job {run.job_id}: {exc}"
        logger.error(f"[Coordinator] {message}", exc_info=exc)
        run.collector.add_error(UnitError(message, ERROR_CODE_UNEXPECTED))
        self._bus.error(message, error=exc)

    @staticmethod
    def _final_state(run: _RunContext) -> ProcessingState:
        if run.timed_out or run.failed:
            return ProcessingState.FAILED
        if run.cancel_event.is_set():
            return ProcessingState.CANCELLED
        return ProcessingState.COMPLETED


def create_coordinator(
    analyzer: Analyzer,
    scorer: Scorer = default_scorer,
    config: Optional[OrchestratorConfig] = None,
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    **overrides: Any,
) -> Coordinator:
    """
    Build a Coordinator with its own AdmissionController.

    Keyword overrides are OrchestratorConfig fields applied on top of `config`
    (or of the JSON defaults).
    """
    if config is None:
        config = OrchestratorConfig.load(**overrides)
    elif overrides:
        config = config.merged(**overrides)
    return Coordinator(analyzer, scorer=scorer, config=config, sleep=sleep or asyncio.sleep)
