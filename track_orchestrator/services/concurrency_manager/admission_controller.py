"""
Admission Controller - slot pools for tracks and analyzer calls.

Two independent pools of abstract slots:
- TRACK: how many units (tracks) run in parallel
- CALL: how many analyzer calls are in flight

Features:
- FIFO wait queue per pool with per-request timeout
- Sliding-window rate limiter + burst bucket on the CALL pool
- Adaptive throttle shrinking the CALL pool under error bursts
- Failed acquisitions are returned as data (SlotAcquisition), never raised

All state is mutated from one event loop between suspension points, so the
pools and queues are plain structures without locks.
"""

import asyncio
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple, Union

from track_orchestrator.core.constants import (
    DEFAULT_CALL_ACQUIRE_TIMEOUT_MS,
    DEFAULT_TRACK_ACQUIRE_TIMEOUT_MS,
)
from track_orchestrator.services.concurrency_manager import adaptive_throttle
from track_orchestrator.services.concurrency_manager.adaptive_throttle import (
    ThrottleSettings,
    ThrottleState,
)
from track_orchestrator.services.concurrency_manager.rate_limiter import (
    RateLimitResult,
    SlidingWindowRateLimiter,
    burst_for_rate,
)

logger = logging.getLogger(__name__)

REASON_TIMEOUT = "timeout"
REASON_RATE_LIMITED = "rate_limited"
REASON_RESET = "reset"


class SlotKind(str, Enum):
    """Slot pools."""
    TRACK = "track"
    CALL = "call"


@dataclass(frozen=True)
class Slot:
    """Admission ticket for one running unit of work."""
    id: str
    kind: SlotKind
    acquired_at: float
    owner_tag: Optional[str] = None


@dataclass(frozen=True)
class SlotAcquisition:
    """Result of an acquire call."""
    acquired: bool
    slot: Optional[Slot] = None
    wait_ms: float = 0.0
    reason: Optional[str] = None

    @property
    def slot_id(self) -> Optional[str]:
        return self.slot.id if self.slot else None


@dataclass
class WaitEntry:
    """A queued acquire, resolved exactly once (grant, timeout or reset)."""
    id: str
    kind: SlotKind
    owner_tag: Optional[str]
    future: "asyncio.Future[SlotAcquisition]"
    enqueued_at: float
    timeout_handle: Optional[asyncio.TimerHandle] = None


@dataclass
class _Pool:
    kind: SlotKind
    live: Dict[str, Slot] = field(default_factory=dict)
    queue: Deque[WaitEntry] = field(default_factory=deque)


class AdmissionController:
    """
    Admission control for track and call slots.

    Invariant: len(live slots of a kind) <= effective_limit(kind) at every grant.
    Lowering a limit at runtime does not revoke live slots; new grants wait
    until the pool drains below the new limit.
    """

    def __init__(
        self,
        max_concurrent_units: int = 2,
        max_concurrent_calls: int = 6,
        rate_limit_per_minute: int = 120,
        adaptive_throttling: bool = True,
        throttle_settings: Optional[ThrottleSettings] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            max_concurrent_units: TRACK pool size
            max_concurrent_calls: configured CALL pool size (before throttling)
            rate_limit_per_minute: CALL grants allowed per minute
            adaptive_throttling: enable the adaptive throttle
            throttle_settings: throttle tuning (window, threshold, steps)
            clock: monotonic clock in seconds
            sleep: coroutine used for the rate-limit wait
        """
        self._validate_limits(max_concurrent_units, max_concurrent_calls, rate_limit_per_minute)
        self._limits: Dict[SlotKind, int] = {
            SlotKind.TRACK: max_concurrent_units,
            SlotKind.CALL: max_concurrent_calls,
        }
        self._pools: Dict[SlotKind, _Pool] = {kind: _Pool(kind) for kind in SlotKind}
        self._clock = clock
        self._sleep = sleep
        self._counter = itertools.count(1)

        self.rate_limit_per_minute = rate_limit_per_minute
        self._rate_limiter = SlidingWindowRateLimiter(
            max_requests=rate_limit_per_minute,
            window_ms=60000,
            burst_limit=burst_for_rate(rate_limit_per_minute),
            name="orchestrator-calls",
            clock=clock,
        )

        self._throttle_settings = replace(throttle_settings or ThrottleSettings(), enabled=adaptive_throttling)
        self._throttle = adaptive_throttle.reset()

        # Metrics
        self._total_grants = 0
        self._total_timeouts = 0
        self._total_rate_limited = 0

        logger.info(
            f"[AdmissionController] Initialized: tracks={max_concurrent_units}, "
            f"calls={max_concurrent_calls}, rpm={rate_limit_per_minute}, "
            f"adaptive={adaptive_throttling}"
        )

    @staticmethod
    def _validate_limits(*values: Optional[int]) -> None:
        for value in values:
            if value is not None and value < 1:
                raise ValueError(f"Admission limits must be >= 1 (got {value})")

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    async def acquire(
        self,
        kind: Union[SlotKind, str],
        tag: Optional[str] = None,
        timeout_ms: Optional[float] = None,
    ) -> SlotAcquisition:
        """
        Acquire a slot, waiting in FIFO order when the pool is full.

        Args:
            kind: SlotKind.TRACK or SlotKind.CALL
            tag: owner tag (unit id) for tracing
            timeout_ms: maximum wait (default 30s for tracks, 15s for calls)

        Returns:
            SlotAcquisition; acquired=False with reason "timeout",
            "rate_limited" or "reset" when no slot was granted
        """
        kind = SlotKind(kind)
        if timeout_ms is None:
            timeout_ms = (
                DEFAULT_TRACK_ACQUIRE_TIMEOUT_MS if kind is SlotKind.TRACK
                else DEFAULT_CALL_ACQUIRE_TIMEOUT_MS
            )
        waited_ms = 0.0

        if kind is SlotKind.CALL:
            self._refresh_throttle()
            refused, waited_ms = await self._check_rate_limit(timeout_ms)
            if refused is not None:
                return refused

        pool = self._pools[kind]
        self._process_queue(kind)

        if not pool.queue and len(pool.live) < self.effective_limit(kind):
            slot = self._grant(kind, tag)
            return SlotAcquisition(acquired=True, slot=slot, wait_ms=waited_ms)

        return await self._enqueue(kind, tag, max(0.0, timeout_ms - waited_ms), waited_ms)

    def release(self, slot_id: str, had_error: bool = False) -> bool:
        """
        Release a slot and hand capacity to the oldest waiters.

        Args:
            slot_id: id of the slot to release
            had_error: for CALL slots, feed the adaptive throttle

        Returns:
            False when the slot id is unknown (already released)
        """
        for kind, pool in self._pools.items():
            if slot_id in pool.live:
                del pool.live[slot_id]
                if kind is SlotKind.CALL:
                    if had_error:
                        self.record_error()
                    else:
                        self._refresh_throttle()
                self._process_queue(kind)
                return True

        logger.warning(f"[AdmissionController] Attempted to release unknown slot: {slot_id}")
        return False

    async def _check_rate_limit(self, timeout_ms: float) -> Tuple[Optional[SlotAcquisition], float]:
        result = self._rate_limiter.check()
        if result.allowed:
            return None, 0.0

        wait_ms = max(0.0, min(result.retry_after_ms, timeout_ms))
        await self._sleep(wait_ms / 1000.0)

        result = self._rate_limiter.check()
        if result.allowed:
            return None, wait_ms

        self._total_rate_limited += 1
        logger.warning(
            f"[AdmissionController] Call slot refused: rate limit exceeded "
            f"(waited {wait_ms:.0f}ms, retry after {result.retry_after_ms:.0f}ms)"
        )
        return SlotAcquisition(acquired=False, wait_ms=wait_ms, reason=REASON_RATE_LIMITED), wait_ms

    async def _enqueue(
        self,
        kind: SlotKind,
        tag: Optional[str],
        timeout_ms: float,
        waited_ms: float,
    ) -> SlotAcquisition:
        loop = asyncio.get_running_loop()
        pool = self._pools[kind]
        entry = WaitEntry(
            id=self._next_id(kind),
            kind=kind,
            owner_tag=tag,
            future=loop.create_future(),
            enqueued_at=self._clock(),
        )
        entry.timeout_handle = loop.call_later(timeout_ms / 1000.0, self._expire, entry, timeout_ms)
        pool.queue.append(entry)

        logger.info(
            f"[WAIT] Waiting for {kind.value} slot... "
            f"(active: {len(pool.live)}/{self.effective_limit(kind)}, "
            f"queue: {len(pool.queue)}, tag: {tag or 'N/A'})"
        )

        try:
            result = await entry.future
        except asyncio.CancelledError:
            self._abandon(entry)
            raise

        if waited_ms:
            result = SlotAcquisition(
                acquired=result.acquired,
                slot=result.slot,
                wait_ms=result.wait_ms + waited_ms,
                reason=result.reason,
            )
        return result

    def _abandon(self, entry: WaitEntry) -> None:
        """Clean up after the waiting task was cancelled."""
        if entry.timeout_handle:
            entry.timeout_handle.cancel()
        pool = self._pools[entry.kind]
        try:
            pool.queue.remove(entry)
        except ValueError:
            pass

        # A grant may have landed just before the cancellation
        future = entry.future
        if future.done() and not future.cancelled():
            result = future.result()
            if result.acquired and result.slot:
                self.release(result.slot.id)

    def _expire(self, entry: WaitEntry, timeout_ms: float) -> None:
        if entry.future.done():
            return
        pool = self._pools[entry.kind]
        try:
            pool.queue.remove(entry)
        except ValueError:
            pass

        self._total_timeouts += 1
        wait_ms = (self._clock() - entry.enqueued_at) * 1000.0
        logger.warning(
            f"[AdmissionController] Timeout waiting for {entry.kind.value} slot "
            f"after {timeout_ms:.0f}ms (tag: {entry.owner_tag or 'N/A'})"
        )
        entry.future.set_result(
            SlotAcquisition(acquired=False, wait_ms=wait_ms, reason=REASON_TIMEOUT)
        )

    def _process_queue(self, kind: SlotKind) -> None:
        """Grant slots to the oldest waiters while capacity remains."""
        pool = self._pools[kind]
        limit = self.effective_limit(kind)

        while pool.queue and len(pool.live) < limit:
            entry = pool.queue.popleft()
            if entry.future.done():
                continue
            if entry.timeout_handle:
                entry.timeout_handle.cancel()

            slot = self._grant(kind, entry.owner_tag, slot_id=entry.id)
            wait_ms = (self._clock() - entry.enqueued_at) * 1000.0
            entry.future.set_result(SlotAcquisition(acquired=True, slot=slot, wait_ms=wait_ms))

    def _grant(self, kind: SlotKind, tag: Optional[str], slot_id: Optional[str] = None) -> Slot:
        slot = Slot(
            id=slot_id or self._next_id(kind),
            kind=kind,
            acquired_at=time.time(),
            owner_tag=tag,
        )
        self._pools[kind].live[slot.id] = slot
        self._total_grants += 1
        return slot

    def _next_id(self, kind: SlotKind) -> str:
        return f"{kind.value}-{next(self._counter)}-{int(time.time() * 1000)}"

    # ------------------------------------------------------------------
    # Adaptive throttle
    # ------------------------------------------------------------------

    def _refresh_throttle(self) -> None:
        previous = self._throttle.multiplier
        self._throttle = adaptive_throttle.evaluate(self._throttle, self._throttle_settings, self._clock())
        self._log_multiplier_change(previous)

    def record_error(self) -> None:
        """Register a call error in the adaptive throttle window."""
        if not self._throttle_settings.enabled:
            return
        previous = self._throttle.multiplier
        self._throttle = adaptive_throttle.record_error(self._throttle, self._throttle_settings, self._clock())
        self._log_multiplier_change(previous)

    def reset_error_tracking(self) -> None:
        """Clear the error window and restore the configured call limit."""
        self._throttle = adaptive_throttle.reset()
        self._process_queue(SlotKind.CALL)

    def _log_multiplier_change(self, previous: float) -> None:
        current = self._throttle.multiplier
        if current < previous:
            logger.warning(
                f"[AdmissionController] Error spike detected ({self._throttle.error_count} errors). "
                f"Throttle multiplier: {current:.2f} (call limit {self.effective_limit(SlotKind.CALL)})"
            )
        elif current > previous:
            logger.info(f"[AdmissionController] Throttle recovering: multiplier {current:.2f}")

    @property
    def throttle_state(self) -> ThrottleState:
        return self._throttle

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def effective_limit(self, kind: Union[SlotKind, str]) -> int:
        kind = SlotKind(kind)
        if kind is SlotKind.CALL:
            return adaptive_throttle.effective_limit(self._limits[kind], self._throttle)
        return self._limits[kind]

    def configured_limit(self, kind: Union[SlotKind, str]) -> int:
        return self._limits[SlotKind(kind)]

    def live_count(self, kind: Union[SlotKind, str]) -> int:
        return len(self._pools[SlotKind(kind)].live)

    def queue_length(self, kind: Union[SlotKind, str]) -> int:
        return len(self._pools[SlotKind(kind)].queue)

    def available(self, kind: Union[SlotKind, str]) -> int:
        return max(0, self.effective_limit(kind) - self.live_count(kind))

    def rate_limit_status(self) -> RateLimitResult:
        """Rate limiter state without consuming a request."""
        return self._rate_limiter.status()

    def stats(self) -> Dict[str, Any]:
        """Current pool statistics."""
        return {
            "active_track_slots": self.live_count(SlotKind.TRACK),
            "max_track_slots": self.effective_limit(SlotKind.TRACK),
            "active_call_slots": self.live_count(SlotKind.CALL),
            "max_call_slots": self.effective_limit(SlotKind.CALL),
            "configured_call_slots": self._limits[SlotKind.CALL],
            "track_queue_length": self.queue_length(SlotKind.TRACK),
            "call_queue_length": self.queue_length(SlotKind.CALL),
            "throttle_multiplier": self._throttle.multiplier,
            "recent_errors": self._throttle.error_count,
            "total_grants": self._total_grants,
            "total_timeouts": self._total_timeouts,
            "total_rate_limited": self._total_rate_limited,
            "rate_limiter": self._rate_limiter.get_status(),
        }

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def update_config(
        self,
        max_concurrent_units: Optional[int] = None,
        max_concurrent_calls: Optional[int] = None,
        rate_limit_per_minute: Optional[int] = None,
        adaptive_throttling: Optional[bool] = None,
    ) -> None:
        """Change limits at runtime; queues are drained if capacity grew."""
        self._validate_limits(max_concurrent_units, max_concurrent_calls, rate_limit_per_minute)
        if max_concurrent_units is not None:
            self._limits[SlotKind.TRACK] = max_concurrent_units
        if max_concurrent_calls is not None:
            self._limits[SlotKind.CALL] = max_concurrent_calls
        if rate_limit_per_minute is not None:
            self.rate_limit_per_minute = rate_limit_per_minute
            self._rate_limiter.reconfigure(
                max_requests=rate_limit_per_minute,
                burst_limit=burst_for_rate(rate_limit_per_minute),
            )
        if adaptive_throttling is not None:
            self._throttle_settings = replace(self._throttle_settings, enabled=adaptive_throttling)
            if not adaptive_throttling:
                self._throttle = adaptive_throttle.reset()

        logger.info(
            f"[AdmissionController] Config updated: tracks={self._limits[SlotKind.TRACK]}, "
            f"calls={self._limits[SlotKind.CALL]}, rpm={self.rate_limit_per_minute}, "
            f"adaptive={self._throttle_settings.enabled}"
        )
        for kind in SlotKind:
            self._process_queue(kind)

    def reset(self) -> None:
        """Resolve every waiter with reason "reset" and clear all state."""
        for pool in self._pools.values():
            while pool.queue:
                entry = pool.queue.popleft()
                if entry.timeout_handle:
                    entry.timeout_handle.cancel()
                if not entry.future.done():
                    entry.future.set_result(SlotAcquisition(acquired=False, reason=REASON_RESET))
            pool.live.clear()

        self._throttle = adaptive_throttle.reset()
        self._rate_limiter.reset()
        self._counter = itertools.count(1)
        logger.info("[AdmissionController] Reset: queues drained, slots and error history cleared")
