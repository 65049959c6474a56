"""
Rate Limiter - sliding window with a token bucket for bursts.

Two limits are applied to every check:
- Sliding window: at most `max_requests` accepted checks in the last `window_ms`
- Burst bucket: accepted checks also spend one token; tokens refill
  continuously at `window_ms / max_requests` per token, up to `burst_limit`

A burst_limit of 0 disables the bucket and leaves only the window.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from track_orchestrator.core.constants import MAX_BURST_TOKENS

logger = logging.getLogger(__name__)


def burst_for_rate(rate_per_minute: int) -> int:
    """Burst allowance derived from a per-minute rate: min(10, rate // 10)."""
    return min(MAX_BURST_TOKENS, rate_per_minute // 10)


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate limit check."""
    allowed: bool
    remaining: int
    resets_in_ms: float
    retry_after_ms: float
    message: Optional[str] = None


class SlidingWindowRateLimiter:
    """
    Sliding window limiter with burst control.

    Not thread-safe: it is meant to be mutated from a single event loop,
    between suspension points.
    """

    def __init__(
        self,
        max_requests: int,
        window_ms: float = 60000,
        burst_limit: int = 0,
        name: str = "limiter",
        clock: Callable[[], float] = time.monotonic,
        message: str = "Rate limit exceeded. Please try again later.",
    ):
        """
        Args:
            max_requests: Accepted checks per window
            window_ms: Window length in milliseconds
            burst_limit: Bucket capacity (0 = no burst gating)
            name: Name used in logs
            clock: Monotonic clock in seconds (injectable for tests)
            message: Message attached to refused results
        """
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        self.max_requests = max_requests
        self.window_ms = float(window_ms)
        self.burst_limit = burst_limit
        self.message = message
        self._name = name
        self._clock = clock
        self._timestamps: Deque[float] = deque()
        self._tokens = float(burst_limit)
        self._last_refill = clock()

    @property
    def refill_interval_ms(self) -> float:
        """Milliseconds needed to refill one burst token."""
        return self.window_ms / self.max_requests

    def check(self) -> RateLimitResult:
        """
        Check the limit and, when allowed, record the request.

        Returns:
            RateLimitResult with `allowed` and, when refused, `retry_after_ms`
        """
        now = self._clock()
        self._prune(now)
        self._refill(now)

        under_limit = len(self._timestamps) < self.max_requests
        has_tokens = self.burst_limit <= 0 or self._tokens >= 1

        if under_limit and has_tokens:
            self._timestamps.append(now)
            if self.burst_limit > 0:
                self._tokens -= 1
            return RateLimitResult(
                allowed=True,
                remaining=self.max_requests - len(self._timestamps),
                resets_in_ms=self._resets_in_ms(now),
                retry_after_ms=0.0,
            )

        retry_after = 0.0
        if not under_limit:
            retry_after = self._resets_in_ms(now)
        if not has_tokens:
            retry_after = max(retry_after, (1 - self._tokens) * self.refill_interval_ms)

        logger.debug(
            f"[RateLimiter:{self._name}] Refused "
            f"(window={len(self._timestamps)}/{self.max_requests}, "
            f"tokens={self._tokens:.2f}, retry_after={retry_after:.1f}ms)"
        )
        return RateLimitResult(
            allowed=False,
            remaining=0,
            resets_in_ms=self._resets_in_ms(now),
            retry_after_ms=retry_after,
            message=self.message,
        )

    def status(self) -> RateLimitResult:
        """Current state without consuming anything."""
        now = self._clock()
        self._prune(now)
        remaining = max(0, self.max_requests - len(self._timestamps))
        resets_in = self._resets_in_ms(now)
        return RateLimitResult(
            allowed=remaining > 0,
            remaining=remaining,
            resets_in_ms=resets_in,
            retry_after_ms=0.0 if remaining > 0 else resets_in,
            message=None if remaining > 0 else self.message,
        )

    def reconfigure(self, max_requests: Optional[int] = None, burst_limit: Optional[int] = None) -> None:
        """Change limits in place, keeping the recorded history."""
        if max_requests is not None:
            if max_requests < 1:
                raise ValueError("max_requests must be >= 1")
            self.max_requests = max_requests
        if burst_limit is not None:
            self.burst_limit = burst_limit
            self._tokens = min(self._tokens, float(burst_limit))

    def reset(self) -> None:
        """Forget all recorded requests and refill the bucket."""
        self._timestamps.clear()
        self._tokens = float(self.burst_limit)
        self._last_refill = self._clock()

    def is_idle(self) -> bool:
        """True when no request is inside the current window."""
        self._prune(self._clock())
        return not self._timestamps

    def get_status(self) -> dict:
        """Status dict for monitoring endpoints."""
        status = self.status()
        return {
            "name": self._name,
            "max_requests": self.max_requests,
            "window_ms": self.window_ms,
            "burst_limit": self.burst_limit,
            "tokens": round(self._tokens, 2),
            "remaining": status.remaining,
            "resets_in_ms": round(status.resets_in_ms, 1),
        }

    def _prune(self, now: float) -> None:
        window_start = now - self.window_ms / 1000.0
        while self._timestamps and self._timestamps[0] <= window_start:
            self._timestamps.popleft()

    def _refill(self, now: float) -> None:
        if self.burst_limit <= 0:
            return
        elapsed_ms = (now - self._last_refill) * 1000.0
        self._tokens = min(float(self.burst_limit), self._tokens + elapsed_ms / self.refill_interval_ms)
        self._last_refill = now

    def _resets_in_ms(self, now: float) -> float:
        if not self._timestamps:
            return self.window_ms
        return max(0.0, (self._timestamps[0] + self.window_ms / 1000.0 - now) * 1000.0)


class KeyedRateLimiter:
    """
    One SlidingWindowRateLimiter per key (client IP, API key...).

    Idle entries are dropped on access once their window is empty.
    """

    def __init__(
        self,
        max_requests: int,
        window_ms: float = 60000,
        burst_limit: int = 0,
        name: str = "keyed",
        clock: Callable[[], float] = time.monotonic,
        message: str = "Rate limit exceeded. Please try again later.",
    ):
        self.max_requests = max_requests
        self.window_ms = window_ms
        self.burst_limit = burst_limit
        self.message = message
        self._name = name
        self._clock = clock
        self._limiters: Dict[str, SlidingWindowRateLimiter] = {}

    def check(self, key: str) -> RateLimitResult:
        self._cleanup()
        limiter = self._limiters.get(key)
        if limiter is None:
            limiter = SlidingWindowRateLimiter(
                self.max_requests,
                window_ms=self.window_ms,
                burst_limit=self.burst_limit,
                name=f"{self._name}:{key}",
                clock=self._clock,
                message=self.message,
            )
            self._limiters[key] = limiter
        return limiter.check()

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._limiters.clear()
        else:
            self._limiters.pop(key, None)

    def __len__(self) -> int:
        return len(self._limiters)

    def _cleanup(self) -> None:
        stale = [key for key, limiter in self._limiters.items() if limiter.is_idle()]
        for key in stale:
            del self._limiters[key]
