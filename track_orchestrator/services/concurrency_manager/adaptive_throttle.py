"""
Adaptive Throttle - shrinks the call pool under error bursts.

The throttle is plain data plus pure functions: every operation returns a
new ThrottleState, so two controllers never share hidden mutable state.

Rules applied on every evaluation:
- errors older than `error_window_ms` are dropped
- errors >= threshold: multiplier -= step_down (not below min_multiplier)
- errors <= 1 and multiplier < 1.0: multiplier += step_up (not above 1.0)

Evaluation happens only when the owner calls it (on acquire/release), never
on a timer, so an idle pool keeps its current multiplier.
"""

import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class ThrottleSettings:
    """Throttle tuning knobs."""
    enabled: bool = True
    error_window_ms: float = 60000
    error_threshold: int = 5
    step_down: float = 0.1
    step_up: float = 0.05
    min_multiplier: float = 0.5

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], enabled: bool = True) -> "ThrottleSettings":
        data = data or {}
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__ and k != "enabled"}
        return cls(enabled=enabled, **known)


@dataclass(frozen=True)
class ThrottleState:
    """Immutable throttle snapshot."""
    multiplier: float = 1.0
    error_times: Tuple[float, ...] = field(default_factory=tuple)

    @property
    def error_count(self) -> int:
        return len(self.error_times)


def prune(state: ThrottleState, settings: ThrottleSettings, now: float) -> ThrottleState:
    """Drop errors that fell out of the rolling window (`now` in seconds)."""
    cutoff = now - settings.error_window_ms / 1000.0
    kept = tuple(ts for ts in state.error_times if ts > cutoff)
    if len(kept) == len(state.error_times):
        return state
    return replace(state, error_times=kept)


def evaluate(state: ThrottleState, settings: ThrottleSettings, now: float) -> ThrottleState:
    """Apply one throttle step to the pruned error window."""
    if not settings.enabled:
        return state

    state = prune(state, settings, now)
    errors = state.error_count
    multiplier = state.multiplier

    if errors >= settings.error_threshold:
        multiplier = max(settings.min_multiplier, round(multiplier - settings.step_down, 2))
    elif errors <= 1 and multiplier < 1.0:
        multiplier = min(1.0, round(multiplier + settings.step_up, 2))

    if multiplier == state.multiplier:
        return state
    return replace(state, multiplier=multiplier)


def record_error(state: ThrottleState, settings: ThrottleSettings, now: float) -> ThrottleState:
    """Register one call error and evaluate the window."""
    if not settings.enabled:
        return state
    state = replace(state, error_times=state.error_times + (now,))
    return evaluate(state, settings, now)


def reset() -> ThrottleState:
    """Clear the error window and restore the full limit."""
    return ThrottleState()


def effective_limit(configured_limit: int, state: ThrottleState) -> int:
    """max(1, floor(configured_limit * multiplier))."""
    return max(1, math.floor(round(configured_limit * state.multiplier, 6)))
