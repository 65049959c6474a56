"""
Concurrency Manager - admission control for the orchestrator.

This package centralizes resource control:
- Admission controller (track and call slot pools, FIFO waits)
- Sliding-window rate limiter with burst bucket
- Adaptive throttle (data + pure functions)
- JSON config loader
"""

from .admission_controller import (
    AdmissionController,
    Slot,
    SlotAcquisition,
    SlotKind,
    WaitEntry,
    REASON_RATE_LIMITED,
    REASON_RESET,
    REASON_TIMEOUT,
)
from .rate_limiter import (
    KeyedRateLimiter,
    RateLimitResult,
    SlidingWindowRateLimiter,
    burst_for_rate,
)
from .adaptive_throttle import (
    ThrottleSettings,
    ThrottleState,
)
from .config_loader import (
    load_config,
    get_section,
    reset_cache,
)

__all__ = [
    # Admission
    "AdmissionController",
    "Slot",
    "SlotAcquisition",
    "SlotKind",
    "WaitEntry",
    "REASON_RATE_LIMITED",
    "REASON_RESET",
    "REASON_TIMEOUT",
    # Rate limiting
    "KeyedRateLimiter",
    "RateLimitResult",
    "SlidingWindowRateLimiter",
    "burst_for_rate",
    # Throttle
    "ThrottleSettings",
    "ThrottleState",
    # Config Loader
    "load_config",
    "get_section",
    "reset_cache",
]
