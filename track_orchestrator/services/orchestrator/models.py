"""
Data model for jobs, results, status and progress events.

Results are frozen dataclasses: once a UnitProcessor or the
ResultCollector hands them out, nobody mutates them.
"""

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union


def now_ms() -> float:
    """Wall-clock timestamp in milliseconds."""
    return time.time() * 1000.0


# ----------------------------------------------------------------------
# Input
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class WorkItem:
    """One analyzable item (a race). The payload is opaque to the orchestrator."""
    id: str
    payload: Any = None


@dataclass(frozen=True)
class Job:
    """One unit of work (a track): items processed sequentially."""
    id: str
    items: Tuple[WorkItem, ...] = ()
    priority: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        # Accept any iterable of items and freeze it
        object.__setattr__(self, "items", tuple(self.items))

    @property
    def sort_key(self) -> Tuple[bool, int]:
        """Ascending priority; jobs without priority go last."""
        return (self.priority is None, self.priority if self.priority is not None else 0)


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

class ItemOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ItemError:
    """One failed attempt of an item."""
    kind: str
    message: str
    retryable: bool
    attempt: int
    timestamp: float = field(default_factory=now_ms)


@dataclass(frozen=True)
class ItemResult:
    item_id: str
    outcome: ItemOutcome
    analysis: Any = None
    errors: Tuple[ItemError, ...] = ()
    skip_reason: Optional[str] = None
    duration_ms: float = 0.0
    attempts: int = 0
    completed_at: float = field(default_factory=now_ms)

    @property
    def succeeded(self) -> bool:
        return self.outcome is ItemOutcome.SUCCESS


@dataclass(frozen=True)
class UnitError:
    """Unit-level (track) error or notice."""
    message: str
    code: str
    item_id: Optional[str] = None
    timestamp: float = field(default_factory=now_ms)


@dataclass(frozen=True)
class JobUnitResult:
    unit_id: str
    items: Tuple[ItemResult, ...] = ()
    errors: Tuple[UnitError, ...] = ()
    circuit_broken: bool = False
    circuit_break_reason: Optional[str] = None
    started_at: float = 0.0
    completed_at: float = 0.0
    duration_ms: float = 0.0

    def _count(self, outcome: ItemOutcome) -> int:
        return sum(1 for item in self.items if item.outcome is outcome)

    @property
    def items_successful(self) -> int:
        return self._count(ItemOutcome.SUCCESS)

    @property
    def items_failed(self) -> int:
        return self._count(ItemOutcome.FAILURE)

    @property
    def items_skipped(self) -> int:
        return self._count(ItemOutcome.SKIPPED)

    @property
    def items_cancelled(self) -> int:
        return self._count(ItemOutcome.CANCELLED)


@dataclass(frozen=True)
class CallStats:
    """Analyzer call counters of one unit (or merged across units)."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    retries: int = 0

    def merge(self, other: "CallStats") -> "CallStats":
        return CallStats(
            total_calls=self.total_calls + other.total_calls,
            successful_calls=self.successful_calls + other.successful_calls,
            failed_calls=self.failed_calls + other.failed_calls,
            retries=self.retries + other.retries,
        )


@dataclass(frozen=True)
class ProcessingSummary:
    total_items: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: int = 0
    duration_ms: float = 0.0
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    retries: int = 0
    avg_time_per_item_ms: float = 0.0
    units_complete: int = 0
    units_failed: int = 0
    units_circuit_broken: int = 0


@dataclass(frozen=True)
class AggregateResult:
    units: Tuple[JobUnitResult, ...]
    summary: ProcessingSummary
    job_id: str
    started_at: float
    completed_at: float
    errors: Tuple[UnitError, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return to_dict(self)


# ----------------------------------------------------------------------
# Status
# ----------------------------------------------------------------------

class ProcessingState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    PROCESSING = "processing"
    COMPLETING = "completing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset([
    ProcessingState.COMPLETED,
    ProcessingState.FAILED,
    ProcessingState.CANCELLED,
])


@dataclass(frozen=True)
class ProcessingStatus:
    """Immutable status snapshot."""
    active: bool = False
    state: ProcessingState = ProcessingState.IDLE
    units_complete: int = 0
    units_total: int = 0
    items_processed: int = 0
    items_total: int = 0
    current_unit: Optional[str] = None
    job_id: Optional[str] = None
    started_at: Optional[float] = None
    estimated_time_remaining_ms: Optional[float] = None


# ----------------------------------------------------------------------
# Progress events
# ----------------------------------------------------------------------

class EventType(str, Enum):
    JOB_START = "job_start"
    UNIT_START = "unit_start"
    UNIT_COMPLETE = "unit_complete"
    ITEM_START = "item_start"
    ITEM_COMPLETE = "item_complete"
    ERROR = "error"
    WARNING = "warning"
    JOB_COMPLETE = "job_complete"


@dataclass(frozen=True)
class JobStartEvent:
    job_id: str
    units_total: int
    items_total: int
    timestamp: float = field(default_factory=now_ms)
    type: EventType = field(default=EventType.JOB_START, init=False)


@dataclass(frozen=True)
class UnitStartEvent:
    unit_id: str
    items_total: int
    timestamp: float = field(default_factory=now_ms)
    type: EventType = field(default=EventType.UNIT_START, init=False)


@dataclass(frozen=True)
class UnitCompleteEvent:
    unit_id: str
    result: JobUnitResult
    timestamp: float = field(default_factory=now_ms)
    type: EventType = field(default=EventType.UNIT_COMPLETE, init=False)


@dataclass(frozen=True)
class ItemStartEvent:
    unit_id: str
    item_id: str
    timestamp: float = field(default_factory=now_ms)
    type: EventType = field(default=EventType.ITEM_START, init=False)


@dataclass(frozen=True)
class ItemCompleteEvent:
    unit_id: str
    item_id: str
    result: ItemResult
    timestamp: float = field(default_factory=now_ms)
    type: EventType = field(default=EventType.ITEM_COMPLETE, init=False)


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    unit_id: Optional[str] = None
    item_id: Optional[str] = None
    error: Optional[BaseException] = field(default=None, compare=False)
    timestamp: float = field(default_factory=now_ms)
    type: EventType = field(default=EventType.ERROR, init=False)


@dataclass(frozen=True)
class WarningEvent:
    message: str
    unit_id: Optional[str] = None
    item_id: Optional[str] = None
    timestamp: float = field(default_factory=now_ms)
    type: EventType = field(default=EventType.WARNING, init=False)


@dataclass(frozen=True)
class JobCompleteEvent:
    job_id: str
    result: AggregateResult
    timestamp: float = field(default_factory=now_ms)
    type: EventType = field(default=EventType.JOB_COMPLETE, init=False)


ProgressEvent = Union[
    JobStartEvent,
    UnitStartEvent,
    UnitCompleteEvent,
    ItemStartEvent,
    ItemCompleteEvent,
    ErrorEvent,
    WarningEvent,
    JobCompleteEvent,
]


def to_dict(value: Any) -> Any:
    """JSON-friendly dict of a result dataclass (enums become their values)."""
    return _jsonable(asdict(value))


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value
