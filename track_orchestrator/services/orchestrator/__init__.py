"""
Orchestrator - parallel, fault-tolerant processing of track jobs.

Components:
- Coordinator: worker pool, cancellation, status
- UnitProcessor: sequential items, retries, circuit breaker
- ResultCollector: aggregation and summary
- ProgressBus: progress events for observers
"""

from .config import OrchestratorConfig
from .coordinator import Coordinator, create_coordinator
from .errors import (
    AnalyzerError,
    AnalyzerTimeoutError,
    ErrorKind,
    NON_RETRYABLE_KINDS,
    SlotUnavailableError,
    classify_error,
    is_recoverable,
)
from .models import (
    AggregateResult,
    CallStats,
    EventType,
    ItemError,
    ItemOutcome,
    ItemResult,
    Job,
    JobUnitResult,
    ProcessingState,
    ProcessingStatus,
    ProcessingSummary,
    ProgressEvent,
    UnitError,
    WorkItem,
)
from .progress_bus import (
    ProgressBus,
    ProgressCallbacks,
    attach_callbacks,
    attach_logging_listener,
)
from .result_collector import ResultCollector, merge_unit_results
from .unit_processor import UnitProcessor, default_scorer

__all__ = [
    # Coordinator
    "Coordinator",
    "create_coordinator",
    "OrchestratorConfig",
    # Processing
    "UnitProcessor",
    "default_scorer",
    "ResultCollector",
    "merge_unit_results",
    # Progress
    "ProgressBus",
    "ProgressCallbacks",
    "attach_callbacks",
    "attach_logging_listener",
    # Errors
    "AnalyzerError",
    "AnalyzerTimeoutError",
    "ErrorKind",
    "NON_RETRYABLE_KINDS",
    "SlotUnavailableError",
    "classify_error",
    "is_recoverable",
    # Models
    "AggregateResult",
    "CallStats",
    "EventType",
    "ItemError",
    "ItemOutcome",
    "ItemResult",
    "Job",
    "JobUnitResult",
    "ProcessingState",
    "ProcessingStatus",
    "ProcessingSummary",
    "ProgressEvent",
    "UnitError",
    "WorkItem",
]
