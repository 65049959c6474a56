"""Shared test doubles and builders."""
import asyncio
from typing import Any, List, Sequence

from track_orchestrator.services.concurrency_manager.admission_controller import AdmissionController
from track_orchestrator.services.orchestrator.config import OrchestratorConfig
from track_orchestrator.services.orchestrator.errors import AnalyzerError
from track_orchestrator.services.orchestrator.models import Job, WorkItem

# High enough that the call rate limiter never gates a test
TEST_RATE_LIMIT = 600000


class FakeSleep:
    """Records requested delays and only yields to the loop."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedAnalyzer:
    """
    Analyzer that replays scripted outcomes per item id.

    Each script entry is either an exception instance (raised) or a value
    (returned). Items without script return "analysis-<id>".
    """

    def __init__(self, scripts=None, default_error: Exception = None, delay: float = 0.0):
        self.scripts = {key: list(value) for key, value in (scripts or {}).items()}
        self.default_error = default_error
        self.delay = delay
        self.calls: List[str] = []
        self.scores_seen: List[Sequence[Any]] = []

    async def __call__(self, item: WorkItem, scores: Sequence[Any]) -> Any:
        self.calls.append(item.id)
        self.scores_seen.append(scores)
        if self.delay:
            await asyncio.sleep(self.delay)
        script = self.scripts.get(item.id)
        if script:
            outcome = script.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        if self.default_error is not None:
            raise self.default_error
        return f"analysis-{item.id}"


def make_job(job_id: str, item_count: int, priority=None) -> Job:
    items = [WorkItem(id=f"{job_id}-r{index}", payload={"scores": [index]}) for index in range(1, item_count + 1)]
    return Job(id=job_id, items=items, priority=priority)


def make_config(**overrides) -> OrchestratorConfig:
    values = dict(
        max_concurrent_units=2,
        max_concurrent_calls=6,
        max_retries=2,
        retry_delays_ms=[100, 200],
        circuit_breaker_threshold=5,
        rate_limit_per_minute=TEST_RATE_LIMIT,
        adaptive_throttling=True,
        item_timeout_ms=5000,
        job_timeout_ms=30000,
    )
    values.update(overrides)
    return OrchestratorConfig(**values)


def make_admission(config: OrchestratorConfig, **kwargs) -> AdmissionController:
    return AdmissionController(
        max_concurrent_units=config.max_concurrent_units,
        max_concurrent_calls=config.max_concurrent_calls,
        rate_limit_per_minute=config.rate_limit_per_minute,
        adaptive_throttling=config.adaptive_throttling,
        **kwargs,
    )


def network_error(message: str = "connection reset") -> AnalyzerError:
    return AnalyzerError("network_error", message)


class TickingClock:
    """Clock that moves forward on every read, so rate limit buckets refill."""

    def __init__(self, step: float = 1.0, start: float = 1000.0):
        self.step = step
        self.now = start

    def __call__(self) -> float:
        self.now += self.step
        return self.now
