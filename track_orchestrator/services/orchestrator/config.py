"""
Orchestrator configuration.

Defaults come from configs/orchestrator.json ("orchestrator" section) and can
be overridden per run. Invalid values raise pydantic.ValidationError: a bad
configuration is a programmer error, not a runtime condition.
"""

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

from track_orchestrator.services.concurrency_manager.config_loader import get_section


class OrchestratorConfig(BaseModel):
    """Validated orchestrator settings."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_concurrent_units: int = Field(2, ge=1, le=100, description="Tracks processed in parallel")
    max_concurrent_calls: int = Field(6, ge=1, le=1000, description="Analyzer calls in flight")
    max_retries: int = Field(3, ge=0, le=20, description="Retries per item after the first attempt")
    retry_delays_ms: List[float] = Field(
        default_factory=lambda: [1000, 2000, 4000],
        description="Backoff before retry k (last value reused when exhausted)",
    )
    circuit_breaker_threshold: int = Field(5, ge=1, description="Consecutive item failures that break a unit")
    rate_limit_per_minute: int = Field(120, ge=1, description="Analyzer calls allowed per minute")
    adaptive_throttling: bool = Field(True, description="Shrink the call pool under error bursts")
    item_timeout_ms: float = Field(60000, gt=0, description="Slot wait and analyzer timeout per attempt")
    job_timeout_ms: float = Field(600000, gt=0, description="Deadline for a whole run")

    @field_validator("retry_delays_ms")
    @classmethod
    def _non_negative_delays(cls, value: List[float]) -> List[float]:
        if any(delay < 0 for delay in value):
            raise ValueError("retry delays must be >= 0")
        return value

    @classmethod
    def load(cls, **overrides: Any) -> "OrchestratorConfig":
        """JSON defaults merged with non-None overrides."""
        data: Dict[str, Any] = get_section("orchestrator")
        data.update({key: value for key, value in overrides.items() if value is not None})
        return cls.model_validate(data)

    def merged(self, **partial: Any) -> "OrchestratorConfig":
        """Copy with the non-None fields of `partial` applied (validated)."""
        data = self.model_dump()
        data.update({key: value for key, value in partial.items() if value is not None})
        return type(self).model_validate(data)

    def retry_delay_ms(self, attempt: int) -> float:
        """
        Delay before attempt `attempt` (1-indexed, attempt >= 2).

        Uses retry_delays_ms[attempt - 2], reusing the last value.
        """
        if not self.retry_delays_ms or attempt < 2:
            return 0.0
        index = min(attempt - 2, len(self.retry_delays_ms) - 1)
        return float(self.retry_delays_ms[index])
