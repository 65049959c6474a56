"""
Pydantic schemas for the v1 analyze-tracks endpoints.
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict, Any

from track_orchestrator.core.constants import API_MAX_TRACKS_PER_REQUEST


class TrackRequest(BaseModel):
    """One track: its races are analyzed sequentially."""
    track_code: str = Field(..., min_length=1, description="Unique track code within the request")
    races: List[Dict[str, Any]] = Field(default_factory=list, description="Race payloads (opaque)")
    priority: Optional[int] = Field(None, description="Lower runs first; empty runs last")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class OrchestratorConfigOverride(BaseModel):
    """Per-job overrides of the orchestrator defaults."""
    max_concurrent_units: Optional[int] = Field(None, ge=1, le=100)
    max_concurrent_calls: Optional[int] = Field(None, ge=1, le=1000)
    max_retries: Optional[int] = Field(None, ge=0, le=20)
    retry_delays_ms: Optional[List[float]] = None
    circuit_breaker_threshold: Optional[int] = Field(None, ge=1)
    rate_limit_per_minute: Optional[int] = Field(None, ge=1)
    adaptive_throttling: Optional[bool] = None
    item_timeout_ms: Optional[float] = Field(None, gt=0)
    job_timeout_ms: Optional[float] = Field(None, gt=0)

    model_config = ConfigDict(extra="forbid")


class AnalyzeTracksRequest(BaseModel):
    """Request to start a track analysis job."""
    tracks: List[TrackRequest] = Field(
        ...,
        min_length=1,
        max_length=API_MAX_TRACKS_PER_REQUEST,
        description="Tracks to analyze (1 to 6)",
    )
    config: Optional[OrchestratorConfigOverride] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "tracks": [
                    {
                        "track_code": "SAR",
                        "races": [{"race_number": 1, "scores": []}, {"race_number": 2, "scores": []}],
                        "priority": 1,
                    }
                ],
                "config": {"max_concurrent_units": 2, "max_retries": 2},
            }
        }
    )


class AnalyzeTracksResponse(BaseModel):
    """Response when a job is accepted (202)."""
    job_id: str
    message: str
    estimated_time_ms: int


class JobStatusModel(BaseModel):
    """Live status of a job."""
    active: bool
    state: str = Field(description="idle, starting, processing, completing, completed, failed, cancelled")
    units_complete: int
    units_total: int
    items_processed: int
    items_total: int
    current_unit: Optional[str] = None
    started_at: Optional[float] = None
    estimated_time_remaining_ms: Optional[float] = None


class JobStatusResponse(BaseModel):
    """Response of GET /v1/job-status/{job_id}."""
    job_id: str
    status: JobStatusModel
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class CancelJobResponse(BaseModel):
    success: bool
    message: str
