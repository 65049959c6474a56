"""
Analyze Tracks v1 endpoints - background track analysis jobs.
"""
import logging
from dataclasses import asdict
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import ValidationError

from track_orchestrator.core.constants import API_ESTIMATED_MS_PER_RACE, ERROR_CODE_RATE_LIMITED
from track_orchestrator.schemas.v1.analyze_tracks import (
    AnalyzeTracksRequest,
    AnalyzeTracksResponse,
    CancelJobResponse,
    JobStatusModel,
    JobStatusResponse,
    TrackRequest,
)
from track_orchestrator.services.analyzer_client import HttpAnalyzer
from track_orchestrator.services.concurrency_manager.config_loader import get_section
from track_orchestrator.services.concurrency_manager.rate_limiter import KeyedRateLimiter
from track_orchestrator.services.job_store import JobEntry, get_job_store, new_job_id
from track_orchestrator.services.orchestrator.config import OrchestratorConfig
from track_orchestrator.services.orchestrator.coordinator import create_coordinator
from track_orchestrator.services.orchestrator.models import Job, WorkItem
from track_orchestrator.services.orchestrator.unit_processor import Analyzer

logger = logging.getLogger(__name__)

router = APIRouter()

_client_limiter: Optional[KeyedRateLimiter] = None
_analyzer: Optional[HttpAnalyzer] = None


def get_client_limiter() -> KeyedRateLimiter:
    """Per-client limiter for job submissions."""
    global _client_limiter
    if _client_limiter is None:
        rpm = get_section("api").get("requests_per_minute", 10)
        _client_limiter = KeyedRateLimiter(
            max_requests=rpm,
            window_ms=60000,
            name="analyze-tracks",
            message=f"Rate limit exceeded. Max {rpm} job requests per minute.",
        )
    return _client_limiter


def get_analyzer() -> Analyzer:
    """Analyzer used by background jobs (overridable in tests)."""
    global _analyzer
    if _analyzer is None:
        _analyzer = HttpAnalyzer()
    return _analyzer


def _client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _to_job(track: TrackRequest) -> Job:
    items = []
    for index, race in enumerate(track.races, start=1):
        race_id = race.get("id", race.get("race_number", index))
        items.append(WorkItem(id=str(race_id), payload=race))
    return Job(id=track.track_code, items=items, priority=track.priority, metadata=track.metadata)


def _validate_tracks(tracks: List[TrackRequest]) -> None:
    codes = [track.track_code for track in tracks]
    duplicates = sorted({code for code in codes if codes.count(code) > 1})
    if duplicates:
        raise HTTPException(
            status_code=400,
            detail={"error": f"Duplicate track codes: {', '.join(duplicates)}", "code": "INVALID_REQUEST"},
        )


@router.post("/analyze-tracks", response_model=AnalyzeTracksResponse, status_code=202)
async def analyze_tracks(
    payload: AnalyzeTracksRequest,
    request: Request,
    response: Response,
    analyzer: Analyzer = Depends(get_analyzer),
) -> AnalyzeTracksResponse:
    """
    Start a track analysis job in the background.
    Poll GET /v1/job-status/{job_id} for progress and results.
    """
    rate = get_client_limiter().check(_client_key(request))
    response.headers["X-RateLimit-Remaining"] = str(rate.remaining)
    if not rate.allowed:
        raise HTTPException(
            status_code=429,
            detail={"error": rate.message, "code": ERROR_CODE_RATE_LIMITED},
            headers={"Retry-After": str(max(1, int(rate.retry_after_ms / 1000)))},
        )

    _validate_tracks(payload.tracks)

    overrides = payload.config.model_dump(exclude_none=True) if payload.config else {}
    try:
        config = OrchestratorConfig.load(**overrides)
    except ValidationError as exc:
        raise HTTPException(
            status_code=400,
            detail={"error": f"Invalid config: {exc.errors()[0]['msg']}", "code": "INVALID_REQUEST"},
        )

    jobs = [_to_job(track) for track in payload.tracks]
    total_races = sum(len(job.items) for job in jobs)

    entry = JobEntry(
        job_id=new_job_id(),
        coordinator=create_coordinator(analyzer, config=config),
        jobs=jobs,
    )
    get_job_store().start(entry)

    logger.info(
        f"Job {entry.job_id} accepted: {len(jobs)} tracks, {total_races} races "
        f"(client {_client_key(request)})"
    )

    return AnalyzeTracksResponse(
        job_id=entry.job_id,
        message=f"Job created. Processing {len(jobs)} tracks with {total_races} races.",
        estimated_time_ms=total_races * API_ESTIMATED_MS_PER_RACE,
    )


@router.get("/job-status/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str) -> JobStatusResponse:
    """Live status of a job, with the result once it finished."""
    entry = get_job_store().get(job_id)
    if not entry:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found.")

    snapshot = asdict(entry.status)
    snapshot["state"] = entry.state.value
    snapshot.pop("job_id", None)

    return JobStatusResponse(
        job_id=job_id,
        status=JobStatusModel(**snapshot),
        result=entry.result.to_dict() if entry.result else None,
        error=entry.error,
    )


@router.post("/jobs/{job_id}/cancel", response_model=CancelJobResponse)
async def cancel_job(job_id: str) -> CancelJobResponse:
    """Cancel a running job (in-flight analyzer calls finish first)."""
    entry = get_job_store().get(job_id)
    if not entry or not entry.running:
        raise HTTPException(status_code=404, detail=f"No running job {job_id}.")

    entry.coordinator.cancel()
    return CancelJobResponse(success=True, message=f"Job {job_id} cancelled.")
