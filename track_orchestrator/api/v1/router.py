"""
Main router for API v1.
Groups every v1 endpoint in a single router.
"""
from fastapi import APIRouter
from track_orchestrator.api.v1 import analyze_tracks

router = APIRouter()


@router.get("/")
async def v1_root():
    """v1 root endpoint - lists the available endpoints"""
    return {
        "version": "v1",
        "status": "ok",
        "endpoints": {
            "analyze_tracks": "POST /v1/analyze-tracks",
            "job_status": "GET /v1/job-status/{job_id}",
            "cancel_job": "POST /v1/jobs/{job_id}/cancel",
        },
        "docs": "/docs"
    }

router.include_router(analyze_tracks.router, tags=["v1-analyze-tracks"])

__all__ = ["router"]
