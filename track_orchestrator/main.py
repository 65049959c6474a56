import logging
import os

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from track_orchestrator.api.v1.router import router as v1_router
from track_orchestrator.core.constants import VERSION
from track_orchestrator.core.logging_utils import setup_logging
from track_orchestrator.core.security import get_api_key
from track_orchestrator.services.job_store import get_job_store

# Configure logging (JSON structured)
setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Track Orchestrator", version=VERSION)


@app.on_event("startup")
async def startup_event():
    """Runs when the application starts"""
    logger.info(f"Track Orchestrator {VERSION} started")


@app.on_event("shutdown")
async def shutdown_event():
    """Cancel running jobs on shutdown"""
    get_job_store().clear()


# --- Global Exception Handlers ---

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global Error: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal Server Error", "error": str(exc)}
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.get("/")
async def root():
    """Health check"""
    return {"status": "ok", "service": "track-orchestrator", "version": VERSION}


app.include_router(v1_router, prefix="/v1", dependencies=[Depends(get_api_key)])


def run():
    """Serve the API (HOST / PORT from the environment)."""
    uvicorn.run(
        "track_orchestrator.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":
    run()
