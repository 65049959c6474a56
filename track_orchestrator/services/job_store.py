"""
Job Store - in-memory registry of jobs started through the API.

Entries live in process memory only: a restart forgets them. Cleanup keeps
the newest `max_jobs` entries and, beyond that, drops those older than
`ttl_seconds`.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from track_orchestrator.services.concurrency_manager.config_loader import get_section
from track_orchestrator.services.orchestrator.coordinator import Coordinator
from track_orchestrator.services.orchestrator.models import (
    AggregateResult,
    Job,
    ProcessingState,
    ProcessingStatus,
)

logger = logging.getLogger(__name__)


def new_job_id() -> str:
    return f"job-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


@dataclass
class JobEntry:
    job_id: str
    coordinator: Coordinator
    jobs: List[Job]
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    result: Optional[AggregateResult] = None
    error: Optional[str] = None
    task: Optional["asyncio.Task[Any]"] = None

    @property
    def status(self) -> ProcessingStatus:
        return self.coordinator.status()

    @property
    def state(self) -> ProcessingState:
        if self.error is not None:
            return ProcessingState.FAILED
        state = self.coordinator.status().state
        if state is ProcessingState.IDLE and self.running:
            return ProcessingState.STARTING
        return state

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()


class JobStore:
    """Job registry with bounded size."""

    def __init__(self, max_jobs: int = 100, ttl_seconds: float = 3600):
        self.max_jobs = max_jobs
        self.ttl_seconds = ttl_seconds
        self._jobs: Dict[str, JobEntry] = {}

    def add(self, entry: JobEntry) -> None:
        self.cleanup()
        self._jobs[entry.job_id] = entry

    def get(self, job_id: str) -> Optional[JobEntry]:
        return self._jobs.get(job_id)

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def cleanup(self, now: Optional[float] = None) -> int:
        """
        Drop expired entries beyond the newest `max_jobs`.

        Returns:
            Number of removed entries
        """
        now = now if now is not None else time.time()
        cutoff = now - self.ttl_seconds
        newest_first = sorted(self._jobs.values(), key=lambda e: e.created_at, reverse=True)

        removed = 0
        for entry in newest_first[self.max_jobs:]:
            if entry.created_at < cutoff and not entry.running:
                del self._jobs[entry.job_id]
                removed += 1

        if removed:
            logger.info(f"[JobStore] Removed {removed} expired jobs ({len(self._jobs)} kept)")
        return removed

    def start(self, entry: JobEntry) -> JobEntry:
        """Register the entry and run its coordinator in the background."""
        self.add(entry)
        entry.task = asyncio.get_running_loop().create_task(self._run(entry))
        return entry

    async def _run(self, entry: JobEntry) -> None:
        try:
            entry.result = await entry.coordinator.run(entry.jobs, job_id=entry.job_id)
        except Exception as exc:
            entry.error = str(exc)
            logger.error(f"[JobStore] Job {entry.job_id} failed: {exc}", exc_info=True)
        finally:
            entry.updated_at = time.time()

    def clear(self) -> None:
        for entry in self._jobs.values():
            if entry.running:
                entry.coordinator.cancel()
        self._jobs.clear()


_job_store: Optional[JobStore] = None


def get_job_store() -> JobStore:
    """Process-wide store used by the API routes."""
    global _job_store
    if _job_store is None:
        api_config = get_section("api")
        _job_store = JobStore(
            max_jobs=api_config.get("max_stored_jobs", 100),
            ttl_seconds=api_config.get("job_ttl_seconds", 3600),
        )
    return _job_store


def set_job_store(store: Optional[JobStore]) -> None:
    global _job_store
    _job_store = store
