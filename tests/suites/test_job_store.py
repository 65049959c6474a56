import asyncio

from helpers import ScriptedAnalyzer, make_config, make_job
from track_orchestrator.services.job_store import JobEntry, JobStore, new_job_id
from track_orchestrator.services.orchestrator.coordinator import create_coordinator
from track_orchestrator.services.orchestrator.models import ProcessingState


def _entry(job_id, jobs=None, created_at=None):
    entry = JobEntry(
        job_id=job_id,
        coordinator=create_coordinator(ScriptedAnalyzer(), config=make_config()),
        jobs=jobs if jobs is not None else [make_job("AQU", 2)],
    )
    if created_at is not None:
        entry.created_at = created_at
    return entry


def test_new_job_ids_are_unique():
    assert new_job_id() != new_job_id()
    assert new_job_id().startswith("job-")


def test_started_job_stores_result():
    store = JobStore()

    async def scenario():
        entry = store.start(_entry("job-1"))
        assert entry.running
        await entry.task
        return entry

    entry = asyncio.run(scenario())

    assert "job-1" in store
    assert store.get("job-1") is entry
    assert entry.result.summary.successful == 2
    assert entry.result.job_id == "job-1"
    assert entry.state is ProcessingState.COMPLETED
    assert entry.error is None


def test_invalid_batch_marks_entry_failed():
    store = JobStore()
    jobs = [make_job("AQU", 1), make_job("AQU", 1)]

    async def scenario():
        entry = store.start(_entry("job-2", jobs=jobs))
        await entry.task
        return entry

    entry = asyncio.run(scenario())

    assert entry.state is ProcessingState.FAILED
    assert "Duplicate" in entry.error
    assert entry.result is None


def test_cleanup_keeps_newest_and_drops_expired():
    store = JobStore(max_jobs=10, ttl_seconds=100)
    for index, created_at in enumerate([1000.0, 1050.0, 1900.0, 1950.0]):
        store.add(_entry(f"job-{index}", created_at=created_at))
    store.max_jobs = 2

    removed = store.cleanup(now=2000.0)

    # job-1 (created 1050) is expired but only entries beyond the newest two go
    assert removed == 2
    assert len(store) == 2
    assert "job-2" in store and "job-3" in store


def test_cleanup_keeps_unexpired_overflow():
    store = JobStore(max_jobs=1, ttl_seconds=100)
    store.add(_entry("old", created_at=1950.0))
    store.add(_entry("new", created_at=1990.0))

    assert store.cleanup(now=2000.0) == 0
    assert len(store) == 2


def test_clear_empties_store():
    store = JobStore()
    store.add(_entry("job-1"))
    store.clear()
    assert len(store) == 0
