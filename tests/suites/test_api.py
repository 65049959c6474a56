import time

import pytest
from fastapi.testclient import TestClient

from helpers import ScriptedAnalyzer
from track_orchestrator.api.v1 import analyze_tracks
from track_orchestrator.core.config import settings
from track_orchestrator.main import app
from track_orchestrator.services.concurrency_manager.rate_limiter import KeyedRateLimiter
from track_orchestrator.services.job_store import JobStore, set_job_store

TERMINAL = ("completed", "failed", "cancelled")


@pytest.fixture
def analyzer_factory():
    holder = {"analyzer": ScriptedAnalyzer()}
    app.dependency_overrides[analyze_tracks.get_analyzer] = lambda: holder["analyzer"]
    yield holder
    app.dependency_overrides.clear()


@pytest.fixture
def client(analyzer_factory):
    set_job_store(JobStore())
    analyze_tracks._client_limiter = None
    with TestClient(app) as test_client:
        yield test_client
    set_job_store(None)
    analyze_tracks._client_limiter = None


def _track(code, races=2, priority=None):
    return {
        "track_code": code,
        "races": [{"race_number": number, "scores": [number]} for number in range(1, races + 1)],
        "priority": priority,
    }


def _wait_for_result(client, job_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/v1/job-status/{job_id}").json()
        if body["status"]["state"] in TERMINAL and (body["result"] or body["error"]):
            return body
        assert time.monotonic() < deadline, f"job {job_id} still {body['status']['state']}"
        time.sleep(0.02)


def test_health(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_v1_root_lists_endpoints(client):
    body = client.get("/v1/").json()
    assert "analyze_tracks" in body["endpoints"]


def test_job_runs_to_completion(client, analyzer_factory):
    response = client.post("/v1/analyze-tracks", json={"tracks": [_track("SAR", 2), _track("AQU", 1)]})

    assert response.status_code == 202
    payload = response.json()
    assert payload["estimated_time_ms"] == 3 * 5000
    assert "X-RateLimit-Remaining" in response.headers

    body = _wait_for_result(client, payload["job_id"])
    assert body["status"]["state"] == "completed"
    assert body["status"]["items_total"] == 3
    assert body["result"]["summary"]["successful"] == 3
    assert body["result"]["job_id"] == payload["job_id"]
    assert sorted(analyzer_factory["analyzer"].calls) == ["1", "1", "2"]


def test_race_ids_prefer_explicit_id(client, analyzer_factory):
    track = {"track_code": "BEL", "races": [{"id": "BEL-7"}, {"race_number": 3}, {}]}
    job_id = client.post("/v1/analyze-tracks", json={"tracks": [track]}).json()["job_id"]

    _wait_for_result(client, job_id)
    assert analyzer_factory["analyzer"].calls == ["BEL-7", "3", "3"]


def test_duplicate_track_codes_rejected(client):
    response = client.post("/v1/analyze-tracks", json={"tracks": [_track("SAR"), _track("SAR")]})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "INVALID_REQUEST"


def test_track_count_is_bounded(client):
    tracks = [_track(f"T{index}") for index in range(7)]
    assert client.post("/v1/analyze-tracks", json={"tracks": tracks}).status_code == 422
    assert client.post("/v1/analyze-tracks", json={"tracks": []}).status_code == 422


def test_config_overrides_are_validated(client):
    response = client.post(
        "/v1/analyze-tracks",
        json={"tracks": [_track("SAR")], "config": {"retry_delays_ms": [100, -5]}},
    )
    assert response.status_code == 400
    assert "Invalid config" in response.json()["detail"]["error"]

    response = client.post("/v1/analyze-tracks", json={"tracks": [_track("SAR")], "config": {"unknown": 1}})
    assert response.status_code == 422


def test_submissions_are_rate_limited_per_client(client):
    analyze_tracks._client_limiter = KeyedRateLimiter(max_requests=1, message="Rate limit exceeded.")

    first = client.post("/v1/analyze-tracks", json={"tracks": [_track("SAR", 0)]})
    second = client.post("/v1/analyze-tracks", json={"tracks": [_track("SAR", 0)]})

    assert first.status_code == 202
    assert second.status_code == 429
    assert second.json()["detail"]["code"] == "RATE_LIMITED"
    assert int(second.headers["Retry-After"]) >= 1

    other_client = client.post(
        "/v1/analyze-tracks",
        json={"tracks": [_track("SAR", 0)]},
        headers={"X-Forwarded-For": "203.0.113.9"},
    )
    assert other_client.status_code == 202


def test_unknown_job_returns_404(client):
    assert client.get("/v1/job-status/job-missing").status_code == 404
    assert client.post("/v1/jobs/job-missing/cancel").status_code == 404


def test_running_job_can_be_cancelled(client, analyzer_factory):
    analyzer_factory["analyzer"] = ScriptedAnalyzer(delay=0.1)
    job_id = client.post("/v1/analyze-tracks", json={"tracks": [_track("GP", 6)]}).json()["job_id"]

    time.sleep(0.05)
    response = client.post(f"/v1/jobs/{job_id}/cancel")
    assert response.status_code == 200
    assert response.json()["success"] is True

    body = _wait_for_result(client, job_id)
    assert body["status"]["state"] == "cancelled"
    assert body["result"]["summary"]["cancelled"] > 0

    assert client.post(f"/v1/jobs/{job_id}/cancel").status_code == 404


def test_api_key_required_when_configured(client, monkeypatch):
    monkeypatch.setattr(settings, "API_ACCESS_TOKEN", "s3cret")

    assert client.get("/v1/").status_code == 403
    assert client.get("/v1/", headers={"X-API-Key": "wrong"}).status_code == 403
    assert client.get("/v1/", headers={"X-API-Key": "s3cret"}).status_code == 200
    # Health check stays open
    assert client.get("/").status_code == 200
