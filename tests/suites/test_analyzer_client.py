import asyncio
import json

import httpx
import pytest

from track_orchestrator.services.analyzer_client import HttpAnalyzer, error_for_status
from track_orchestrator.services.orchestrator.errors import AnalyzerError, ErrorKind
from track_orchestrator.services.orchestrator.models import WorkItem

ITEM = WorkItem(id="SAR-1", payload={"race_number": 1})


def _analyzer(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("base_url", "http://analyzer.test")
    kwargs.setdefault("api_key", "secret")
    return HttpAnalyzer(client=client, model="test-model", **kwargs)


def _call(analyzer, item=ITEM, scores=(0.7,)):
    async def scenario():
        try:
            return await analyzer(item, scores)
        finally:
            await analyzer._client.aclose()

    return asyncio.run(scenario())


def test_successful_call_sends_item_and_scores():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"analysis": "Pick #4"})

    analyzer = _analyzer(handler)
    assert _call(analyzer) == "Pick #4"

    assert seen["url"] == "http://analyzer.test/v1/analyze"
    assert seen["auth"] == "Bearer secret"
    assert seen["body"] == {
        "item_id": "SAR-1",
        "model": "test-model",
        "payload": {"race_number": 1},
        "scores": [0.7],
    }
    assert analyzer.get_status()["requests"] == 1
    assert analyzer.get_status()["errors"] == 0


@pytest.mark.parametrize(
    "status_code, body, kind",
    [
        (401, {"error": "bad token"}, ErrorKind.AUTH_INVALID),
        (402, {"error": "pay up"}, ErrorKind.QUOTA_EXCEEDED),
        (429, {"error": "slow down"}, ErrorKind.RATE_LIMITED),
        (422, {"detail": "bad payload"}, ErrorKind.INVALID_REQUEST),
        (503, {"error": {"message": "overloaded"}}, ErrorKind.NETWORK_ERROR),
        (500, {"error": "boom"}, ErrorKind.UNKNOWN),
    ],
)
def test_http_errors_are_classified(status_code, body, kind):
    analyzer = _analyzer(lambda request: httpx.Response(status_code, json=body))

    with pytest.raises(AnalyzerError) as excinfo:
        _call(analyzer)

    assert excinfo.value.kind is kind
    assert str(status_code) in excinfo.value.message
    assert analyzer.get_status()["errors"] == 1


def test_quota_message_wins_over_status():
    assert error_for_status(429, "Daily quota exhausted").kind is ErrorKind.QUOTA_EXCEEDED
    assert error_for_status(400, "").message == "Analyzer HTTP 400: no details"


def test_timeout_and_transport_errors():
    def slow(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(AnalyzerError) as excinfo:
        _call(_analyzer(slow))
    assert excinfo.value.kind is ErrorKind.TIMEOUT
    assert excinfo.value.retryable

    with pytest.raises(AnalyzerError) as excinfo:
        _call(_analyzer(unreachable))
    assert excinfo.value.kind is ErrorKind.NETWORK_ERROR


def test_unusable_answers_are_parse_errors():
    with pytest.raises(AnalyzerError) as excinfo:
        _call(_analyzer(lambda request: httpx.Response(200, text="<html>")))
    assert excinfo.value.kind is ErrorKind.PARSE_ERROR

    with pytest.raises(AnalyzerError) as excinfo:
        _call(_analyzer(lambda request: httpx.Response(200, json={"result": "x"})))
    assert excinfo.value.kind is ErrorKind.PARSE_ERROR
    assert not excinfo.value.retryable


def test_missing_credentials_fail_without_request():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"analysis": "x"})

    with pytest.raises(AnalyzerError) as excinfo:
        _call(_analyzer(handler, api_key=""))
    assert excinfo.value.kind is ErrorKind.AUTH_MISSING

    with pytest.raises(AnalyzerError) as excinfo:
        _call(_analyzer(handler, base_url=""))
    assert excinfo.value.kind is ErrorKind.AUTH_MISSING
    assert calls == []


def test_unserializable_payload_is_invalid_request():
    analyzer = _analyzer(lambda request: httpx.Response(200, json={"analysis": "x"}))
    item = WorkItem(id="SAR-2", payload={"when": object()})

    with pytest.raises(AnalyzerError) as excinfo:
        _call(analyzer, item=item)
    assert excinfo.value.kind is ErrorKind.INVALID_REQUEST


def test_context_manager_closes_owned_client():
    async def scenario():
        async with HttpAnalyzer(base_url="http://analyzer.test", api_key="k") as analyzer:
            client = analyzer._get_client()
        return analyzer, client

    analyzer, client = asyncio.run(scenario())
    assert client.is_closed
    assert analyzer._client is None
