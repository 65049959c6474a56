"""
HTTP Analyzer Client - remote analysis service behind the Analyzer interface.

POSTs {item_id, payload, scores} to the configured endpoint and returns the
"analysis" field of the JSON answer. Every failure is raised as an
AnalyzerError whose kind drives retry and circuit-break decisions:

- missing endpoint or key      -> auth_missing
- 401 / 403                    -> auth_invalid
- 402 or a "quota" message     -> quota_exceeded
- 429                          -> rate_limited
- 400 / 422                    -> invalid_request
- timeout                      -> timeout
- transport error, 502-504     -> network_error
- undecodable / empty answer   -> parse_error
- anything else                -> unknown
"""

import logging
from typing import Any, Optional, Sequence

import httpx

from track_orchestrator.core.config import settings
from track_orchestrator.services.orchestrator.errors import AnalyzerError, ErrorKind
from track_orchestrator.services.orchestrator.models import WorkItem

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "/v1/analyze"


def error_for_status(status_code: int, message: str) -> AnalyzerError:
    """Map an HTTP error answer to an AnalyzerError."""
    lower = message.lower()
    if status_code in (401, 403):
        kind = ErrorKind.AUTH_INVALID
    elif status_code == 402 or "quota" in lower:
        kind = ErrorKind.QUOTA_EXCEEDED
    elif status_code == 429:
        kind = ErrorKind.RATE_LIMITED
    elif status_code in (400, 422):
        kind = ErrorKind.INVALID_REQUEST
    elif status_code in (502, 503, 504):
        kind = ErrorKind.NETWORK_ERROR
    else:
        kind = ErrorKind.UNKNOWN
    return AnalyzerError(kind, f"Analyzer HTTP {status_code}: {message or 'no details'}")


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        error = data.get("error") or data.get("detail") or data.get("message")
        if isinstance(error, dict):
            error = error.get("message")
        if error:
            return str(error)
    return response.text[:200]


class HttpAnalyzer:
    """
    Analyzer callable backed by an HTTP service.

    Usage:
        async with HttpAnalyzer() as analyzer:
            coordinator = create_coordinator(analyzer)
            ...
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        endpoint: str = DEFAULT_ENDPOINT,
        model: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            base_url: service URL (default: settings.ANALYZER_BASE_URL)
            api_key: bearer token (default: settings.ANALYZER_API_KEY)
            timeout: HTTP timeout in seconds (default: settings.ANALYZER_TIMEOUT_SECONDS)
            endpoint: path of the analysis route
            model: model name forwarded to the service
            client: shared httpx.AsyncClient (closed by its owner)
        """
        self.base_url = (base_url if base_url is not None else settings.ANALYZER_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.ANALYZER_API_KEY
        self.timeout = timeout if timeout is not None else settings.ANALYZER_TIMEOUT_SECONDS
        self.endpoint = endpoint
        self.model = model or settings.ANALYZER_MODEL
        self._client = client
        self._owns_client = client is None

        self._requests = 0
        self._errors = 0

    async def __aenter__(self) -> "HttpAnalyzer":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def __call__(self, item: WorkItem, scores: Sequence[Any]) -> Any:
        if not self.base_url:
            raise AnalyzerError(ErrorKind.AUTH_MISSING, "Analyzer endpoint not configured")
        if not self.api_key:
            raise AnalyzerError(ErrorKind.AUTH_MISSING, "Analyzer API key missing")

        body = {
            "item_id": item.id,
            "model": self.model,
            "payload": item.payload,
            "scores": list(scores),
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        url = f"{self.base_url}{self.endpoint}"

        self._requests += 1
        try:
            response = await self._get_client().post(url, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            self._errors += 1
            raise AnalyzerError(ErrorKind.TIMEOUT, f"Analyzer request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            self._errors += 1
            raise AnalyzerError(ErrorKind.NETWORK_ERROR, f"Analyzer unreachable: {exc}") from exc
        except TypeError as exc:
            self._errors += 1
            raise AnalyzerError(ErrorKind.INVALID_REQUEST, f"Item {item.id} is not JSON serializable") from exc

        if response.status_code >= 400:
            self._errors += 1
            error = error_for_status(response.status_code, _error_message(response))
            logger.warning(f"[HttpAnalyzer] Item {item.id}: {error.kind.value}: {error.message}")
            raise error

        try:
            data = response.json()
        except ValueError as exc:
            self._errors += 1
            raise AnalyzerError(ErrorKind.PARSE_ERROR, "Analyzer returned invalid JSON") from exc

        analysis = data.get("analysis") if isinstance(data, dict) else None
        if analysis is None:
            self._errors += 1
            raise AnalyzerError(ErrorKind.PARSE_ERROR, "No analysis in analyzer response")
        return analysis

    def get_status(self) -> dict:
        return {
            "base_url": self.base_url,
            "endpoint": self.endpoint,
            "model": self.model,
            "configured": bool(self.base_url and self.api_key),
            "requests": self._requests,
            "errors": self._errors,
        }
