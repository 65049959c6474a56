import asyncio

import pytest

from track_orchestrator.services.orchestrator.errors import (
    AnalyzerError,
    AnalyzerTimeoutError,
    ErrorKind,
    SlotUnavailableError,
    classify_error,
    is_recoverable,
)


class CodedError(Exception):
    def __init__(self, message, code):
        super().__init__(message)
        self.code = code


class KindError(Exception):
    def __init__(self, message, kind):
        super().__init__(message)
        self.kind = kind


@pytest.mark.parametrize("kind", ["auth_missing", "auth_invalid", "quota_exceeded", "parse_error", "invalid_request"])
def test_permanent_kinds_are_not_retryable(kind):
    error = AnalyzerError(kind, "nope")
    assert not error.retryable
    assert not is_recoverable(error)


@pytest.mark.parametrize("kind", ["network_error", "timeout", "rate_limited", "unknown", "slot_unavailable"])
def test_transient_kinds_are_retryable(kind):
    assert is_recoverable(AnalyzerError(kind))


def test_unknown_kind_rejected():
    with pytest.raises(ValueError):
        AnalyzerError("exploded")


def test_specialized_errors():
    assert AnalyzerTimeoutError().kind is ErrorKind.TIMEOUT
    slot_error = SlotUnavailableError("rate_limited")
    assert slot_error.kind is ErrorKind.SLOT_UNAVAILABLE
    assert slot_error.reason == "rate_limited"
    assert "rate_limited" in str(slot_error)


@pytest.mark.parametrize(
    "exc, expected",
    [
        (asyncio.TimeoutError(), ErrorKind.TIMEOUT),
        (ConnectionResetError("peer gone"), ErrorKind.NETWORK_ERROR),
        (RuntimeError("Quota exceeded for project"), ErrorKind.QUOTA_EXCEEDED),
        (RuntimeError("HTTP 401 Unauthorized"), ErrorKind.AUTH_INVALID),
        (RuntimeError("429 Too Many Requests"), ErrorKind.RATE_LIMITED),
        (RuntimeError("request timed out"), ErrorKind.TIMEOUT),
        (RuntimeError("Failed to parse model output"), ErrorKind.PARSE_ERROR),
        (RuntimeError("something odd"), ErrorKind.UNKNOWN),
        (RuntimeError(""), ErrorKind.UNKNOWN),
        (CodedError("x", "API_KEY_MISSING"), ErrorKind.AUTH_MISSING),
        (CodedError("x", "rate_limited"), ErrorKind.RATE_LIMITED),
        (KindError("credentials rejected", "auth_invalid"), ErrorKind.AUTH_INVALID),
        (KindError("x", ErrorKind.QUOTA_EXCEEDED), ErrorKind.QUOTA_EXCEEDED),
        (KindError("x", "API_KEY_INVALID"), ErrorKind.AUTH_INVALID),
        (KindError("connection refused", "not-a-kind"), ErrorKind.NETWORK_ERROR),
    ],
)
def test_classify_error(exc, expected):
    assert classify_error(exc) is expected


def test_plain_exceptions_use_classification():
    assert is_recoverable(RuntimeError("connection refused"))
    assert not is_recoverable(RuntimeError("invalid api key"))


def test_cancellation_is_never_recoverable():
    assert not is_recoverable(asyncio.CancelledError())


def test_kind_attribute_decides_retryability():
    error = KindError("credentials rejected", "auth_invalid")
    assert not is_recoverable(error)
    assert is_recoverable(KindError("credentials rejected", "network_error"))
