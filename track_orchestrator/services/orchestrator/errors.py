"""
Analyzer error taxonomy.

The analyzer may raise AnalyzerError with an explicit kind. Anything else is
classified from its type and message, the same keyword approach used for
batch error categories. The kind decides retryability.
"""

import asyncio
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Error kinds recognized by retry and circuit-break logic."""
    AUTH_MISSING = "auth_missing"
    AUTH_INVALID = "auth_invalid"
    QUOTA_EXCEEDED = "quota_exceeded"
    PARSE_ERROR = "parse_error"
    INVALID_REQUEST = "invalid_request"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    SLOT_UNAVAILABLE = "slot_unavailable"
    UNKNOWN = "unknown"


NON_RETRYABLE_KINDS = frozenset([
    ErrorKind.AUTH_MISSING,
    ErrorKind.AUTH_INVALID,
    ErrorKind.QUOTA_EXCEEDED,
    ErrorKind.PARSE_ERROR,
    ErrorKind.INVALID_REQUEST,
])

# Upper-case codes used by older analyzer clients
LEGACY_CODES = {
    "API_KEY_MISSING": ErrorKind.AUTH_MISSING,
    "API_KEY_INVALID": ErrorKind.AUTH_INVALID,
    "QUOTA_EXCEEDED": ErrorKind.QUOTA_EXCEEDED,
    "PARSE_ERROR": ErrorKind.PARSE_ERROR,
    "INVALID_REQUEST": ErrorKind.INVALID_REQUEST,
    "NETWORK_ERROR": ErrorKind.NETWORK_ERROR,
    "TIMEOUT": ErrorKind.TIMEOUT,
    "RATE_LIMITED": ErrorKind.RATE_LIMITED,
}

# Checked in order; the first category with a matching keyword wins
ERROR_KEYWORDS = (
    (ErrorKind.QUOTA_EXCEEDED, ("quota", "402", "billing")),
    (ErrorKind.AUTH_MISSING, ("api key missing", "no api key", "missing api key")),
    (ErrorKind.AUTH_INVALID, ("401", "403", "unauthorized", "forbidden", "invalid api key")),
    (ErrorKind.RATE_LIMITED, ("429", "rate limit", "too many requests")),
    (ErrorKind.TIMEOUT, ("timeout", "timed out")),
    (ErrorKind.NETWORK_ERROR, ("connection", "network", "dns", "502", "503", "504")),
    (ErrorKind.PARSE_ERROR, ("parse", "json", "malformed")),
    (ErrorKind.INVALID_REQUEST, ("400", "invalid request", "bad request")),
)


class AnalyzerError(Exception):
    """Typed analyzer failure. `retryable` is derived from `kind`."""

    def __init__(self, kind, message: str = ""):
        self.kind = ErrorKind(kind)
        self.message = message or self.kind.value
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.kind not in NON_RETRYABLE_KINDS

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class AnalyzerTimeoutError(AnalyzerError):
    """The analyzer did not answer within the item timeout."""

    def __init__(self, message: str = "Analyzer call timed out"):
        super().__init__(ErrorKind.TIMEOUT, message)


class SlotUnavailableError(AnalyzerError):
    """No call slot was granted (timeout, rate limit or reset)."""

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason
        super().__init__(ErrorKind.SLOT_UNAVAILABLE, f"Call slot not acquired: {reason or 'unknown'}")


def _kind_from_tag(tag: Any) -> Optional[ErrorKind]:
    if isinstance(tag, ErrorKind):
        return tag
    if isinstance(tag, str):
        if tag in LEGACY_CODES:
            return LEGACY_CODES[tag]
        try:
            return ErrorKind(tag)
        except ValueError:
            return None
    return None


def classify_error(exc: BaseException) -> ErrorKind:
    """
    Map any exception to an ErrorKind.

    Checked in order: AnalyzerError, timeout and connection types, a `kind`
    attribute, a `code` attribute, then keywords in the message.
    """
    if isinstance(exc, AnalyzerError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, ConnectionError):
        return ErrorKind.NETWORK_ERROR

    for attribute in ("kind", "code"):
        kind = _kind_from_tag(getattr(exc, attribute, None))
        if kind is not None:
            return kind

    message = str(exc).lower()
    if message:
        for kind, keywords in ERROR_KEYWORDS:
            if any(keyword in message for keyword in keywords):
                return kind
    return ErrorKind.UNKNOWN


def is_recoverable(exc: BaseException) -> bool:
    """True when the error is worth another attempt."""
    if not isinstance(exc, Exception):
        return False
    if isinstance(exc, AnalyzerError):
        return exc.retryable
    return classify_error(exc) not in NON_RETRYABLE_KINDS
