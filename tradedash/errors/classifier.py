"""
Error taxonomy and classification for remote trade-data operations.

Every failure that crosses the service boundary is converted into an
EnhancedError. Severity, retryability, fallback availability and the
user-facing message are all derived from the classified kind, so call
sites never set them independently.

Kinds:
- NETWORK: connection refused/reset, DNS, transport failures
- TIMEOUT: request or read timeouts
- API: HTTP error responses from the datastore
- CACHE: local cache/snapshot failures
- VALIDATION: malformed input or rows
- UNKNOWN: anything else
"""

import asyncio
import random
import re
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)


class ErrorKind(str, Enum):
    """Classified failure kind."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    API = "api"
    CACHE = "cache"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    """Failure severity (derived from kind)."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_BY_KIND: dict[ErrorKind, ErrorSeverity] = {
    ErrorKind.NETWORK: ErrorSeverity.MEDIUM,
    ErrorKind.TIMEOUT: ErrorSeverity.MEDIUM,
    ErrorKind.API: ErrorSeverity.HIGH,
    ErrorKind.CACHE: ErrorSeverity.LOW,
    ErrorKind.VALIDATION: ErrorSeverity.MEDIUM,
    ErrorKind.UNKNOWN: ErrorSeverity.CRITICAL,
}

USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.NETWORK: "Please check your network connection. Showing cached data.",
    ErrorKind.TIMEOUT: "The request timed out. Please try again.",
    ErrorKind.API: "The server returned an error. Please try again shortly.",
    ErrorKind.CACHE: "A data cache error occurred. Please refresh.",
    ErrorKind.VALIDATION: "The input data is invalid. Please check it.",
    ErrorKind.UNKNOWN: "An unexpected error occurred. Please try again.",
}

# (keywords, kind) checked in order against the lowercased message
_MESSAGE_RULES: tuple[tuple[tuple[str, ...], ErrorKind], ...] = (
    (("network", "fetch"), ErrorKind.NETWORK),
    (("timeout", "timed out"), ErrorKind.TIMEOUT),
    (("api", "server"), ErrorKind.API),
    (("cache", "storage"), ErrorKind.CACHE),
    (("validation", "invalid"), ErrorKind.VALIDATION),
)

_STATUS_PATTERN = re.compile(r"\b(\d{3})\b")


# ============================================================================
# Raw exception hierarchy
# ============================================================================


class TradeDataError(Exception):
    """Base class for failures raised by this package."""

    kind: ErrorKind = ErrorKind.UNKNOWN


class DataNetworkError(TradeDataError):
    """The datastore could not be reached."""

    kind = ErrorKind.NETWORK


class DataTimeoutError(TradeDataError):
    """The datastore did not answer in time."""

    kind = ErrorKind.TIMEOUT


class DataApiError(TradeDataError):
    """The datastore answered with an error status."""

    kind = ErrorKind.API

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CacheError(TradeDataError):
    """Local cache or snapshot failure."""

    kind = ErrorKind.CACHE


class DataValidationError(TradeDataError):
    """Malformed record, row, or filter specification."""

    kind = ErrorKind.VALIDATION


# ============================================================================
# Classified error
# ============================================================================


@dataclass
class ErrorContext:
    """Where and when a failure happened."""

    operation: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: str = ""
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.correlation_id:
            self.correlation_id = generate_correlation_id()


class EnhancedError(Exception):
    """
    A classified failure.

    Only ``kind`` is chosen by classification; every other flag is derived
    from it (plus the HTTP status for API errors).
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        context: ErrorContext,
        status_code: Optional[int] = None,
        original: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.context = context
        self.status_code = status_code
        self.original = original
        self.severity = SEVERITY_BY_KIND[kind]
        self.retryable = _is_retryable(kind, status_code, message)
        self.fallback_available = kind in (ErrorKind.NETWORK, ErrorKind.API)
        self.user_message = USER_MESSAGES[kind]
        if original is not None:
            self.__cause__ = original

    def to_dict(self) -> dict[str, Any]:
        """Serializable view (for analytics and the dashboard)."""
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
            "user_message": self.user_message,
            "retryable": self.retryable,
            "fallback_available": self.fallback_available,
            "status_code": self.status_code,
            "operation": self.context.operation,
            "timestamp": self.context.timestamp.isoformat(),
            "correlation_id": self.context.correlation_id,
        }

    def __repr__(self) -> str:
        return (
            f"EnhancedError(kind={self.kind.value}, severity={self.severity.value}, "
            f"operation={self.context.operation!r}, message={self.message!r})"
        )


def generate_correlation_id() -> str:
    """Correlation id in the form ``err-<epoch ms>-<9 base36 chars>``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"err-{int(time.time() * 1000)}-{suffix}"


def _is_retryable(kind: ErrorKind, status_code: Optional[int], message: str) -> bool:
    if kind in (ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.CACHE):
        return True
    if kind == ErrorKind.API:
        if status_code is None:
            match = _STATUS_PATTERN.search(message)
            if not match:
                return False
            status_code = int(match.group(1))
        return status_code >= 500 or status_code == 429
    return False


def _kind_from_message(message: str) -> ErrorKind:
    lowered = message.lower()
    for keywords, kind in _MESSAGE_RULES:
        if any(word in lowered for word in keywords):
            return kind
    return ErrorKind.UNKNOWN


def _kind_and_status(error: BaseException) -> tuple[ErrorKind, Optional[int]]:
    """Map a raw exception to (kind, http status)."""
    if isinstance(error, DataApiError):
        return ErrorKind.API, error.status_code
    if isinstance(error, TradeDataError):
        return error.kind, None

    # httpx: TimeoutException subclasses TransportError, so check it first
    if isinstance(error, httpx.TimeoutException):
        return ErrorKind.TIMEOUT, None
    if isinstance(error, httpx.HTTPStatusError):
        return ErrorKind.API, error.response.status_code
    if isinstance(error, httpx.TransportError):
        return ErrorKind.NETWORK, None

    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT, None
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorKind.NETWORK, None
    if isinstance(error, (ValueError, TypeError, KeyError)):
        return ErrorKind.VALIDATION, None

    return _kind_from_message(str(error)), None


def classify(
    error: BaseException,
    operation: str = "unknown",
    params: Optional[dict[str, Any]] = None,
) -> EnhancedError:
    """
    Classify a raw exception.

    Args:
        error: The failure to classify
        operation: Name of the operation that failed
        params: Optional operation parameters for the error context

    Returns:
        EnhancedError (the input itself if it is already classified)
    """
    if isinstance(error, EnhancedError):
        return error

    kind, status_code = _kind_and_status(error)
    message = str(error) or type(error).__name__
    enhanced = EnhancedError(
        kind=kind,
        message=message,
        context=ErrorContext(operation=operation, params=dict(params or {})),
        status_code=status_code,
        original=error,
    )

    logger.debug(
        "error_classified",
        operation=operation,
        kind=kind.value,
        severity=enhanced.severity.value,
        retryable=enhanced.retryable,
        error_type=type(error).__name__,
    )
    return enhanced
