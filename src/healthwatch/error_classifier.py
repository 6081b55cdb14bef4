"""Classification of health probe failures into transient and hard errors.

``classify`` is total: every value maps to exactly one ``ErrorClass`` and
anything unrecognised is ``hard``, so an unknown failure asks for human
attention instead of being retried forever.

Rules, in priority order:

1. Rate limiting (``ErrorReason.RATE_LIMITED``, ``RateLimitedError``, HTTP
   408/425/429) is transient.
2. HTTP 5xx is transient.
3. Transport failures (timeout, DNS, connection refused, network error) are
   transient.
4. Authentication failures (unauthorized, invalid credentials, expired
   token) are hard.
5. Free text is transient when it mentions rate limiting, "too many" or a
   timeout, and hard otherwise. Bytes that are not valid UTF-8 are hard.
   Exceptions are reduced to their message and scanned the same way.
6. Everything else is hard.

Every classification is logged at WARNING level for operational visibility.
"""

from __future__ import annotations

import errno
import socket
from dataclasses import dataclass
from enum import StrEnum

import httpx

from healthwatch.health_state import BASE_CHECK_INTERVAL_MS, next_backoff_ms
from healthwatch.logging import get_logger
from healthwatch.types import ErrorClass, IntegrationType

logger = get_logger(__name__)

RATE_LIMIT_STATUS_CODES = frozenset({408, 425, 429})

TRANSIENT_TEXT_PATTERNS: tuple[str, ...] = ("rate limit", "rate limited", "too many", "timeout")

TRANSIENT_ERRNOS = frozenset(
    {errno.ENETUNREACH, errno.EHOSTUNREACH, errno.ECONNRESET, errno.ETIMEDOUT}
)

# Longest rendering of a failure reason included in log lines.
_MAX_REASON_LOG_LENGTH = 200


class ErrorReason(StrEnum):
    """Tagged failure reasons reported by provider connection testers."""

    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    NXDOMAIN = "nxdomain"
    ECONNREFUSED = "econnrefused"
    NETWORK_ERROR = "network_error"
    UNAUTHORIZED = "unauthorized"
    INVALID_CREDENTIALS = "invalid_credentials"
    TOKEN_EXPIRED = "token_expired"
    NOT_FOUND = "not_found"
    UNSUPPORTED_PROVIDER = "unsupported_provider"
    MODULE_UNAVAILABLE = "module_unavailable"


TRANSIENT_REASONS = frozenset(
    {
        ErrorReason.RATE_LIMITED,
        ErrorReason.TIMEOUT,
        ErrorReason.NXDOMAIN,
        ErrorReason.ECONNREFUSED,
        ErrorReason.NETWORK_ERROR,
    }
)


@dataclass(frozen=True)
class HttpStatusReason:
    """Failure reason carrying the HTTP status returned by a provider.

    Attributes:
        status_code: HTTP status code of the failed response.
        message: Optional response summary for logs.
    """

    status_code: int
    message: str = ""

    def __str__(self) -> str:
        if self.message:
            return f"HTTP {self.status_code}: {self.message}"
        return f"HTTP {self.status_code}"


class RateLimitedError(Exception):
    """Raised by provider clients when the provider throttles requests."""

    def __init__(self, message: str = "rate limited", retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


@dataclass(frozen=True)
class ClassificationContext:
    """Integration state used only to enrich the classification log line.

    Attributes:
        integration_type: Type of the integration being checked.
        integration_id: Identifier of the integration being checked.
        failures: Consecutive hard failures before this failure.
        backoff_ms: Backoff stored before this failure.
        next_backoff_ms: Backoff the caller applies after a transient
            failure. Derived from ``backoff_ms`` with default bounds if unset.
    """

    integration_type: IntegrationType | None = None
    integration_id: int | None = None
    failures: int = 0
    backoff_ms: int = BASE_CHECK_INTERVAL_MS
    next_backoff_ms: int | None = None


def _next_backoff(ctx: ClassificationContext) -> int:
    if ctx.next_backoff_ms is not None:
        return ctx.next_backoff_ms
    return next_backoff_ms(ctx.backoff_ms)


def _classify_status(status_code: int) -> ErrorClass:
    if status_code in RATE_LIMIT_STATUS_CODES or status_code >= 500:
        return ErrorClass.TRANSIENT
    return ErrorClass.HARD


def _classify_text(text: str) -> ErrorClass:
    lowered = text.lower()
    if any(pattern in lowered for pattern in TRANSIENT_TEXT_PATTERNS):
        return ErrorClass.TRANSIENT
    return ErrorClass.HARD


def _classify(reason: object) -> ErrorClass:
    if isinstance(reason, RateLimitedError):
        return ErrorClass.TRANSIENT

    # ErrorReason is a str subclass and must be matched before free text.
    if isinstance(reason, ErrorReason):
        return ErrorClass.TRANSIENT if reason in TRANSIENT_REASONS else ErrorClass.HARD

    if isinstance(reason, HttpStatusReason):
        return _classify_status(reason.status_code)

    if isinstance(reason, bool):
        return ErrorClass.HARD

    if isinstance(reason, int):
        return _classify_status(reason)

    if isinstance(reason, httpx.HTTPStatusError):
        return _classify_status(reason.response.status_code)

    if isinstance(
        reason,
        (httpx.TimeoutException, httpx.NetworkError, TimeoutError, ConnectionError),
    ):
        return ErrorClass.TRANSIENT

    # DNS failures and unreachable networks surface as plain OSErrors.
    if isinstance(reason, socket.gaierror):
        return ErrorClass.TRANSIENT
    if isinstance(reason, OSError) and reason.errno in TRANSIENT_ERRNOS:
        return ErrorClass.TRANSIENT

    if isinstance(reason, str):
        return _classify_text(reason)

    if isinstance(reason, (bytes, bytearray)):
        try:
            text = bytes(reason).decode("utf-8")
        except UnicodeDecodeError:
            return ErrorClass.HARD
        return _classify_text(text)

    if isinstance(reason, BaseException):
        return _classify_text(str(reason))

    return ErrorClass.HARD


def describe_reason(reason: object) -> str:
    """Render a failure reason as a short human-readable string."""
    if isinstance(reason, BaseException):
        text = f"{type(reason).__name__}: {reason}"
    elif isinstance(reason, (bytes, bytearray)):
        text = repr(bytes(reason))
    else:
        text = str(reason)
    if len(text) > _MAX_REASON_LOG_LENGTH:
        return text[:_MAX_REASON_LOG_LENGTH] + "..."
    return text


def classify(reason: object, *, context: ClassificationContext | None = None) -> ErrorClass:
    """Classify a probe failure reason as transient or hard.

    Args:
        reason: Any failure value: an ``ErrorReason``, ``HttpStatusReason``,
            bare HTTP status code, exception, text or bytes.
        context: Optional integration state, used only for the log line.

    Returns:
        ``ErrorClass.TRANSIENT`` or ``ErrorClass.HARD``.
    """
    error_class = _classify(reason)
    ctx = context or ClassificationContext()
    integration_id = "-" if ctx.integration_id is None else ctx.integration_id
    target = f"{ctx.integration_type or '-'}:{integration_id}"

    if error_class == ErrorClass.TRANSIENT:
        logger.warning(
            "[CLASSIFIER] %s: transient failure (%s), next check in %d ms",
            target,
            describe_reason(reason),
            _next_backoff(ctx),
        )
    else:
        logger.warning(
            "[CLASSIFIER] %s: hard failure (%s), failure count now %d",
            target,
            describe_reason(reason),
            ctx.failures + 1,
        )
    return error_class


__all__ = [
    "RATE_LIMIT_STATUS_CODES",
    "TRANSIENT_ERRNOS",
    "TRANSIENT_REASONS",
    "TRANSIENT_TEXT_PATTERNS",
    "ClassificationContext",
    "ErrorReason",
    "HttpStatusReason",
    "RateLimitedError",
    "classify",
    "describe_reason",
]
