"""Tests for probe failure classification."""

from __future__ import annotations

import errno
import logging
import socket

import httpx
import pytest

from healthwatch.error_classifier import (
    ClassificationContext,
    ErrorReason,
    HttpStatusReason,
    RateLimitedError,
    classify,
    describe_reason,
)
from healthwatch.types import ErrorClass, IntegrationType

TRANSIENT = ErrorClass.TRANSIENT
HARD = ErrorClass.HARD


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://provider.example.com/")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError("failed", request=request, response=response)


class TestTaggedReasons:
    """Tests for ErrorReason classification."""

    @pytest.mark.parametrize(
        "reason",
        [
            ErrorReason.RATE_LIMITED,
            ErrorReason.TIMEOUT,
            ErrorReason.NXDOMAIN,
            ErrorReason.ECONNREFUSED,
            ErrorReason.NETWORK_ERROR,
        ],
    )
    def test_transport_and_rate_limit_reasons_are_transient(self, reason: ErrorReason) -> None:
        assert classify(reason) == TRANSIENT

    @pytest.mark.parametrize(
        "reason",
        [
            ErrorReason.UNAUTHORIZED,
            ErrorReason.INVALID_CREDENTIALS,
            ErrorReason.TOKEN_EXPIRED,
            ErrorReason.NOT_FOUND,
            ErrorReason.UNSUPPORTED_PROVIDER,
            ErrorReason.MODULE_UNAVAILABLE,
        ],
    )
    def test_auth_and_configuration_reasons_are_hard(self, reason: ErrorReason) -> None:
        assert classify(reason) == HARD

    def test_tagged_reasons_match_before_text(self) -> None:
        """ErrorReason values are matched before being treated as free text."""
        assert classify(ErrorReason.UNAUTHORIZED) == HARD
        assert classify("unauthorized") == HARD
        assert classify(ErrorReason.TIMEOUT) == TRANSIENT


class TestHttpStatus:
    """Tests for HTTP status based classification."""

    @pytest.mark.parametrize("status", [408, 425, 429, 500, 502, 503, 504, 599])
    def test_rate_limit_and_server_errors_are_transient(self, status: int) -> None:
        assert classify(HttpStatusReason(status)) == TRANSIENT
        assert classify(status) == TRANSIENT

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 410, 422])
    def test_client_errors_are_hard(self, status: int) -> None:
        assert classify(HttpStatusReason(status)) == HARD
        assert classify(status) == HARD

    def test_http_status_error(self) -> None:
        assert classify(_status_error(503)) == TRANSIENT
        assert classify(_status_error(401)) == HARD

    def test_bool_is_not_a_status_code(self) -> None:
        assert classify(True) == HARD
        assert classify(False) == HARD

    def test_http_status_reason_str(self) -> None:
        assert str(HttpStatusReason(502)) == "HTTP 502"
        assert str(HttpStatusReason(500, "boom")) == "HTTP 500: boom"


class TestExceptions:
    """Tests for exception classification."""

    def test_rate_limited_error(self) -> None:
        error = RateLimitedError("slow down", retry_after=30.0)
        assert classify(error) == TRANSIENT
        assert error.retry_after == 30.0

    @pytest.mark.parametrize(
        "error",
        [
            httpx.ConnectTimeout("connect timed out"),
            httpx.ReadTimeout("read timed out"),
            httpx.ConnectError("connection refused"),
            httpx.ReadError("connection reset"),
            TimeoutError(),
            ConnectionRefusedError(),
            socket.gaierror(socket.EAI_NONAME, "Name or service not known"),
            OSError(errno.ENETUNREACH, "Network is unreachable"),
            OSError(errno.EHOSTUNREACH, "No route to host"),
        ],
    )
    def test_transport_exceptions_are_transient(self, error: Exception) -> None:
        assert classify(error) == TRANSIENT

    def test_other_exceptions_use_their_message(self) -> None:
        assert classify(RuntimeError("upstream timeout while syncing")) == TRANSIENT
        assert classify(ValueError("bad calendar path")) == HARD
        assert classify(KeyError("access_token")) == HARD

    def test_other_os_errors_use_their_message(self) -> None:
        assert classify(PermissionError(errno.EACCES, "Permission denied")) == HARD
        assert classify(OSError(errno.ENOENT, "No such file or directory")) == HARD


class TestText:
    """Tests for free text classification."""

    @pytest.mark.parametrize(
        "text",
        [
            "Rate limit exceeded",
            "rate limited by provider",
            "Too Many Requests",
            "Gateway TIMEOUT",
        ],
    )
    def test_transient_patterns(self, text: str) -> None:
        assert classify(text) == TRANSIENT

    @pytest.mark.parametrize("text", ["invalid api key", "calendar not found", ""])
    def test_other_text_is_hard(self, text: str) -> None:
        assert classify(text) == HARD

    def test_bytes_are_decoded(self) -> None:
        assert classify(b"too many requests") == TRANSIENT
        assert classify(b"forbidden") == HARD

    def test_invalid_utf8_bytes_are_hard(self) -> None:
        assert classify(b"\xff\xfe timeout") == HARD


class TestTotality:
    """classify() accepts anything and is deterministic."""

    @pytest.mark.parametrize("reason", [None, 3.14, object(), ["timeout"], {"error": "x"}])
    def test_unrecognised_values_are_hard(self, reason: object) -> None:
        assert classify(reason) == HARD

    @pytest.mark.parametrize(
        "reason",
        [ErrorReason.TIMEOUT, "rate limit", 503, 401, b"x", None, HttpStatusReason(429)],
    )
    def test_same_input_same_class(self, reason: object) -> None:
        assert classify(reason) == classify(reason) == classify(reason)


class TestLogging:
    """Every classification is logged at warning level."""

    def test_transient_log_includes_next_backoff(self, caplog: pytest.LogCaptureFixture) -> None:
        context = ClassificationContext(
            integration_type=IntegrationType.VIDEO,
            integration_id=9,
            backoff_ms=600_000,
        )
        with caplog.at_level(logging.WARNING, logger="healthwatch"):
            classify(ErrorReason.TIMEOUT, context=context)

        assert "video:9: transient failure (timeout), next check in 1200000 ms" in caplog.text

    def test_transient_log_prefers_caller_backoff(self, caplog: pytest.LogCaptureFixture) -> None:
        context = ClassificationContext(
            integration_type=IntegrationType.VIDEO,
            integration_id=9,
            backoff_ms=60_000,
            next_backoff_ms=120_000,
        )
        with caplog.at_level(logging.WARNING, logger="healthwatch"):
            classify(ErrorReason.TIMEOUT, context=context)

        assert "next check in 120000 ms" in caplog.text

    def test_hard_log_includes_failure_count(self, caplog: pytest.LogCaptureFixture) -> None:
        context = ClassificationContext(
            integration_type=IntegrationType.CALENDAR, integration_id=3, failures=1
        )
        with caplog.at_level(logging.WARNING, logger="healthwatch"):
            classify(ErrorReason.UNAUTHORIZED, context=context)

        assert "calendar:3: hard failure (unauthorized), failure count now 2" in caplog.text

    def test_without_context(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="healthwatch"):
            classify("nope")

        assert "-:-: hard failure" in caplog.text


class TestDescribeReason:
    def test_exception_includes_type(self) -> None:
        assert describe_reason(ValueError("bad")) == "ValueError: bad"

    def test_long_text_is_truncated(self) -> None:
        text = describe_reason("x" * 500)
        assert len(text) == 203
        assert text.endswith("...")
