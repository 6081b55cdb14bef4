"""Provider connection testers used by the assessor.

A connection tester performs one lightweight request against a provider to
find out whether an integration's credentials and endpoint still work. It
returns ``ProbeSuccess`` or ``ProbeFailure``; failures carry a reason the
error classifier understands (``ErrorReason``, ``HttpStatusReason`` or an
exception).

Extensibility:
    New providers are supported by implementing the ``ConnectionTester``
    protocol and registering an instance with ``Assessor.register_tester()``.

Built-in testers:
- ``CalDavConnectionTester``: ``PROPFIND`` (Depth 0) on the server URL with
  Basic auth. Used for caldav, nextcloud and radicale.
- ``BearerTokenConnectionTester``: ``GET`` on a fixed API URL with the OAuth
  access token. Used for google, outlook, google_meet and teams.
- ``MiroTalkConnectionTester``: ``POST {base_url}/api/v1/meeting`` with the
  API key, which creates a throwaway meeting room.
- ``ReachabilityConnectionTester``: ``GET`` on the configured base URL.
  Used for custom video providers.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol, TypeAlias, runtime_checkable

import httpx

from healthwatch.error_classifier import ErrorReason, HttpStatusReason
from healthwatch.logging import get_logger

logger = get_logger(__name__)

GOOGLE_CALENDAR_PROBE_URL = (
    "https://www.googleapis.com/calendar/v3/users/me/calendarList?maxResults=1"
)
"""Cheapest authenticated Google Calendar call; also covers Google Meet."""

MICROSOFT_GRAPH_PROBE_URL = "https://graph.microsoft.com/v1.0/me"
"""Microsoft Graph profile endpoint; covers Outlook and Teams."""

MIROTALK_MEETING_PATH = "/api/v1/meeting"

# Substrings of resolver errors that indicate a DNS failure.
_DNS_FAILURE_MARKERS: tuple[str, ...] = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
    "no address associated",
)

_MAX_BODY_SUMMARY = 200


@dataclass(frozen=True)
class ProbeSuccess:
    message: str = "ok"


@dataclass(frozen=True)
class ProbeFailure:
    """A failed probe.

    Attributes:
        reason: Anything ``healthwatch.error_classifier.classify`` accepts.
    """

    reason: object


ProbeResult: TypeAlias = ProbeSuccess | ProbeFailure


@runtime_checkable
class ConnectionTester(Protocol):
    """Protocol for provider connection testers.

    Example::

        class MyProviderTester:
            def test_connection(
                self, config: Mapping[str, Any], *, timeout: float
            ) -> ProbeResult:
                response = httpx.get(f"{config['base_url']}/health", timeout=timeout)
                if response.is_success:
                    return ProbeSuccess()
                return ProbeFailure(HttpStatusReason(response.status_code))

        assessor.register_tester(IntegrationType.VIDEO, Provider.CUSTOM, MyProviderTester())
    """

    def test_connection(self, config: Mapping[str, Any], *, timeout: float) -> ProbeResult:
        """Probe the provider described by ``config``.

        Args:
            config: Provider configuration built by the assessor, with
                credentials already decrypted.
            timeout: Request timeout in seconds.

        Returns:
            ``ProbeSuccess`` or ``ProbeFailure``.
        """
        ...  # pragma: no cover


def _summarize_body(response: httpx.Response) -> str:
    try:
        text = response.text
    except (UnicodeDecodeError, httpx.ResponseNotRead):
        return ""
    text = " ".join(text.split())
    return text[:_MAX_BODY_SUMMARY]


def response_to_result(response: httpx.Response, success_message: str = "ok") -> ProbeResult:
    """Map a provider response onto a probe result.

    2xx (including 207 Multi-Status) is success; 401 and 403 are
    ``UNAUTHORIZED``; 404 is ``NOT_FOUND``; everything else becomes an
    ``HttpStatusReason`` for the classifier.
    """
    status = response.status_code
    if 200 <= status < 300:
        return ProbeSuccess(success_message)
    if status in (401, 403):
        return ProbeFailure(ErrorReason.UNAUTHORIZED)
    if status == 404:
        return ProbeFailure(ErrorReason.NOT_FOUND)
    return ProbeFailure(HttpStatusReason(status, _summarize_body(response)))


def transport_error_to_result(error: httpx.RequestError) -> ProbeFailure:
    """Map an httpx transport error onto a tagged failure reason."""
    if isinstance(error, httpx.TimeoutException):
        return ProbeFailure(ErrorReason.TIMEOUT)
    if isinstance(error, httpx.ConnectError):
        message = str(error).lower()
        if any(marker in message for marker in _DNS_FAILURE_MARKERS):
            return ProbeFailure(ErrorReason.NXDOMAIN)
        return ProbeFailure(ErrorReason.ECONNREFUSED)
    if isinstance(error, httpx.TransportError):
        return ProbeFailure(ErrorReason.NETWORK_ERROR)
    return ProbeFailure(error)


class _HttpTester:
    """Shared request handling for the httpx-based testers."""

    name = "http"

    def __init__(self, transport: httpx.BaseTransport | None = None) -> None:
        self._transport = transport

    def _send(
        self,
        method: str,
        url: str,
        *,
        timeout: float,
        success_message: str = "ok",
        **kwargs: Any,
    ) -> ProbeResult:
        try:
            with httpx.Client(
                timeout=httpx.Timeout(timeout), transport=self._transport
            ) as client:
                response = client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            logger.debug("[PROVIDERS] %s: %s %s failed: %s", self.name, method, url, e)
            return transport_error_to_result(e)
        return response_to_result(response, success_message)


class CalDavConnectionTester(_HttpTester):
    """Probe CalDAV servers (CalDAV, Nextcloud, Radicale)."""

    name = "caldav"

    def test_connection(self, config: Mapping[str, Any], *, timeout: float) -> ProbeResult:
        base_url = config.get("base_url")
        if not base_url:
            return ProbeFailure("CalDAV server URL is not configured")

        auth = None
        if config.get("username"):
            auth = (config["username"], config.get("password") or "")

        return self._send(
            "PROPFIND",
            base_url,
            timeout=timeout,
            success_message="CalDAV server reachable",
            auth=auth,
            headers={"Depth": "0", "Content-Type": "application/xml; charset=utf-8"},
        )


class BearerTokenConnectionTester(_HttpTester):
    """Probe OAuth providers with a GET on a fixed API URL.

    Args:
        probe_url: Authenticated endpoint to call.
        name: Label used in log lines.
        transport: Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        probe_url: str,
        name: str = "oauth",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(transport)
        self.probe_url = probe_url
        self.name = name

    def test_connection(self, config: Mapping[str, Any], *, timeout: float) -> ProbeResult:
        access_token = config.get("access_token")
        if not access_token:
            return ProbeFailure(ErrorReason.INVALID_CREDENTIALS)

        expires_at: datetime | None = config.get("token_expires_at")
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        if (
            expires_at is not None
            and expires_at <= datetime.now(UTC)
            and not config.get("refresh_token")
        ):
            return ProbeFailure(ErrorReason.TOKEN_EXPIRED)

        return self._send(
            "GET",
            self.probe_url,
            timeout=timeout,
            success_message=f"{self.name} API reachable",
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )


class MiroTalkConnectionTester(_HttpTester):
    """Probe a self-hosted MiroTalk server by creating a meeting room."""

    name = "mirotalk"

    def test_connection(self, config: Mapping[str, Any], *, timeout: float) -> ProbeResult:
        base_url = config.get("base_url")
        api_key = config.get("api_key")
        if not base_url or not api_key:
            return ProbeFailure(ErrorReason.INVALID_CREDENTIALS)

        return self._send(
            "POST",
            f"{str(base_url).rstrip('/')}{MIROTALK_MEETING_PATH}",
            timeout=timeout,
            success_message="MiroTalk connection successful",
            headers={
                "authorization": api_key,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            json={},
        )


class ReachabilityConnectionTester(_HttpTester):
    """Probe a custom provider by fetching its base URL."""

    name = "custom"

    def test_connection(self, config: Mapping[str, Any], *, timeout: float) -> ProbeResult:
        base_url = config.get("base_url")
        if not base_url:
            return ProbeFailure("Custom video provider URL is not configured")
        return self._send(
            "GET",
            base_url,
            timeout=timeout,
            success_message="Custom provider reachable",
            follow_redirects=True,
        )


__all__ = [
    "GOOGLE_CALENDAR_PROBE_URL",
    "MICROSOFT_GRAPH_PROBE_URL",
    "MIROTALK_MEETING_PATH",
    "BearerTokenConnectionTester",
    "CalDavConnectionTester",
    "ConnectionTester",
    "MiroTalkConnectionTester",
    "ProbeFailure",
    "ProbeResult",
    "ProbeSuccess",
    "ReachabilityConnectionTester",
    "response_to_result",
    "transport_error_to_result",
]
