"""Operator alerting for integration failures and recoveries.

Two senders are provided:

- ``LoggingAlertSender`` writes alerts to the ``healthwatch.alerts`` logger.
  It is used when no webhook is configured.
- ``WebhookAlertSender`` posts alerts as JSON to
  ``HEALTHWATCH_ALERT_WEBHOOK_URL`` using httpx.

Both raise ``AlertDeliveryError`` when an alert cannot be delivered; the
response handler logs the error and carries on.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

import httpx

from healthwatch.logging import get_logger

logger = get_logger(__name__)


class AlertLevel(StrEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class AlertDeliveryError(Exception):
    """Raised when an alert could not be delivered."""


@runtime_checkable
class AlertSender(Protocol):
    """Delivery channel for operator alerts."""

    def send_alert(
        self,
        event_type: str,
        payload: Mapping[str, Any],
        level: AlertLevel,
    ) -> None:
        """Deliver one alert.

        Raises:
            AlertDeliveryError: If the alert could not be delivered.
        """
        ...  # pragma: no cover


class LoggingAlertSender:
    """Alert sender that only logs, at a level matching the alert level."""

    def send_alert(
        self,
        event_type: str,
        payload: Mapping[str, Any],
        level: AlertLevel,
    ) -> None:
        log_method = {
            AlertLevel.ERROR: logger.error,
            AlertLevel.WARNING: logger.warning,
        }.get(AlertLevel(level), logger.info)
        log_method("[ALERT] %s: %s", event_type, dict(payload))


class WebhookAlertSender:
    """Alert sender posting JSON to an HTTP webhook.

    Args:
        url: Webhook URL.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not url:
            raise ValueError("Webhook URL is required")
        self.url = url
        self.timeout = timeout
        self._transport = transport

    def send_alert(
        self,
        event_type: str,
        payload: Mapping[str, Any],
        level: AlertLevel,
    ) -> None:
        body = {
            "event_type": event_type,
            "level": AlertLevel(level).value,
            "sent_at": datetime.now(UTC).isoformat(),
            "payload": dict(payload),
        }
        try:
            with httpx.Client(
                timeout=httpx.Timeout(self.timeout), transport=self._transport
            ) as client:
                response = client.post(self.url, json=body)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise AlertDeliveryError(
                f"Alert webhook returned HTTP {e.response.status_code} for {event_type}"
            ) from e
        except httpx.RequestError as e:
            raise AlertDeliveryError(f"Alert webhook request failed for {event_type}: {e}") from e

        logger.debug("[ALERT] %s delivered to webhook", event_type)


__all__ = [
    "AlertDeliveryError",
    "AlertLevel",
    "AlertSender",
    "LoggingAlertSender",
    "WebhookAlertSender",
]
