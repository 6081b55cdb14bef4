"""Side effects triggered by health transitions.

- ``no_change``: nothing.
- ``initial_failure`` / ``became_unhealthy``: error log, failure alert and
  deactivation of the integration.
- ``became_healthy``: info log and recovery alert. The integration is not
  reactivated; the owner has to turn it back on.
- ``became_degraded``: warning log only.

Alert delivery and deactivation failures are logged and swallowed so that a
broken collaborator never fails the check that detected the transition.
Deactivation is attempted even when the alert could not be sent.
"""

from __future__ import annotations

from typing import Any

from healthwatch.alerts import AlertLevel, AlertSender
from healthwatch.health_state import Transition
from healthwatch.integrations import Integration, IntegrationStore
from healthwatch.logging import get_logger
from healthwatch.types import IntegrationType, TransitionKind

logger = get_logger(__name__)

UNHEALTHY_EVENT = "integration_unhealthy"
RECOVERED_EVENT = "integration_recovered"

_FAILURE_REASONS: dict[TransitionKind, str] = {
    TransitionKind.INITIAL_FAILURE: "Integration failed its first health check",
    TransitionKind.BECAME_UNHEALTHY: "Integration became unhealthy after repeated failures",
}


class ResponseHandler:
    """Performs the side effects of a detected health transition.

    Args:
        integration_store: Store used to deactivate failing integrations.
        alert_sender: Channel for operator alerts.
    """

    def __init__(self, integration_store: IntegrationStore, alert_sender: AlertSender) -> None:
        self._integrations = integration_store
        self._alerts = alert_sender

    def handle_transition(
        self,
        integration_type: IntegrationType,
        integration: Integration,
        transition: Transition,
        detail: str | None = None,
    ) -> None:
        """React to a transition of one integration.

        Args:
            integration_type: Type of the integration.
            integration: The integration record the check ran against.
            transition: Transition detected for this check.
            detail: Optional description of the last failure, appended to the
                alert reason.
        """
        integration_type = IntegrationType(integration_type)
        log = logger.with_context(
            integration_type=integration_type.value,
            integration_id=integration.id,
            provider=integration.provider,
        )

        kind = transition.kind
        if kind == TransitionKind.NO_CHANGE:
            return

        if transition.is_failure:
            reason = _FAILURE_REASONS[kind]
            if detail:
                reason = f"{reason}: {detail}"
            log.error(
                "[RESPONSE] %s integration %s (%s) is unhealthy, deactivating: %s",
                integration_type,
                integration.id,
                integration.provider,
                reason,
            )
            self._send_alert(
                UNHEALTHY_EVENT,
                self._payload(integration_type, integration, reason),
                AlertLevel.ERROR,
            )
            self._deactivate(integration_type, integration)
        elif kind == TransitionKind.BECAME_HEALTHY:
            log.info(
                "[RESPONSE] %s integration %s (%s) recovered",
                integration_type,
                integration.id,
                integration.provider,
            )
            self._send_alert(
                RECOVERED_EVENT,
                self._payload(
                    integration_type,
                    integration,
                    "Integration passed consecutive health checks",
                ),
                AlertLevel.INFO,
            )
        elif kind == TransitionKind.BECAME_DEGRADED:
            log.warning(
                "[RESPONSE] %s integration %s (%s) is degraded",
                integration_type,
                integration.id,
                integration.provider,
            )

    @staticmethod
    def _payload(
        integration_type: IntegrationType,
        integration: Integration,
        reason: str,
    ) -> dict[str, Any]:
        return {
            "category": f"{integration_type.value}_integration",
            "integration_id": integration.id,
            "provider": integration.provider,
            "user_id": integration.user_id,
            "reason": reason,
        }

    def _send_alert(self, event_type: str, payload: dict[str, Any], level: AlertLevel) -> None:
        try:
            self._alerts.send_alert(event_type, payload, level)
        except Exception as e:
            # INTENTIONAL BROAD CATCH: Alerting problems must not block
            # deactivation or fail the health check.
            logger.error(
                "[RESPONSE] Failed to send %s alert for integration %s: %s: %s",
                event_type,
                payload.get("integration_id"),
                type(e).__name__,
                e,
            )

    def _deactivate(self, integration_type: IntegrationType, integration: Integration) -> None:
        try:
            self._integrations.update(integration_type, integration, {"is_active": False})
        except Exception as e:
            # INTENTIONAL BROAD CATCH: Deactivation failures are logged, never raised.
            logger.error(
                "[RESPONSE] Failed to deactivate %s integration %s: %s: %s",
                integration_type,
                integration.id,
                type(e).__name__,
                e,
            )
            return
        logger.info("[RESPONSE] Deactivated %s integration %s", integration_type, integration.id)


__all__ = [
    "RECOVERED_EVENT",
    "UNHEALTHY_EVENT",
    "ResponseHandler",
]
