"""Execution of a single health probe for a single integration.

The assessor resolves the integration's provider, decrypts its credentials,
builds the provider configuration, dispatches to the registered
``ConnectionTester`` and times the call with a monotonic clock. Every probe
emits one ``integration.health_check`` metric, whatever the outcome.

The assessor never raises: an unknown provider, a provider without a
registered tester, a credential that cannot be decrypted or any exception
from a tester is turned into a ``ProbeFailure``.

Usage:
    assessor = Assessor(metrics=InMemoryMetricsSink(), decryptor=decryptor)
    assessment = assessor.assess(IntegrationType.VIDEO, integration)
    if not assessment.success:
        error_class = classify(assessment.result.reason)
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from healthwatch.credentials import CredentialDecryptor, CredentialError
from healthwatch.error_classifier import ErrorReason, describe_reason
from healthwatch.integrations import Integration
from healthwatch.logging import get_logger
from healthwatch.metrics import HEALTH_CHECK_EVENT, MetricsSink
from healthwatch.providers import (
    GOOGLE_CALENDAR_PROBE_URL,
    MICROSOFT_GRAPH_PROBE_URL,
    BearerTokenConnectionTester,
    CalDavConnectionTester,
    ConnectionTester,
    MiroTalkConnectionTester,
    ProbeFailure,
    ProbeResult,
    ProbeSuccess,
    ReachabilityConnectionTester,
)
from healthwatch.types import IntegrationType, Provider

logger = get_logger(__name__)

DEFAULT_PROBE_TIMEOUT = 10.0

CALDAV_PROVIDERS = frozenset({Provider.CALDAV, Provider.NEXTCLOUD, Provider.RADICALE})
API_KEY_PROVIDERS = frozenset({Provider.MIROTALK})


@dataclass(frozen=True)
class Assessment:
    """Outcome of one probe.

    Attributes:
        result: ``ProbeSuccess`` or ``ProbeFailure``.
        duration_ms: Wall-clock duration of the probe in milliseconds.
    """

    result: ProbeResult
    duration_ms: int

    @property
    def success(self) -> bool:
        return isinstance(self.result, ProbeSuccess)


class _Credentials:
    """Decrypts credential fields on demand for one probe."""

    def __init__(self, decryptor: CredentialDecryptor | None) -> None:
        self._decryptor = decryptor

    def __call__(self, value: str | None) -> str | None:
        if value is None:
            return None
        if self._decryptor is None:
            raise CredentialError("No encryption key configured, cannot decrypt credentials")
        return self._decryptor.decrypt(value)


def _oauth_config(
    integration: Integration,
    decrypt: Callable[[str | None], str | None],
    *,
    include_scope: bool,
) -> dict[str, Any]:
    config: dict[str, Any] = {
        "access_token": decrypt(integration.encrypted_access_token),
        "refresh_token": decrypt(integration.encrypted_refresh_token),
        "token_expires_at": integration.token_expires_at,
    }
    if include_scope:
        config["oauth_scope"] = integration.oauth_scope
    config["integration_id"] = integration.id
    config["user_id"] = integration.user_id
    return config


def build_provider_config(
    integration_type: IntegrationType,
    provider: Provider,
    integration: Integration,
    decryptor: CredentialDecryptor | None,
) -> dict[str, Any]:
    """Build the configuration a connection tester needs for one integration.

    Args:
        integration_type: Type of the integration.
        provider: Resolved provider of the integration.
        integration: The integration record.
        decryptor: Decryptor for the stored credentials.

    Returns:
        Provider-specific configuration with decrypted credentials, or an
        empty dict for providers that do not belong to ``integration_type``.

    Raises:
        CredentialError: If a stored credential cannot be decrypted.
    """
    decrypt = _Credentials(decryptor)

    if integration_type == IntegrationType.VIDEO:
        if provider in API_KEY_PROVIDERS:
            return {
                "api_key": decrypt(integration.encrypted_api_key),
                "base_url": integration.base_url,
            }
        if provider == Provider.CUSTOM:
            return {"base_url": integration.base_url}
        if provider == Provider.GOOGLE_MEET:
            return _oauth_config(integration, decrypt, include_scope=True)
        if provider == Provider.TEAMS:
            return _oauth_config(integration, decrypt, include_scope=False)
        return {}

    if provider in CALDAV_PROVIDERS:
        return {
            "base_url": integration.base_url,
            "username": integration.username,
            "password": decrypt(integration.encrypted_password),
            "calendar_paths": list(integration.calendar_paths),
        }
    if provider in (Provider.GOOGLE, Provider.OUTLOOK):
        return _oauth_config(integration, decrypt, include_scope=True)
    return {}


def default_testers() -> dict[tuple[IntegrationType, Provider], ConnectionTester]:
    """Return the built-in tester for every known provider."""
    caldav = CalDavConnectionTester()
    google = BearerTokenConnectionTester(GOOGLE_CALENDAR_PROBE_URL, name="google")
    microsoft = BearerTokenConnectionTester(MICROSOFT_GRAPH_PROBE_URL, name="microsoft")
    testers: dict[tuple[IntegrationType, Provider], ConnectionTester] = {
        (IntegrationType.CALENDAR, provider): caldav for provider in CALDAV_PROVIDERS
    }
    testers[(IntegrationType.CALENDAR, Provider.GOOGLE)] = google
    testers[(IntegrationType.CALENDAR, Provider.OUTLOOK)] = microsoft
    testers[(IntegrationType.VIDEO, Provider.GOOGLE_MEET)] = google
    testers[(IntegrationType.VIDEO, Provider.TEAMS)] = microsoft
    testers[(IntegrationType.VIDEO, Provider.MIROTALK)] = MiroTalkConnectionTester()
    testers[(IntegrationType.VIDEO, Provider.CUSTOM)] = ReachabilityConnectionTester()
    return testers


class Assessor:
    """Runs health probes and reports their duration.

    Args:
        metrics: Sink receiving one event per probe.
        decryptor: Decryptor for stored credentials. Without one, probes of
            integrations that carry encrypted credentials fail.
        probe_timeout: Timeout passed to connection testers, in seconds.
        testers: Connection testers keyed by ``(IntegrationType, Provider)``.
            Defaults to ``default_testers()``.
        clock: Monotonic clock in seconds. Defaults to ``time.monotonic``.
    """

    def __init__(
        self,
        metrics: MetricsSink,
        decryptor: CredentialDecryptor | None = None,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        testers: Mapping[tuple[IntegrationType, Provider], ConnectionTester] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._metrics = metrics
        self._decryptor = decryptor
        self._probe_timeout = probe_timeout
        self._clock: Callable[[], float] = clock or time.monotonic
        self._testers: dict[tuple[IntegrationType, Provider], ConnectionTester] = {}
        for (integration_type, provider), tester in (
            testers if testers is not None else default_testers()
        ).items():
            self.register_tester(integration_type, provider, tester)

    def register_tester(
        self,
        integration_type: IntegrationType,
        provider: Provider,
        tester: ConnectionTester,
    ) -> None:
        """Register the connection tester for a provider.

        Raises:
            TypeError: If ``tester`` does not satisfy ``ConnectionTester``.
        """
        if not isinstance(tester, ConnectionTester):
            msg = f"tester must satisfy ConnectionTester protocol, got {type(tester).__name__}"
            raise TypeError(msg)
        self._testers[(IntegrationType(integration_type), Provider(provider))] = tester

    def unregister_tester(self, integration_type: IntegrationType, provider: Provider) -> None:
        self._testers.pop((IntegrationType(integration_type), Provider(provider)), None)

    def get_tester(
        self, integration_type: IntegrationType, provider: Provider
    ) -> ConnectionTester | None:
        return self._testers.get((IntegrationType(integration_type), Provider(provider)))

    def assess(self, integration_type: IntegrationType, integration: Integration) -> Assessment:
        """Probe one integration.

        Args:
            integration_type: Type of the integration.
            integration: The integration record.

        Returns:
            The probe result and its duration in milliseconds.
        """
        integration_type = IntegrationType(integration_type)
        started = self._clock()
        result = self._probe(integration_type, integration)
        duration_ms = max(0, round((self._clock() - started) * 1000))

        self._emit_metric(integration_type, integration, result, duration_ms)
        return Assessment(result=result, duration_ms=duration_ms)

    def _probe(self, integration_type: IntegrationType, integration: Integration) -> ProbeResult:
        provider = Provider.resolve(integration.provider)
        if provider is None or not provider.supports(integration_type):
            logger.warning(
                "[ASSESSOR] %s:%s: Unsupported provider %r",
                integration_type,
                integration.id,
                integration.provider,
            )
            return ProbeFailure(ErrorReason.UNSUPPORTED_PROVIDER)

        tester = self._testers.get((integration_type, provider))
        if tester is None:
            logger.warning(
                "[ASSESSOR] %s:%s: No connection tester registered for %s",
                integration_type,
                integration.id,
                provider,
            )
            return ProbeFailure(ErrorReason.MODULE_UNAVAILABLE)

        try:
            config = build_provider_config(
                integration_type, provider, integration, self._decryptor
            )
            return tester.test_connection(config, timeout=self._probe_timeout)
        except Exception as e:
            # INTENTIONAL BROAD CATCH: A probe must never crash the sweep or
            # the job running it. The exception becomes the failure reason.
            logger.warning(
                "[ASSESSOR] %s:%s: Probe raised %s",
                integration_type,
                integration.id,
                describe_reason(e),
            )
            return ProbeFailure(e)

    def _emit_metric(
        self,
        integration_type: IntegrationType,
        integration: Integration,
        result: ProbeResult,
        duration_ms: int,
    ) -> None:
        tags = {
            "type": integration_type.value,
            "provider": integration.provider,
            "integration_id": integration.id,
            "user_id": integration.user_id,
            "success": isinstance(result, ProbeSuccess),
        }
        try:
            self._metrics.emit(HEALTH_CHECK_EVENT, {"duration_ms": duration_ms}, tags)
        except Exception as e:
            # INTENTIONAL BROAD CATCH: Metrics are fire-and-forget.
            logger.warning("[ASSESSOR] Failed to emit health check metric: %s", e)


__all__ = [
    "API_KEY_PROVIDERS",
    "CALDAV_PROVIDERS",
    "DEFAULT_PROBE_TIMEOUT",
    "Assessment",
    "Assessor",
    "build_provider_config",
    "default_testers",
]
