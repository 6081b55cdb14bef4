"""Type definitions and enums for the healthwatch package.

This module provides centralized enums for integration types, health
statuses, error classes, transition kinds and provider identifiers, replacing
magic strings throughout the codebase with type-safe constants.

Usage:
    from healthwatch.types import HealthStatus, IntegrationType, Provider

    # StrEnum members compare equal to their string values
    if state.status == HealthStatus.UNHEALTHY:
        ...

    # Provider lookup against the closed set of known providers
    provider = Provider.resolve("google_meet")  # Provider.GOOGLE_MEET
    Provider.resolve("not-a-provider")  # None, logs a warning
"""

from __future__ import annotations

from enum import StrEnum

from healthwatch.logging import get_logger

logger = get_logger(__name__)


class IntegrationType(StrEnum):
    """Family of an integration.

    Values:
        CALENDAR: Calendar integrations ("calendar")
        VIDEO: Video conferencing integrations ("video")
    """

    CALENDAR = "calendar"
    VIDEO = "video"

    @classmethod
    def is_valid(cls, value: str) -> bool:
        """Check if a string value is a valid integration type.

        Args:
            value: The string value to validate.

        Returns:
            True if the value matches a valid integration type.
        """
        return value in cls._value2member_map_

    @classmethod
    def values(cls) -> frozenset[str]:
        """Return all valid integration type values as a frozenset."""
        return frozenset(member.value for member in cls)


class HealthStatus(StrEnum):
    """Derived health status of a single integration."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ErrorClass(StrEnum):
    """Classification of a failed health probe.

    Values:
        TRANSIENT: Likely to resolve on its own; retried with backoff.
        HARD: Requires intervention; counts towards the failure threshold.
    """

    TRANSIENT = "transient"
    HARD = "hard"


class TransitionKind(StrEnum):
    """Semantically meaningful change between two health snapshots."""

    INITIAL_FAILURE = "initial_failure"
    BECAME_UNHEALTHY = "became_unhealthy"
    BECAME_HEALTHY = "became_healthy"
    BECAME_DEGRADED = "became_degraded"
    NO_CHANGE = "no_change"


class Provider(StrEnum):
    """Closed set of provider identifiers known to the health monitor.

    Calendar providers: google, outlook, caldav, nextcloud, radicale.
    Video providers: google_meet, teams, mirotalk, custom.
    """

    GOOGLE = "google"
    OUTLOOK = "outlook"
    CALDAV = "caldav"
    NEXTCLOUD = "nextcloud"
    RADICALE = "radicale"
    GOOGLE_MEET = "google_meet"
    TEAMS = "teams"
    MIROTALK = "mirotalk"
    CUSTOM = "custom"

    @classmethod
    def is_valid(cls, value: str) -> bool:
        """Check if a string value is a known provider identifier."""
        return value in cls._value2member_map_

    @classmethod
    def values(cls) -> frozenset[str]:
        """Return all known provider values as a frozenset."""
        return frozenset(member.value for member in cls)

    def supports(self, integration_type: IntegrationType) -> bool:
        """Check if this provider offers integrations of the given type."""
        return self in PROVIDERS_BY_TYPE[IntegrationType(integration_type)]

    @classmethod
    def resolve(cls, name: str | None) -> Provider | None:
        """Resolve a stored provider name to a known provider.

        Never raises. Leading/trailing whitespace and case are ignored.

        Args:
            name: Provider name as stored on the integration record.

        Returns:
            The matching ``Provider``, or ``None`` if the name is empty or
            not a known provider. A warning with the valid provider names is
            logged in the ``None`` case.
        """
        if not isinstance(name, str) or not name.strip():
            logger.warning(
                "[PROVIDERS] Empty provider name. Valid providers: %s",
                VALID_PROVIDERS_HINT,
            )
            return None

        normalized = name.strip().lower()
        if normalized in cls._value2member_map_:
            return cls(normalized)

        logger.warning(
            "[PROVIDERS] Unknown provider %r. Valid providers: %s",
            name,
            VALID_PROVIDERS_HINT,
        )
        return None


# Shown in the warning logged for unresolvable provider names.
VALID_PROVIDERS_HINT = ", ".join(member.value for member in Provider)

PROVIDERS_BY_TYPE: dict[IntegrationType, frozenset[Provider]] = {
    IntegrationType.CALENDAR: frozenset(
        {
            Provider.GOOGLE,
            Provider.OUTLOOK,
            Provider.CALDAV,
            Provider.NEXTCLOUD,
            Provider.RADICALE,
        }
    ),
    IntegrationType.VIDEO: frozenset(
        {
            Provider.GOOGLE_MEET,
            Provider.TEAMS,
            Provider.MIROTALK,
            Provider.CUSTOM,
        }
    ),
}


__all__ = [
    "PROVIDERS_BY_TYPE",
    "VALID_PROVIDERS_HINT",
    "ErrorClass",
    "HealthStatus",
    "IntegrationType",
    "Provider",
    "TransitionKind",
]
