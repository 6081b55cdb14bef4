"""Per-user health report built on demand for display."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from healthwatch.health_state import HealthState, HealthStateStore
from healthwatch.integrations import IntegrationStore
from healthwatch.types import HealthStatus, IntegrationType


@dataclass(frozen=True)
class IntegrationHealth:
    """One integration of the user paired with its current health."""

    id: int
    provider: str
    is_active: bool
    health: HealthState

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.provider,
            "is_active": self.is_active,
            "health": self.health.to_dict(),
        }


@dataclass(frozen=True)
class HealthSummary:
    healthy_count: int = 0
    degraded_count: int = 0
    unhealthy_count: int = 0

    @property
    def total(self) -> int:
        return self.healthy_count + self.degraded_count + self.unhealthy_count

    def to_dict(self) -> dict[str, int]:
        return {
            "healthy_count": self.healthy_count,
            "degraded_count": self.degraded_count,
            "unhealthy_count": self.unhealthy_count,
        }


@dataclass(frozen=True)
class HealthReport:
    """Health of every calendar and video integration owned by a user.

    Attributes:
        user_id: Owner of the integrations.
        calendar_integrations: Calendar integrations, active or not.
        video_integrations: Video integrations, active or not.
        summary: Number of integrations in each status, across both types.
        generated_at: When the report was built.
    """

    user_id: int
    calendar_integrations: tuple[IntegrationHealth, ...]
    video_integrations: tuple[IntegrationHealth, ...]
    summary: HealthSummary
    generated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "calendar_integrations": [i.to_dict() for i in self.calendar_integrations],
            "video_integrations": [i.to_dict() for i in self.video_integrations],
            "summary": self.summary.to_dict(),
            "generated_at": self.generated_at.isoformat(),
        }


def build_user_report(
    user_id: int,
    integration_store: IntegrationStore,
    state_store: HealthStateStore,
    *,
    now: datetime | None = None,
) -> HealthReport:
    """Build the health report for one user.

    Integrations that were never checked are reported with the initial
    (healthy) state.
    """
    entries: dict[IntegrationType, tuple[IntegrationHealth, ...]] = {}
    for integration_type in IntegrationType:
        integrations = sorted(
            integration_store.list_for_user(integration_type, user_id),
            key=lambda integration: integration.id,
        )
        entries[integration_type] = tuple(
            IntegrationHealth(
                id=integration.id,
                provider=integration.provider,
                is_active=integration.is_active,
                health=state_store.get(integration_type, integration.id),
            )
            for integration in integrations
        )

    statuses = [
        entry.health.status for type_entries in entries.values() for entry in type_entries
    ]
    summary = HealthSummary(
        healthy_count=statuses.count(HealthStatus.HEALTHY),
        degraded_count=statuses.count(HealthStatus.DEGRADED),
        unhealthy_count=statuses.count(HealthStatus.UNHEALTHY),
    )

    return HealthReport(
        user_id=user_id,
        calendar_integrations=entries[IntegrationType.CALENDAR],
        video_integrations=entries[IntegrationType.VIDEO],
        summary=summary,
        generated_at=now or datetime.now(UTC),
    )


__all__ = [
    "HealthReport",
    "HealthSummary",
    "IntegrationHealth",
    "build_user_report",
]
