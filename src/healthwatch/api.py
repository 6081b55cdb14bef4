"""HTTP API exposing integration health for display and operations.

Endpoints:
- GET  /api/integrations/health/users/{user_id}: per-user health report
- GET  /api/integrations/health/{type}/{integration_id}: health of one integration
- POST /api/integrations/health/sweep: run a scheduling sweep (``?force=true``
  schedules every active integration regardless of backoff)
- GET  /api/integrations/health/circuit-breakers: provider breaker status
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, FastAPI, HTTPException

from healthwatch.circuit_breaker import CircuitBreakerRegistry
from healthwatch.monitor import HealthMonitor
from healthwatch.types import IntegrationType

API_PREFIX = "/api/integrations/health"


def create_routes(monitor: HealthMonitor, breakers: CircuitBreakerRegistry) -> APIRouter:
    """Create the health API router.

    Args:
        monitor: Monitor whose state is exposed.
        breakers: Provider circuit breakers to report on.

    Returns:
        APIRouter with all health routes under ``/api/integrations/health``.
    """
    health_router = APIRouter(prefix=API_PREFIX)

    @health_router.get("/users/{user_id}")
    async def user_report(user_id: int) -> dict[str, Any]:
        """Health of every integration owned by a user, with status counts."""
        return monitor.user_health_report(user_id).to_dict()

    @health_router.get("/circuit-breakers")
    async def circuit_breakers() -> dict[str, Any]:
        return {"breakers": breakers.get_all_status()}

    @health_router.post("/sweep")
    async def sweep(force: bool = False) -> dict[str, Any]:
        """Run one scheduling sweep.

        Returns:
            JSON with the per-integration scheduling outcome counts and any
            errors encountered.
        """
        return monitor.run_sweep(force=force).to_dict()

    @health_router.get("/{integration_type}/{integration_id}")
    async def integration_health(
        integration_type: IntegrationType, integration_id: int
    ) -> dict[str, Any]:
        """Current health of one integration.

        Raises:
            HTTPException: 404 if the integration does not exist.
        """
        integration = monitor.find_integration(integration_type, integration_id)
        if integration is None:
            raise HTTPException(
                status_code=404,
                detail=f"{integration_type} integration {integration_id} not found",
            )
        state = monitor.get_health_status(integration_type, integration_id)
        return {
            "type": integration_type.value,
            "id": integration.id,
            "provider": integration.provider,
            "is_active": integration.is_active,
            "health": state.to_dict(),
        }

    return health_router


def create_app(monitor: HealthMonitor, breakers: CircuitBreakerRegistry) -> FastAPI:
    """Create the FastAPI application serving the health API."""
    app = FastAPI(
        title="Integration Healthwatch",
        description="Health monitoring of calendar and video integrations",
        version="0.1.0",
    )
    app.include_router(create_routes(monitor, breakers))
    return app


__all__ = [
    "API_PREFIX",
    "create_app",
    "create_routes",
]
