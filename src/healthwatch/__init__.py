"""Integration Healthwatch - health monitoring for calendar and video integrations."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("integration-healthwatch")
except PackageNotFoundError:
    # Package is not installed (e.g., running from source without pip install)
    __version__ = "0.0.0.dev0"

# Re-export core public API
from healthwatch.container import create_container
from healthwatch.health_state import HealthState, detect_transition, update_health
from healthwatch.monitor import CheckOutcome, HealthMonitor
from healthwatch.types import ErrorClass, HealthStatus, IntegrationType, TransitionKind

# NOTE: Update this list when adding new exports to this module.
__all__ = [
    "__version__",
    "CheckOutcome",
    "ErrorClass",
    "HealthMonitor",
    "HealthState",
    "HealthStatus",
    "IntegrationType",
    "TransitionKind",
    "create_container",
    "detect_transition",
    "update_health",
]
