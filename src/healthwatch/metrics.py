"""Metric sink contract and an in-memory recorder.

Health checks emit one ``integration.health_check`` event each, with the
probe duration as measurement and type, provider, integration, user and
success flag as tags. Emission is fire-and-forget: sinks must not raise.
"""

from __future__ import annotations

import threading
import time
from collections import Counter, deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

HEALTH_CHECK_EVENT = "integration.health_check"

DEFAULT_RECENT_EVENTS = 1000


@runtime_checkable
class MetricsSink(Protocol):
    def emit(
        self,
        event: str,
        measurements: Mapping[str, float],
        tags: Mapping[str, Any],
    ) -> None:
        """Record one metric event."""
        ...  # pragma: no cover


@dataclass(frozen=True)
class MetricEvent:
    name: str
    measurements: dict[str, float]
    tags: dict[str, Any]
    timestamp: float = 0.0


class InMemoryMetricsSink:
    """Thread-safe sink keeping per-event counters and a bounded event history.

    Args:
        max_events: Number of most recent events kept for inspection.
        time_func: Clock used to timestamp events. Defaults to ``time.time``.
    """

    def __init__(
        self,
        max_events: int = DEFAULT_RECENT_EVENTS,
        time_func: Callable[[], float] | None = None,
    ) -> None:
        self._events: deque[MetricEvent] = deque(maxlen=max_events)
        self._counts: Counter[str] = Counter()
        self._time_func = time_func or time.time
        self._lock = threading.Lock()

    def emit(
        self,
        event: str,
        measurements: Mapping[str, float],
        tags: Mapping[str, Any],
    ) -> None:
        record = MetricEvent(event, dict(measurements), dict(tags), self._time_func())
        with self._lock:
            self._events.append(record)
            self._counts[event] += 1

    def events(self, name: str | None = None) -> list[MetricEvent]:
        """Return recent events, optionally only those named ``name``."""
        with self._lock:
            return [e for e in self._events if name is None or e.name == name]

    def count(self, name: str) -> int:
        """Total number of events emitted under ``name``."""
        with self._lock:
            return self._counts[name]

    def summary(self) -> dict[str, Any]:
        """Success/failure counts and mean duration of recent health checks."""
        checks = self.events(HEALTH_CHECK_EVENT)
        durations = [e.measurements.get("duration_ms", 0.0) for e in checks]
        successes = sum(1 for e in checks if e.tags.get("success"))
        return {
            "total": self.count(HEALTH_CHECK_EVENT),
            "recent": len(checks),
            "recent_successes": successes,
            "recent_failures": len(checks) - successes,
            "mean_duration_ms": sum(durations) / len(durations) if durations else 0.0,
        }


__all__ = [
    "HEALTH_CHECK_EVENT",
    "InMemoryMetricsSink",
    "MetricEvent",
    "MetricsSink",
]
