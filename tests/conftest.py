"""Shared pytest fixtures and fakes for healthwatch tests.

Fakes defined here are importable from test modules::

    from tests.conftest import FakeTester, FixedClock, RecordingAlertSender

Fixtures build fresh stores, queues and sinks for every test so no state
leaks between tests.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from healthwatch.alerts import AlertDeliveryError, AlertLevel
from healthwatch.circuit_breaker import BreakerNotFoundError, CircuitState
from healthwatch.credentials import CredentialDecryptor
from healthwatch.health_state import HealthStateStore
from healthwatch.integrations import InMemoryIntegrationStore, Integration
from healthwatch.job_queue import InMemoryJobQueue
from healthwatch.metrics import InMemoryMetricsSink
from healthwatch.providers import ProbeFailure, ProbeResult, ProbeSuccess
from healthwatch.types import Provider

START = datetime(2024, 1, 15, 9, 0, tzinfo=UTC)
"""Fixed point in time used as 'now' by the fake clocks."""

TEST_ENCRYPTION_KEY = "test-encryption-secret"


class FixedClock:
    """UTC clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeMonotonic:
    """Monotonic clock in seconds that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class RecordingAlertSender:
    """Alert sender that records alerts and can be told to fail."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.alerts: list[tuple[str, dict[str, Any], AlertLevel]] = []

    def send_alert(self, event_type: str, payload: Mapping[str, Any], level: AlertLevel) -> None:
        self.alerts.append((event_type, dict(payload), level))
        if self.fail:
            raise AlertDeliveryError("webhook unreachable")


class FakeTester:
    """Connection tester returning queued results and recording configs.

    Args:
        results: Results returned in order; the last one repeats. An
            exception instance in the list is raised instead of returned.
    """

    def __init__(self, *results: ProbeResult | Exception) -> None:
        self.results: list[ProbeResult | Exception] = list(results) or [ProbeSuccess()]
        self.configs: list[dict[str, Any]] = []
        self.timeouts: list[float] = []

    def test_connection(self, config: Mapping[str, Any], *, timeout: float) -> ProbeResult:
        self.configs.append(dict(config))
        self.timeouts.append(timeout)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result

    @property
    def calls(self) -> int:
        return len(self.configs)


class FakeBreakers:
    """Breaker status source with per-provider states or errors."""

    def __init__(self, states: Mapping[Provider, CircuitState | Exception] | None = None) -> None:
        self.states = dict(states or {})
        self.lookups: list[Provider] = []

    def status(self, provider: Provider) -> CircuitState:
        self.lookups.append(provider)
        if provider not in self.states:
            raise BreakerNotFoundError(f"No circuit breaker initialized for {provider}")
        state = self.states[provider]
        if isinstance(state, Exception):
            raise state
        return state


def make_integration(integration_id: int = 1, **overrides: Any) -> Integration:
    """Build an integration record with sensible defaults."""
    values: dict[str, Any] = {
        "id": integration_id,
        "user_id": 100,
        "provider": "caldav",
        "base_url": "https://dav.example.com/",
        "username": "alice",
    }
    values.update(overrides)
    return Integration(**values)


FAILING = ProbeFailure("unauthorized: invalid credentials")
"""Probe result classified as a hard failure."""


# Pytest fixtures


@pytest.fixture
def clock() -> FixedClock:
    """Provide a fresh FixedClock set to START."""
    return FixedClock()


@pytest.fixture
def state_store() -> HealthStateStore:
    return HealthStateStore()


@pytest.fixture
def integration_store() -> InMemoryIntegrationStore:
    return InMemoryIntegrationStore()


@pytest.fixture
def job_queue() -> InMemoryJobQueue:
    return InMemoryJobQueue(time_func=FakeMonotonic())


@pytest.fixture
def metrics() -> InMemoryMetricsSink:
    return InMemoryMetricsSink()


@pytest.fixture
def alert_sender() -> RecordingAlertSender:
    return RecordingAlertSender()


@pytest.fixture(scope="session")
def decryptor() -> CredentialDecryptor:
    """Provide a decryptor shared across the session; key derivation is slow."""
    return CredentialDecryptor(TEST_ENCRYPTION_KEY)


@pytest.fixture
def restore_logging() -> Iterator[None]:
    """Restore root handlers and logger levels changed by setup_logging()."""
    root = logging.getLogger()
    package = logging.getLogger("healthwatch")
    handlers = root.handlers[:]
    root_level = root.level
    package_level = package.level
    yield
    root.handlers[:] = handlers
    root.setLevel(root_level)
    package.setLevel(package_level)
