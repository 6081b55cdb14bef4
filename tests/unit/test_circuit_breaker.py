"""Tests for per-provider circuit breakers."""

from __future__ import annotations

import pytest

from healthwatch.circuit_breaker import (
    BreakerNotFoundError,
    BreakerStatusError,
    BreakerStatusSource,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerConfigError,
    CircuitBreakerRegistry,
    CircuitState,
)
from healthwatch.config import Config
from healthwatch.types import Provider
from tests.conftest import FakeMonotonic


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


def _breaker(monotonic: FakeMonotonic, **kwargs: int | float | bool) -> CircuitBreaker:
    config = CircuitBreakerConfig(
        failure_threshold=kwargs.pop("failure_threshold", 3),  # type: ignore[arg-type]
        recovery_timeout=kwargs.pop("recovery_timeout", 60.0),
        half_open_max_calls=kwargs.pop("half_open_max_calls", 2),  # type: ignore[arg-type]
        enabled=kwargs.pop("enabled", True),  # type: ignore[arg-type]
    )
    return CircuitBreaker(Provider.GOOGLE, config, time_func=monotonic)


class TestCircuitBreakerConfig:
    """Tests for CircuitBreakerConfig validation."""

    def test_defaults(self) -> None:
        config = CircuitBreakerConfig()
        assert config.failure_threshold == 5
        assert config.recovery_timeout == 60.0
        assert config.half_open_max_calls == 3
        assert config.enabled is True

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"failure_threshold": 0},
            {"failure_threshold": -1},
            {"half_open_max_calls": 0},
            {"recovery_timeout": 0},
            {"recovery_timeout": -5.0},
        ],
    )
    def test_rejects_non_positive_values(self, kwargs: dict[str, float]) -> None:
        with pytest.raises(CircuitBreakerConfigError):
            CircuitBreakerConfig(**kwargs)  # type: ignore[arg-type]

    @pytest.mark.parametrize("value", [True, 2.5, "3"])
    def test_rejects_non_integer_thresholds(self, value: object) -> None:
        with pytest.raises(CircuitBreakerConfigError, match="must be an integer"):
            CircuitBreakerConfig(failure_threshold=value)  # type: ignore[arg-type]

    def test_from_config(self) -> None:
        config = Config(
            circuit_breaker_enabled=False,
            circuit_breaker_failure_threshold=7,
            circuit_breaker_recovery_timeout=30.0,
            circuit_breaker_half_open_max_calls=1,
        )

        breaker_config = CircuitBreakerConfig.from_config(config)

        assert breaker_config == CircuitBreakerConfig(
            failure_threshold=7, recovery_timeout=30.0, half_open_max_calls=1, enabled=False
        )


class TestCircuitBreakerStates:
    """Tests for state transitions driven by check outcomes."""

    def test_starts_closed(self, monotonic: FakeMonotonic) -> None:
        breaker = _breaker(monotonic)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.is_open is False

    def test_opens_at_failure_threshold(self, monotonic: FakeMonotonic) -> None:
        breaker = _breaker(monotonic)

        breaker.record_failure("timeout")
        breaker.record_failure("timeout")
        assert breaker.state == CircuitState.CLOSED

        breaker.record_failure("timeout")
        assert breaker.state == CircuitState.OPEN
        assert breaker.is_open

    def test_success_resets_failure_count(self, monotonic: FakeMonotonic) -> None:
        breaker = _breaker(monotonic)

        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        breaker.record_failure()

        assert breaker.state == CircuitState.CLOSED

    def test_half_open_after_recovery_timeout(self, monotonic: FakeMonotonic) -> None:
        breaker = _breaker(monotonic)
        for _ in range(3):
            breaker.record_failure()

        monotonic.advance(59)
        assert breaker.state == CircuitState.OPEN

        monotonic.advance(1)
        assert breaker.state == CircuitState.HALF_OPEN

    def test_closes_after_half_open_successes(self, monotonic: FakeMonotonic) -> None:
        breaker = _breaker(monotonic)
        for _ in range(3):
            breaker.record_failure()
        monotonic.advance(60)

        breaker.record_success()
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_status()["failure_count"] == 0

    def test_half_open_failure_reopens(self, monotonic: FakeMonotonic) -> None:
        breaker = _breaker(monotonic)
        for _ in range(3):
            breaker.record_failure()
        monotonic.advance(60)
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.record_failure("still timing out")

        assert breaker.state == CircuitState.OPEN
        monotonic.advance(30)
        assert breaker.state == CircuitState.OPEN

    def test_disabled_breaker_always_closed(self, monotonic: FakeMonotonic) -> None:
        breaker = _breaker(monotonic, enabled=False)

        for _ in range(10):
            breaker.record_failure()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_status()["total_failures"] == 0

    def test_reset(self, monotonic: FakeMonotonic) -> None:
        breaker = _breaker(monotonic)
        for _ in range(3):
            breaker.record_failure()

        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

    def test_get_status(self, monotonic: FakeMonotonic) -> None:
        breaker = _breaker(monotonic)
        breaker.record_success()
        breaker.record_failure()

        status = breaker.get_status()

        assert status["provider"] == "google"
        assert status["state"] == "closed"
        assert status["enabled"] is True
        assert status["failure_count"] == 1
        assert status["total_failures"] == 1
        assert status["total_successes"] == 1
        assert status["config"] == {
            "failure_threshold": 3,
            "recovery_timeout": 60.0,
            "half_open_max_calls": 2,
        }


class TestCircuitBreakerRegistry:
    """Tests for the per-provider registry."""

    def test_get_returns_same_breaker(self) -> None:
        registry = CircuitBreakerRegistry()
        assert registry.get(Provider.OUTLOOK) is registry.get(Provider.OUTLOOK)
        assert registry.get(Provider.OUTLOOK) is not registry.get(Provider.TEAMS)

    def test_status_unknown_provider_raises(self) -> None:
        registry = CircuitBreakerRegistry()

        with pytest.raises(BreakerNotFoundError):
            registry.status(Provider.CALDAV)

    def test_not_found_is_a_status_error(self) -> None:
        assert issubclass(BreakerNotFoundError, BreakerStatusError)

    def test_pre_registered_providers(self) -> None:
        registry = CircuitBreakerRegistry(providers=Provider)

        for provider in Provider:
            assert registry.status(provider) == CircuitState.CLOSED

    def test_satisfies_status_source_protocol(self) -> None:
        assert isinstance(CircuitBreakerRegistry(), BreakerStatusSource)

    def test_status_reflects_breaker(self, monotonic: FakeMonotonic) -> None:
        registry = CircuitBreakerRegistry(
            CircuitBreakerConfig(failure_threshold=1), time_func=monotonic
        )

        registry.get(Provider.MIROTALK).record_failure("HTTP 503")

        assert registry.status(Provider.MIROTALK) == CircuitState.OPEN
        monotonic.advance(60)
        assert registry.status(Provider.MIROTALK) == CircuitState.HALF_OPEN

    def test_get_all_status(self) -> None:
        registry = CircuitBreakerRegistry(providers=[Provider.GOOGLE, Provider.TEAMS])

        all_status = registry.get_all_status()

        assert set(all_status) == {"google", "teams"}
        assert all_status["teams"]["state"] == "closed"

    def test_reset_all(self) -> None:
        registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=1))
        registry.get(Provider.GOOGLE).record_failure()
        registry.get(Provider.OUTLOOK).record_failure()

        registry.reset_all()

        assert registry.status(Provider.GOOGLE) == CircuitState.CLOSED
        assert registry.status(Provider.OUTLOOK) == CircuitState.CLOSED
