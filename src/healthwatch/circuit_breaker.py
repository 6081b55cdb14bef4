"""Per-provider circuit breakers fed by health check outcomes.

Each provider gets one breaker. Transient check failures (timeouts, 5xx,
rate limiting) count against the provider; enough of them in a row open the
circuit and the scheduler stops enqueueing checks for every integration of
that provider until the recovery timeout has passed.

Circuit States:
- CLOSED: Normal operation, checks are scheduled
- OPEN: Provider is failing broadly, checks are withheld
- HALF_OPEN: Recovery window, checks are scheduled again to test the provider

The scheduler only reads breaker status through ``CircuitBreakerRegistry.status``;
the monitor reports outcomes through ``record_success``/``record_failure``.

Configuration comes from ``Config`` (see ``healthwatch.config``):
- HEALTHWATCH_CIRCUIT_BREAKER_ENABLED
- HEALTHWATCH_CIRCUIT_BREAKER_FAILURE_THRESHOLD
- HEALTHWATCH_CIRCUIT_BREAKER_RECOVERY_TIMEOUT
- HEALTHWATCH_CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from healthwatch.logging import get_logger
from healthwatch.types import Provider

if TYPE_CHECKING:
    from healthwatch.config import Config

logger = get_logger(__name__)


class CircuitState(Enum):
    """States of the circuit breaker."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerConfigError(ValueError):
    """Raised when circuit breaker configuration is invalid."""


class BreakerStatusError(Exception):
    """Raised when the status of a breaker cannot be determined."""


class BreakerNotFoundError(BreakerStatusError):
    """Raised when no breaker has been initialized for a provider."""


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior.

    Attributes:
        failure_threshold: Consecutive failures before opening the circuit.
        recovery_timeout: Seconds the circuit stays open before half-opening.
        half_open_max_calls: Successes needed in half-open state to close.
        enabled: When False, breakers always report CLOSED.

    Raises:
        CircuitBreakerConfigError: If any threshold values are not positive.
    """

    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    half_open_max_calls: int = 3
    enabled: bool = True

    def __post_init__(self) -> None:
        for name in ("failure_threshold", "half_open_max_calls"):
            value = getattr(self, name)
            # bool is a subclass of int
            if isinstance(value, bool) or not isinstance(value, int):
                raise CircuitBreakerConfigError(
                    f"{name} must be an integer, got {type(value).__name__}"
                )
            if value <= 0:
                raise CircuitBreakerConfigError(f"{name} must be positive, got {value}")
        if self.recovery_timeout <= 0:
            raise CircuitBreakerConfigError(
                f"recovery_timeout must be positive, got {self.recovery_timeout}"
            )

    @classmethod
    def from_config(cls, config: Config) -> CircuitBreakerConfig:
        """Build breaker configuration from application configuration."""
        return cls(
            failure_threshold=config.circuit_breaker_failure_threshold,
            recovery_timeout=config.circuit_breaker_recovery_timeout,
            half_open_max_calls=config.circuit_breaker_half_open_max_calls,
            enabled=config.circuit_breaker_enabled,
        )


class CircuitBreaker:
    """Thread-safe breaker tracking check outcomes for one provider.

    Args:
        provider: Provider this breaker protects.
        config: Breaker thresholds.
        time_func: Callable returning the current time in seconds. Defaults
            to ``time.monotonic``; tests pass a fake clock.
    """

    def __init__(
        self,
        provider: Provider,
        config: CircuitBreakerConfig | None = None,
        time_func: Callable[[], float] | None = None,
    ) -> None:
        self.provider = provider
        self.config = config or CircuitBreakerConfig()
        self._time_func: Callable[[], float] = time_func or time.monotonic
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._half_open_successes = 0
        self._opened_at: float | None = None
        self._state_changes = 0
        self._total_failures = 0
        self._total_successes = 0
        self._lock = threading.RLock()

    @property
    def state(self) -> CircuitState:
        """Current state, moving OPEN to HALF_OPEN once the timeout elapsed."""
        if not self.config.enabled:
            return CircuitState.CLOSED
        with self._lock:
            self._check_recovery_timeout()
            return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def _check_recovery_timeout(self) -> None:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return
        if self._time_func() - self._opened_at >= self.config.recovery_timeout:
            self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self._state_changes += 1

        if new_state == CircuitState.OPEN:
            self._opened_at = self._time_func()
        elif new_state == CircuitState.HALF_OPEN:
            self._half_open_successes = 0
        else:
            self._failure_count = 0
            self._opened_at = None

        logger.info(
            "[CIRCUIT_BREAKER] %s: State changed from %s to %s",
            self.provider,
            old_state.value,
            new_state.value,
        )

    def record_success(self) -> None:
        """Record a successful health check against the provider."""
        if not self.config.enabled:
            return
        with self._lock:
            self._check_recovery_timeout()
            self._total_successes += 1
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_successes += 1
                if self._half_open_successes >= self.config.half_open_max_calls:
                    self._transition_to(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(self, reason: str = "") -> None:
        """Record a provider-wide failure such as a timeout or a 5xx response.

        Args:
            reason: Short description for the log line.
        """
        if not self.config.enabled:
            return
        with self._lock:
            self._check_recovery_timeout()
            self._total_failures += 1
            logger.debug(
                "[CIRCUIT_BREAKER] %s: Failure recorded%s",
                self.provider,
                f": {reason}" if reason else "",
            )

            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
                logger.warning("[CIRCUIT_BREAKER] %s: Recovery failed, circuit OPEN", self.provider)
            elif self._state == CircuitState.CLOSED:
                self._failure_count += 1
                if self._failure_count >= self.config.failure_threshold:
                    self._transition_to(CircuitState.OPEN)
                    logger.warning(
                        "[CIRCUIT_BREAKER] %s: Failure threshold reached (%s/%s), circuit OPEN",
                        self.provider,
                        self._failure_count,
                        self.config.failure_threshold,
                    )

    def reset(self) -> None:
        """Force the breaker back to CLOSED, e.g. after manual intervention."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._half_open_successes = 0
            self._opened_at = None
            logger.info("[CIRCUIT_BREAKER] %s: Circuit manually reset to CLOSED", self.provider)

    def get_status(self) -> dict[str, Any]:
        """Get current circuit breaker status for dashboards."""
        with self._lock:
            return {
                "provider": self.provider.value,
                "state": self.state.value,
                "enabled": self.config.enabled,
                "failure_count": self._failure_count,
                "total_failures": self._total_failures,
                "total_successes": self._total_successes,
                "state_changes": self._state_changes,
                "config": {
                    "failure_threshold": self.config.failure_threshold,
                    "recovery_timeout": self.config.recovery_timeout,
                    "half_open_max_calls": self.config.half_open_max_calls,
                },
            }


@runtime_checkable
class BreakerStatusSource(Protocol):
    """Read-only view of provider breaker state consumed by the scheduler."""

    def status(self, provider: Provider) -> CircuitState:
        """Return the breaker state for a provider.

        Raises:
            BreakerNotFoundError: If no breaker exists for the provider.
            BreakerStatusError: If the state cannot be determined.
        """
        ...  # pragma: no cover


class CircuitBreakerRegistry:
    """Registry holding one circuit breaker per provider.

    Usage:
        registry = CircuitBreakerRegistry(config, providers=Provider)
        registry.get(Provider.GOOGLE).record_failure("timeout")
        if registry.status(Provider.GOOGLE) == CircuitState.OPEN:
            ...
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        providers: Iterable[Provider] = (),
        time_func: Callable[[], float] | None = None,
    ) -> None:
        self._config = config or CircuitBreakerConfig()
        self._time_func = time_func
        self._breakers: dict[Provider, CircuitBreaker] = {}
        self._lock = threading.Lock()
        for provider in providers:
            self.get(provider)

    def get(self, provider: Provider) -> CircuitBreaker:
        """Get or create the breaker for a provider."""
        with self._lock:
            breaker = self._breakers.get(provider)
            if breaker is None:
                breaker = CircuitBreaker(provider, self._config, self._time_func)
                self._breakers[provider] = breaker
                logger.debug(
                    "[CIRCUIT_BREAKER] Created circuit breaker for %s: threshold=%s, timeout=%ss",
                    provider,
                    self._config.failure_threshold,
                    self._config.recovery_timeout,
                )
            return breaker

    def status(self, provider: Provider) -> CircuitState:
        with self._lock:
            breaker = self._breakers.get(provider)
        if breaker is None:
            raise BreakerNotFoundError(f"No circuit breaker initialized for {provider}")
        return breaker.state

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        """Get status of all registered circuit breakers keyed by provider."""
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.provider.value: breaker.get_status() for breaker in breakers}

    def reset_all(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()
        logger.info("[CIRCUIT_BREAKER] All circuit breakers reset")


__all__ = [
    "BreakerNotFoundError",
    "BreakerStatusError",
    "BreakerStatusSource",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerConfigError",
    "CircuitBreakerRegistry",
    "CircuitState",
]
