"""Per-integration health state and its pure transition rules.

A ``HealthState`` is kept for every ``(IntegrationType, integration_id)``
pair. It is created lazily with healthy defaults the first time it is read,
replaced only through ``update_health`` once a probe result is known, and
compared with ``detect_transition`` so that side effects fire only when an
integration crosses a meaningful status boundary.

Status is derived from the consecutive failure/success counters:

- ``failures >= FAILURE_THRESHOLD``      -> unhealthy
- ``failures > 0``                       -> degraded
- ``successes >= RECOVERY_THRESHOLD``    -> healthy
- otherwise                              -> degraded (recovering)

Transient failures leave the counters and status untouched; only hard
failures move an integration towards ``unhealthy``.

Usage:
    from healthwatch.health_state import (
        CheckFailed,
        CheckSucceeded,
        HealthStateStore,
        detect_transition,
        update_health,
    )

    store = HealthStateStore()
    old = store.get(IntegrationType.VIDEO, 42)
    new = update_health(old, CheckFailed("unauthorized", ErrorClass.HARD))
    store.put(IntegrationType.VIDEO, 42, new)
    transition = detect_transition(old, new)
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import Any, TypeAlias

from healthwatch.types import ErrorClass, HealthStatus, IntegrationType, TransitionKind

BASE_CHECK_INTERVAL_MS = 300_000
"""Base delay between checks of a healthy integration (5 minutes)."""

MAX_BACKOFF_MS = 3_600_000
"""Ceiling for the transient-failure backoff (1 hour)."""

FAILURE_THRESHOLD = 3
"""Consecutive hard failures after which an integration is unhealthy."""

RECOVERY_THRESHOLD = 2
"""Consecutive successes required to be considered healthy again."""

HealthKey: TypeAlias = tuple[IntegrationType, int]


@dataclass(frozen=True)
class HealthState:
    """Health record for a single integration.

    Attributes:
        failures: Consecutive hard failures since the last success.
        successes: Consecutive successes since the last hard failure.
        last_check: When the last probe completed, or None if never checked.
        status: Status derived from ``failures`` and ``successes``.
        backoff_ms: Delay after ``last_check`` before the next check is due.
        last_error_class: Class of the most recent failure, None after a success.
    """

    failures: int = 0
    successes: int = 0
    last_check: datetime | None = None
    status: HealthStatus = HealthStatus.HEALTHY
    backoff_ms: int = BASE_CHECK_INTERVAL_MS
    last_error_class: ErrorClass | None = None

    def __post_init__(self) -> None:
        if self.failures < 0:
            raise ValueError(f"failures must be non-negative, got {self.failures}")
        if self.successes < 0:
            raise ValueError(f"successes must be non-negative, got {self.successes}")
        if self.backoff_ms <= 0:
            raise ValueError(f"backoff_ms must be positive, got {self.backoff_ms}")

    @property
    def next_check_at(self) -> datetime | None:
        """Earliest time the next regular check is due, None if never checked."""
        if self.last_check is None:
            return None
        return self.last_check + timedelta(milliseconds=self.backoff_ms)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-safe dictionary for reports and logging."""
        return {
            "status": self.status.value,
            "failures": self.failures,
            "successes": self.successes,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "backoff_ms": self.backoff_ms,
            "last_error_class": self.last_error_class.value if self.last_error_class else None,
        }


def initial_state(base_interval_ms: int = BASE_CHECK_INTERVAL_MS) -> HealthState:
    """Return the state of an integration that has never been checked."""
    return HealthState(backoff_ms=base_interval_ms)


@dataclass(frozen=True)
class CheckSucceeded:
    """A probe completed successfully."""


@dataclass(frozen=True)
class CheckFailed:
    """A probe failed and has been classified.

    Attributes:
        reason: Raw failure reason reported by the probe.
        error_class: Classification of ``reason``.
    """

    reason: object
    error_class: ErrorClass


CheckResult: TypeAlias = CheckSucceeded | CheckFailed


def determine_status(failures: int, successes: int) -> HealthStatus:
    """Derive the health status from consecutive failure/success counts."""
    if failures >= FAILURE_THRESHOLD:
        return HealthStatus.UNHEALTHY
    if failures > 0:
        return HealthStatus.DEGRADED
    if successes >= RECOVERY_THRESHOLD:
        return HealthStatus.HEALTHY
    return HealthStatus.DEGRADED


def next_backoff_ms(
    current: int,
    *,
    base: int = BASE_CHECK_INTERVAL_MS,
    cap: int = MAX_BACKOFF_MS,
) -> int:
    """Compute the backoff for the check following a transient failure.

    Doubles whichever is larger of ``current`` and ``base``, never exceeding
    ``cap``. Stale or zero inputs therefore never shrink the backoff below
    ``2 * base`` (or the cap, if lower).

    Args:
        current: The backoff currently stored for the integration.
        base: Base check interval in milliseconds.
        cap: Maximum backoff in milliseconds.

    Returns:
        The next backoff in milliseconds.
    """
    return min(max(current, base) * 2, cap)


def update_health(
    state: HealthState,
    result: CheckResult,
    *,
    now: datetime | None = None,
    base_interval_ms: int = BASE_CHECK_INTERVAL_MS,
) -> HealthState:
    """Apply a probe result to a health state.

    - Success resets failures and backoff and counts one more success.
    - Transient failure only records ``last_check`` and the error class;
      counters, status and backoff are kept so a blip never demotes status.
      The grown backoff for the next check is applied by the caller through
      ``next_backoff_ms``.
    - Hard failure counts one more failure, resets successes and backoff.

    Args:
        state: The state before the probe.
        result: ``CheckSucceeded`` or ``CheckFailed``.
        now: Completion time of the probe. Defaults to the current UTC time.
        base_interval_ms: Base check interval to reset the backoff to.

    Returns:
        The new state. ``state`` itself is never modified.
    """
    checked_at = now or datetime.now(UTC)

    if isinstance(result, CheckSucceeded):
        successes = state.successes + 1
        return HealthState(
            failures=0,
            successes=successes,
            last_check=checked_at,
            status=determine_status(0, successes),
            backoff_ms=base_interval_ms,
            last_error_class=None,
        )

    if result.error_class == ErrorClass.TRANSIENT:
        return replace(
            state,
            last_check=checked_at,
            last_error_class=ErrorClass.TRANSIENT,
        )

    failures = state.failures + 1
    return HealthState(
        failures=failures,
        successes=0,
        last_check=checked_at,
        status=determine_status(failures, 0),
        backoff_ms=base_interval_ms,
        last_error_class=ErrorClass.HARD,
    )


@dataclass(frozen=True)
class Transition:
    """Status change between two consecutive health snapshots.

    Attributes:
        kind: What kind of boundary was crossed, if any.
        old_status: Status before the check, None if never checked.
        new_status: Status after the check.
    """

    kind: TransitionKind
    old_status: HealthStatus | None
    new_status: HealthStatus

    @property
    def is_failure(self) -> bool:
        return self.kind in (TransitionKind.INITIAL_FAILURE, TransitionKind.BECAME_UNHEALTHY)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "old_status": self.old_status.value if self.old_status else None,
            "new_status": self.new_status.value,
        }


def detect_transition(old: HealthState, new: HealthState) -> Transition:
    """Classify the status change between two snapshots of one integration.

    Args:
        old: State before the check.
        new: State after the check.

    Returns:
        The detected ``Transition``. Repeated failures or successes that stay
        within the same status yield ``TransitionKind.NO_CHANGE``.
    """
    if old.last_check is None:
        if new.status == HealthStatus.UNHEALTHY:
            return Transition(TransitionKind.INITIAL_FAILURE, None, new.status)
        return Transition(TransitionKind.NO_CHANGE, None, new.status)

    if old.status != HealthStatus.UNHEALTHY and new.status == HealthStatus.UNHEALTHY:
        kind = TransitionKind.BECAME_UNHEALTHY
    elif old.status == HealthStatus.UNHEALTHY and new.status == HealthStatus.HEALTHY:
        kind = TransitionKind.BECAME_HEALTHY
    elif old.status == HealthStatus.HEALTHY and new.status == HealthStatus.DEGRADED:
        kind = TransitionKind.BECAME_DEGRADED
    else:
        kind = TransitionKind.NO_CHANGE

    return Transition(kind, old.status, new.status)


class HealthStateStore:
    """Keyed store of health states owned by the component running checks.

    Reads of unknown keys return the initial state without persisting it.
    Initial states start at ``base_interval_ms``.
    Dictionary access is thread-safe; serializing writes for the same
    integration is left to the job queue's dedup guarantee.
    """

    def __init__(self, base_interval_ms: int = BASE_CHECK_INTERVAL_MS) -> None:
        self._states: dict[HealthKey, HealthState] = {}
        self._base_interval_ms = base_interval_ms
        self._lock = threading.Lock()

    @staticmethod
    def _key(integration_type: IntegrationType | str, integration_id: int) -> HealthKey:
        return (IntegrationType(integration_type), integration_id)

    def get(self, integration_type: IntegrationType | str, integration_id: int) -> HealthState:
        """Return the stored state, or the initial state if none exists."""
        key = self._key(integration_type, integration_id)
        with self._lock:
            return self._states.get(key) or initial_state(self._base_interval_ms)

    def put(
        self,
        integration_type: IntegrationType | str,
        integration_id: int,
        state: HealthState,
    ) -> None:
        """Replace the stored state for an integration."""
        key = self._key(integration_type, integration_id)
        with self._lock:
            self._states[key] = state

    def discard(self, integration_type: IntegrationType | str, integration_id: int) -> None:
        """Forget the state of an integration, e.g. after it was deleted."""
        key = self._key(integration_type, integration_id)
        with self._lock:
            self._states.pop(key, None)

    def snapshot(self) -> dict[HealthKey, HealthState]:
        """Return a copy of all stored states."""
        with self._lock:
            return dict(self._states)

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._states


__all__ = [
    "BASE_CHECK_INTERVAL_MS",
    "FAILURE_THRESHOLD",
    "MAX_BACKOFF_MS",
    "RECOVERY_THRESHOLD",
    "CheckFailed",
    "CheckResult",
    "CheckSucceeded",
    "HealthKey",
    "HealthState",
    "HealthStateStore",
    "Transition",
    "detect_transition",
    "determine_status",
    "initial_state",
    "next_backoff_ms",
    "update_health",
]
