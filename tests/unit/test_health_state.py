"""Tests for health state transitions and the health state store."""

from __future__ import annotations

from dataclasses import FrozenInstanceError, replace
from datetime import UTC, datetime, timedelta

import pytest

from healthwatch.health_state import (
    BASE_CHECK_INTERVAL_MS,
    FAILURE_THRESHOLD,
    MAX_BACKOFF_MS,
    RECOVERY_THRESHOLD,
    CheckFailed,
    CheckSucceeded,
    HealthState,
    HealthStateStore,
    detect_transition,
    determine_status,
    initial_state,
    next_backoff_ms,
    update_health,
)
from healthwatch.types import ErrorClass, HealthStatus, IntegrationType, TransitionKind

NOW = datetime(2024, 1, 15, 9, 0, tzinfo=UTC)
EARLIER = NOW - timedelta(minutes=5)

HARD = CheckFailed("unauthorized", ErrorClass.HARD)
TRANSIENT = CheckFailed("timeout", ErrorClass.TRANSIENT)


class TestHealthState:
    """Tests for the HealthState record."""

    def test_initial_state(self) -> None:
        state = initial_state()
        assert state.failures == 0
        assert state.successes == 0
        assert state.last_check is None
        assert state.status == HealthStatus.HEALTHY
        assert state.backoff_ms == BASE_CHECK_INTERVAL_MS
        assert state.last_error_class is None

    def test_initial_state_with_configured_interval(self) -> None:
        assert initial_state(60_000).backoff_ms == 60_000

    def test_frozen(self) -> None:
        with pytest.raises(FrozenInstanceError):
            initial_state().failures = 1  # type: ignore[misc]

    @pytest.mark.parametrize(
        "kwargs", [{"failures": -1}, {"successes": -1}, {"backoff_ms": 0}, {"backoff_ms": -5}]
    )
    def test_rejects_invalid_values(self, kwargs: dict[str, int]) -> None:
        with pytest.raises(ValueError):
            HealthState(**kwargs)

    def test_next_check_at(self) -> None:
        assert initial_state().next_check_at is None
        state = HealthState(last_check=NOW, backoff_ms=60_000)
        assert state.next_check_at == NOW + timedelta(minutes=1)

    def test_to_dict(self) -> None:
        state = HealthState(
            failures=1,
            last_check=NOW,
            status=HealthStatus.DEGRADED,
            last_error_class=ErrorClass.HARD,
        )
        assert state.to_dict() == {
            "status": "degraded",
            "failures": 1,
            "successes": 0,
            "last_check": NOW.isoformat(),
            "backoff_ms": BASE_CHECK_INTERVAL_MS,
            "last_error_class": "hard",
        }


class TestDetermineStatus:
    """Tests for status derivation from the counters."""

    @pytest.mark.parametrize("failures", [FAILURE_THRESHOLD, 4, 10, 1000])
    @pytest.mark.parametrize("successes", [0, 1, 2, 50])
    def test_threshold_failures_are_unhealthy(self, failures: int, successes: int) -> None:
        assert determine_status(failures, successes) == HealthStatus.UNHEALTHY

    @pytest.mark.parametrize("failures", [1, 2])
    def test_some_failures_are_degraded(self, failures: int) -> None:
        assert determine_status(failures, 5) == HealthStatus.DEGRADED

    @pytest.mark.parametrize("successes", [RECOVERY_THRESHOLD, 3, 100])
    def test_enough_successes_are_healthy(self, successes: int) -> None:
        assert determine_status(0, successes) == HealthStatus.HEALTHY

    @pytest.mark.parametrize("successes", [0, 1])
    def test_recovering_is_degraded(self, successes: int) -> None:
        assert determine_status(0, successes) == HealthStatus.DEGRADED


class TestNextBackoff:
    """Tests for exponential backoff growth."""

    def test_doubles(self) -> None:
        assert next_backoff_ms(BASE_CHECK_INTERVAL_MS) == 2 * BASE_CHECK_INTERVAL_MS
        assert next_backoff_ms(1_200_000) == 2_400_000

    def test_capped(self) -> None:
        assert next_backoff_ms(2_400_000) == MAX_BACKOFF_MS
        assert next_backoff_ms(MAX_BACKOFF_MS) == MAX_BACKOFF_MS
        assert next_backoff_ms(10 * MAX_BACKOFF_MS) == MAX_BACKOFF_MS

    @pytest.mark.parametrize("current", [0, 1, 1000, BASE_CHECK_INTERVAL_MS])
    def test_stale_input_never_below_twice_base(self, current: int) -> None:
        assert next_backoff_ms(current) >= 2 * BASE_CHECK_INTERVAL_MS

    def test_monotonic_under_repetition(self) -> None:
        backoff = 0
        seen = []
        for _ in range(20):
            backoff = next_backoff_ms(backoff)
            seen.append(backoff)
        assert seen == sorted(seen)
        assert max(seen) == MAX_BACKOFF_MS

    def test_custom_limits(self) -> None:
        assert next_backoff_ms(0, base=1000, cap=3000) == 2000
        assert next_backoff_ms(2000, base=1000, cap=3000) == 3000


class TestUpdateHealth:
    """Tests for applying probe results."""

    def test_first_success_is_still_recovering(self) -> None:
        """One success after nothing is degraded, not healthy."""
        state = update_health(initial_state(), CheckSucceeded(), now=NOW)

        assert state.successes == 1
        assert state.status == HealthStatus.DEGRADED
        assert state.last_check == NOW

    def test_second_success_is_healthy(self) -> None:
        first = update_health(initial_state(), CheckSucceeded(), now=EARLIER)
        second = update_health(first, CheckSucceeded(), now=NOW)

        assert second.successes == 2
        assert second.status == HealthStatus.HEALTHY

    def test_third_hard_failure_is_unhealthy(self) -> None:
        old = HealthState(failures=2, last_check=EARLIER, status=HealthStatus.DEGRADED)

        new = update_health(old, HARD, now=NOW)

        assert new.failures == 3
        assert new.status == HealthStatus.UNHEALTHY
        assert detect_transition(old, new).kind == TransitionKind.BECAME_UNHEALTHY

    @pytest.mark.parametrize(
        "old",
        [
            initial_state(),
            HealthState(failures=7, successes=0, backoff_ms=MAX_BACKOFF_MS, last_check=EARLIER),
            HealthState(failures=0, successes=9, backoff_ms=1_200_000, last_check=EARLIER),
        ],
    )
    def test_success_always_resets_failures_and_backoff(self, old: HealthState) -> None:
        new = update_health(old, CheckSucceeded(), now=NOW)

        assert new.failures == 0
        assert new.successes == old.successes + 1
        assert new.backoff_ms == BASE_CHECK_INTERVAL_MS
        assert new.last_error_class is None

    def test_success_uses_custom_base_interval(self) -> None:
        new = update_health(initial_state(), CheckSucceeded(), now=NOW, base_interval_ms=60_000)
        assert new.backoff_ms == 60_000

    def test_hard_failure_counts_and_resets(self) -> None:
        old = HealthState(successes=4, backoff_ms=1_200_000, last_check=EARLIER)

        new = update_health(old, HARD, now=NOW)

        assert new.failures == 1
        assert new.successes == 0
        assert new.status == HealthStatus.DEGRADED
        assert new.backoff_ms == BASE_CHECK_INTERVAL_MS
        assert new.last_error_class == ErrorClass.HARD
        assert new.last_check == NOW

    def test_transient_failure_keeps_counters_status_and_backoff(self) -> None:
        old = HealthState(
            failures=1,
            successes=0,
            last_check=EARLIER,
            status=HealthStatus.DEGRADED,
            backoff_ms=600_000,
        )

        new = update_health(old, TRANSIENT, now=NOW)

        assert new == replace(old, last_check=NOW, last_error_class=ErrorClass.TRANSIENT)

    def test_transient_failures_never_demote_status(self) -> None:
        """Documented design choice: only hard failures move towards unhealthy.

        A run of transient failures, however long, leaves a healthy
        integration healthy and therefore never triggers deactivation.
        """
        state = HealthState(successes=2, last_check=EARLIER, status=HealthStatus.HEALTHY)
        for minute in range(25):
            state = update_health(state, TRANSIENT, now=NOW + timedelta(minutes=minute))

        assert state.status == HealthStatus.HEALTHY
        assert state.failures == 0
        assert state.successes == 2

    def test_does_not_modify_input(self) -> None:
        old = initial_state()
        update_health(old, HARD, now=NOW)
        assert old == initial_state()

    def test_defaults_now_to_current_time(self) -> None:
        before = datetime.now(UTC)
        state = update_health(initial_state(), CheckSucceeded())
        assert state.last_check is not None
        assert state.last_check >= before


class TestDetectTransition:
    """Tests for transition classification."""

    def test_never_checked_and_unhealthy_is_initial_failure(self) -> None:
        old = initial_state()
        new = HealthState(
            failures=FAILURE_THRESHOLD, last_check=NOW, status=HealthStatus.UNHEALTHY
        )

        transition = detect_transition(old, new)

        assert transition.kind == TransitionKind.INITIAL_FAILURE
        assert transition.old_status is None
        assert transition.new_status == HealthStatus.UNHEALTHY
        assert transition.is_failure is True

    def test_first_check_without_unhealthy_is_no_change(self) -> None:
        new = update_health(initial_state(), HARD, now=NOW)

        transition = detect_transition(initial_state(), new)

        assert transition.kind == TransitionKind.NO_CHANGE
        assert transition.old_status is None

    @pytest.mark.parametrize(
        ("old_status", "new_status", "kind"),
        [
            (HealthStatus.HEALTHY, HealthStatus.UNHEALTHY, TransitionKind.BECAME_UNHEALTHY),
            (HealthStatus.DEGRADED, HealthStatus.UNHEALTHY, TransitionKind.BECAME_UNHEALTHY),
            (HealthStatus.UNHEALTHY, HealthStatus.HEALTHY, TransitionKind.BECAME_HEALTHY),
            (HealthStatus.HEALTHY, HealthStatus.DEGRADED, TransitionKind.BECAME_DEGRADED),
            (HealthStatus.HEALTHY, HealthStatus.HEALTHY, TransitionKind.NO_CHANGE),
            (HealthStatus.DEGRADED, HealthStatus.DEGRADED, TransitionKind.NO_CHANGE),
            (HealthStatus.UNHEALTHY, HealthStatus.UNHEALTHY, TransitionKind.NO_CHANGE),
            (HealthStatus.UNHEALTHY, HealthStatus.DEGRADED, TransitionKind.NO_CHANGE),
            (HealthStatus.DEGRADED, HealthStatus.HEALTHY, TransitionKind.NO_CHANGE),
        ],
    )
    def test_status_pairs(
        self, old_status: HealthStatus, new_status: HealthStatus, kind: TransitionKind
    ) -> None:
        old = HealthState(last_check=EARLIER, status=old_status)
        new = HealthState(last_check=NOW, status=new_status)

        transition = detect_transition(old, new)

        assert transition.kind == kind
        assert transition.old_status == old_status
        assert transition.new_status == new_status

    def test_to_dict(self) -> None:
        old = HealthState(last_check=EARLIER, status=HealthStatus.UNHEALTHY)
        new = HealthState(last_check=NOW, status=HealthStatus.HEALTHY)

        assert detect_transition(old, new).to_dict() == {
            "kind": "became_healthy",
            "old_status": "unhealthy",
            "new_status": "healthy",
        }

    def test_recovery_from_unhealthy_needs_two_successes(self) -> None:
        unhealthy = HealthState(
            failures=3, last_check=EARLIER, status=HealthStatus.UNHEALTHY
        )
        first = update_health(unhealthy, CheckSucceeded(), now=NOW)
        second = update_health(first, CheckSucceeded(), now=NOW + timedelta(minutes=5))

        assert detect_transition(unhealthy, first).kind == TransitionKind.NO_CHANGE
        assert detect_transition(first, second).kind == TransitionKind.NO_CHANGE
        assert first.status == HealthStatus.DEGRADED
        assert second.status == HealthStatus.HEALTHY


class TestHealthStateStore:
    """Tests for the keyed health state store."""

    def test_get_unknown_returns_initial_without_storing(self) -> None:
        store = HealthStateStore()

        assert store.get(IntegrationType.VIDEO, 1) == initial_state()
        assert len(store) == 0

    def test_put_and_get(self) -> None:
        store = HealthStateStore()
        state = HealthState(failures=1, last_check=NOW, status=HealthStatus.DEGRADED)

        store.put(IntegrationType.CALENDAR, 5, state)

        assert store.get(IntegrationType.CALENDAR, 5) == state
        assert store.get("calendar", 5) == state
        assert (IntegrationType.CALENDAR, 5) in store

    def test_types_are_separate_keyspaces(self) -> None:
        store = HealthStateStore()
        state = HealthState(failures=1, last_check=NOW, status=HealthStatus.DEGRADED)

        store.put(IntegrationType.CALENDAR, 5, state)

        assert store.get(IntegrationType.VIDEO, 5) == initial_state()

    def test_discard(self) -> None:
        store = HealthStateStore()
        store.put(IntegrationType.VIDEO, 2, HealthState(last_check=NOW))

        store.discard(IntegrationType.VIDEO, 2)
        store.discard(IntegrationType.VIDEO, 99)

        assert len(store) == 0

    def test_snapshot_is_a_copy(self) -> None:
        store = HealthStateStore()
        store.put(IntegrationType.VIDEO, 2, HealthState(last_check=NOW))

        snapshot = store.snapshot()
        snapshot.clear()

        assert len(store) == 1

    def test_unknown_uses_configured_interval(self) -> None:
        store = HealthStateStore(base_interval_ms=60_000)

        assert store.get(IntegrationType.CALENDAR, 1).backoff_ms == 60_000

    def test_invalid_type_rejected(self) -> None:
        with pytest.raises(ValueError):
            HealthStateStore().get("phone", 1)
