"""Adaptive scheduling of integration health checks.

A sweep walks every active integration and enqueues a check job for those
that are due. The scheduler itself runs no checks; the job queue executes
them later through ``HealthMonitor.execute_job``.

Per integration:

1. Load its health state (defaults if it was never checked).
2. It is due when it was never checked, when the sweep is forced, or when
   ``now >= last_check + backoff_ms``.
3. Not due: skip. Integrations in long backoff are never enqueued early.
4. Due: re-read the integration and consult its provider's circuit breaker.
   A deleted integration is skipped. An ``open`` breaker skips the check.
   ``half_open``, ``closed``, a missing breaker, a failed status lookup and
   an unresolvable provider all proceed to enqueue.
5. Enqueue ``integration_health_check`` for ``(type, integration_id)`` at
   ``now`` plus a uniform jitter in ``[0, max_jitter_ms)``.
6. Enqueue is deduplicated on ``"{type}:{integration_id}"`` for at least five
   minutes. A duplicate counts as success; any other queue error is logged
   and reported in the sweep result.

A failure while handling one integration is logged and recorded; the sweep
always continues with the next integration.

Usage:
    scheduler = Scheduler(
        state_store=states,
        integration_store=integrations,
        job_queue=queue,
        breakers=breaker_registry,
    )
    result = scheduler.run_sweep()
    result.counts  # {"enqueued": 3, "not_due": 12, ...}
"""

from __future__ import annotations

import random
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from healthwatch.circuit_breaker import (
    BreakerNotFoundError,
    BreakerStatusError,
    BreakerStatusSource,
    CircuitState,
)
from healthwatch.health_state import (
    BASE_CHECK_INTERVAL_MS,
    MAX_BACKOFF_MS,
    HealthState,
    HealthStateStore,
    next_backoff_ms,
)
from healthwatch.integrations import Integration, IntegrationStore
from healthwatch.job_queue import DuplicateJobError, JobQueue, JobQueueError
from healthwatch.logging import get_logger
from healthwatch.types import IntegrationType, Provider

logger = get_logger(__name__)

HEALTH_CHECK_JOB = "integration_health_check"

MAX_JITTER_MS = 30_000
"""Exclusive upper bound of the random delay added to scheduled checks."""

DEDUP_WINDOW_SECONDS = 300
"""Minimum window during which a pending check blocks another for the same key."""


class ScheduleOutcome(StrEnum):
    """What a sweep did with one integration."""

    ENQUEUED = "enqueued"
    DUPLICATE = "duplicate"
    NOT_DUE = "not_due"
    CIRCUIT_OPEN = "circuit_open"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass
class SweepResult:
    """Per-integration outcomes of one scheduling sweep.

    Attributes:
        outcomes: Outcome per dedup key (``"{type}:{integration_id}"``).
        errors: Error messages for integrations that could not be scheduled.
        forced: Whether due-ness checks were bypassed.
    """

    outcomes: dict[str, ScheduleOutcome] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    forced: bool = False

    @property
    def counts(self) -> dict[str, int]:
        counts = {outcome.value: 0 for outcome in ScheduleOutcome}
        for outcome in self.outcomes.values():
            counts[outcome.value] += 1
        return counts

    @property
    def ok(self) -> bool:
        return not self.errors

    def merge(self, other: SweepResult) -> SweepResult:
        self.outcomes.update(other.outcomes)
        self.errors.extend(other.errors)
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "forced": self.forced,
            "counts": self.counts,
            "outcomes": {key: outcome.value for key, outcome in self.outcomes.items()},
            "errors": list(self.errors),
        }


def dedup_key(integration_type: IntegrationType, integration_id: int) -> str:
    return f"{IntegrationType(integration_type).value}:{integration_id}"


def due_for_check(state: HealthState, now: datetime, *, force: bool = False) -> bool:
    """Decide whether an integration should be checked now.

    Args:
        state: Current health state of the integration.
        now: Current time.
        force: Bypass the backoff, e.g. for a manual trigger.

    Returns:
        True if never checked, forced, or ``now >= last_check + backoff_ms``.
    """
    if force or state.last_check is None:
        return True
    return now >= state.last_check + timedelta(milliseconds=state.backoff_ms)


def scheduled_at_with_jitter(
    now: datetime,
    *,
    rng: random.Random | None = None,
    max_jitter_ms: int = MAX_JITTER_MS,
) -> datetime:
    """Return ``now`` plus a uniform random delay in ``[0, max_jitter_ms)``."""
    jitter_ms = (rng or random).randrange(max_jitter_ms) if max_jitter_ms > 0 else 0
    return now + timedelta(milliseconds=jitter_ms)


class Scheduler:
    """Turns health state and breaker status into a bounded stream of check jobs.

    Args:
        state_store: Health states of all integrations.
        integration_store: Source of integration records.
        job_queue: Queue receiving check jobs.
        breakers: Provider circuit breaker status.
        clock: Returns the current UTC time. Defaults to ``datetime.now(UTC)``.
        rng: Random source for jitter. Defaults to the ``random`` module.
        max_jitter_ms: Exclusive upper bound of scheduling jitter.
        dedup_window_seconds: Dedup window passed to the queue, at least 300.
        base_interval_ms: Base check interval, used for backoff growth.
        max_backoff_ms: Backoff ceiling.
    """

    def __init__(
        self,
        state_store: HealthStateStore,
        integration_store: IntegrationStore,
        job_queue: JobQueue,
        breakers: BreakerStatusSource,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
        max_jitter_ms: int = MAX_JITTER_MS,
        dedup_window_seconds: int = DEDUP_WINDOW_SECONDS,
        base_interval_ms: int = BASE_CHECK_INTERVAL_MS,
        max_backoff_ms: int = MAX_BACKOFF_MS,
    ) -> None:
        self._states = state_store
        self._integrations = integration_store
        self._queue = job_queue
        self._breakers = breakers
        self._clock: Callable[[], datetime] = clock or (lambda: datetime.now(UTC))
        self._rng = rng
        self._max_jitter_ms = max_jitter_ms
        self._dedup_window_seconds = max(dedup_window_seconds, DEDUP_WINDOW_SECONDS)
        self._base_interval_ms = base_interval_ms
        self._max_backoff_ms = max_backoff_ms

    def next_backoff_ms(self, current: int) -> int:
        """Backoff following a transient failure, using this scheduler's limits."""
        return next_backoff_ms(current, base=self._base_interval_ms, cap=self._max_backoff_ms)

    def run_sweep(self, *, force: bool = False) -> SweepResult:
        """Schedule checks for every active calendar and video integration.

        Args:
            force: Enqueue checks regardless of backoff.

        Returns:
            Combined result for all integration types.
        """
        result = SweepResult(forced=force)
        for integration_type in IntegrationType:
            try:
                integrations = self._integrations.list_active(integration_type)
            except Exception as e:
                # INTENTIONAL BROAD CATCH: One unreadable integration type must
                # not prevent scheduling the other.
                message = f"Failed to list active {integration_type} integrations: {e}"
                logger.error("[SCHEDULER] %s", message)
                result.errors.append(message)
                continue
            result.merge(self.schedule_all(integration_type, integrations, force=force))

        logger.info(
            "[SCHEDULER] Sweep finished%s: %s",
            " (forced)" if force else "",
            ", ".join(f"{k}={v}" for k, v in result.counts.items() if v),
        )
        return result

    def schedule_all(
        self,
        integration_type: IntegrationType,
        integrations: Iterable[Integration],
        *,
        force: bool = False,
    ) -> SweepResult:
        """Enqueue checks for those integrations of one type that are due.

        Args:
            integration_type: Type shared by all ``integrations``.
            integrations: Integrations to consider.
            force: Enqueue checks regardless of backoff.

        Returns:
            Outcome per integration and any scheduling errors.
        """
        integration_type = IntegrationType(integration_type)
        result = SweepResult(forced=force)
        now = self._clock()

        for integration in integrations:
            key = dedup_key(integration_type, integration.id)
            try:
                outcome = self._schedule_one(integration_type, integration, now, force)
            except Exception as e:
                # INTENTIONAL BROAD CATCH: One integration's failure must not
                # abort scheduling for the rest of the batch.
                logger.error(
                    "[SCHEDULER] %s: Unexpected error while scheduling: %s: %s",
                    key,
                    type(e).__name__,
                    e,
                    exc_info=True,
                )
                result.errors.append(f"{key}: {type(e).__name__}: {e}")
                outcome = ScheduleOutcome.FAILED
            else:
                if outcome == ScheduleOutcome.FAILED:
                    result.errors.append(f"{key}: enqueue failed")
            result.outcomes[key] = outcome

        return result

    def _schedule_one(
        self,
        integration_type: IntegrationType,
        integration: Integration,
        now: datetime,
        force: bool,
    ) -> ScheduleOutcome:
        key = dedup_key(integration_type, integration.id)
        state = self._states.get(integration_type, integration.id)

        if not due_for_check(state, now, force=force):
            logger.debug(
                "[SCHEDULER] %s: Not due until %s",
                key,
                state.next_check_at.isoformat() if state.next_check_at else "now",
                extra={"diagnostic_tag": "scheduling"},
            )
            return ScheduleOutcome.NOT_DUE

        current = self._integrations.get(integration_type, integration.id)
        if current is None:
            logger.info("[SCHEDULER] %s: Integration no longer exists, skipping", key)
            return ScheduleOutcome.NOT_FOUND

        if self._circuit_open(key, current):
            return ScheduleOutcome.CIRCUIT_OPEN

        return self.enqueue_check(integration_type, integration.id, now=now)

    def _circuit_open(self, key: str, integration: Integration) -> bool:
        provider = Provider.resolve(integration.provider)
        if provider is None:
            logger.warning(
                "[SCHEDULER] %s: Cannot check circuit breaker for provider %r, scheduling anyway",
                key,
                integration.provider,
            )
            return False

        try:
            state = self._breakers.status(provider)
        except BreakerNotFoundError:
            logger.error(
                "[SCHEDULER] %s: No circuit breaker for %s, scheduling anyway", key, provider
            )
            return False
        except BreakerStatusError as e:
            logger.error(
                "[SCHEDULER] %s: Circuit breaker status check failed for %s, "
                "scheduling anyway: %s",
                key,
                provider,
                e,
            )
            return False

        if state == CircuitState.OPEN:
            logger.info("[SCHEDULER] %s: Circuit breaker open for %s, skipping", key, provider)
            return True
        if state not in (CircuitState.CLOSED, CircuitState.HALF_OPEN):
            logger.warning(
                "[SCHEDULER] %s: Unknown circuit breaker state %r for %s, scheduling anyway",
                key,
                state,
                provider,
            )
        return False

    def enqueue_check(
        self,
        integration_type: IntegrationType,
        integration_id: int,
        *,
        now: datetime | None = None,
    ) -> ScheduleOutcome:
        """Enqueue one check job with jitter and deduplication.

        Args:
            integration_type: Type of the integration.
            integration_id: Integration to check.
            now: Base time for the jittered schedule. Defaults to the clock.

        Returns:
            ``ENQUEUED``, ``DUPLICATE`` (treated as success) or ``FAILED``.
        """
        integration_type = IntegrationType(integration_type)
        key = dedup_key(integration_type, integration_id)
        scheduled_at = scheduled_at_with_jitter(
            now or self._clock(), rng=self._rng, max_jitter_ms=self._max_jitter_ms
        )

        try:
            job = self._queue.enqueue(
                HEALTH_CHECK_JOB,
                {"type": integration_type.value, "integration_id": integration_id},
                scheduled_at=scheduled_at,
                dedup_key=key,
                dedup_window=self._dedup_window_seconds,
            )
        except DuplicateJobError:
            logger.debug("[SCHEDULER] %s: Check already pending", key)
            return ScheduleOutcome.DUPLICATE
        except JobQueueError as e:
            logger.error("[SCHEDULER] %s: Failed to enqueue health check: %s", key, e)
            return ScheduleOutcome.FAILED

        logger.debug(
            "[SCHEDULER] %s: Enqueued job %s for %s",
            key,
            job.id,
            scheduled_at.isoformat(),
            extra={"diagnostic_tag": "scheduling"},
        )
        return ScheduleOutcome.ENQUEUED


__all__ = [
    "DEDUP_WINDOW_SECONDS",
    "HEALTH_CHECK_JOB",
    "MAX_JITTER_MS",
    "ScheduleOutcome",
    "Scheduler",
    "SweepResult",
    "dedup_key",
    "due_for_check",
    "next_backoff_ms",
    "scheduled_at_with_jitter",
]
