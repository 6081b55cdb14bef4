"""Entry points of the integration health monitor.

``HealthMonitor`` ties the pieces together:

- ``run_sweep`` / ``check_all_integrations`` schedule check jobs.
- ``perform_check`` runs one check: assess, classify, update state, feed the
  provider circuit breaker, detect the transition and respond to it.
- ``execute_job`` / ``execute_due_jobs`` run queued check jobs.
- ``get_health_status`` and ``user_health_report`` expose state for display.

No public method raises. Unexpected errors are logged and returned as
errored outcomes.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

from healthwatch.assessor import Assessor
from healthwatch.circuit_breaker import CircuitBreakerRegistry
from healthwatch.error_classifier import ClassificationContext, classify, describe_reason
from healthwatch.health_state import (
    BASE_CHECK_INTERVAL_MS,
    CheckFailed,
    CheckResult,
    CheckSucceeded,
    HealthState,
    HealthStateStore,
    Transition,
    detect_transition,
    update_health,
)
from healthwatch.integrations import Integration, IntegrationStore
from healthwatch.job_queue import InMemoryJobQueue, Job
from healthwatch.logging import get_logger
from healthwatch.providers import ProbeFailure
from healthwatch.report import HealthReport, build_user_report
from healthwatch.response_handler import ResponseHandler
from healthwatch.scheduler import HEALTH_CHECK_JOB, Scheduler, SweepResult
from healthwatch.types import ErrorClass, IntegrationType, Provider

logger = get_logger(__name__)


@dataclass(frozen=True)
class CheckOutcome:
    """Result of one executed health check.

    Attributes:
        integration_type: Type of the checked integration.
        integration_id: Checked integration.
        found: False when the integration no longer exists.
        success: Whether the probe succeeded; None if no probe ran.
        error_class: Classification of a failed probe.
        state: Health state after the check.
        transition: Transition detected by the check.
        duration_ms: Probe duration.
        error: Description of an unexpected error while checking.
    """

    integration_type: IntegrationType
    integration_id: int
    found: bool = True
    success: bool | None = None
    error_class: ErrorClass | None = None
    state: HealthState | None = None
    transition: Transition | None = None
    duration_ms: int | None = None
    error: str | None = None

    @property
    def errored(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "integration_type": self.integration_type.value,
            "integration_id": self.integration_id,
            "found": self.found,
            "success": self.success,
            "error_class": self.error_class.value if self.error_class else None,
            "state": self.state.to_dict() if self.state else None,
            "transition": self.transition.to_dict() if self.transition else None,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


class HealthMonitor:
    """Facade over scheduling, check execution and reporting.

    Args:
        state_store: Health states of all integrations.
        integration_store: Source of integration records.
        assessor: Runs probes.
        scheduler: Enqueues check jobs.
        response_handler: Performs transition side effects.
        breakers: Provider circuit breakers fed with check outcomes.
        job_queue: Queue the scheduler writes to, drained by ``execute_due_jobs``.
        clock: Returns the current UTC time. Defaults to ``datetime.now(UTC)``.
        base_interval_ms: Base check interval restored on success/hard failure.
    """

    def __init__(
        self,
        state_store: HealthStateStore,
        integration_store: IntegrationStore,
        assessor: Assessor,
        scheduler: Scheduler,
        response_handler: ResponseHandler,
        breakers: CircuitBreakerRegistry,
        job_queue: InMemoryJobQueue | None = None,
        clock: Callable[[], datetime] | None = None,
        base_interval_ms: int = BASE_CHECK_INTERVAL_MS,
    ) -> None:
        self._states = state_store
        self._integrations = integration_store
        self._assessor = assessor
        self._scheduler = scheduler
        self._handler = response_handler
        self._breakers = breakers
        self._queue = job_queue
        self._clock: Callable[[], datetime] = clock or (lambda: datetime.now(UTC))
        self._base_interval_ms = base_interval_ms

    def run_sweep(self, *, force: bool = False) -> SweepResult:
        """Run one scheduling sweep over all active integrations."""
        try:
            return self._scheduler.run_sweep(force=force)
        except Exception as e:
            # INTENTIONAL BROAD CATCH: Sweeps are driven by an external timer
            # that must keep running.
            logger.error("[MONITOR] Sweep failed: %s: %s", type(e).__name__, e, exc_info=True)
            return SweepResult(forced=force, errors=[f"{type(e).__name__}: {e}"])

    def check_all_integrations(self) -> SweepResult:
        """Schedule a check of every active integration, ignoring backoff."""
        return self.run_sweep(force=True)

    def find_integration(
        self, integration_type: IntegrationType, integration_id: int
    ) -> Integration | None:
        return self._integrations.get(IntegrationType(integration_type), integration_id)

    def get_health_status(
        self, integration_type: IntegrationType, integration_id: int
    ) -> HealthState:
        """Return the current health of an integration (initial state if never checked)."""
        return self._states.get(integration_type, integration_id)

    def user_health_report(self, user_id: int) -> HealthReport:
        """Build the health report of all integrations owned by ``user_id``."""
        return build_user_report(user_id, self._integrations, self._states, now=self._clock())

    def perform_check(
        self, integration_type: IntegrationType, integration_id: int
    ) -> CheckOutcome:
        """Run one health check and apply its consequences.

        Args:
            integration_type: Type of the integration.
            integration_id: Integration to check.

        Returns:
            What the check found and did.
        """
        integration_type = IntegrationType(integration_type)
        log = logger.with_context(
            integration_type=integration_type.value, integration_id=integration_id
        )
        try:
            integration = self._integrations.get(integration_type, integration_id)
            if integration is None:
                log.info(
                    "[MONITOR] %s integration %s no longer exists, skipping check",
                    integration_type,
                    integration_id,
                )
                return CheckOutcome(integration_type, integration_id, found=False)
            return self._check(integration_type, integration)
        except Exception as e:
            # INTENTIONAL BROAD CATCH: A bug while checking one integration must
            # not crash the worker executing the job.
            log.error(
                "[MONITOR] Health check of %s integration %s failed: %s: %s",
                integration_type,
                integration_id,
                type(e).__name__,
                e,
                exc_info=True,
            )
            return CheckOutcome(
                integration_type, integration_id, error=f"{type(e).__name__}: {e}"
            )

    def _check(self, integration_type: IntegrationType, integration: Integration) -> CheckOutcome:
        old = self._states.get(integration_type, integration.id)
        assessment = self._assessor.assess(integration_type, integration)
        now = self._clock()

        result: CheckResult
        detail: str | None = None
        if isinstance(assessment.result, ProbeFailure):
            reason = assessment.result.reason
            context = ClassificationContext(
                integration_type=integration_type,
                integration_id=integration.id,
                failures=old.failures,
                backoff_ms=old.backoff_ms,
                next_backoff_ms=self._scheduler.next_backoff_ms(old.backoff_ms),
            )
            result = CheckFailed(reason, classify(reason, context=context))
            detail = describe_reason(reason)
        else:
            result = CheckSucceeded()

        new = update_health(old, result, now=now, base_interval_ms=self._base_interval_ms)
        if isinstance(result, CheckFailed) and result.error_class == ErrorClass.TRANSIENT:
            new = replace(new, backoff_ms=self._scheduler.next_backoff_ms(old.backoff_ms))
        self._states.put(integration_type, integration.id, new)

        self._record_breaker_outcome(integration, result, detail)

        transition = detect_transition(old, new)
        self._handler.handle_transition(integration_type, integration, transition, detail)

        return CheckOutcome(
            integration_type=integration_type,
            integration_id=integration.id,
            success=isinstance(result, CheckSucceeded),
            error_class=result.error_class if isinstance(result, CheckFailed) else None,
            state=new,
            transition=transition,
            duration_ms=assessment.duration_ms,
        )

    def _record_breaker_outcome(
        self, integration: Integration, result: CheckResult, detail: str | None
    ) -> None:
        # Hard failures are specific to one integration's credentials and do
        # not count against the provider.
        provider = Provider.resolve(integration.provider)
        if provider is None:
            return
        breaker = self._breakers.get(provider)
        if isinstance(result, CheckSucceeded):
            breaker.record_success()
        elif result.error_class == ErrorClass.TRANSIENT:
            breaker.record_failure(detail or "")

    def execute_job(self, job: Job) -> CheckOutcome | None:
        """Execute one queued health check job.

        Returns:
            The check outcome, or None if the job is not a well-formed
            health check job.
        """
        if job.job_type != HEALTH_CHECK_JOB:
            logger.error("[MONITOR] Job %s has unexpected type %r", job.id, job.job_type)
            self._finish(job, error=f"unexpected job type {job.job_type!r}", retry=False)
            return None

        try:
            integration_type = IntegrationType(job.payload["type"])
            integration_id = int(job.payload["integration_id"])
        except (KeyError, TypeError, ValueError) as e:
            logger.error("[MONITOR] Job %s has invalid payload %r: %s", job.id, job.payload, e)
            self._finish(job, error=f"invalid payload: {e}", retry=False)
            return None

        outcome = self.perform_check(integration_type, integration_id)
        self._finish(job, error=outcome.error, retry=True)
        return outcome

    def _finish(self, job: Job, *, error: str | None, retry: bool) -> None:
        if self._queue is None:
            return
        if error is None:
            self._queue.complete(job)
        elif retry:
            self._queue.fail(job, error)
        else:
            self._queue.discard(job, error)

    def execute_due_jobs(self, now: datetime | None = None) -> list[CheckOutcome]:
        """Claim and execute all queued check jobs that are due.

        Args:
            now: Current time. Defaults to the monitor's clock.

        Returns:
            Outcomes of the executed checks.
        """
        if self._queue is None:
            return []
        outcomes: list[CheckOutcome] = []
        for job in self._queue.claim_due(now or self._clock()):
            outcome = self.execute_job(job)
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes


__all__ = [
    "CheckOutcome",
    "HealthMonitor",
]
