"""Job queue contract and an in-memory queue with key-addressed dedup.

The only guard against two checks of the same integration running at once
is the queue's idempotent enqueue: a job whose dedup key matches a job that
is still pending (available, scheduled, retryable or executing) within the
dedup window is rejected with ``DuplicateJobError``.

``InMemoryJobQueue`` keeps dedup entries in a ``cachetools.TLRUCache`` whose
per-entry time-to-use equals the dedup window passed to ``enqueue``.
Completed and discarded jobs no longer block new jobs with the same key,
even while their dedup entry has not yet expired.
"""

from __future__ import annotations

import itertools
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from cachetools import TLRUCache

from healthwatch.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_DEDUP_CACHE_SIZE = 100_000


class JobState(StrEnum):
    AVAILABLE = "available"
    SCHEDULED = "scheduled"
    RETRYABLE = "retryable"
    EXECUTING = "executing"
    COMPLETED = "completed"
    DISCARDED = "discarded"


ACTIVE_JOB_STATES = frozenset(
    {JobState.AVAILABLE, JobState.SCHEDULED, JobState.RETRYABLE, JobState.EXECUTING}
)

_RUNNABLE_STATES = frozenset({JobState.AVAILABLE, JobState.SCHEDULED, JobState.RETRYABLE})


@dataclass
class Job:
    """A unit of work waiting in or taken from the queue.

    Attributes:
        id: Queue-assigned identifier.
        job_type: Worker the job is meant for.
        payload: JSON-safe job arguments.
        scheduled_at: Earliest time the job may run.
        dedup_key: Key used to reject duplicate pending jobs.
        state: Current lifecycle state.
        attempt: Number of times the job has been claimed.
        errors: Error messages from failed attempts.
    """

    id: int
    job_type: str
    payload: dict[str, Any]
    scheduled_at: datetime
    dedup_key: str
    state: JobState = JobState.SCHEDULED
    attempt: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_type": self.job_type,
            "payload": dict(self.payload),
            "scheduled_at": self.scheduled_at.isoformat(),
            "dedup_key": self.dedup_key,
            "state": self.state.value,
            "attempt": self.attempt,
            "errors": list(self.errors),
        }


class JobQueueError(Exception):
    """Raised when a job cannot be inserted or updated."""


class DuplicateJobError(JobQueueError):
    """Raised when an equivalent job is already pending.

    Attributes:
        dedup_key: The conflicting dedup key.
        existing: The job that is already pending.
    """

    def __init__(self, dedup_key: str, existing: Job) -> None:
        self.dedup_key = dedup_key
        self.existing = existing
        super().__init__(
            f"Job {existing.id} with dedup key {dedup_key!r} is already {existing.state}"
        )


@runtime_checkable
class JobQueue(Protocol):
    """Idempotent enqueue primitive consumed by the scheduler."""

    def enqueue(
        self,
        job_type: str,
        payload: Mapping[str, Any],
        *,
        scheduled_at: datetime,
        dedup_key: str,
        dedup_window: float,
    ) -> Job:
        """Insert a job unless an equivalent one is already pending.

        Args:
            job_type: Worker the job is meant for.
            payload: JSON-safe job arguments.
            scheduled_at: Earliest time the job may run.
            dedup_key: Identity of the job for deduplication.
            dedup_window: Seconds during which a pending job blocks duplicates.

        Raises:
            DuplicateJobError: If a pending job with the same key exists.
            JobQueueError: If the job cannot be inserted.
        """
        ...  # pragma: no cover


@dataclass(frozen=True)
class _DedupEntry:
    job_id: int
    window_seconds: float


def _dedup_expiry(_key: str, entry: _DedupEntry, now: float) -> float:
    return now + entry.window_seconds


class InMemoryJobQueue:
    """Thread-safe in-memory ``JobQueue`` with claim/complete/fail for workers.

    Args:
        max_attempts: Attempts before a failing job is discarded.
        dedup_cache_size: Maximum number of dedup keys tracked at once.
        time_func: Monotonic clock in seconds used for dedup windows.
            Defaults to ``time.monotonic``.
    """

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        dedup_cache_size: int = DEFAULT_DEDUP_CACHE_SIZE,
        time_func: Callable[[], float] | None = None,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError(f"max_attempts must be positive, got {max_attempts}")
        self._max_attempts = max_attempts
        self._dedup: TLRUCache[str, _DedupEntry] = TLRUCache(
            maxsize=dedup_cache_size,
            ttu=_dedup_expiry,
            timer=time_func or time.monotonic,
        )
        self._jobs: dict[int, Job] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def enqueue(
        self,
        job_type: str,
        payload: Mapping[str, Any],
        *,
        scheduled_at: datetime,
        dedup_key: str,
        dedup_window: float,
    ) -> Job:
        if dedup_window <= 0:
            raise JobQueueError(f"dedup_window must be positive, got {dedup_window}")

        with self._lock:
            entry = self._dedup.get(dedup_key)
            if entry is not None:
                existing = self._jobs.get(entry.job_id)
                if existing is not None and existing.state in ACTIVE_JOB_STATES:
                    raise DuplicateJobError(dedup_key, existing)

            job = Job(
                id=next(self._ids),
                job_type=job_type,
                payload=dict(payload),
                scheduled_at=scheduled_at,
                dedup_key=dedup_key,
            )
            self._jobs[job.id] = job
            self._dedup[dedup_key] = _DedupEntry(job.id, float(dedup_window))

        logger.debug(
            "[JOB_QUEUE] Enqueued %s job %d (%s) for %s",
            job_type,
            job.id,
            dedup_key,
            scheduled_at.isoformat(),
        )
        return job

    def claim_due(self, now: datetime, limit: int | None = None) -> list[Job]:
        """Mark runnable jobs scheduled at or before ``now`` as executing.

        Args:
            now: Current time, comparable with the jobs' ``scheduled_at``.
            limit: Maximum number of jobs to claim.

        Returns:
            Claimed jobs ordered by ``scheduled_at``.
        """
        with self._lock:
            due = sorted(
                (
                    job
                    for job in self._jobs.values()
                    if job.state in _RUNNABLE_STATES and job.scheduled_at <= now
                ),
                key=lambda job: (job.scheduled_at, job.id),
            )
            if limit is not None:
                due = due[:limit]
            for job in due:
                job.state = JobState.EXECUTING
                job.attempt += 1
            return due

    def complete(self, job: Job) -> None:
        with self._lock:
            job.state = JobState.COMPLETED
            self._jobs.pop(job.id, None)

    def fail(self, job: Job, error: str, *, retry_at: datetime | None = None) -> JobState:
        """Record a failed attempt and either retry or discard the job.

        Args:
            job: The executing job.
            error: Description of the failure.
            retry_at: When to retry; defaults to the original schedule time.

        Returns:
            The job's new state, ``RETRYABLE`` or ``DISCARDED``.
        """
        with self._lock:
            job.errors.append(error)
            if job.attempt < self._max_attempts:
                job.state = JobState.RETRYABLE
                if retry_at is not None:
                    job.scheduled_at = retry_at
            else:
                job.state = JobState.DISCARDED
                self._jobs.pop(job.id, None)
                logger.warning(
                    "[JOB_QUEUE] Discarding job %d (%s) after %d attempts: %s",
                    job.id,
                    job.dedup_key,
                    job.attempt,
                    error,
                )
            return job.state

    def discard(self, job: Job, error: str) -> None:
        """Drop a job that cannot succeed on retry."""
        with self._lock:
            job.errors.append(error)
            job.state = JobState.DISCARDED
            self._jobs.pop(job.id, None)
        logger.warning("[JOB_QUEUE] Discarded job %d (%s): %s", job.id, job.dedup_key, error)

    def pending(self) -> list[Job]:
        """Return all jobs that still block duplicates."""
        with self._lock:
            return [job for job in self._jobs.values() if job.state in ACTIVE_JOB_STATES]

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


__all__ = [
    "ACTIVE_JOB_STATES",
    "DuplicateJobError",
    "InMemoryJobQueue",
    "Job",
    "JobQueue",
    "JobQueueError",
    "JobState",
]
