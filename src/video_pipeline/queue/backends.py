"""Abstract base class for queue backends.

The interface is shaped after broker-backed job queues (Bull, RQ, Celery):
named jobs, per-job retry options, delayed re-dispatch and introspection.
The SQLite implementation is local-first; a Redis-backed one only has to
honour the same contract.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional

from .models import FailOutcome, JobHandle, JobOptions, JobRecord, JobSnapshot


class QueueBackend(ABC):
    """Abstract durable job queue.

    Implementations must provide:
    - Synchronous, visible failure of ``enqueue`` when the broker is down
    - Atomic claim (no two workers receive the same job concurrently)
    - At most one live job per (name, dedupe_key)
    - Crash recovery via reset_stale_active()
    """

    @abstractmethod
    def enqueue(
        self, name: str, data: Dict[str, Any], options: Optional[JobOptions] = None
    ) -> JobHandle:
        """Add a job to the queue.

        Raises:
            QueueUnavailableError: broker unreachable
            JobConflictError: a live job already holds options.dedupe_key
        """

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[JobSnapshot]:
        """Introspect a job; None once it is unknown or pruned."""

    @abstractmethod
    def find_live_job(self, name: str, dedupe_key: str) -> Optional[JobSnapshot]:
        """Return the waiting/delayed/active job holding ``dedupe_key``, if any."""

    @abstractmethod
    def claim(self, worker_id: str, names: Iterable[str]) -> Optional[JobRecord]:
        """Atomically pick the next due job of one of ``names`` and mark it active."""

    @abstractmethod
    def complete(self, job_id: str, return_value: Any = None) -> None:
        """Mark an active job completed and apply retention."""

    @abstractmethod
    def fail(self, job_id: str, error: str, retry: bool) -> FailOutcome:
        """Record a failed attempt.

        If ``retry`` and attempts remain, the job is delayed by its backoff
        policy; otherwise it is failed permanently and retention applies.
        """

    @abstractmethod
    def requeue(self, job_id: str, delay_s: float, progress: Optional[int] = None) -> None:
        """Re-dispatch an active job after ``delay_s`` without consuming an attempt."""

    @abstractmethod
    def update_progress(self, job_id: str, progress: int) -> None:
        """Set progress (0-100) of an active job."""

    @abstractmethod
    def heartbeat(self, job_id: str) -> None:
        """Refresh the claim of an active job."""

    @abstractmethod
    def reset_stale_active(self, timeout_s: int) -> int:
        """Return active jobs without a recent heartbeat to waiting."""

    @abstractmethod
    def counts(self) -> Dict[str, int]:
        """Number of jobs per state."""

    @abstractmethod
    def prune(self, name: str, keep_completed: int, keep_failed: int) -> int:
        """Drop the oldest finished jobs beyond the retention bounds."""
