"""Worker runtime that pulls jobs from a QueueBackend.

This module provides the job dispatch loop with:
- A thread pool of claim/dispatch slots
- Heartbeat threads for jobs that run long
- Error classification (retryable vs permanent) via ``retryable``
- Delayed re-dispatch for handlers waiting on an external process
- A failure hook that runs before a job is failed for good
- A periodic sweep: stale claims go back to the queue, reconcilers run
- Graceful shutdown through a stop event
"""

import logging
import os
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..errors import QueueUnavailableError, is_retryable
from .backends import QueueBackend
from .models import JobRecord

logger = logging.getLogger(__name__)

Handler = Callable[[JobRecord, QueueBackend], Any]
FailureHook = Callable[[JobRecord, BaseException], None]
Reconciler = Callable[[QueueBackend], int]


class RetryLater(Exception):
    """Raised by a handler to be dispatched again after ``delay_s``.

    Does not count as a failed attempt.
    """

    def __init__(self, delay_s: float, progress: Optional[int] = None, reason: str = ""):
        super().__init__(reason or f"retry in {delay_s}s")
        self.delay_s = delay_s
        self.progress = progress


class QueueWorker:
    """Claims jobs and runs the handler registered for their name.

    Handlers are called as ``handler(job, queue)``:
    - returning normally completes the job with the return value
    - raising RetryLater re-dispatches the job after a delay
    - raising anything else records a failed attempt; when that attempt is
      the last one (attempts exhausted or a non-retryable error) the failure
      hook runs first, and the job is only failed for good once the hook
      succeeded. A retryable hook error keeps the job live.
    """

    def __init__(
        self,
        queue: QueueBackend,
        worker_id: Optional[str] = None,
        concurrency: int = 1,
        idle_sleep_s: float = 1.0,
        stale_timeout_s: int = 600,
        heartbeat_interval_s: float = 60.0,
        sweep_interval_s: Optional[float] = None,
    ):
        self.queue = queue
        self.worker_id = worker_id or f"worker-{os.getpid()}-{uuid.uuid4().hex[:6]}"
        self.concurrency = concurrency
        self.idle_sleep_s = idle_sleep_s
        self.stale_timeout_s = stale_timeout_s
        self.heartbeat_interval_s = heartbeat_interval_s
        if sweep_interval_s is None:
            sweep_interval_s = max(stale_timeout_s / 2, idle_sleep_s)
        self.sweep_interval_s = sweep_interval_s
        self._handlers: Dict[str, Tuple[Handler, Optional[FailureHook]]] = {}
        self._reconcilers: List[Reconciler] = []
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._sweep_lock = threading.Lock()
        self._next_sweep_at = 0.0

    def register(
        self, name: str, handler: Handler, on_failed: Optional[FailureHook] = None
    ) -> None:
        """Route jobs named ``name`` to ``handler``."""
        self._handlers[name] = (handler, on_failed)

    def add_reconciler(self, reconciler: Reconciler) -> None:
        """Run ``reconciler(queue)`` on every sweep."""
        self._reconcilers.append(reconciler)

    def sweep(self) -> int:
        """Return stale active jobs to the queue, then run the reconcilers.

        Returns:
            Number of stale jobs recovered
        """
        recovered = self.queue.reset_stale_active(self.stale_timeout_s)
        for reconcile in self._reconcilers:
            try:
                reconcile(self.queue)
            except Exception:
                logger.exception("Reconciler %r failed", reconcile)
        return recovered

    def run_once(self) -> bool:
        """Claim and dispatch a single due job.

        Returns:
            True if a job was dispatched, False if none was due
        """
        job = self.queue.claim(self.worker_id, self._handlers.keys())
        if job is None:
            return False
        self._dispatch(job)
        return True

    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        """Block and process jobs until ``stop_event`` is set."""
        stop_event = stop_event or self._stop_event
        recovered = self.sweep()
        self._next_sweep_at = time.monotonic() + self.sweep_interval_s
        logger.info(
            "Worker %s started (%d slot(s), %d stale job(s) recovered)",
            self.worker_id,
            self.concurrency,
            recovered,
        )

        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix=self.worker_id
        ) as executor:
            for _ in range(self.concurrency):
                executor.submit(self._slot_loop, stop_event)

        logger.info("Worker %s stopped", self.worker_id)

    def start(self) -> None:
        """Run in a background thread (embedded mode)."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run, args=(self._stop_event,), daemon=True, name=self.worker_id
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Signal the slots to stop and wait for in-flight jobs."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _slot_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self._maybe_sweep()
                dispatched = self.run_once()
            except QueueUnavailableError as e:
                logger.error("Worker %s cannot reach the queue: %s", self.worker_id, e)
                dispatched = False
            except Exception:
                logger.exception("Worker %s slot error", self.worker_id)
                dispatched = False

            if not dispatched:
                stop_event.wait(self.idle_sleep_s)

    def _maybe_sweep(self) -> None:
        """Sweep from one slot at a time, at most every ``sweep_interval_s``."""
        with self._sweep_lock:
            now = time.monotonic()
            if now < self._next_sweep_at:
                return
            self._next_sweep_at = now + self.sweep_interval_s
        recovered = self.sweep()
        if recovered:
            logger.info("Worker %s recovered %d stale job(s)", self.worker_id, recovered)

    def _dispatch(self, job: JobRecord) -> None:
        handler, on_failed = self._handlers[job.name]
        video_id = job.data.get("videoId")
        heartbeat = _start_heartbeat(self.queue, job.id, self.heartbeat_interval_s)

        try:
            result = handler(job, self.queue)
        except RetryLater as e:
            logger.debug("Job %s (video %s) re-dispatched in %ss", job.id, video_id, e.delay_s)
            self.queue.requeue(job.id, e.delay_s, e.progress)
            return
        except Exception as e:
            reason = str(e) or type(e).__name__
            retry = is_retryable(e)
            logger.error(
                "Job %s (%s) for video %s failed on attempt %d/%d: %s",
                job.id,
                job.name,
                video_id,
                job.attempts_made + 1,
                job.max_attempts,
                reason,
                exc_info=retry,
            )
            last_attempt = not retry or job.attempts_made + 1 >= job.max_attempts
            if last_attempt and on_failed is not None:
                hook_error = self._run_failure_hook(on_failed, job, e)
                if hook_error is not None and is_retryable(hook_error):
                    delay_s = job.backoff.delay_for(job.attempts_made + 1)
                    logger.warning(
                        "Job %s for video %s kept live, failure hook retried in %.1fs",
                        job.id,
                        video_id,
                        delay_s,
                    )
                    self.queue.requeue(job.id, delay_s)
                    return

            outcome = self.queue.fail(job.id, reason, retry=retry)
            if outcome.is_final:
                logger.warning("Job %s for video %s failed permanently", job.id, video_id)
            else:
                logger.info("Job %s retrying in %.1fs", job.id, outcome.retry_in_s)
            return
        finally:
            _stop_heartbeat(heartbeat)

        self.queue.complete(job.id, result)
        logger.info("Job %s (%s) for video %s completed", job.id, job.name, video_id)

    def _run_failure_hook(
        self, on_failed: FailureHook, job: JobRecord, error: BaseException
    ) -> Optional[Exception]:
        """Returns the hook's exception, None if it succeeded."""
        try:
            on_failed(job, error)
        except Exception as hook_error:
            logger.exception(
                "Failure hook for job %s (video %s) raised", job.id, job.data.get("videoId")
            )
            return hook_error
        return None


def _start_heartbeat(queue: QueueBackend, job_id: str, interval_s: float):
    """Start background thread that refreshes the job's heartbeat.

    Returns:
        Tuple of (thread, stop_event) for cleanup

    Heartbeat prevents long-running jobs from being marked stale.
    Thread is daemon so it won't block process exit.
    """
    stop_event = threading.Event()

    def heartbeat_loop():
        while not stop_event.wait(interval_s):
            try:
                queue.heartbeat(job_id)
            except QueueUnavailableError as e:
                # Log but don't crash thread
                logger.warning("Heartbeat failed for %s: %s", job_id, e)

    thread = threading.Thread(target=heartbeat_loop, daemon=True)
    thread.start()
    return (thread, stop_event)


def _stop_heartbeat(heartbeat_data) -> None:
    """Signals thread to stop and waits up to 5s for clean shutdown."""
    thread, stop_event = heartbeat_data
    stop_event.set()
    thread.join(timeout=5)
