"""SQLite implementation of QueueBackend.

This module provides the local-first, crash-safe broker using:
- sqlite-utils for schema management and reads
- WAL mode for better concurrent performance
- BEGIN IMMEDIATE transactions for atomic claim
- Exponential backoff retry for database lock handling
- A partial unique index for one live job per dedupe key
"""

import json
import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlite_utils import Database

from ..errors import JobConflictError, NotFoundError, QueueUnavailableError
from .backends import QueueBackend
from .models import (
    LIVE_STATES,
    BackoffPolicy,
    FailOutcome,
    JobHandle,
    JobOptions,
    JobRecord,
    JobSnapshot,
    JobState,
    StateTransition,
)

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
-- Jobs table
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    dedupe_key TEXT,
    data TEXT NOT NULL,
    state TEXT NOT NULL,
    progress INTEGER DEFAULT 0,
    priority INTEGER DEFAULT 0,
    attempts_made INTEGER DEFAULT 0,
    max_attempts INTEGER DEFAULT 3,
    backoff TEXT,
    poll_count INTEGER DEFAULT 0,
    remove_on_complete INTEGER DEFAULT 10,
    remove_on_fail INTEGER DEFAULT 5,
    run_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    started_at TEXT,
    first_started_at TEXT,
    finished_at TEXT,
    last_heartbeat TEXT,
    worker_id TEXT,
    failed_reason TEXT,
    return_value TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_due ON jobs(name, state, priority DESC, run_at ASC);
CREATE INDEX IF NOT EXISTS idx_jobs_finished ON jobs(name, state, finished_at);

-- One live job per (name, dedupe_key)
CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_live_key ON jobs(name, dedupe_key)
    WHERE dedupe_key IS NOT NULL AND state IN ('waiting', 'delayed', 'active');

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS job_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON job_transitions(job_id, timestamp);
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(dt: datetime) -> str:
    # Fixed width so lexical order matches time order
    return dt.isoformat(timespec="microseconds")


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteQueue(QueueBackend):
    """SQLite-based job queue with atomic claim.

    Features:
    - Atomic claim via UPDATE...RETURNING with BEGIN IMMEDIATE
    - Exponential backoff retry for database lock contention
    - Delayed re-dispatch (retry backoff and provider polling)
    - Heartbeat support and crash recovery via reset_stale_active()
    - Bounded retention of finished jobs

    Concurrency safety:
    - One connection shared by the threads of a process, serialized by a lock
    - BEGIN IMMEDIATE ensures write lock from transaction start, so separate
      worker processes on the same file never claim the same job
    """

    def __init__(
        self,
        db_path: str,
        clock: Optional[Callable[[], datetime]] = None,
        busy_timeout_s: float = 5.0,
    ):
        """Open (and create) the broker database.

        Args:
            db_path: Path to SQLite database file
            clock: Returns the current aware datetime (injectable for tests)
            busy_timeout_s: How long sqlite waits on a locked database
        """
        self.db_path = Path(db_path)
        self.clock = clock or _utcnow
        self._lock = threading.RLock()

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=busy_timeout_s,
                check_same_thread=False,
                isolation_level=None,
            )
            self.db = Database(conn)

            # Enable WAL mode for better concurrent performance
            self.db.conn.execute("PRAGMA journal_mode=WAL")
            self.db.conn.execute("PRAGMA synchronous=NORMAL")

            self._create_schema()
        except (sqlite3.Error, OSError) as e:
            raise QueueUnavailableError(f"Queue broker unavailable: {e}") from e

    def _create_schema(self):
        """Create tables and indexes if they don't exist."""
        self.db.executescript(SCHEMA_SQL)

    def close(self) -> None:
        with self._lock:
            self.db.conn.close()

    @contextmanager
    def _transaction(self):
        """BEGIN IMMEDIATE ... COMMIT under the connection lock.

        sqlite errors propagate untouched; ``_with_lock_retry`` maps them.
        """
        with self._lock:
            self.db.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.db.conn
                self.db.conn.execute("COMMIT")
            except BaseException:
                if self.db.conn.in_transaction:
                    self.db.conn.execute("ROLLBACK")
                raise

    def _with_lock_retry(self, fn: Callable[[], Any], max_retries: int = 3) -> Any:
        """Run ``fn`` with exponential backoff on SQLITE_BUSY.

        Backoff: 100ms, 200ms, 400ms delays.
        """
        for attempt in range(max_retries):
            try:
                return fn()
            except sqlite3.IntegrityError:
                raise
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < max_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise QueueUnavailableError(f"Queue broker unavailable: {e}") from e
            except sqlite3.Error as e:
                raise QueueUnavailableError(f"Queue broker unavailable: {e}") from e
        return None

    # --- producer side ---

    def enqueue(
        self, name: str, data: Dict[str, Any], options: Optional[JobOptions] = None
    ) -> JobHandle:
        """Insert a job in ``waiting`` (or ``delayed`` when options.delay_ms > 0).

        Raises:
            QueueUnavailableError: the broker database cannot be written
            JobConflictError: a live job already holds the dedupe key
        """
        options = options or JobOptions()
        job_id = uuid.uuid4().hex
        now = self.clock()
        run_at = now + timedelta(milliseconds=options.delay_ms)
        state = JobState.DELAYED if options.delay_ms else JobState.WAITING

        def _insert():
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO jobs (
                        id, name, dedupe_key, data, state, progress, priority,
                        attempts_made, max_attempts, backoff, poll_count,
                        remove_on_complete, remove_on_fail, run_at, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, 0, ?, 0, ?, ?, 0, ?, ?, ?, ?, ?)
                    """,
                    (
                        job_id,
                        name,
                        options.dedupe_key,
                        json.dumps(data),
                        state.value,
                        options.priority,
                        options.attempts,
                        options.backoff.model_dump_json(),
                        options.remove_on_complete,
                        options.remove_on_fail,
                        _ts(run_at),
                        _ts(now),
                        _ts(now),
                    ),
                )
                self._log_transition(conn, job_id, None, state.value)

        try:
            self._with_lock_retry(_insert)
        except sqlite3.IntegrityError as e:
            raise JobConflictError(
                f"A live {name} job already exists for {options.dedupe_key}",
                details={"dedupeKey": options.dedupe_key},
            ) from e

        logger.info("Enqueued job %s (%s) key=%s", job_id, name, options.dedupe_key)
        return JobHandle(id=job_id, name=name)

    # --- introspection ---

    def get_job(self, job_id: str) -> Optional[JobSnapshot]:
        """Introspect a job by id; None if unknown or already pruned."""
        record = self.get_record(job_id)
        return JobSnapshot.from_record(record) if record else None

    def get_record(self, job_id: str) -> Optional[JobRecord]:
        def _read():
            with self._lock:
                return list(self.db["jobs"].rows_where("id = ?", [job_id]))

        rows = self._with_lock_retry(_read)
        if not rows:
            return None
        return self._row_to_record(rows[0])

    def find_live_job(self, name: str, dedupe_key: str) -> Optional[JobSnapshot]:
        def _read():
            with self._lock:
                return list(
                    self.db["jobs"].rows_where(
                        "name = ? AND dedupe_key = ? AND state IN (?, ?, ?)",
                        [name, dedupe_key, *LIVE_STATES],
                        limit=1,
                    )
                )

        rows = self._with_lock_retry(_read)
        if not rows:
            return None
        return JobSnapshot.from_record(self._row_to_record(rows[0]))

    def counts(self) -> Dict[str, int]:
        def _read():
            with self._lock:
                return self.db.execute(
                    "SELECT state, COUNT(*) FROM jobs GROUP BY state"
                ).fetchall()

        stats = {state.value: 0 for state in JobState}
        for state, count in self._with_lock_retry(_read):
            stats[state] = count
        stats["total"] = sum(stats[state.value] for state in JobState)
        return stats

    def transitions(self, job_id: str) -> List[StateTransition]:
        """Audit trail for one job, oldest first."""

        def _read():
            with self._lock:
                return list(
                    self.db["job_transitions"].rows_where(
                        "job_id = ?", [job_id], order_by="id"
                    )
                )

        return [StateTransition(**row) for row in self._with_lock_retry(_read)]

    # --- worker side ---

    def claim(self, worker_id: str, names: Iterable[str]) -> Optional[JobRecord]:
        """Atomically pop the next due job and mark it active.

        Atomicity: SELECT + UPDATE...RETURNING inside BEGIN IMMEDIATE. Due means waiting,
        or delayed with run_at in the past. Higher priority first, then FIFO.
        """
        names = list(names)
        if not names:
            return None
        placeholders = ", ".join("?" for _ in names)

        def _claim():
            now = _ts(self.clock())
            with self._transaction() as conn:
                due = conn.execute(
                    f"""
                    SELECT id, state FROM jobs
                    WHERE state IN (?, ?)
                      AND run_at <= ?
                      AND name IN ({placeholders})
                    ORDER BY priority DESC, run_at ASC, created_at ASC
                    LIMIT 1
                    """,
                    (JobState.WAITING.value, JobState.DELAYED.value, now, *names),
                ).fetchone()
                if due is None:
                    return None
                job_id, from_state = due
                cursor = conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?,
                        worker_id = ?,
                        started_at = ?,
                        first_started_at = COALESCE(first_started_at, ?),
                        last_heartbeat = ?,
                        updated_at = ?
                    WHERE id = ?
                    RETURNING *
                    """,
                    (JobState.ACTIVE.value, worker_id, now, now, now, now, job_id),
                )
                row = cursor.fetchone()
                columns = [d[0] for d in cursor.description]
                self._log_transition(
                    conn, job_id, from_state, JobState.ACTIVE.value, worker_id
                )
                return dict(zip(columns, row))

        row = self._with_lock_retry(_claim)
        return self._row_to_record(row) if row else None

    def complete(self, job_id: str, return_value: Any = None) -> None:
        """Mark an active job completed and prune old completed jobs."""

        def _complete():
            now = _ts(self.clock())
            with self._transaction() as conn:
                row = conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?, finished_at = ?, updated_at = ?, worker_id = NULL,
                        return_value = ?
                    WHERE id = ? AND state = ?
                    RETURNING name, remove_on_complete, remove_on_fail
                    """,
                    (
                        JobState.COMPLETED.value,
                        now,
                        now,
                        json.dumps(return_value, default=str),
                        job_id,
                        JobState.ACTIVE.value,
                    ),
                ).fetchone()
                if row is None:
                    raise NotFoundError(f"No active job {job_id}")
                self._log_transition(
                    conn, job_id, JobState.ACTIVE.value, JobState.COMPLETED.value
                )
                return row

        name, keep_completed, keep_failed = self._with_lock_retry(_complete)
        self.prune(name, keep_completed, keep_failed)

    def fail(self, job_id: str, error: str, retry: bool) -> FailOutcome:
        """Record a failed attempt.

        Retry logic:
        - If retry=True and attempts_made + 1 < max_attempts: delayed by backoff
        - Otherwise: failed (terminal state)
        """
        error_snippet = error[:500] if error else None

        def _fail():
            now = self.clock()
            with self._transaction() as conn:
                row = conn.execute(
                    """
                    SELECT name, attempts_made, max_attempts, backoff,
                           remove_on_complete, remove_on_fail
                    FROM jobs WHERE id = ?
                    """,
                    (job_id,),
                ).fetchone()
                if row is None:
                    raise NotFoundError(f"Job {job_id} not found")
                name, attempts_made, max_attempts, backoff_json, keep_completed, keep_failed = row
                new_attempt = attempts_made + 1

                if retry and new_attempt < max_attempts:
                    backoff = BackoffPolicy.model_validate_json(backoff_json or "{}")
                    delay_s = backoff.delay_for(new_attempt)
                    conn.execute(
                        """
                        UPDATE jobs
                        SET state = ?, attempts_made = ?, failed_reason = ?, run_at = ?,
                            updated_at = ?, worker_id = NULL
                        WHERE id = ?
                        """,
                        (
                            JobState.DELAYED.value,
                            new_attempt,
                            error_snippet,
                            _ts(now + timedelta(seconds=delay_s)),
                            _ts(now),
                            job_id,
                        ),
                    )
                    self._log_transition(
                        conn, job_id, JobState.ACTIVE.value, JobState.DELAYED.value,
                        error=error_snippet,
                    )
                    outcome = FailOutcome(
                        job_id=job_id,
                        state=JobState.DELAYED,
                        attempts_made=new_attempt,
                        retry_in_s=delay_s,
                    )
                else:
                    conn.execute(
                        """
                        UPDATE jobs
                        SET state = ?, attempts_made = ?, failed_reason = ?, finished_at = ?,
                            updated_at = ?, worker_id = NULL
                        WHERE id = ?
                        """,
                        (
                            JobState.FAILED.value,
                            new_attempt,
                            error_snippet,
                            _ts(now),
                            _ts(now),
                            job_id,
                        ),
                    )
                    self._log_transition(
                        conn, job_id, JobState.ACTIVE.value, JobState.FAILED.value,
                        error=error_snippet,
                    )
                    outcome = FailOutcome(
                        job_id=job_id, state=JobState.FAILED, attempts_made=new_attempt
                    )
                return outcome, name, keep_completed, keep_failed

        outcome, name, keep_completed, keep_failed = self._with_lock_retry(_fail)
        if outcome.is_final:
            self.prune(name, keep_completed, keep_failed)
        return outcome

    def requeue(self, job_id: str, delay_s: float, progress: Optional[int] = None) -> None:
        """Delay an active job for another dispatch; attempts are untouched."""

        def _requeue():
            now = self.clock()
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?, run_at = ?, poll_count = poll_count + 1,
                        progress = COALESCE(?, progress), updated_at = ?, worker_id = NULL
                    WHERE id = ? AND state = ?
                    """,
                    (
                        JobState.DELAYED.value,
                        _ts(now + timedelta(seconds=delay_s)),
                        progress,
                        _ts(now),
                        job_id,
                        JobState.ACTIVE.value,
                    ),
                )
                if cursor.rowcount == 0:
                    raise NotFoundError(f"No active job {job_id}")
                self._log_transition(conn, job_id, JobState.ACTIVE.value, JobState.DELAYED.value)

        self._with_lock_retry(_requeue)

    def update_progress(self, job_id: str, progress: int) -> None:
        progress = max(0, min(100, int(progress)))

        def _update():
            with self._lock:
                self.db.execute(
                    "UPDATE jobs SET progress = ?, updated_at = ? WHERE id = ? AND state = ?",
                    (progress, _ts(self.clock()), job_id, JobState.ACTIVE.value),
                )

        self._with_lock_retry(_update)

    def heartbeat(self, job_id: str) -> None:
        """Only updates if job is in 'active' state."""

        def _beat():
            with self._lock:
                self.db.execute(
                    "UPDATE jobs SET last_heartbeat = ? WHERE id = ? AND state = ?",
                    (_ts(self.clock()), job_id, JobState.ACTIVE.value),
                )

        self._with_lock_retry(_beat)

    def reset_stale_active(self, timeout_s: int) -> int:
        """Crash recovery: return active jobs with an old heartbeat to waiting.

        The handler runs again for the same job (at-least-once delivery).
        Attempts are not incremented.
        """
        cutoff = _ts(self.clock() - timedelta(seconds=timeout_s))

        def _reset():
            with self._transaction() as conn:
                rows = conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?, worker_id = NULL, updated_at = ?
                    WHERE state = ? AND COALESCE(last_heartbeat, started_at) < ?
                    RETURNING id
                    """,
                    (
                        JobState.WAITING.value,
                        _ts(self.clock()),
                        JobState.ACTIVE.value,
                        cutoff,
                    ),
                ).fetchall()
                for (job_id,) in rows:
                    self._log_transition(
                        conn, job_id, JobState.ACTIVE.value, JobState.WAITING.value,
                        error="Reset stale job (crash recovery)",
                    )
                return len(rows)

        count = self._with_lock_retry(_reset)
        if count:
            logger.warning("Reset %d stale active job(s)", count)
        return count

    def prune(self, name: str, keep_completed: int, keep_failed: int) -> int:
        """Retention: keep only the newest finished jobs per state."""

        def _prune():
            removed = 0
            with self._transaction() as conn:
                for state, keep in (
                    (JobState.COMPLETED.value, keep_completed),
                    (JobState.FAILED.value, keep_failed),
                ):
                    rows = conn.execute(
                        """
                        DELETE FROM jobs
                        WHERE name = ? AND state = ? AND id NOT IN (
                            SELECT id FROM jobs WHERE name = ? AND state = ?
                            ORDER BY finished_at DESC LIMIT ?
                        )
                        RETURNING id
                        """,
                        (name, state, name, state, keep),
                    ).fetchall()
                    for (job_id,) in rows:
                        conn.execute("DELETE FROM job_transitions WHERE job_id = ?", (job_id,))
                    removed += len(rows)
            return removed

        return self._with_lock_retry(_prune)

    # --- helpers ---

    def _row_to_record(self, row: Dict[str, Any]) -> JobRecord:
        """Convert a jobs row to a JobRecord."""
        return JobRecord(
            id=row["id"],
            name=row["name"],
            data=json.loads(row["data"]) if row.get("data") else {},
            dedupe_key=row.get("dedupe_key"),
            state=JobState(row["state"]),
            progress=row.get("progress") or 0,
            priority=row.get("priority") or 0,
            attempts_made=row.get("attempts_made") or 0,
            max_attempts=row.get("max_attempts") or 1,
            backoff=BackoffPolicy.model_validate_json(row["backoff"])
            if row.get("backoff")
            else BackoffPolicy(),
            poll_count=row.get("poll_count") or 0,
            remove_on_complete=row.get("remove_on_complete") or 0,
            remove_on_fail=row.get("remove_on_fail") or 0,
            run_at=_parse_dt(row["run_at"]),
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row.get("updated_at")),
            started_at=_parse_dt(row.get("started_at")),
            first_started_at=_parse_dt(row.get("first_started_at")),
            finished_at=_parse_dt(row.get("finished_at")),
            last_heartbeat=_parse_dt(row.get("last_heartbeat")),
            worker_id=row.get("worker_id"),
            failed_reason=row.get("failed_reason"),
            return_value=json.loads(row["return_value"]) if row.get("return_value") else None,
        )

    def _log_transition(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ):
        """Log state transition to audit trail (inside the caller's transaction)."""
        conn.execute(
            """
            INSERT INTO job_transitions
                (job_id, from_state, to_state, timestamp, worker_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                job_id,
                from_state,
                to_state,
                _ts(self.clock()),
                worker_id,
                error[:200] if error else None,
            ),
        )
