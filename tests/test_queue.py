"""Unit tests for queue system.

Tests cover:
- Job enqueue/claim operations
- Atomic state transitions
- Retry backoff and attempt bounds
- Delayed re-dispatch without consuming attempts
- Dedupe of live jobs
- Crash recovery logic
- Retention of finished jobs
- Concurrent claim safety
"""

import sqlite3
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from video_pipeline.errors import JobConflictError, NotFoundError, QueueUnavailableError
from video_pipeline.queue import BackoffPolicy, JobOptions, JobState, SQLiteQueue

JOB = "process-video"


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def temp_db():
    """Create temporary database for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test_queue.db"
        yield str(db_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(temp_db, clock):
    """Create SQLiteQueue instance."""
    q = SQLiteQueue(temp_db, clock=clock)
    yield q
    q.close()


def _options(**kwargs):
    kwargs.setdefault("backoff", BackoffPolicy(type="exponential", delay_ms=1000))
    return JobOptions(**kwargs)


class TestEnqueue:
    """Test job insertion."""

    def test_create_schema(self, queue):
        """Test that schema is created correctly."""
        assert "jobs" in queue.db.table_names()
        assert "job_transitions" in queue.db.table_names()

    def test_enqueue_returns_handle(self, queue):
        handle = queue.enqueue(JOB, {"videoId": "v1"}, _options(dedupe_key="v1"))

        assert handle.name == JOB
        job = queue.get_job(handle.id)
        assert job.state == JobState.WAITING
        assert job.data == {"videoId": "v1"}
        assert job.progress == 0
        assert job.attempts_made == 0
        assert job.max_attempts == 3

    def test_enqueue_with_delay(self, queue, clock):
        handle = queue.enqueue(JOB, {"videoId": "v1"}, _options(delay_ms=5000))

        assert queue.get_job(handle.id).state == JobState.DELAYED
        assert queue.claim("w1", [JOB]) is None

        clock.advance(5)
        claimed = queue.claim("w1", [JOB])
        assert claimed.id == handle.id

    def test_duplicate_live_key_conflicts(self, queue):
        queue.enqueue(JOB, {"videoId": "v1"}, _options(dedupe_key="v1"))

        with pytest.raises(JobConflictError) as exc_info:
            queue.enqueue(JOB, {"videoId": "v1"}, _options(dedupe_key="v1"))
        assert exc_info.value.details["dedupeKey"] == "v1"

    def test_finished_job_frees_key(self, queue):
        first = queue.enqueue(JOB, {"videoId": "v1"}, _options(dedupe_key="v1"))
        queue.claim("w1", [JOB])
        queue.complete(first.id)

        second = queue.enqueue(JOB, {"videoId": "v1"}, _options(dedupe_key="v1"))
        assert second.id != first.id
        assert queue.find_live_job(JOB, "v1").id == second.id

    def test_unreachable_broker(self, tmp_path):
        """A path that cannot be opened surfaces as QueueUnavailableError."""
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x")
        with pytest.raises(QueueUnavailableError):
            SQLiteQueue(str(blocker / "queue.db"))


class TestClaim:
    """Test atomic claim."""

    def test_claim_marks_active(self, queue):
        handle = queue.enqueue(JOB, {"videoId": "v1"})
        job = queue.claim("worker-1", [JOB])

        assert job.id == handle.id
        assert job.state == JobState.ACTIVE
        assert job.worker_id == "worker-1"
        assert job.first_started_at is not None
        assert queue.claim("worker-2", [JOB]) is None

    def test_claim_empty_queue(self, queue):
        assert queue.claim("w1", [JOB]) is None
        assert queue.claim("w1", []) is None

    def test_claim_filters_by_name(self, queue):
        queue.enqueue("other", {})
        assert queue.claim("w1", [JOB]) is None
        assert queue.claim("w1", ["other"]).name == "other"

    def test_priority_then_fifo(self, queue, clock):
        low = queue.enqueue(JOB, {"n": 1})
        clock.advance(1)
        high = queue.enqueue(JOB, {"n": 2}, JobOptions(priority=10))
        clock.advance(1)
        later = queue.enqueue(JOB, {"n": 3})

        assert queue.claim("w", [JOB]).id == high.id
        assert queue.claim("w", [JOB]).id == low.id
        assert queue.claim("w", [JOB]).id == later.id

    def test_concurrent_claim_is_exclusive(self, temp_db):
        """Two connections racing for jobs never receive the same one."""
        producer = SQLiteQueue(temp_db)
        for i in range(20):
            producer.enqueue(JOB, {"n": i})

        claimed = []
        lock = threading.Lock()

        def consume(worker_id):
            q = SQLiteQueue(temp_db)
            try:
                while True:
                    job = q.claim(worker_id, [JOB])
                    if job is None:
                        break
                    with lock:
                        claimed.append(job.id)
            finally:
                q.close()

        threads = [threading.Thread(target=consume, args=(f"w{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(claimed) == 20
        assert len(set(claimed)) == 20
        producer.close()


class TestFailAndRetry:
    """Test retry bounds and backoff."""

    def test_retryable_failure_is_delayed_with_backoff(self, queue, clock):
        handle = queue.enqueue(JOB, {}, _options())
        queue.claim("w1", [JOB])

        outcome = queue.fail(handle.id, "timeout", retry=True)

        assert outcome.state == JobState.DELAYED
        assert outcome.attempts_made == 1
        assert outcome.retry_in_s == 1.0
        assert queue.claim("w1", [JOB]) is None

        clock.advance(1)
        assert queue.claim("w1", [JOB]).id == handle.id

    def test_backoff_doubles(self, queue, clock):
        handle = queue.enqueue(JOB, {}, _options(attempts=5))
        delays = []
        for _ in range(3):
            clock.advance(60)
            queue.claim("w1", [JOB])
            delays.append(queue.fail(handle.id, "err", retry=True).retry_in_s)

        assert delays == [1.0, 2.0, 4.0]

    def test_attempts_exhausted(self, queue, clock):
        handle = queue.enqueue(JOB, {}, _options(attempts=3))
        outcomes = []
        for _ in range(3):
            clock.advance(60)
            assert queue.claim("w1", [JOB]) is not None
            outcomes.append(queue.fail(handle.id, "err", retry=True))

        assert [o.state for o in outcomes] == [JobState.DELAYED, JobState.DELAYED, JobState.FAILED]
        assert outcomes[-1].is_final
        job = queue.get_job(handle.id)
        assert job.state == JobState.FAILED
        assert job.attempts_made == 3
        assert job.failed_reason == "err"
        assert job.finished_at is not None

        clock.advance(600)
        assert queue.claim("w1", [JOB]) is None

    def test_non_retryable_fails_immediately(self, queue):
        handle = queue.enqueue(JOB, {}, _options(attempts=3))
        queue.claim("w1", [JOB])

        outcome = queue.fail(handle.id, "bad payload", retry=False)

        assert outcome.is_final
        assert queue.get_job(handle.id).attempts_made == 1

    def test_fail_unknown_job(self, queue):
        with pytest.raises(NotFoundError):
            queue.fail("missing", "err", retry=True)


class TestRequeue:
    """Test delayed re-dispatch while waiting on an external process."""

    def test_requeue_does_not_consume_attempts(self, queue, clock):
        handle = queue.enqueue(JOB, {}, _options(attempts=1))
        for _ in range(5):
            clock.advance(10)
            queue.claim("w1", [JOB])
            queue.requeue(handle.id, 10, progress=10)

        record = queue.get_record(handle.id)
        assert record.state == JobState.DELAYED
        assert record.attempts_made == 0
        assert record.poll_count == 5
        assert record.progress == 10

    def test_requeue_keeps_first_start(self, queue, clock):
        handle = queue.enqueue(JOB, {})
        first = queue.claim("w1", [JOB]).first_started_at
        queue.requeue(handle.id, 5)
        clock.advance(5)

        again = queue.claim("w1", [JOB])
        assert again.first_started_at == first
        assert again.started_at > first

    def test_requeue_requires_active(self, queue):
        handle = queue.enqueue(JOB, {})
        with pytest.raises(NotFoundError):
            queue.requeue(handle.id, 5)


class TestProgressAndComplete:
    def test_update_progress_is_clamped(self, queue):
        handle = queue.enqueue(JOB, {})
        queue.claim("w1", [JOB])

        queue.update_progress(handle.id, 150)
        assert queue.get_job(handle.id).progress == 100
        queue.update_progress(handle.id, -5)
        assert queue.get_job(handle.id).progress == 0

    def test_complete_stores_return_value(self, queue):
        handle = queue.enqueue(JOB, {})
        queue.claim("w1", [JOB])
        queue.complete(handle.id, {"status": "READY"})

        record = queue.get_record(handle.id)
        assert record.state == JobState.COMPLETED
        assert record.return_value == {"status": "READY"}
        assert record.worker_id is None

    def test_complete_requires_active(self, queue):
        handle = queue.enqueue(JOB, {})
        with pytest.raises(NotFoundError):
            queue.complete(handle.id)


class TestCrashRecovery:
    """Test crash recovery logic."""

    def test_reset_stale_active(self, queue, clock):
        handle = queue.enqueue(JOB, {})
        queue.claim("w1", [JOB])

        clock.advance(30)
        assert queue.reset_stale_active(timeout_s=60) == 0

        clock.advance(60)
        assert queue.reset_stale_active(timeout_s=60) == 1

        job = queue.get_record(handle.id)
        assert job.state == JobState.WAITING
        assert job.attempts_made == 0
        assert job.worker_id is None

    def test_heartbeat_keeps_job_alive(self, queue, clock):
        handle = queue.enqueue(JOB, {})
        queue.claim("w1", [JOB])

        clock.advance(50)
        queue.heartbeat(handle.id)
        clock.advance(50)

        assert queue.reset_stale_active(timeout_s=60) == 0
        assert queue.get_job(handle.id).state == JobState.ACTIVE


class TestIntrospection:
    def test_counts(self, queue):
        done = queue.enqueue(JOB, {})
        queue.claim("w1", [JOB])
        queue.complete(done.id)
        queue.enqueue(JOB, {})
        queue.enqueue(JOB, {}, JobOptions(delay_ms=1000))

        stats = queue.counts()
        assert stats["waiting"] == 1
        assert stats["delayed"] == 1
        assert stats["active"] == 0
        assert stats["completed"] == 1
        assert stats["failed"] == 0
        assert stats["total"] == 3

    def test_transitions_audit_trail(self, queue):
        handle = queue.enqueue(JOB, {})
        queue.claim("w1", [JOB])
        queue.fail(handle.id, "boom", retry=False)

        trail = [(t.from_state, t.to_state) for t in queue.transitions(handle.id)]
        assert trail == [(None, "waiting"), ("waiting", "active"), ("active", "failed")]

    def test_transitions_on_lost_broker(self, queue):
        handle = queue.enqueue(JOB, {})
        queue.db.conn.close()

        with pytest.raises(QueueUnavailableError):
            queue.transitions(handle.id)

    def test_unknown_job(self, queue):
        assert queue.get_job("nope") is None
        assert queue.find_live_job(JOB, "nope") is None


class TestRetention:
    def test_completed_jobs_are_pruned(self, queue, clock):
        ids = []
        for i in range(4):
            clock.advance(1)
            handle = queue.enqueue(JOB, {"n": i}, JobOptions(remove_on_complete=2))
            queue.claim("w1", [JOB])
            queue.complete(handle.id)
            ids.append(handle.id)

        assert queue.get_job(ids[0]) is None
        assert queue.get_job(ids[1]) is None
        assert queue.get_job(ids[2]) is not None
        assert queue.get_job(ids[3]) is not None
        assert queue.transitions(ids[0]) == []

    def test_failed_jobs_are_pruned(self, queue, clock):
        ids = []
        for i in range(3):
            clock.advance(1)
            handle = queue.enqueue(JOB, {"n": i}, JobOptions(remove_on_fail=1))
            queue.claim("w1", [JOB])
            queue.fail(handle.id, "err", retry=False)
            ids.append(handle.id)

        assert [queue.get_job(i) is not None for i in ids] == [False, False, True]

    def test_prune_keeps_live_jobs(self, queue):
        handle = queue.enqueue(JOB, {})
        assert queue.prune(JOB, 0, 0) == 0
        assert queue.get_job(handle.id) is not None


def test_wal_mode_enabled(temp_db):
    q = SQLiteQueue(temp_db)
    conn = sqlite3.connect(temp_db)
    try:
        assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
    finally:
        conn.close()
        q.close()
