"""Pydantic models for job queue data structures.

This module defines the type-safe models used throughout the queue system.
All models use Pydantic for validation and serialization.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobState(str, Enum):
    """Job dispatch states.

    State transitions:
        waiting → active        (worker claims the job)
        delayed → active        (run_at reached, worker claims the job)
        active → completed      (handler returned)
        active → delayed        (retry after backoff, or poll re-dispatch)
        active → failed         (non-retryable error or attempts exhausted)
        active → waiting        (crash recovery of a stale claim)
    """

    WAITING = "waiting"  # Ready to be claimed
    DELAYED = "delayed"  # Ready once run_at has passed
    ACTIVE = "active"  # Claimed by a worker
    COMPLETED = "completed"  # Handler finished
    FAILED = "failed"  # Permanently failed

    @property
    def is_live(self) -> bool:
        return self in (JobState.WAITING, JobState.DELAYED, JobState.ACTIVE)


LIVE_STATES = (JobState.WAITING.value, JobState.DELAYED.value, JobState.ACTIVE.value)


class BackoffPolicy(BaseModel):
    """Retry delay policy."""

    type: Literal["exponential", "fixed"] = Field(default="exponential")
    delay_ms: int = Field(default=2000, ge=0, description="Base delay in milliseconds")

    def delay_for(self, attempts_made: int) -> float:
        """Seconds to wait before the next attempt after ``attempts_made`` failures."""
        if attempts_made < 1:
            return 0.0
        if self.type == "fixed":
            return self.delay_ms / 1000.0
        return (self.delay_ms * (2 ** (attempts_made - 1))) / 1000.0


class JobOptions(BaseModel):
    """Options accepted by ``enqueue``."""

    attempts: int = Field(default=3, ge=1, description="Max attempts before failing")
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    delay_ms: int = Field(default=0, ge=0, description="Initial delay before first dispatch")
    priority: int = Field(default=0, ge=0, description="Higher = processed first")
    dedupe_key: Optional[str] = Field(
        default=None, description="At most one live job per (name, dedupe_key)"
    )
    remove_on_complete: int = Field(default=10, ge=0, description="Completed jobs retained")
    remove_on_fail: int = Field(default=5, ge=0, description="Failed jobs retained")


class JobHandle(BaseModel):
    """Returned by ``enqueue``."""

    id: str
    name: str


class JobRecord(BaseModel):
    """Full job row as seen by a worker."""

    model_config = ConfigDict(use_enum_values=False)

    id: str = Field(..., description="Unique job identifier (UUID)")
    name: str = Field(..., description="Job type, e.g. process-video")
    data: Dict[str, Any] = Field(default_factory=dict, description="Job payload")
    dedupe_key: Optional[str] = None
    state: JobState = JobState.WAITING
    progress: int = Field(default=0, ge=0, le=100)
    priority: int = 0
    attempts_made: int = Field(default=0, ge=0, description="Failed attempts so far")
    max_attempts: int = Field(default=3, ge=1)
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    poll_count: int = Field(default=0, ge=0, description="Delayed re-dispatches while waiting")
    remove_on_complete: int = 10
    remove_on_fail: int = 5
    run_at: datetime
    created_at: datetime
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    first_started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None
    worker_id: Optional[str] = None
    failed_reason: Optional[str] = None
    return_value: Optional[Any] = None


class JobSnapshot(BaseModel):
    """Introspection view returned by ``get_job``."""

    id: str
    name: str
    state: JobState
    progress: int = 0
    attempts_made: int = 0
    max_attempts: int = 3
    failed_reason: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: JobRecord) -> "JobSnapshot":
        return cls(
            id=record.id,
            name=record.name,
            state=record.state,
            progress=record.progress,
            attempts_made=record.attempts_made,
            max_attempts=record.max_attempts,
            failed_reason=record.failed_reason,
            data=record.data,
            created_at=record.created_at,
            finished_at=record.finished_at,
        )


class FailOutcome(BaseModel):
    """What ``fail`` decided."""

    job_id: str
    state: JobState
    attempts_made: int
    retry_in_s: Optional[float] = None

    @property
    def is_final(self) -> bool:
        return self.state == JobState.FAILED


class StateTransition(BaseModel):
    """Audit log entry for job state changes."""

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    job_id: str = Field(..., description="Job identifier")
    from_state: Optional[str] = Field(default=None, description="Previous state")
    to_state: str = Field(..., description="New state")
    timestamp: datetime = Field(..., description="Transition time")
    worker_id: Optional[str] = Field(default=None, description="Worker that caused transition")
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of error")
