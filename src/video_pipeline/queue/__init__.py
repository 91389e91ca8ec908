"""Durable job queue for background video processing."""

from .backends import QueueBackend
from .models import (
    BackoffPolicy,
    FailOutcome,
    JobHandle,
    JobOptions,
    JobRecord,
    JobSnapshot,
    JobState,
)
from .sqlite_backend import SQLiteQueue
from .worker import QueueWorker, RetryLater

__all__ = [
    "QueueBackend",
    "BackoffPolicy",
    "FailOutcome",
    "JobHandle",
    "JobOptions",
    "JobRecord",
    "JobSnapshot",
    "JobState",
    "SQLiteQueue",
    "QueueWorker",
    "RetryLater",
]
