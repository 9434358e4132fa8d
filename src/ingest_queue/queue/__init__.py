"""Durable job queue: store, engine and pull-based worker."""

from .backends import JobStore, RecordStore
from .engine import STUCK_JOB_REASON, JobQueue
from .models import Job, JobOutcome, JobStatus, JobType, RunResult, StateTransition
from .retry import retry_with_backoff
from .sqlite_backend import SQLiteStore
from .worker import Worker

__all__ = [
    "JobStore",
    "RecordStore",
    "JobQueue",
    "STUCK_JOB_REASON",
    "Job",
    "JobOutcome",
    "JobStatus",
    "JobType",
    "RunResult",
    "StateTransition",
    "retry_with_backoff",
    "SQLiteStore",
    "Worker",
]
