"""
Job queue and worker.

Durable sqlite-backed queue with a per-site / per-node concurrency gate,
cooperative workers, classified retries and startup recovery.
"""

from .entities import (
    Job,
    JobStatus,
    JobType,
    MUTATING_JOB_TYPES,
    HEALTH_CHECKED_JOB_TYPES,
    DEFAULT_MAX_ATTEMPTS,
)
from .execution import (
    ExecutionError,
    classify_error,
    retry_backoff,
    will_retry,
)
from .queue import (
    JobQueue,
    enqueue_mutation_job,
    assert_no_active_mutation,
    mark_job_succeeded,
    mark_job_failed,
)
from .worker import JobHandler, Worker, WorkerPool
from .recovery import RecoveryManager

__all__ = [
    # Entities
    "Job",
    "JobStatus",
    "JobType",
    "MUTATING_JOB_TYPES",
    "HEALTH_CHECKED_JOB_TYPES",
    "DEFAULT_MAX_ATTEMPTS",
    # Execution
    "ExecutionError",
    "classify_error",
    "retry_backoff",
    "will_retry",
    # Queue
    "JobQueue",
    "enqueue_mutation_job",
    "assert_no_active_mutation",
    "mark_job_succeeded",
    "mark_job_failed",
    # Worker
    "JobHandler",
    "Worker",
    "WorkerPool",
    "RecoveryManager",
]
