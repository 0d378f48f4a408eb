"""
Job entity.

A Job is a single unit of mutation work. It is created queued by a service
command, claimed by one worker, and ends succeeded, failed or cancelled.

Mutability rules:
- job_id, job_type, site_id, environment_id, node_id, payload, created_at: immutable
- status, attempt_count, lock, error and timing fields: owned by the queue
"""

import json
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

DEFAULT_MAX_ATTEMPTS = 3


class JobStatus(str, Enum):
    """
    Job status values.

    - QUEUED: waiting to be claimed (possibly until run_after)
    - RUNNING: claimed by a worker
    - SUCCEEDED / FAILED / CANCELLED: terminal
    """

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_JOB_STATUSES = (JobStatus.QUEUED.value, JobStatus.RUNNING.value)


class JobType(str, Enum):
    NODE_PROVISION = "node_provision"
    SITE_CREATE = "site_create"
    SITE_IMPORT = "site_import"
    ENV_CREATE = "env_create"
    ENV_DEPLOY = "env_deploy"
    ENV_UPDATE = "env_update"
    ENV_RESTORE = "env_restore"
    ENV_PROMOTE = "env_promote"
    ENV_CACHE_TOGGLE = "env_cache_toggle"
    CACHE_PURGE = "cache_purge"
    BACKUP_CREATE = "backup_create"
    BACKUP_CLEANUP = "backup_cleanup"
    DOMAIN_ADD = "domain_add"
    DOMAIN_REMOVE = "domain_remove"
    DRIFT_CHECK = "drift_check"
    HEALTH_CHECK = "health_check"
    RELEASE_ROLLBACK = "release_rollback"


# Every job type above participates in the site/node concurrency gate
MUTATING_JOB_TYPES = frozenset(job_type.value for job_type in JobType)

# Successful completion of these triggers a post-mutation health check
HEALTH_CHECKED_JOB_TYPES = frozenset({
    JobType.ENV_DEPLOY.value,
    JobType.ENV_RESTORE.value,
    JobType.ENV_PROMOTE.value,
})


@dataclass
class Job:
    job_id: str
    job_type: str
    status: JobStatus
    payload: dict = field(default_factory=dict)
    site_id: Optional[str] = None
    environment_id: Optional[str] = None
    node_id: Optional[str] = None
    attempt_count: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    run_after: Optional[str] = None
    locked_by: Optional[str] = None
    locked_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Job":
        return cls(
            job_id=row["job_id"],
            job_type=row["job_type"],
            status=JobStatus(row["status"]),
            payload=json.loads(row["payload_json"] or "{}"),
            site_id=row["site_id"],
            environment_id=row["environment_id"],
            node_id=row["node_id"],
            attempt_count=row["attempt_count"],
            max_attempts=row["max_attempts"],
            run_after=row["run_after"],
            locked_by=row["locked_by"],
            locked_at=row["locked_at"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            error_code=row["error_code"],
            error_message=row["error_message"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "job_type": self.job_type,
            "status": self.status.value,
            "site_id": self.site_id,
            "environment_id": self.environment_id,
            "node_id": self.node_id,
            "payload": self.payload,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "run_after": self.run_after,
            "locked_by": self.locked_by,
            "locked_at": self.locked_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
