"""
Startup recovery for the job queue.

Under the single-writer assumption, any job still `running` when the
control plane starts was orphaned by a crashed or killed process. Left
alone it would hold its site and node forever.

Recovery policy:
- backup_create: always failed with JOB_INTERRUPTED, and its backup
  becomes failed so retention can clean up the partial artifact
- attempts remain: requeue immediately with JOB_INTERRUPTED
- attempts exhausted: fail with JOB_INTERRUPTED; a mid-mutation
  environment and its site become failed so an operator can reset them
"""

import logging
from typing import Optional

from src.infra.clock import Clock, SystemClock
from src.store.database import Database
from src.store.entities import format_timestamp
from src.store.queries import fail_stranded_environment, fail_unfinished_backup

from .entities import Job, JobType
from .execution import JOB_INTERRUPTED
from .queue import JobQueue, mark_job_failed

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "worker stopped while the job was running"


class RecoveryManager:
    """Requeues or fails jobs orphaned in `running`."""

    def __init__(self, database: Database, queue: JobQueue, clock: Optional[Clock] = None):
        self.database = database
        self.queue = queue
        self.clock = clock or SystemClock()

    def recover_on_startup(self) -> dict:
        """
        Recover orphaned running jobs.

        Returns:
            Stats dict: {"running_found", "requeued", "failed"}
        """
        stats = {"running_found": 0, "requeued": 0, "failed": 0}

        for job in self.queue.list_running():
            stats["running_found"] += 1
            now = self.clock.now()

            if job.job_type == JobType.BACKUP_CREATE.value:
                self._fail_backup_job(job, format_timestamp(now))
                stats["failed"] += 1
                continue

            if job.attempt_count < job.max_attempts:
                self.queue.requeue(job.job_id, now, JOB_INTERRUPTED, INTERRUPTED_MESSAGE, now=now)
                stats["requeued"] += 1
                logger.warning(f"[Recovery] Requeued interrupted job {job.job_id} ({job.job_type})")
                continue

            moment = format_timestamp(now)
            with self.database.transaction() as conn:
                mark_job_failed(conn, job.job_id, JOB_INTERRUPTED, INTERRUPTED_MESSAGE, moment)
                fail_stranded_environment(conn, job.environment_id, moment)
            stats["failed"] += 1
            logger.warning(f"[Recovery] Failed interrupted job {job.job_id} ({job.job_type})")

        if stats["running_found"]:
            logger.info(f"[Recovery] Startup recovery: {stats}")
        return stats

    def _fail_backup_job(self, job: Job, moment: str) -> None:
        # A half-written artifact cannot be resumed; the row would stay running on a rerun.
        backup_id = job.payload.get("backup_id", job.job_id)
        with self.database.transaction() as conn:
            mark_job_failed(conn, job.job_id, JOB_INTERRUPTED, INTERRUPTED_MESSAGE, moment)
            backup_failed = fail_unfinished_backup(conn, backup_id)
        logger.warning(
            f"[Recovery] Failed interrupted backup job {job.job_id} "
            f"(backup {backup_id} failed: {backup_failed})"
        )
