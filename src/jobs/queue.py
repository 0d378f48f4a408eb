"""
Durable job queue with the site/node concurrency gate.

Provides:
- Enqueue with the mutation gate (at most one queued-or-running job per
  site_id and per node_id)
- Atomic claim of the oldest runnable job (single guarded UPDATE)
- Completion, requeue and cancellation
- Read helpers (get, list, count_by_status)

`enqueue_mutation_job` and the `mark_job_*` helpers take an open connection
so services can compose them into their own transaction: if the gate
refuses the job, the service's state changes roll back with it.
"""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Optional

from src.common.errors import (
    ConcurrencyConflictError,
    InvalidInputError,
    JobNotFoundError,
    NotCancellableError,
)
from src.common.text import truncate_job_message, truncate_service_message
from src.infra.clock import Clock, SystemClock
from src.store.database import Database
from src.store.entities import format_timestamp, generate_uuid
from src.store.queries import fail_stranded_environment

from .entities import (
    ACTIVE_JOB_STATUSES,
    DEFAULT_MAX_ATTEMPTS,
    MUTATING_JOB_TYPES,
    Job,
    JobStatus,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Transaction-scoped helpers
# =============================================================================

def find_blocking_job(
    conn: sqlite3.Connection,
    site_id: Optional[str],
    node_id: Optional[str],
) -> Optional[sqlite3.Row]:
    """Return the queued-or-running job holding `site_id` or `node_id`, if any."""
    if site_id:
        row = conn.execute(
            """
            SELECT job_id, site_id, node_id FROM jobs
            WHERE site_id = ? AND status IN (?, ?)
            ORDER BY created_at ASC LIMIT 1
            """,
            (site_id, *ACTIVE_JOB_STATUSES),
        ).fetchone()
        if row is not None:
            return row
    if node_id:
        row = conn.execute(
            """
            SELECT job_id, site_id, node_id FROM jobs
            WHERE node_id = ? AND status IN (?, ?)
            ORDER BY created_at ASC LIMIT 1
            """,
            (node_id, *ACTIVE_JOB_STATUSES),
        ).fetchone()
        if row is not None:
            return row
    return None


def assert_no_active_mutation(
    conn: sqlite3.Connection,
    site_id: Optional[str],
    node_id: Optional[str],
) -> None:
    """
    Raise ConcurrencyConflictError if the site or node is already held.

    Raises:
        ConcurrencyConflictError: another queued or running job holds the key
    """
    row = find_blocking_job(conn, site_id, node_id)
    if row is None:
        return
    if site_id and row["site_id"] == site_id:
        raise ConcurrencyConflictError(site_id=site_id, blocking_job_id=row["job_id"])
    raise ConcurrencyConflictError(node_id=node_id, blocking_job_id=row["job_id"])


def enqueue_mutation_job(
    conn: sqlite3.Connection,
    job_type: str,
    now: datetime,
    payload: Optional[dict] = None,
    site_id: Optional[str] = None,
    environment_id: Optional[str] = None,
    node_id: Optional[str] = None,
    job_id: Optional[str] = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Job:
    """
    Insert a queued job inside the caller's transaction.

    Args:
        conn: Connection with an open transaction
        job_type: One of JobType values
        now: Creation instant
        payload: JSON-serializable job payload
        site_id / environment_id / node_id: Gate and lookup keys
        job_id: Explicit id (backup_create and drift_check reuse their row id)
        max_attempts: Attempts before the job fails for good

    Returns:
        The inserted Job

    Raises:
        InvalidInputError: empty job_type or max_attempts < 1
        ConcurrencyConflictError: the gate refused the job
    """
    job_type = (job_type or "").strip()
    if not job_type:
        raise InvalidInputError("job_type is required")
    if max_attempts < 1:
        raise InvalidInputError("max_attempts must be at least 1")

    if job_type in MUTATING_JOB_TYPES:
        assert_no_active_mutation(conn, site_id, node_id)

    created_at = format_timestamp(now)
    job = Job(
        job_id=job_id or generate_uuid(),
        job_type=job_type,
        status=JobStatus.QUEUED,
        payload=dict(payload or {}),
        site_id=site_id,
        environment_id=environment_id,
        node_id=node_id,
        attempt_count=0,
        max_attempts=max_attempts,
        created_at=created_at,
        updated_at=created_at,
    )
    conn.execute(
        """
        INSERT INTO jobs (
            job_id, job_type, status, site_id, environment_id, node_id,
            payload_json, attempt_count, max_attempts, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            job.job_id,
            job.job_type,
            job.status.value,
            job.site_id,
            job.environment_id,
            job.node_id,
            json.dumps(job.payload, sort_keys=True),
            job.attempt_count,
            job.max_attempts,
            job.created_at,
            job.updated_at,
        ),
    )
    logger.info(
        f"Enqueued job {job.job_id} (type={job.job_type}, site={site_id}, node={node_id})"
    )
    return job


def mark_job_succeeded(conn: sqlite3.Connection, job_id: str, now: str) -> bool:
    """Terminal success for a running job. Returns False if it was not running."""
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = ?, locked_by = NULL, locked_at = NULL,
            error_code = NULL, error_message = NULL,
            finished_at = ?, updated_at = ?
        WHERE job_id = ? AND status = ?
        """,
        (JobStatus.SUCCEEDED.value, now, now, job_id, JobStatus.RUNNING.value),
    )
    return cursor.rowcount > 0


def mark_job_failed(
    conn: sqlite3.Connection,
    job_id: str,
    code: str,
    message: str,
    now: str,
) -> bool:
    """
    Terminal failure recorded by a service completion API.

    Service-level messages are capped at 512 bytes (tail kept).
    """
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = ?, locked_by = NULL, locked_at = NULL,
            error_code = ?, error_message = ?,
            finished_at = ?, updated_at = ?
        WHERE job_id = ? AND status = ?
        """,
        (
            JobStatus.FAILED.value,
            code,
            truncate_service_message(message),
            now,
            now,
            job_id,
            JobStatus.RUNNING.value,
        ),
    )
    return cursor.rowcount > 0


def get_job(conn: sqlite3.Connection, job_id: str) -> Job:
    row = conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
    if row is None:
        raise JobNotFoundError(job_id)
    return Job.from_row(row)


def list_active_jobs(conn: sqlite3.Connection, job_type: Optional[str] = None) -> list[Job]:
    """Queued and running jobs, optionally of one type."""
    query = "SELECT * FROM jobs WHERE status IN (?, ?)"
    params: list = list(ACTIVE_JOB_STATUSES)
    if job_type:
        query += " AND job_type = ?"
        params.append(job_type)
    query += " ORDER BY created_at ASC, job_id ASC"
    return [Job.from_row(row) for row in conn.execute(query, params).fetchall()]


# =============================================================================
# Queue
# =============================================================================

class JobQueue:
    """
    Queue operations that own their transaction.

    Completion methods are guarded on status='running' so a job cancelled
    (or already finished by a service completion API) mid-flight is left as is.
    """

    def __init__(self, database: Database, clock: Optional[Clock] = None):
        self.database = database
        self.clock = clock or SystemClock()

    def _now(self, now: Optional[datetime] = None) -> datetime:
        return now or self.clock.now()

    # =========================================================================
    # Enqueue / Claim
    # =========================================================================

    def enqueue(
        self,
        job_type: str,
        payload: Optional[dict] = None,
        site_id: Optional[str] = None,
        environment_id: Optional[str] = None,
        node_id: Optional[str] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> Job:
        """
        Enqueue a job in its own transaction.

        Raises:
            InvalidInputError: empty job_type
            ConcurrencyConflictError: the site or node is already held
        """
        with self.database.transaction() as conn:
            return enqueue_mutation_job(
                conn,
                job_type,
                self._now(),
                payload=payload,
                site_id=site_id,
                environment_id=environment_id,
                node_id=node_id,
                max_attempts=max_attempts,
            )

    def claim_next_runnable(self, worker_id: str, now: Optional[datetime] = None) -> Optional[Job]:
        """
        Claim the oldest runnable job for `worker_id`.

        A job is runnable when it is queued, its run_after has passed, and no
        running job or older queued job holds its site_id or node_id.
        Ordering is created_at ASC then job_id ASC.

        Returns:
            The claimed Job (status running, attempt_count incremented) or
            None when nothing is runnable
        """
        moment = format_timestamp(self._now(now))

        with self.database.transaction() as conn:
            row = conn.execute(
                """
                SELECT j.job_id FROM jobs j
                WHERE j.status = 'queued'
                  AND (j.run_after IS NULL OR j.run_after <= :now)
                  AND NOT EXISTS (
                      SELECT 1 FROM jobs o
                      WHERE o.job_id != j.job_id
                        AND o.status IN ('queued', 'running')
                        AND (
                            (j.site_id IS NOT NULL AND o.site_id = j.site_id)
                            OR (j.node_id IS NOT NULL AND o.node_id = j.node_id)
                        )
                        AND (
                            o.status = 'running'
                            OR o.created_at < j.created_at
                            OR (o.created_at = j.created_at AND o.job_id < j.job_id)
                        )
                  )
                ORDER BY j.created_at ASC, j.job_id ASC
                LIMIT 1
                """,
                {"now": moment},
            ).fetchone()
            if row is None:
                return None

            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = 'running',
                    locked_by = ?,
                    locked_at = ?,
                    started_at = COALESCE(started_at, ?),
                    attempt_count = attempt_count + 1,
                    updated_at = ?
                WHERE job_id = ? AND status = 'queued'
                """,
                (worker_id, moment, moment, moment, row["job_id"]),
            )
            if cursor.rowcount == 0:
                # Another worker won the claim
                return None

            job = get_job(conn, row["job_id"])

        logger.info(
            f"Worker {worker_id} claimed job {job.job_id} "
            f"(type={job.job_type}, attempt={job.attempt_count}/{job.max_attempts})"
        )
        return job

    # =========================================================================
    # Completion
    # =========================================================================

    def complete_success(self, job_id: str, now: Optional[datetime] = None) -> bool:
        """Mark a running job succeeded. Returns False if it was not running."""
        moment = format_timestamp(self._now(now))
        with self.database.transaction() as conn:
            return mark_job_succeeded(conn, job_id, moment)

    def complete_failure(
        self,
        job_id: str,
        code: str,
        message: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Mark a running job failed.

        The message keeps its last 10 KiB. An environment the job left
        mid-mutation becomes failed with it.
        """
        moment = format_timestamp(self._now(now))
        with self.database.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = 'failed', locked_by = NULL, locked_at = NULL,
                    error_code = ?, error_message = ?,
                    finished_at = ?, updated_at = ?
                WHERE job_id = ? AND status = 'running'
                """,
                (code, truncate_job_message(message), moment, moment, job_id),
            )
            if cursor.rowcount == 0:
                return False
            fail_stranded_environment(conn, get_job(conn, job_id).environment_id, moment)
            return True

    def requeue(
        self,
        job_id: str,
        run_after: datetime,
        code: str,
        message: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """Put a running job back in the queue until `run_after`."""
        moment = format_timestamp(self._now(now))
        with self.database.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = 'queued', locked_by = NULL, locked_at = NULL,
                    error_code = ?, error_message = ?,
                    run_after = ?, updated_at = ?
                WHERE job_id = ? AND status = 'running'
                """,
                (
                    code,
                    truncate_job_message(message),
                    format_timestamp(run_after),
                    moment,
                    job_id,
                ),
            )
            return cursor.rowcount > 0

    def cancel(self, job_id: str) -> Job:
        """
        Cancel a queued or running job.

        An environment the job left mid-mutation becomes failed so it can be
        reset.

        Raises:
            JobNotFoundError: unknown job
            NotCancellableError: job already terminal
        """
        moment = format_timestamp(self._now())
        with self.database.transaction() as conn:
            job = get_job(conn, job_id)
            if job.status not in (JobStatus.QUEUED, JobStatus.RUNNING):
                raise NotCancellableError(job_id, job.status.value)

            conn.execute(
                """
                UPDATE jobs
                SET status = 'cancelled', locked_by = NULL, locked_at = NULL,
                    error_code = NULL, error_message = NULL,
                    finished_at = ?, updated_at = ?
                WHERE job_id = ?
                """,
                (moment, moment, job_id),
            )
            fail_stranded_environment(conn, job.environment_id, moment)
            job = get_job(conn, job_id)

        logger.info(f"Cancelled job {job_id}")
        return job

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, job_id: str) -> Job:
        with self.database.connection() as conn:
            return get_job(conn, job_id)

    def list_jobs(self, limit: int = 100, status: Optional[str] = None) -> list[Job]:
        """Jobs newest first, optionally filtered by status."""
        query = "SELECT * FROM jobs"
        params: list = []
        if status:
            query += " WHERE status = ?"
            params.append(JobStatus(status).value)
        query += " ORDER BY created_at DESC, job_id DESC LIMIT ?"
        params.append(limit)

        with self.database.connection() as conn:
            return [Job.from_row(row) for row in conn.execute(query, params).fetchall()]

    def count_by_status(self) -> dict[str, int]:
        """Job counts keyed by every status (zero when absent)."""
        counts = {status.value: 0 for status in JobStatus}
        with self.database.connection() as conn:
            for row in conn.execute("SELECT status, COUNT(*) AS total FROM jobs GROUP BY status"):
                counts[row["status"]] = row["total"]
        return counts

    def list_running(self) -> list[Job]:
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE status = 'running' ORDER BY created_at ASC"
            ).fetchall()
            return [Job.from_row(row) for row in rows]
