"""
Releases, post-mutation health checks and automatic rollback.

Flow:
1. env_deploy / env_restore / env_promote succeeds
2. A health_check job is enqueued for the environment's current release
   in the same transaction that marks the job succeeded
3. Health check success -> release healthy
4. Health check failure -> release unhealthy, environment and site
   restoring, release_rollback enqueued toward the previous release
5. Rollback success -> previous release current and healthy, environment
   and site active; rollback failure -> both failed
"""

import logging
import sqlite3
from datetime import datetime
from typing import Optional

from src.common.errors import NoRollbackReleaseError, ReleaseNotFoundError
from src.infra.clock import Clock, SystemClock
from src.jobs.entities import HEALTH_CHECKED_JOB_TYPES, Job, JobType
from src.jobs.execution import (
    HEALTH_CHECK_FAILED,
    HEALTH_CHECK_TIMEOUT,
    RELEASE_ROLLBACK_FAILED,
    RELEASE_ROLLBACK_TIMEOUT,
)
from src.jobs.payloads import HealthCheckPayload, ReleaseRollbackPayload
from src.jobs.queue import enqueue_mutation_job, mark_job_failed, mark_job_succeeded
from src.store.database import Database
from src.store.entities import (
    EnvironmentStatus,
    HealthStatus,
    Release,
    SiteStatus,
    format_timestamp,
    generate_uuid,
)
from src.store.queries import (
    activate_environment,
    fail_environment,
    get_environment,
    get_release,
    set_environment_status,
    set_site_status,
)

logger = logging.getLogger(__name__)

RELEASES_ROOT = "/var/www/sites"


def release_path(environment_id: str, release_id: str) -> str:
    return f"{RELEASES_ROOT}/{environment_id}/releases/{release_id}"


def insert_release(
    conn: sqlite3.Connection,
    environment_id: str,
    source_type: str,
    source_ref: str,
    moment: str,
    notes: Optional[str] = None,
) -> Release:
    """Insert a release with unknown health inside the caller's transaction."""
    release = Release(
        release_id=generate_uuid(),
        environment_id=environment_id,
        source_type=source_type,
        source_ref=source_ref,
        path="",
        health_status=HealthStatus.UNKNOWN,
        notes=notes,
        created_at=moment,
    )
    release.path = release_path(environment_id, release.release_id)
    conn.execute(
        """
        INSERT INTO releases (
            release_id, environment_id, source_type, source_ref, path,
            health_status, notes, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            release.release_id,
            release.environment_id,
            release.source_type,
            release.source_ref,
            release.path,
            release.health_status.value,
            release.notes,
            release.created_at,
        ),
    )
    return release


def set_release_health(conn: sqlite3.Connection, release_id: str, health: HealthStatus) -> None:
    cursor = conn.execute(
        "UPDATE releases SET health_status = ? WHERE release_id = ?",
        (health.value, release_id),
    )
    if cursor.rowcount == 0:
        raise ReleaseNotFoundError(release_id)


def set_current_release(conn: sqlite3.Connection, environment_id: str, release_id: str, moment: str) -> None:
    conn.execute(
        "UPDATE environments SET current_release_id = ?, updated_at = ? WHERE environment_id = ?",
        (release_id, moment, environment_id),
    )


def find_previous_release(
    conn: sqlite3.Connection,
    environment_id: str,
    failed_release_id: str,
) -> Optional[Release]:
    """Most recent release of the environment other than the failed one."""
    row = conn.execute(
        """
        SELECT * FROM releases
        WHERE environment_id = ? AND release_id != ?
        ORDER BY created_at DESC, release_id DESC
        LIMIT 1
        """,
        (environment_id, failed_release_id),
    ).fetchone()
    return Release.from_row(row) if row else None


def enqueue_health_check(
    conn: sqlite3.Connection,
    environment_id: str,
    trigger_job_type: str,
    now: datetime,
) -> Optional[Job]:
    """
    Enqueue a health_check for the environment's current release.

    Called inside the transaction that marks the release-changing job
    succeeded, so the site gate passes straight from that job to the check.

    Returns:
        The health_check job, or None when the trigger type is not checked
        or the environment has no current release
    """
    if trigger_job_type not in HEALTH_CHECKED_JOB_TYPES:
        return None

    environment = get_environment(conn, environment_id)
    if not environment.current_release_id:
        logger.warning(
            f"No current release on environment {environment_id}; "
            f"skipping health check after {trigger_job_type}"
        )
        return None

    health_job = enqueue_mutation_job(
        conn,
        JobType.HEALTH_CHECK.value,
        now,
        payload=HealthCheckPayload(
            environment_id=environment.environment_id,
            release_id=environment.current_release_id,
            trigger_job_type=trigger_job_type,
        ).to_payload(),
        site_id=environment.site_id,
        environment_id=environment.environment_id,
        node_id=environment.node_id,
    )
    logger.info(
        f"Health check {health_job.job_id} queued for environment {environment_id} "
        f"after {trigger_job_type}"
    )
    return health_job


class ReleaseService:
    def __init__(self, database: Database, clock: Optional[Clock] = None):
        self.database = database
        self.clock = clock or SystemClock()

    # =========================================================================
    # Health check completion
    # =========================================================================

    def handle_health_check_success(self, job_id: str, environment_id: str, release_id: str) -> None:
        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            release = get_release(conn, release_id)
            if release.environment_id != environment_id:
                raise ReleaseNotFoundError(release_id)
            set_release_health(conn, release_id, HealthStatus.HEALTHY)
            mark_job_succeeded(conn, job_id, moment)

    def handle_health_check_failure(
        self,
        job_id: str,
        environment_id: str,
        release_id: str,
        message: str = "",
        timed_out: bool = False,
    ) -> Job:
        """
        Record a failed health check and enqueue the rollback.

        Returns:
            The release_rollback job

        Raises:
            NoRollbackReleaseError: the environment has no earlier release
        """
        now = self.clock.now()
        moment = format_timestamp(now)
        code = HEALTH_CHECK_TIMEOUT if timed_out else HEALTH_CHECK_FAILED

        with self.database.transaction() as conn:
            environment = get_environment(conn, environment_id)
            get_release(conn, release_id)
            previous = find_previous_release(conn, environment_id, release_id)
            if previous is None:
                raise NoRollbackReleaseError(environment_id, release_id)

            set_release_health(conn, release_id, HealthStatus.UNHEALTHY)
            set_environment_status(conn, environment_id, EnvironmentStatus.RESTORING, moment)
            set_site_status(conn, environment.site_id, SiteStatus.RESTORING, moment)

            # The health job must leave the gate before the rollback enters it
            mark_job_failed(conn, job_id, code, message or code, moment)

            rollback_job = enqueue_mutation_job(
                conn,
                JobType.RELEASE_ROLLBACK.value,
                now,
                payload=ReleaseRollbackPayload(
                    environment_id=environment_id,
                    failed_release_id=release_id,
                    restored_release_id=previous.release_id,
                    health_check_job_id=job_id,
                ).to_payload(),
                site_id=environment.site_id,
                environment_id=environment_id,
                node_id=environment.node_id,
            )

        logger.warning(
            f"Release {release_id} unhealthy on environment {environment_id}; "
            f"rolling back to {previous.release_id} (job {rollback_job.job_id})"
        )
        return rollback_job

    def mark_health_check_failed_without_rollback(
        self,
        job_id: str,
        environment_id: str,
        release_id: str,
        message: str = "",
        timed_out: bool = False,
    ) -> None:
        """Failed health check with nothing to roll back to: environment and site fail."""
        moment = format_timestamp(self.clock.now())
        code = HEALTH_CHECK_TIMEOUT if timed_out else HEALTH_CHECK_FAILED

        with self.database.transaction() as conn:
            environment = get_environment(conn, environment_id)
            set_release_health(conn, release_id, HealthStatus.UNHEALTHY)
            fail_environment(conn, environment, moment)
            mark_job_failed(conn, job_id, code, message or code, moment)

    # =========================================================================
    # Rollback completion
    # =========================================================================

    def apply_rollback_success(self, job_id: str, environment_id: str, restored_release_id: str) -> None:
        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            environment = get_environment(conn, environment_id)
            get_release(conn, restored_release_id)
            set_current_release(conn, environment_id, restored_release_id, moment)
            set_release_health(conn, restored_release_id, HealthStatus.HEALTHY)
            activate_environment(conn, environment, moment)
            mark_job_succeeded(conn, job_id, moment)

        logger.info(f"Environment {environment_id} rolled back to release {restored_release_id}")

    def apply_rollback_failure(
        self,
        job_id: str,
        environment_id: str,
        message: str = "",
        timed_out: bool = False,
    ) -> None:
        moment = format_timestamp(self.clock.now())
        code = RELEASE_ROLLBACK_TIMEOUT if timed_out else RELEASE_ROLLBACK_FAILED
        with self.database.transaction() as conn:
            environment = get_environment(conn, environment_id)
            fail_environment(conn, environment, moment)
            mark_job_failed(conn, job_id, code, message or code, moment)

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, release_id: str) -> Release:
        with self.database.connection() as conn:
            return get_release(conn, release_id)

    def list_by_environment(self, environment_id: str) -> list[Release]:
        """Releases newest first."""
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM releases WHERE environment_id = ? ORDER BY created_at DESC, release_id DESC",
                (environment_id,),
            ).fetchall()
            return [Release.from_row(row) for row in rows]
