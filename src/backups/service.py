"""
Backup lifecycle and retention.

Backup state machine:
    pending -> running -> (completed | failed)
    (completed | failed) -> expired

Provides:
- create: pending backup row + backup_create job sharing its id
- mark_running / mark_completed / mark_failed / mark_expired transitions
- fresh full backup helpers used by updates, restore and promotion
- enqueue_expired_cleanup: one retention pass of the cleanup scheduler
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from src.audit.recorder import AuditRecorder, record_accepted
from src.common.errors import (
    ConcurrencyConflictError,
    InvalidInputError,
    InvalidTransitionError,
)
from src.infra.clock import Clock, SystemClock
from src.jobs.entities import Job, JobType
from src.jobs.payloads import BackupCleanupPayload, BackupCreatePayload
from src.jobs.queue import enqueue_mutation_job, list_active_jobs, mark_job_succeeded
from src.store.database import Database
from src.store.entities import (
    Backup,
    BackupScope,
    BackupStatus,
    format_timestamp,
    generate_uuid,
    parse_timestamp,
)
from src.store.queries import get_backup, get_environment

from .artifacts import placeholder_checksum, storage_path_for

logger = logging.getLogger(__name__)

DEFAULT_BUCKET = "control-plane"
STORAGE_TYPE = "s3"
RETENTION_PERIOD = timedelta(days=30)
FRESH_BACKUP_WINDOW = timedelta(minutes=60)
PLACEHOLDER_SIZE_BYTES = 1

VALID_SCOPES = {scope.value for scope in BackupScope}


@dataclass
class BackupCreateResult:
    backup_id: str
    job_id: str


# =============================================================================
# Transaction-scoped helpers
# =============================================================================

def insert_backup(
    conn: sqlite3.Connection,
    environment_id: str,
    scope: BackupScope,
    status: BackupStatus,
    now: datetime,
    bucket: str = DEFAULT_BUCKET,
    backup_id: Optional[str] = None,
    checksum: Optional[str] = None,
    size_bytes: Optional[int] = None,
) -> Backup:
    moment = format_timestamp(now)
    backup_id = backup_id or generate_uuid()
    backup = Backup(
        backup_id=backup_id,
        environment_id=environment_id,
        backup_scope=scope,
        status=status,
        storage_type=STORAGE_TYPE,
        storage_path=storage_path_for(bucket, environment_id, backup_id),
        retention_until=format_timestamp(now + RETENTION_PERIOD),
        checksum=checksum,
        size_bytes=size_bytes,
        created_at=moment,
        completed_at=moment if status == BackupStatus.COMPLETED else None,
    )
    conn.execute(
        """
        INSERT INTO backups (
            backup_id, environment_id, backup_scope, status, storage_type,
            storage_path, retention_until, checksum, size_bytes, created_at, completed_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            backup.backup_id,
            backup.environment_id,
            backup.backup_scope.value,
            backup.status.value,
            backup.storage_type,
            backup.storage_path,
            backup.retention_until,
            backup.checksum,
            backup.size_bytes,
            backup.created_at,
            backup.completed_at,
        ),
    )
    return backup


def latest_completed_full_backup(
    conn: sqlite3.Connection,
    environment_id: str,
    exclude_backup_id: Optional[str] = None,
) -> Optional[Backup]:
    row = conn.execute(
        """
        SELECT * FROM backups
        WHERE environment_id = ? AND status = ? AND backup_scope = ?
          AND completed_at IS NOT NULL AND backup_id != ?
        ORDER BY completed_at DESC
        LIMIT 1
        """,
        (environment_id, BackupStatus.COMPLETED.value, BackupScope.FULL.value, exclude_backup_id or ""),
    ).fetchone()
    return Backup.from_row(row) if row else None


def is_fresh(backup: Backup, now: datetime, window: timedelta = FRESH_BACKUP_WINDOW) -> bool:
    if not backup.completed_at:
        return False
    return parse_timestamp(backup.completed_at) >= now - window


def ensure_fresh_full_backup(
    conn: sqlite3.Connection,
    environment_id: str,
    now: datetime,
    bucket: str = DEFAULT_BUCKET,
    exclude_backup_id: Optional[str] = None,
) -> str:
    """
    Id of a completed full backup taken within the last hour.

    Reuses the newest one when fresh; otherwise records a completed
    placeholder with a deterministic checksum. `exclude_backup_id` keeps
    a restore from counting the backup it restores as its own safety net.
    """
    latest = latest_completed_full_backup(conn, environment_id, exclude_backup_id)
    if latest is not None and is_fresh(latest, now):
        return latest.backup_id

    backup_id = generate_uuid()
    insert_backup(
        conn,
        environment_id,
        BackupScope.FULL,
        BackupStatus.COMPLETED,
        now,
        bucket=bucket,
        backup_id=backup_id,
        checksum=placeholder_checksum(backup_id),
        size_bytes=PLACEHOLDER_SIZE_BYTES,
    )
    return backup_id


def transition_backup(
    conn: sqlite3.Connection,
    backup_id: str,
    allowed_from: Iterable[BackupStatus],
    target: BackupStatus,
    extra: Optional[dict] = None,
) -> None:
    """
    Move a backup to `target` if its current status allows it.

    Raises:
        BackupNotFoundError: unknown backup
        InvalidTransitionError: current status not in `allowed_from`
    """
    backup = get_backup(conn, backup_id)
    allowed = tuple(allowed_from)
    if backup.status not in allowed:
        raise InvalidTransitionError("backup", backup_id, backup.status.value, target.value)

    updates = ["status = ?"]
    values: list = [target.value]
    for column, value in (extra or {}).items():
        updates.append(f"{column} = ?")
        values.append(value)
    values.extend([backup_id, backup.status.value])

    cursor = conn.execute(
        f"UPDATE backups SET {', '.join(updates)} WHERE backup_id = ? AND status = ?",
        values,
    )
    if cursor.rowcount == 0:
        raise InvalidTransitionError("backup", backup_id, backup.status.value, target.value)


# =============================================================================
# Service
# =============================================================================

class BackupService:
    def __init__(
        self,
        database: Database,
        clock: Optional[Clock] = None,
        audit: Optional[AuditRecorder] = None,
        bucket: str = DEFAULT_BUCKET,
    ):
        self.database = database
        self.clock = clock or SystemClock()
        self.audit = audit
        self.bucket = bucket

    # =========================================================================
    # Create
    # =========================================================================

    def create(self, environment_id: str, backup_scope: str) -> BackupCreateResult:
        """
        Record a pending backup and enqueue backup_create with the same id.

        Raises:
            InvalidInputError: unknown scope
            EnvironmentNotFoundError: unknown environment
            ConcurrencyConflictError: site or node busy (no backup row is kept)
        """
        backup_scope = (backup_scope or "").strip()
        if backup_scope not in VALID_SCOPES:
            raise InvalidInputError(f"backup_scope must be one of db, files, full: {backup_scope!r}")

        now = self.clock.now()
        backup_id = generate_uuid()

        with self.database.transaction() as conn:
            environment = get_environment(conn, environment_id)
            backup = insert_backup(
                conn,
                environment.environment_id,
                BackupScope(backup_scope),
                BackupStatus.PENDING,
                now,
                bucket=self.bucket,
                backup_id=backup_id,
            )
            job = enqueue_mutation_job(
                conn,
                JobType.BACKUP_CREATE.value,
                now,
                payload=BackupCreatePayload(
                    backup_id=backup.backup_id,
                    environment_id=environment.environment_id,
                    backup_scope=backup_scope,
                    storage_path=backup.storage_path,
                ).to_payload(),
                site_id=environment.site_id,
                environment_id=environment.environment_id,
                node_id=environment.node_id,
                job_id=backup.backup_id,
            )

        record_accepted(self.audit, "backup.create", "backup", backup_id)
        return BackupCreateResult(backup_id=backup_id, job_id=job.job_id)

    # =========================================================================
    # Transitions
    # =========================================================================

    def mark_running(self, backup_id: str) -> None:
        with self.database.transaction() as conn:
            transition_backup(conn, backup_id, [BackupStatus.PENDING], BackupStatus.RUNNING)

    def mark_completed(self, backup_id: str, checksum: str, size_bytes: int) -> None:
        if not checksum:
            raise InvalidInputError("checksum is required")
        if size_bytes is None or size_bytes < 0:
            raise InvalidInputError("size_bytes must be non-negative")

        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            transition_backup(
                conn,
                backup_id,
                [BackupStatus.RUNNING],
                BackupStatus.COMPLETED,
                {"checksum": checksum, "size_bytes": size_bytes, "completed_at": moment},
            )

    def mark_failed(self, backup_id: str) -> None:
        with self.database.transaction() as conn:
            transition_backup(conn, backup_id, [BackupStatus.RUNNING], BackupStatus.FAILED)

    def mark_expired(self, backup_id: str) -> None:
        with self.database.transaction() as conn:
            transition_backup(
                conn,
                backup_id,
                [BackupStatus.COMPLETED, BackupStatus.FAILED],
                BackupStatus.EXPIRED,
            )

    # =========================================================================
    # Retention
    # =========================================================================

    def enqueue_expired_cleanup(self) -> list[Job]:
        """
        Enqueue backup_cleanup jobs for backups past retention.

        One pass, one transaction. A site with a cleanup already queued or
        running is skipped entirely, as is a backup already being cleaned;
        at most one cleanup is enqueued per site per pass. Sites busy with
        other mutations are skipped until the next pass.

        Returns:
            The jobs enqueued by this pass
        """
        now = self.clock.now()
        moment = format_timestamp(now)
        enqueued: list[Job] = []

        with self.database.transaction() as conn:
            active_cleanups = list_active_jobs(conn, JobType.BACKUP_CLEANUP.value)
            busy_sites = {job.site_id for job in active_cleanups if job.site_id}
            busy_backups = {job.payload.get("backup_id") for job in active_cleanups}

            candidates = conn.execute(
                """
                SELECT b.backup_id, b.environment_id, b.storage_path,
                       e.site_id, e.node_id
                FROM backups b
                JOIN environments e ON e.environment_id = b.environment_id
                WHERE b.retention_until < ?
                  AND b.status IN (?, ?)
                ORDER BY b.retention_until ASC, b.created_at ASC
                """,
                (moment, BackupStatus.COMPLETED.value, BackupStatus.FAILED.value),
            ).fetchall()

            for row in candidates:
                if row["site_id"] in busy_sites or row["backup_id"] in busy_backups:
                    continue
                try:
                    job = enqueue_mutation_job(
                        conn,
                        JobType.BACKUP_CLEANUP.value,
                        now,
                        payload=BackupCleanupPayload(
                            backup_id=row["backup_id"],
                            environment_id=row["environment_id"],
                            storage_path=row["storage_path"],
                        ).to_payload(),
                        site_id=row["site_id"],
                        environment_id=row["environment_id"],
                        node_id=row["node_id"],
                    )
                except ConcurrencyConflictError:
                    busy_sites.add(row["site_id"])
                    continue
                busy_sites.add(row["site_id"])
                busy_backups.add(row["backup_id"])
                enqueued.append(job)

        if enqueued:
            logger.info(f"[BackupCleanup] Enqueued {len(enqueued)} cleanup job(s)")
        return enqueued

    def mark_cleanup_succeeded(self, job_id: str, backup_id: str) -> None:
        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            transition_backup(
                conn,
                backup_id,
                [BackupStatus.COMPLETED, BackupStatus.FAILED],
                BackupStatus.EXPIRED,
            )
            mark_job_succeeded(conn, job_id, moment)

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, backup_id: str) -> Backup:
        with self.database.connection() as conn:
            return get_backup(conn, backup_id)

    def list_by_environment(self, environment_id: str) -> list[Backup]:
        """Backups newest first."""
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM backups WHERE environment_id = ? ORDER BY created_at DESC",
                (environment_id,),
            ).fetchall()
            return [Backup.from_row(row) for row in rows]
