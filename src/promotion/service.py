"""
Drift checks and promotion between environments of one site.

Promotion gates:
- source drift_status must be clean (set by a drift check)
- target must have a completed full backup from the last 60 minutes

A drift check marks the environment clean when it is requested; the
drift_check job flips it to drifted if the comparison fails.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional

from src.audit.recorder import AuditRecorder, record_accepted
from src.backups.service import is_fresh, latest_completed_full_backup
from src.common.errors import BackupGateNotMetError, DriftGateNotMetError, InvalidInputError
from src.environments.service import load_active_environment, mark_in_flight
from src.infra.clock import Clock, SystemClock
from src.jobs.entities import JobType
from src.jobs.execution import ENV_PROMOTE_FAILED
from src.jobs.payloads import DriftCheckPayload, EnvPromotePayload
from src.jobs.queue import enqueue_mutation_job, mark_job_failed, mark_job_succeeded
from src.releases.service import enqueue_health_check, insert_release, set_current_release
from src.store.database import Database
from src.store.entities import (
    DriftCheck,
    DriftStatus,
    EnvironmentStatus,
    format_timestamp,
    generate_uuid,
)
from src.store.queries import activate_environment, fail_environment, find_drift_check, get_environment

logger = logging.getLogger(__name__)

PROMOTE_SOURCE_TYPE = "promote"


@dataclass
class DriftCheckResult:
    drift_check_id: str
    job_id: str


@dataclass
class PromoteResult:
    job_id: str
    release_id: str
    pre_promote_backup_id: str


class PromotionService:
    def __init__(
        self,
        database: Database,
        clock: Optional[Clock] = None,
        audit: Optional[AuditRecorder] = None,
    ):
        self.database = database
        self.clock = clock or SystemClock()
        self.audit = audit

    # =========================================================================
    # Drift check
    # =========================================================================

    def drift_check(self, environment_id: str) -> DriftCheckResult:
        """
        Record a clean drift check and enqueue drift_check with the same id.

        Raises:
            EnvironmentNotActiveError: environment is not active
            ConcurrencyConflictError: site or node busy
        """
        now = self.clock.now()
        moment = format_timestamp(now)
        drift_check_id = generate_uuid()

        with self.database.transaction() as conn:
            environment = load_active_environment(conn, environment_id)
            conn.execute(
                """
                INSERT INTO drift_checks (
                    drift_check_id, environment_id, promotion_preset, status,
                    db_checksums, file_checksums, checked_at
                ) VALUES (?, ?, ?, ?, '{}', '{}', ?)
                """,
                (
                    drift_check_id,
                    environment.environment_id,
                    environment.promotion_preset.value,
                    DriftStatus.CLEAN.value,
                    moment,
                ),
            )
            conn.execute(
                """
                UPDATE environments
                SET drift_status = ?, drift_checked_at = ?, last_drift_check_id = ?,
                    state_version = state_version + 1, updated_at = ?
                WHERE environment_id = ?
                """,
                (DriftStatus.CLEAN.value, moment, drift_check_id, moment, environment.environment_id),
            )
            job = enqueue_mutation_job(
                conn,
                JobType.DRIFT_CHECK.value,
                now,
                payload=DriftCheckPayload(
                    environment_id=environment.environment_id,
                    drift_check_id=drift_check_id,
                    promotion_preset=environment.promotion_preset.value,
                ).to_payload(),
                site_id=environment.site_id,
                environment_id=environment.environment_id,
                node_id=environment.node_id,
                job_id=drift_check_id,
            )

        record_accepted(self.audit, "environment.drift_check", "environment", environment_id)
        return DriftCheckResult(drift_check_id=drift_check_id, job_id=job.job_id)

    def mark_drift_check_succeeded(
        self,
        job_id: str,
        drift_check_id: str,
        db_checksums: Optional[dict] = None,
        file_checksums: Optional[dict] = None,
    ) -> None:
        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            conn.execute(
                """
                UPDATE drift_checks
                SET db_checksums = ?, file_checksums = ?, checked_at = ?
                WHERE drift_check_id = ?
                """,
                (
                    json.dumps(db_checksums or {}, sort_keys=True),
                    json.dumps(file_checksums or {}, sort_keys=True),
                    moment,
                    drift_check_id,
                ),
            )
            mark_job_succeeded(conn, job_id, moment)

    def mark_drift_check_failed(
        self,
        job_id: str,
        drift_check_id: str,
        environment_id: str,
        code: str,
        message: str = "",
    ) -> None:
        """Drift check could not confirm a clean environment: close the promotion gate."""
        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            conn.execute(
                "UPDATE drift_checks SET status = ?, checked_at = ? WHERE drift_check_id = ?",
                (DriftStatus.DRIFTED.value, moment, drift_check_id),
            )
            conn.execute(
                """
                UPDATE environments
                SET drift_status = ?, drift_checked_at = ?,
                    state_version = state_version + 1, updated_at = ?
                WHERE environment_id = ? AND last_drift_check_id = ?
                """,
                (DriftStatus.DRIFTED.value, moment, moment, environment_id, drift_check_id),
            )
            mark_job_failed(conn, job_id, code, message or code, moment)

    def get_drift_check(self, drift_check_id: str) -> Optional[DriftCheck]:
        with self.database.connection() as conn:
            return find_drift_check(conn, drift_check_id)

    # =========================================================================
    # Promote
    # =========================================================================

    def promote(self, source_environment_id: str, target_environment_id: str) -> PromoteResult:
        """
        Promote the source environment's content onto the target.

        Raises:
            InvalidInputError: same environment, or environments on different sites
            EnvironmentNotActiveError: source or target not active
            DriftGateNotMetError: source drift status is not clean
            BackupGateNotMetError: target lacks a fresh completed full backup
            ConcurrencyConflictError: site or node busy
        """
        if source_environment_id == target_environment_id:
            raise InvalidInputError("source and target environments must differ")

        now = self.clock.now()
        moment = format_timestamp(now)

        with self.database.transaction() as conn:
            source = load_active_environment(conn, source_environment_id)
            target = load_active_environment(conn, target_environment_id)
            if source.site_id != target.site_id:
                raise InvalidInputError("source and target environments must belong to the same site")

            if source.drift_status != DriftStatus.CLEAN or not source.last_drift_check_id:
                raise DriftGateNotMetError(source.environment_id, source.drift_status.value)

            backup = latest_completed_full_backup(conn, target.environment_id)
            if backup is None or not is_fresh(backup, now):
                raise BackupGateNotMetError(target.environment_id)

            release = insert_release(
                conn,
                target.environment_id,
                PROMOTE_SOURCE_TYPE,
                source.environment_id,
                moment,
                notes=f"promoted from {source.slug}",
            )
            mark_in_flight(conn, target, EnvironmentStatus.DEPLOYING, moment)

            job = enqueue_mutation_job(
                conn,
                JobType.ENV_PROMOTE.value,
                now,
                payload=EnvPromotePayload(
                    source_environment_id=source.environment_id,
                    target_environment_id=target.environment_id,
                    promotion_preset=source.promotion_preset.value,
                    drift_check_id=source.last_drift_check_id,
                    pre_promote_backup_id=backup.backup_id,
                    release_id=release.release_id,
                ).to_payload(),
                site_id=target.site_id,
                environment_id=target.environment_id,
                node_id=target.node_id,
            )

        record_accepted(self.audit, "environment.promote", "environment", target_environment_id)
        logger.info(
            f"Promoting {source_environment_id} -> {target_environment_id} "
            f"(job {job.job_id}, backup {backup.backup_id})"
        )
        return PromoteResult(
            job_id=job.job_id,
            release_id=release.release_id,
            pre_promote_backup_id=backup.backup_id,
        )

    def mark_promote_succeeded(self, job_id: str, target_environment_id: str, release_id: str) -> None:
        now = self.clock.now()
        moment = format_timestamp(now)
        with self.database.transaction() as conn:
            target = get_environment(conn, target_environment_id)
            set_current_release(conn, target_environment_id, release_id, moment)
            activate_environment(conn, target, moment)
            mark_job_succeeded(conn, job_id, moment)
            enqueue_health_check(conn, target_environment_id, JobType.ENV_PROMOTE.value, now)

    def mark_promote_failed(
        self,
        job_id: str,
        target_environment_id: str,
        code: str = ENV_PROMOTE_FAILED,
        message: str = "",
    ) -> None:
        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            fail_environment(conn, get_environment(conn, target_environment_id), moment)
            mark_job_failed(conn, job_id, code or ENV_PROMOTE_FAILED, message or "environment promotion failed", moment)
