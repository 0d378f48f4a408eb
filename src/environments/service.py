"""
Environment lifecycle.

Every mutating command runs in one transaction:
1. Load the environment and require it to be active
2. Validate the command's own preconditions
3. Move the environment (and its site) to the in-flight status
4. Enqueue the job; a ConcurrencyConflict rolls everything back

Completion APIs are called by handlers once the playbook has finished.
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Optional

from src.audit.recorder import AuditRecorder, record_accepted
from src.backups.service import ensure_fresh_full_backup
from src.common.errors import (
    BackupNotCompletedError,
    BackupNotFoundError,
    EnvironmentNotActiveError,
    EnvironmentNotFoundError,
    InvalidInputError,
    ResourceNotFailedError,
)
from src.infra.clock import Clock, SystemClock
from src.jobs.entities import JobType
from src.jobs.execution import ENV_MUTATION_FAILED, ENV_RESTORE_FAILED
from src.jobs.payloads import (
    CachePurgePayload,
    CacheTogglePayload,
    EnvCreatePayload,
    EnvDeployPayload,
    EnvRestorePayload,
    EnvUpdatePayload,
)
from src.jobs.queue import (
    assert_no_active_mutation,
    enqueue_mutation_job,
    mark_job_failed,
    mark_job_succeeded,
)
from src.releases.service import enqueue_health_check, insert_release, set_current_release
from src.store.database import Database
from src.store.entities import (
    BackupStatus,
    DriftStatus,
    Environment,
    EnvironmentStatus,
    EnvironmentType,
    PromotionPreset,
    SiteStatus,
    format_timestamp,
    generate_uuid,
)
from src.store.queries import (
    activate_environment,
    bump_environment_version,
    fail_environment,
    get_backup,
    get_environment,
    get_site,
    set_environment_status,
    set_site_status,
    sync_site_status,
)

from .preview import derive_preview_url

logger = logging.getLogger(__name__)

CREATABLE_TYPES = (EnvironmentType.STAGING.value, EnvironmentType.CLONE.value)
PROMOTION_PRESETS = tuple(preset.value for preset in PromotionPreset)
DEPLOY_SOURCE_TYPES = ("git", "upload")
UPDATE_SCOPES = ("core", "plugins", "themes", "all")


@dataclass
class EnvironmentCreateResult:
    environment_id: str
    job_id: str


@dataclass
class DeployResult:
    job_id: str
    release_id: str


@dataclass
class UpdatesResult:
    job_id: str
    pre_update_backup_id: str


@dataclass
class RestoreResult:
    job_id: str
    pre_restore_backup_id: str


def load_active_environment(conn: sqlite3.Connection, environment_id: str) -> Environment:
    """
    Raises:
        EnvironmentNotFoundError: unknown environment
        EnvironmentNotActiveError: environment is not active
    """
    environment = get_environment(conn, environment_id)
    if environment.status != EnvironmentStatus.ACTIVE:
        raise EnvironmentNotActiveError(environment_id, environment.status.value)
    return environment


def mark_in_flight(
    conn: sqlite3.Connection,
    environment: Environment,
    status: EnvironmentStatus,
    moment: str,
) -> None:
    """Environment and its site both take the in-flight status."""
    set_environment_status(conn, environment.environment_id, status, moment)
    set_site_status(conn, environment.site_id, SiteStatus(status.value), moment)


class EnvironmentService:
    def __init__(
        self,
        database: Database,
        clock: Optional[Clock] = None,
        audit: Optional[AuditRecorder] = None,
        bucket: str = "control-plane",
    ):
        self.database = database
        self.clock = clock or SystemClock()
        self.audit = audit
        self.bucket = bucket

    # =========================================================================
    # Create
    # =========================================================================

    def create(
        self,
        site_id: str,
        name: str,
        slug: str,
        environment_type: str,
        source_environment_id: str,
        promotion_preset: str = PromotionPreset.CONTENT_PROTECT.value,
    ) -> EnvironmentCreateResult:
        """
        Clone an environment of the same site into a new staging/clone one.

        The new environment lives on the source's node and gets a preview
        URL on the source's sslip domain.

        Raises:
            InvalidInputError: bad name, slug, type, preset, missing source,
                or slug already used on the site
            SiteNotFoundError: unknown site
            EnvironmentNotFoundError: source missing or on another site
            ConcurrencyConflictError: site or node busy
        """
        name = (name or "").strip()
        slug = (slug or "").strip().lower()
        source_environment_id = (source_environment_id or "").strip()
        if not name or not slug:
            raise InvalidInputError("name and slug are required")
        if environment_type not in CREATABLE_TYPES:
            raise InvalidInputError(f"environment_type must be staging or clone: {environment_type!r}")
        if promotion_preset not in PROMOTION_PRESETS:
            raise InvalidInputError(f"unknown promotion_preset: {promotion_preset!r}")
        if not source_environment_id:
            raise InvalidInputError("source_environment_id is required")

        now = self.clock.now()
        moment = format_timestamp(now)
        environment_id = generate_uuid()

        with self.database.transaction() as conn:
            site = get_site(conn, site_id)
            source = get_environment(conn, source_environment_id)
            if source.site_id != site.site_id:
                raise EnvironmentNotFoundError(source_environment_id)

            taken = conn.execute(
                "SELECT 1 FROM environments WHERE site_id = ? AND slug = ?",
                (site.site_id, slug),
            ).fetchone()
            if taken:
                raise InvalidInputError(f"environment slug already exists on site: {slug}")

            try:
                preview_url = derive_preview_url(source.preview_url, environment_id)
            except ValueError as e:
                raise InvalidInputError(str(e)) from e

            conn.execute(
                """
                INSERT INTO environments (
                    environment_id, site_id, name, slug, environment_type, status,
                    node_id, source_environment_id, promotion_preset, preview_url,
                    drift_status, fastcgi_cache_enabled, redis_cache_enabled,
                    state_version, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, 1, 1, ?, ?)
                """,
                (
                    environment_id,
                    site.site_id,
                    name,
                    slug,
                    environment_type,
                    EnvironmentStatus.CLONING.value,
                    source.node_id,
                    source.environment_id,
                    promotion_preset,
                    preview_url,
                    DriftStatus.UNKNOWN.value,
                    moment,
                    moment,
                ),
            )
            if site.status == SiteStatus.ACTIVE:
                set_site_status(conn, site.site_id, SiteStatus.CLONING, moment)

            job = enqueue_mutation_job(
                conn,
                JobType.ENV_CREATE.value,
                now,
                payload=EnvCreatePayload(
                    site_id=site.site_id,
                    environment_id=environment_id,
                    node_id=source.node_id,
                    source_environment_id=source.environment_id,
                ).to_payload(),
                site_id=site.site_id,
                environment_id=environment_id,
                node_id=source.node_id,
            )

        record_accepted(self.audit, "environment.create", "environment", environment_id)
        logger.info(f"Cloning environment {source_environment_id} into {environment_id} ({slug})")
        return EnvironmentCreateResult(environment_id=environment_id, job_id=job.job_id)

    # =========================================================================
    # Deploy / updates
    # =========================================================================

    def deploy(self, environment_id: str, source_type: str, source_ref: str) -> DeployResult:
        """
        Record a new release and enqueue env_deploy.

        Raises:
            InvalidInputError: unknown source_type or empty source_ref
            EnvironmentNotActiveError: environment is not active
            ConcurrencyConflictError: site or node busy
        """
        source_ref = (source_ref or "").strip()
        if source_type not in DEPLOY_SOURCE_TYPES:
            raise InvalidInputError(f"source_type must be git or upload: {source_type!r}")
        if not source_ref:
            raise InvalidInputError("source_ref is required")

        now = self.clock.now()
        moment = format_timestamp(now)

        with self.database.transaction() as conn:
            environment = load_active_environment(conn, environment_id)
            release = insert_release(conn, environment.environment_id, source_type, source_ref, moment)
            mark_in_flight(conn, environment, EnvironmentStatus.DEPLOYING, moment)

            job = enqueue_mutation_job(
                conn,
                JobType.ENV_DEPLOY.value,
                now,
                payload=EnvDeployPayload(
                    environment_id=environment.environment_id,
                    release_id=release.release_id,
                    source_type=source_type,
                    source_ref=source_ref,
                ).to_payload(),
                site_id=environment.site_id,
                environment_id=environment.environment_id,
                node_id=environment.node_id,
            )

        record_accepted(self.audit, "environment.deploy", "environment", environment_id)
        return DeployResult(job_id=job.job_id, release_id=release.release_id)

    def updates(self, environment_id: str, scope: str) -> UpdatesResult:
        """
        Enqueue env_update behind a fresh full backup.

        Raises:
            InvalidInputError: scope not one of core, plugins, themes, all
            EnvironmentNotActiveError: environment is not active
            ConcurrencyConflictError: site or node busy
        """
        if scope not in UPDATE_SCOPES:
            raise InvalidInputError(f"scope must be one of {', '.join(UPDATE_SCOPES)}: {scope!r}")

        now = self.clock.now()
        moment = format_timestamp(now)

        with self.database.transaction() as conn:
            environment = load_active_environment(conn, environment_id)
            mark_in_flight(conn, environment, EnvironmentStatus.DEPLOYING, moment)
            backup_id = ensure_fresh_full_backup(conn, environment.environment_id, now, self.bucket)

            job = enqueue_mutation_job(
                conn,
                JobType.ENV_UPDATE.value,
                now,
                payload=EnvUpdatePayload(
                    environment_id=environment.environment_id,
                    scope=scope,
                    pre_update_backup_id=backup_id,
                    pre_update_backup_fresh=True,
                ).to_payload(),
                site_id=environment.site_id,
                environment_id=environment.environment_id,
                node_id=environment.node_id,
            )

        record_accepted(self.audit, "environment.updates", "environment", environment_id)
        return UpdatesResult(job_id=job.job_id, pre_update_backup_id=backup_id)

    # =========================================================================
    # Restore
    # =========================================================================

    def restore(self, environment_id: str, backup_id: str) -> RestoreResult:
        """
        Restore a completed backup of this environment.

        Raises:
            EnvironmentNotActiveError: environment is not active
            BackupNotFoundError: unknown backup or one of another environment
            BackupNotCompletedError: backup not completed, or missing its
                checksum or size
            ConcurrencyConflictError: site or node busy
        """
        backup_id = (backup_id or "").strip()
        if not backup_id:
            raise InvalidInputError("backup_id is required")

        now = self.clock.now()
        moment = format_timestamp(now)

        with self.database.transaction() as conn:
            environment = load_active_environment(conn, environment_id)

            backup = get_backup(conn, backup_id)
            if backup.environment_id != environment.environment_id:
                raise BackupNotFoundError(backup_id)
            if backup.status != BackupStatus.COMPLETED:
                raise BackupNotCompletedError(backup_id, f"status is {backup.status.value}")
            if not backup.checksum:
                raise BackupNotCompletedError(backup_id, "checksum missing")
            if not backup.size_bytes or backup.size_bytes <= 0:
                raise BackupNotCompletedError(backup_id, "size is not positive")

            mark_in_flight(conn, environment, EnvironmentStatus.RESTORING, moment)
            pre_restore_backup_id = ensure_fresh_full_backup(
                conn,
                environment.environment_id,
                now,
                self.bucket,
                exclude_backup_id=backup_id,
            )

            job = enqueue_mutation_job(
                conn,
                JobType.ENV_RESTORE.value,
                now,
                payload=EnvRestorePayload(
                    environment_id=environment.environment_id,
                    backup_id=backup_id,
                    pre_restore_backup_id=pre_restore_backup_id,
                    pre_restore_backup_fresh=True,
                ).to_payload(),
                site_id=environment.site_id,
                environment_id=environment.environment_id,
                node_id=environment.node_id,
            )
            conn.execute(
                """
                INSERT INTO restore_requests (job_id, environment_id, backup_id, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (job.job_id, environment.environment_id, backup_id, moment),
            )

        record_accepted(self.audit, "environment.restore", "environment", environment_id)
        return RestoreResult(job_id=job.job_id, pre_restore_backup_id=pre_restore_backup_id)

    # =========================================================================
    # Caches
    # =========================================================================

    def toggle_cache(
        self,
        environment_id: str,
        fastcgi_cache_enabled: Optional[bool] = None,
        redis_cache_enabled: Optional[bool] = None,
    ) -> str:
        """
        Store the requested cache flags and enqueue env_cache_toggle.

        The environment stays active; the flags are the desired state the
        playbook converges the node to.

        Returns:
            job_id

        Raises:
            InvalidInputError: neither flag given
        """
        if fastcgi_cache_enabled is None and redis_cache_enabled is None:
            raise InvalidInputError("at least one of fastcgi_cache_enabled, redis_cache_enabled is required")

        now = self.clock.now()
        moment = format_timestamp(now)

        with self.database.transaction() as conn:
            environment = load_active_environment(conn, environment_id)

            updates = []
            values: list = []
            if fastcgi_cache_enabled is not None:
                updates.append("fastcgi_cache_enabled = ?")
                values.append(1 if fastcgi_cache_enabled else 0)
            if redis_cache_enabled is not None:
                updates.append("redis_cache_enabled = ?")
                values.append(1 if redis_cache_enabled else 0)
            values.append(environment.environment_id)
            conn.execute(
                f"UPDATE environments SET {', '.join(updates)} WHERE environment_id = ?",
                values,
            )
            bump_environment_version(conn, environment.environment_id, moment)

            job = enqueue_mutation_job(
                conn,
                JobType.ENV_CACHE_TOGGLE.value,
                now,
                payload=CacheTogglePayload(
                    environment_id=environment.environment_id,
                    fastcgi_cache_enabled=fastcgi_cache_enabled,
                    redis_cache_enabled=redis_cache_enabled,
                ).to_payload(),
                site_id=environment.site_id,
                environment_id=environment.environment_id,
                node_id=environment.node_id,
            )

        record_accepted(self.audit, "environment.cache_toggle", "environment", environment_id)
        return job.job_id

    def purge_cache(self, environment_id: str) -> str:
        """Enqueue cache_purge for the caches currently enabled. Returns job_id."""
        now = self.clock.now()

        with self.database.transaction() as conn:
            environment = load_active_environment(conn, environment_id)
            job = enqueue_mutation_job(
                conn,
                JobType.CACHE_PURGE.value,
                now,
                payload=CachePurgePayload(
                    environment_id=environment.environment_id,
                    fastcgi_cache_enabled=environment.fastcgi_cache_enabled,
                    redis_cache_enabled=environment.redis_cache_enabled,
                ).to_payload(),
                site_id=environment.site_id,
                environment_id=environment.environment_id,
                node_id=environment.node_id,
            )

        record_accepted(self.audit, "environment.cache_purge", "environment", environment_id)
        return job.job_id

    # =========================================================================
    # Reset
    # =========================================================================

    def reset_failed(self, environment_id: str) -> Environment:
        """
        Return a failed environment to active.

        The site follows once all of its environments are active.

        Raises:
            ResourceNotFailedError: environment is not failed
            ConcurrencyConflictError: a queued or running job holds the site
        """
        moment = format_timestamp(self.clock.now())

        with self.database.transaction() as conn:
            environment = get_environment(conn, environment_id)
            if environment.status != EnvironmentStatus.FAILED:
                raise ResourceNotFailedError("environment", environment_id, environment.status.value)

            assert_no_active_mutation(conn, environment.site_id, None)
            set_environment_status(conn, environment_id, EnvironmentStatus.ACTIVE, moment)
            sync_site_status(conn, environment.site_id, moment)
            environment = get_environment(conn, environment_id)

        record_accepted(self.audit, "environment.reset", "environment", environment_id)
        return environment

    # =========================================================================
    # Completion
    # =========================================================================

    def mark_create_succeeded(self, job_id: str, environment_id: str) -> None:
        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            activate_environment(conn, get_environment(conn, environment_id), moment)
            mark_job_succeeded(conn, job_id, moment)

    def mark_create_failed(
        self,
        job_id: str,
        environment_id: str,
        code: str = ENV_MUTATION_FAILED,
        message: str = "",
    ) -> None:
        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            fail_environment(conn, get_environment(conn, environment_id), moment)
            mark_job_failed(conn, job_id, code or ENV_MUTATION_FAILED, message or "environment clone failed", moment)

    def mark_deploy_or_update_succeeded(
        self,
        job_id: str,
        environment_id: str,
        release_id: Optional[str] = None,
    ) -> None:
        now = self.clock.now()
        moment = format_timestamp(now)
        with self.database.transaction() as conn:
            environment = get_environment(conn, environment_id)
            if release_id:
                set_current_release(conn, environment_id, release_id, moment)
            activate_environment(conn, environment, moment)
            mark_job_succeeded(conn, job_id, moment)
            if release_id:
                enqueue_health_check(conn, environment_id, JobType.ENV_DEPLOY.value, now)

    def mark_deploy_or_update_failed(
        self,
        job_id: str,
        environment_id: str,
        code: str = ENV_MUTATION_FAILED,
        message: str = "",
    ) -> None:
        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            fail_environment(conn, get_environment(conn, environment_id), moment)
            mark_job_failed(conn, job_id, code or ENV_MUTATION_FAILED, message or "environment mutation failed", moment)

    def mark_restore_succeeded(self, job_id: str, environment_id: str) -> None:
        now = self.clock.now()
        moment = format_timestamp(now)
        with self.database.transaction() as conn:
            activate_environment(conn, get_environment(conn, environment_id), moment)
            conn.execute("DELETE FROM restore_requests WHERE job_id = ?", (job_id,))
            mark_job_succeeded(conn, job_id, moment)
            enqueue_health_check(conn, environment_id, JobType.ENV_RESTORE.value, now)

    def mark_restore_failed(
        self,
        job_id: str,
        environment_id: str,
        code: str = ENV_RESTORE_FAILED,
        message: str = "",
    ) -> None:
        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            fail_environment(conn, get_environment(conn, environment_id), moment)
            conn.execute("DELETE FROM restore_requests WHERE job_id = ?", (job_id,))
            mark_job_failed(conn, job_id, code or ENV_RESTORE_FAILED, message or "environment restore failed", moment)

    def mark_cache_succeeded(self, job_id: str) -> None:
        """Cache toggle or purge done; the environment was never taken out of active."""
        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            mark_job_succeeded(conn, job_id, moment)

    def mark_cache_failed(self, job_id: str, code: str, message: str = "") -> None:
        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            mark_job_failed(conn, job_id, code, message or code, moment)

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, environment_id: str) -> Environment:
        with self.database.connection() as conn:
            return get_environment(conn, environment_id)

    def list_by_site(self, site_id: str) -> list[Environment]:
        with self.database.connection() as conn:
            get_site(conn, site_id)
            rows = conn.execute(
                "SELECT * FROM environments WHERE site_id = ? ORDER BY created_at ASC, environment_id ASC",
                (site_id,),
            ).fetchall()
            return [Environment.from_row(row) for row in rows]
