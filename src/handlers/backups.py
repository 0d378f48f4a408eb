"""
backup_create and backup_cleanup handlers.

backup_create moves its Backup row pending -> running -> completed|failed.
A failed attempt is never retried: the row is already `failed`, and a
second attempt could not move it to `running` again.
"""

from pathlib import Path

from src.backups.artifacts import checksum_file, local_artifact_path
from src.backups.service import BackupService
from src.jobs.entities import Job, JobType
from src.jobs.execution import ANSIBLE_UNEXPECTED_ERROR, ExecutionError
from src.jobs.payloads import BackupCleanupPayload, BackupCreatePayload, parse_payload
from src.runner.ansible import PlaybookRunner
from src.store.database import Database

from .base import PlaybookJobHandler, force_non_retryable, log_stage


class BackupCreateHandler(PlaybookJobHandler):
    job_type = JobType.BACKUP_CREATE.value
    playbook = "backup-create"

    def __init__(
        self,
        database: Database,
        runner: PlaybookRunner,
        backups: BackupService,
        artifact_root: str | Path,
    ):
        super().__init__(database, runner)
        self.backups = backups
        self.artifact_root = Path(artifact_root)

    def handle(self, job: Job) -> None:
        parse_payload(job, BackupCreatePayload)
        # backup_create jobs share their id with the Backup row
        backup = self.backups.get(job.job_id)
        environment, node = self.load_environment(backup.environment_id)
        artifact_path = local_artifact_path(backup.storage_path, self.artifact_root)

        self.backups.mark_running(backup.backup_id)
        log_stage(job, "start", backup_id=backup.backup_id, environment_id=environment.environment_id)

        try:
            self.run_playbook(node, {
                "backup_id": backup.backup_id,
                "environment_id": backup.environment_id,
                "backup_scope": backup.backup_scope.value,
                "storage_path": backup.storage_path,
                "artifact_path": str(artifact_path),
            })
        except Exception as e:
            self.backups.mark_failed(backup.backup_id)
            error = force_non_retryable(e)
            self.record_failure(job, error, backup_id=backup.backup_id)
            raise error from e

        try:
            checksum, size_bytes = checksum_file(artifact_path)
        except OSError as e:
            self.backups.mark_failed(backup.backup_id)
            error = ExecutionError(
                ANSIBLE_UNEXPECTED_ERROR,
                f"backup artifact unreadable at {artifact_path}: {e}",
                retryable=False,
            )
            self.record_failure(job, error, backup_id=backup.backup_id)
            raise error from e

        self.backups.mark_completed(backup.backup_id, checksum, size_bytes)
        log_stage(job, "succeeded", backup_id=backup.backup_id, size_bytes=size_bytes)


class BackupCleanupHandler(PlaybookJobHandler):
    """Delete an expired backup's archive, then mark the row `expired`."""

    job_type = JobType.BACKUP_CLEANUP.value
    playbook = "backup-cleanup"

    def __init__(
        self,
        database: Database,
        runner: PlaybookRunner,
        backups: BackupService,
        artifact_root: str | Path,
    ):
        super().__init__(database, runner)
        self.backups = backups
        self.artifact_root = Path(artifact_root)

    def handle(self, job: Job) -> None:
        payload = parse_payload(job, BackupCleanupPayload)
        environment, node = self.load_environment(payload.environment_id)
        log_stage(job, "start", backup_id=payload.backup_id, environment_id=environment.environment_id)

        try:
            self.run_playbook(node, {
                "backup_id": payload.backup_id,
                "environment_id": payload.environment_id,
                "storage_path": payload.storage_path,
            })
        except Exception as e:
            self.record_failure(job, e, backup_id=payload.backup_id)
            raise

        local_artifact_path(payload.storage_path, self.artifact_root).unlink(missing_ok=True)
        self.backups.mark_cleanup_succeeded(job.job_id, payload.backup_id)
        log_stage(job, "succeeded", backup_id=payload.backup_id)
