"""
Backups: lifecycle, fresh-backup gates and retention cleanup.
"""

from .artifacts import checksum_file, local_artifact_path, placeholder_checksum, storage_path_for
from .scheduler import BackupCleanupScheduler
from .service import (
    FRESH_BACKUP_WINDOW,
    RETENTION_PERIOD,
    BackupCreateResult,
    BackupService,
    ensure_fresh_full_backup,
    is_fresh,
    latest_completed_full_backup,
)

__all__ = [
    # Service
    "BackupService",
    "BackupCreateResult",
    "RETENTION_PERIOD",
    "FRESH_BACKUP_WINDOW",
    # Gates
    "ensure_fresh_full_backup",
    "latest_completed_full_backup",
    "is_fresh",
    # Scheduler
    "BackupCleanupScheduler",
    # Artifacts
    "storage_path_for",
    "local_artifact_path",
    "checksum_file",
    "placeholder_checksum",
]
