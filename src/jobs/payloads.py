"""
Job payload schemas.

Each job type stores a JSON object on the job row. Producers build payloads
from these models; handlers parse them back and reject unknown fields.
"""

from typing import Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .entities import Job, JobType
from .execution import ANSIBLE_UNKNOWN_EXIT, ExecutionError


class JobPayload(BaseModel):
    """Base for all payloads: unknown fields are an error."""

    model_config = ConfigDict(extra="forbid")

    def to_payload(self) -> dict:
        return self.model_dump(exclude_none=True)


# =============================================================================
# Nodes / Sites
# =============================================================================

class NodeProvisionPayload(JobPayload):
    node_id: str = Field(..., description="Node being provisioned")


class SiteCreatePayload(JobPayload):
    site_id: str
    environment_id: str = Field(..., description="Production environment of the new site")
    node_id: str


class SiteImportPayload(JobPayload):
    site_id: str
    environment_id: str
    node_id: str
    archive_url: str = Field(..., description="http(s) URL of the site archive")
    release_id: str = Field(..., description="Release row created for the imported content")
    target_url: str = Field(..., description="Public URL the imported site is rewritten to")


# =============================================================================
# Environments
# =============================================================================

class EnvCreatePayload(JobPayload):
    site_id: str
    environment_id: str
    node_id: str
    source_environment_id: str


class EnvDeployPayload(JobPayload):
    environment_id: str
    release_id: str
    source_type: Literal["git", "upload"]
    source_ref: str


class EnvUpdatePayload(JobPayload):
    environment_id: str
    scope: Literal["core", "plugins", "themes", "all"]
    pre_update_backup_id: str
    pre_update_backup_fresh: bool = True


class EnvRestorePayload(JobPayload):
    environment_id: str
    backup_id: str
    pre_restore_backup_id: str
    pre_restore_backup_fresh: bool = True


class CacheTogglePayload(JobPayload):
    environment_id: str
    fastcgi_cache_enabled: Optional[bool] = None
    redis_cache_enabled: Optional[bool] = None


class CachePurgePayload(JobPayload):
    environment_id: str
    fastcgi_cache_enabled: bool
    redis_cache_enabled: bool


# =============================================================================
# Backups
# =============================================================================

class BackupCreatePayload(JobPayload):
    backup_id: str
    environment_id: str
    backup_scope: Literal["db", "files", "full"]
    storage_path: str


class BackupCleanupPayload(JobPayload):
    backup_id: str
    environment_id: str
    storage_path: str


# =============================================================================
# Domains
# =============================================================================

class DomainAddPayload(JobPayload):
    environment_id: str
    domain_id: str
    domain_hostname: str
    node_public_ip: str


class DomainRemovePayload(JobPayload):
    environment_id: str
    domain_id: str
    domain_hostname: str
    preview_url: str


# =============================================================================
# Promotion / Releases
# =============================================================================

class DriftCheckPayload(JobPayload):
    environment_id: str
    drift_check_id: str
    promotion_preset: Literal["content-protect", "commerce-protect"]


class EnvPromotePayload(JobPayload):
    source_environment_id: str
    target_environment_id: str
    promotion_preset: Literal["content-protect", "commerce-protect"]
    drift_check_id: str
    pre_promote_backup_id: str
    release_id: str = Field(..., description="Release recorded on the target for the promoted content")


class HealthCheckPayload(JobPayload):
    environment_id: str
    release_id: str
    trigger_job_type: str


class ReleaseRollbackPayload(JobPayload):
    environment_id: str
    failed_release_id: str
    restored_release_id: str
    health_check_job_id: str


PAYLOAD_MODELS: dict[str, Type[JobPayload]] = {
    JobType.NODE_PROVISION.value: NodeProvisionPayload,
    JobType.SITE_CREATE.value: SiteCreatePayload,
    JobType.SITE_IMPORT.value: SiteImportPayload,
    JobType.ENV_CREATE.value: EnvCreatePayload,
    JobType.ENV_DEPLOY.value: EnvDeployPayload,
    JobType.ENV_UPDATE.value: EnvUpdatePayload,
    JobType.ENV_RESTORE.value: EnvRestorePayload,
    JobType.ENV_CACHE_TOGGLE.value: CacheTogglePayload,
    JobType.CACHE_PURGE.value: CachePurgePayload,
    JobType.BACKUP_CREATE.value: BackupCreatePayload,
    JobType.BACKUP_CLEANUP.value: BackupCleanupPayload,
    JobType.DOMAIN_ADD.value: DomainAddPayload,
    JobType.DOMAIN_REMOVE.value: DomainRemovePayload,
    JobType.DRIFT_CHECK.value: DriftCheckPayload,
    JobType.ENV_PROMOTE.value: EnvPromotePayload,
    JobType.HEALTH_CHECK.value: HealthCheckPayload,
    JobType.RELEASE_ROLLBACK.value: ReleaseRollbackPayload,
}

P = TypeVar("P", bound=JobPayload)


def parse_payload(job: Job, model: Type[P]) -> P:
    """
    Validate a job's payload against its schema.

    Raises:
        ExecutionError: ANSIBLE_UNKNOWN_EXIT, non-retryable, when the payload
            is missing fields or carries unknown ones
    """
    try:
        return model.model_validate(job.payload)
    except ValidationError as e:
        raise ExecutionError(
            ANSIBLE_UNKNOWN_EXIT,
            f"invalid {job.job_type} payload: {e}",
            retryable=False,
        ) from e
