"""
Control plane domain entities.

- Node: SSH-reachable host serving environments
- Site: tenant container for one production and any staging/clone environments
- Environment: deployable instance bound to one node
- Release: installed application version, the rollback target
- Backup: point-in-time artifact of an environment
- Domain: external hostname attached to an environment
- DriftCheck: content comparison gating promotion
- RestoreRequest: sidecar row tying a restore job to its backup

Status values are stored lowercase. Timestamps are stored as fixed-width
RFC3339 UTC strings so that string order equals time order.
"""

import json
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def generate_uuid() -> str:
    """Generate a new UUIDv4 string."""
    return str(uuid.uuid4())


def format_timestamp(moment: datetime) -> str:
    """Render an instant as RFC3339 UTC with microseconds."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a stored RFC3339 timestamp into an aware UTC datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# =============================================================================
# Status enums
# =============================================================================

class NodeStatus(str, Enum):
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    UNREACHABLE = "unreachable"
    DECOMMISSIONED = "decommissioned"


class SiteStatus(str, Enum):
    """
    Site status.

    ACTIVE only while every environment of the site is active; otherwise
    mirrors the most recent mutating transition.
    """

    ACTIVE = "active"
    CLONING = "cloning"
    DEPLOYING = "deploying"
    RESTORING = "restoring"
    FAILED = "failed"


class EnvironmentStatus(str, Enum):
    ACTIVE = "active"
    CLONING = "cloning"
    DEPLOYING = "deploying"
    RESTORING = "restoring"
    FAILED = "failed"


MUTATING_ENVIRONMENT_STATUSES = (
    EnvironmentStatus.CLONING.value,
    EnvironmentStatus.DEPLOYING.value,
    EnvironmentStatus.RESTORING.value,
)


class EnvironmentType(str, Enum):
    PRODUCTION = "production"
    STAGING = "staging"
    CLONE = "clone"


class PromotionPreset(str, Enum):
    CONTENT_PROTECT = "content-protect"
    COMMERCE_PROTECT = "commerce-protect"


class DriftStatus(str, Enum):
    UNKNOWN = "unknown"
    CLEAN = "clean"
    DRIFTED = "drifted"


class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class BackupScope(str, Enum):
    DB = "db"
    FILES = "files"
    FULL = "full"


class BackupStatus(str, Enum):
    """
    Backup status.

    Allowed transitions:
    - PENDING -> RUNNING -> (COMPLETED | FAILED)
    - (PENDING | RUNNING) -> FAILED when its job is interrupted
    - (COMPLETED | FAILED) -> EXPIRED
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class TLSStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    FAILED = "failed"


# =============================================================================
# Entities
# =============================================================================

@dataclass
class Node:
    node_id: str
    hostname: str
    status: NodeStatus
    public_ip: Optional[str] = None
    ssh_port: int = 22
    ssh_user: str = "root"
    ssh_private_key_path: Optional[str] = None
    is_local: bool = False
    state_version: int = 1
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Node":
        return cls(
            node_id=row["node_id"],
            hostname=row["hostname"],
            status=NodeStatus(row["status"]),
            public_ip=row["public_ip"],
            ssh_port=row["ssh_port"],
            ssh_user=row["ssh_user"],
            ssh_private_key_path=row["ssh_private_key_path"],
            is_local=bool(row["is_local"]),
            state_version=row["state_version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class Site:
    site_id: str
    name: str
    slug: str
    status: SiteStatus
    primary_environment_id: Optional[str] = None
    state_version: int = 1
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Site":
        return cls(
            site_id=row["site_id"],
            name=row["name"],
            slug=row["slug"],
            status=SiteStatus(row["status"]),
            primary_environment_id=row["primary_environment_id"],
            state_version=row["state_version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class Environment:
    environment_id: str
    site_id: str
    name: str
    slug: str
    environment_type: EnvironmentType
    status: EnvironmentStatus
    node_id: str
    promotion_preset: PromotionPreset
    preview_url: str
    source_environment_id: Optional[str] = None
    primary_domain_id: Optional[str] = None
    current_release_id: Optional[str] = None
    drift_status: DriftStatus = DriftStatus.UNKNOWN
    drift_checked_at: Optional[str] = None
    last_drift_check_id: Optional[str] = None
    fastcgi_cache_enabled: bool = True
    redis_cache_enabled: bool = True
    state_version: int = 1
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Environment":
        return cls(
            environment_id=row["environment_id"],
            site_id=row["site_id"],
            name=row["name"],
            slug=row["slug"],
            environment_type=EnvironmentType(row["environment_type"]),
            status=EnvironmentStatus(row["status"]),
            node_id=row["node_id"],
            promotion_preset=PromotionPreset(row["promotion_preset"]),
            preview_url=row["preview_url"],
            source_environment_id=row["source_environment_id"],
            primary_domain_id=row["primary_domain_id"],
            current_release_id=row["current_release_id"],
            drift_status=DriftStatus(row["drift_status"]),
            drift_checked_at=row["drift_checked_at"],
            last_drift_check_id=row["last_drift_check_id"],
            fastcgi_cache_enabled=bool(row["fastcgi_cache_enabled"]),
            redis_cache_enabled=bool(row["redis_cache_enabled"]),
            state_version=row["state_version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class Release:
    release_id: str
    environment_id: str
    source_type: str
    source_ref: str
    path: str
    health_status: HealthStatus = HealthStatus.UNKNOWN
    notes: Optional[str] = None
    created_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Release":
        return cls(
            release_id=row["release_id"],
            environment_id=row["environment_id"],
            source_type=row["source_type"],
            source_ref=row["source_ref"],
            path=row["path"],
            health_status=HealthStatus(row["health_status"]),
            notes=row["notes"],
            created_at=row["created_at"],
        )


@dataclass
class Backup:
    backup_id: str
    environment_id: str
    backup_scope: BackupScope
    status: BackupStatus
    storage_type: str
    storage_path: str
    retention_until: str
    checksum: Optional[str] = None
    size_bytes: Optional[int] = None
    created_at: str = ""
    completed_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Backup":
        return cls(
            backup_id=row["backup_id"],
            environment_id=row["environment_id"],
            backup_scope=BackupScope(row["backup_scope"]),
            status=BackupStatus(row["status"]),
            storage_type=row["storage_type"],
            storage_path=row["storage_path"],
            retention_until=row["retention_until"],
            checksum=row["checksum"],
            size_bytes=row["size_bytes"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )


@dataclass
class Domain:
    domain_id: str
    environment_id: str
    hostname: str
    tls_status: TLSStatus = TLSStatus.PENDING
    tls_issuer: str = "letsencrypt"
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Domain":
        return cls(
            domain_id=row["domain_id"],
            environment_id=row["environment_id"],
            hostname=row["hostname"],
            tls_status=TLSStatus(row["tls_status"]),
            tls_issuer=row["tls_issuer"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class DriftCheck:
    drift_check_id: str
    environment_id: str
    promotion_preset: PromotionPreset
    status: DriftStatus
    db_checksums: dict = field(default_factory=dict)
    file_checksums: dict = field(default_factory=dict)
    checked_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "DriftCheck":
        return cls(
            drift_check_id=row["drift_check_id"],
            environment_id=row["environment_id"],
            promotion_preset=PromotionPreset(row["promotion_preset"]),
            status=DriftStatus(row["status"]),
            db_checksums=json.loads(row["db_checksums"] or "{}"),
            file_checksums=json.loads(row["file_checksums"] or "{}"),
            checked_at=row["checked_at"],
        )


@dataclass
class RestoreRequest:
    job_id: str
    environment_id: str
    backup_id: str
    created_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "RestoreRequest":
        return cls(
            job_id=row["job_id"],
            environment_id=row["environment_id"],
            backup_id=row["backup_id"],
            created_at=row["created_at"],
        )
