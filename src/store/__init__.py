"""
Persistence layer - sqlite database, entities and shared queries.
"""

from .database import Database
from .entities import (
    generate_uuid,
    format_timestamp,
    parse_timestamp,
    # Enums
    NodeStatus,
    SiteStatus,
    EnvironmentStatus,
    EnvironmentType,
    PromotionPreset,
    DriftStatus,
    HealthStatus,
    BackupScope,
    BackupStatus,
    TLSStatus,
    MUTATING_ENVIRONMENT_STATUSES,
    # Entities
    Node,
    Site,
    Environment,
    Release,
    Backup,
    Domain,
    DriftCheck,
    RestoreRequest,
)

__all__ = [
    "Database",
    # Helpers
    "generate_uuid",
    "format_timestamp",
    "parse_timestamp",
    # Enums
    "NodeStatus",
    "SiteStatus",
    "EnvironmentStatus",
    "EnvironmentType",
    "PromotionPreset",
    "DriftStatus",
    "HealthStatus",
    "BackupScope",
    "BackupStatus",
    "TLSStatus",
    "MUTATING_ENVIRONMENT_STATUSES",
    # Entities
    "Node",
    "Site",
    "Environment",
    "Release",
    "Backup",
    "Domain",
    "DriftCheck",
    "RestoreRequest",
]
