"""
Shared error taxonomy and text helpers.
"""

from .errors import (
    ControlPlaneError,
    InvalidInputError,
    NotFoundError,
    NodeNotFoundError,
    SiteNotFoundError,
    EnvironmentNotFoundError,
    BackupNotFoundError,
    DomainNotFoundError,
    ReleaseNotFoundError,
    JobNotFoundError,
    NoRollbackReleaseError,
    SlugConflictError,
    DomainConflictError,
    ConcurrencyConflictError,
    NotCancellableError,
    EnvironmentNotActiveError,
    ResourceNotFailedError,
    BackupNotCompletedError,
    DriftGateNotMetError,
    BackupGateNotMetError,
    NodeMissingPublicIPError,
    NoAvailableNodeError,
    InvalidTransitionError,
    NodeUnreachableError,
    WPCliError,
)
from .text import truncate_tail, truncate_job_message, truncate_service_message

__all__ = [
    # Base
    "ControlPlaneError",
    # Validation
    "InvalidInputError",
    # Not found
    "NotFoundError",
    "NodeNotFoundError",
    "SiteNotFoundError",
    "EnvironmentNotFoundError",
    "BackupNotFoundError",
    "DomainNotFoundError",
    "ReleaseNotFoundError",
    "JobNotFoundError",
    "NoRollbackReleaseError",
    # Conflicts
    "SlugConflictError",
    "DomainConflictError",
    "ConcurrencyConflictError",
    "NotCancellableError",
    # Preconditions
    "EnvironmentNotActiveError",
    "ResourceNotFailedError",
    "BackupNotCompletedError",
    "DriftGateNotMetError",
    "BackupGateNotMetError",
    "NodeMissingPublicIPError",
    "NoAvailableNodeError",
    "InvalidTransitionError",
    # Node access
    "NodeUnreachableError",
    "WPCliError",
    # Text
    "truncate_tail",
    "truncate_job_message",
    "truncate_service_message",
]
