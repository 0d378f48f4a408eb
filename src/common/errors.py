"""
Control plane exceptions.

Every error surfaced to a caller carries a stable `code`. Callers (the CLI,
an HTTP layer) map codes to responses; nothing should match on messages.
"""

from typing import Optional


class ControlPlaneError(Exception):
    """Base exception for all control plane errors."""

    code = "ControlPlaneError"


# =============================================================================
# Validation
# =============================================================================

class InvalidInputError(ControlPlaneError):
    """Raised when a command's input fails validation."""

    code = "InvalidInput"


# =============================================================================
# Not found
# =============================================================================

class NotFoundError(ControlPlaneError):
    """Base for lookups that found nothing."""

    code = "NotFound"
    resource = "resource"

    def __init__(self, resource_id: str):
        self.resource_id = resource_id
        super().__init__(f"{self.resource} not found: {resource_id}")


class NodeNotFoundError(NotFoundError):
    code = "NodeNotFound"
    resource = "node"


class SiteNotFoundError(NotFoundError):
    code = "SiteNotFound"
    resource = "site"


class EnvironmentNotFoundError(NotFoundError):
    code = "EnvironmentNotFound"
    resource = "environment"


class BackupNotFoundError(NotFoundError):
    code = "BackupNotFound"
    resource = "backup"


class DomainNotFoundError(NotFoundError):
    code = "DomainNotFound"
    resource = "domain"


class ReleaseNotFoundError(NotFoundError):
    code = "ReleaseNotFound"
    resource = "release"


class JobNotFoundError(NotFoundError):
    code = "JobNotFound"
    resource = "job"


class NoRollbackReleaseError(ControlPlaneError):
    """Raised when a failed release has no predecessor to roll back to."""

    code = "NoRollbackRelease"

    def __init__(self, environment_id: str, failed_release_id: str):
        self.environment_id = environment_id
        self.failed_release_id = failed_release_id
        super().__init__(
            f"no rollback release for environment {environment_id} "
            f"(failed release {failed_release_id})"
        )


# =============================================================================
# Conflicts
# =============================================================================

class SlugConflictError(ControlPlaneError):
    code = "SlugConflict"

    def __init__(self, slug: str):
        self.slug = slug
        super().__init__(f"slug already in use: {slug}")


class DomainConflictError(ControlPlaneError):
    code = "DomainConflict"

    def __init__(self, hostname: str):
        self.hostname = hostname
        super().__init__(f"domain already attached: {hostname}")


class ConcurrencyConflictError(ControlPlaneError):
    """
    Raised when a mutating job is refused because another queued or running
    job already holds the same site or node.
    """

    code = "ConcurrencyConflict"

    def __init__(
        self,
        site_id: Optional[str] = None,
        node_id: Optional[str] = None,
        blocking_job_id: Optional[str] = None,
    ):
        self.site_id = site_id
        self.node_id = node_id
        self.blocking_job_id = blocking_job_id
        held = f"site {site_id}" if site_id else f"node {node_id}"
        super().__init__(f"another mutation is in flight for {held} (job {blocking_job_id})")


class NotCancellableError(ControlPlaneError):
    code = "NotCancellable"

    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(f"job {job_id} cannot be cancelled from status {status}")


# =============================================================================
# Preconditions
# =============================================================================

class EnvironmentNotActiveError(ControlPlaneError):
    code = "EnvironmentNotActive"

    def __init__(self, environment_id: str, status: str):
        self.environment_id = environment_id
        self.status = status
        super().__init__(f"environment {environment_id} is {status}, expected active")


class ResourceNotFailedError(ControlPlaneError):
    code = "ResourceNotFailed"

    def __init__(self, resource: str, resource_id: str, status: str):
        self.resource_id = resource_id
        self.status = status
        super().__init__(f"{resource} {resource_id} is {status}, expected failed")


class BackupNotCompletedError(ControlPlaneError):
    code = "BackupNotCompleted"

    def __init__(self, backup_id: str, reason: str):
        self.backup_id = backup_id
        super().__init__(f"backup {backup_id} is not restorable: {reason}")


class DriftGateNotMetError(ControlPlaneError):
    code = "DriftGateNotMet"

    def __init__(self, environment_id: str, drift_status: str):
        self.environment_id = environment_id
        self.drift_status = drift_status
        super().__init__(
            f"source environment {environment_id} drift status is {drift_status}, expected clean"
        )


class BackupGateNotMetError(ControlPlaneError):
    code = "BackupGateNotMet"

    def __init__(self, environment_id: str):
        self.environment_id = environment_id
        super().__init__(
            f"target environment {environment_id} has no completed full backup in the last 60 minutes"
        )


class NodeMissingPublicIPError(ControlPlaneError):
    code = "NodeMissingPublicIP"

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"node {node_id} has no public ip")


class NoAvailableNodeError(ControlPlaneError):
    code = "NoAvailableNode"

    def __init__(self):
        super().__init__("no active node available")


class InvalidTransitionError(ControlPlaneError):
    """Raised when a state machine is asked for a transition it does not allow."""

    code = "InvalidTransition"

    def __init__(self, resource: str, resource_id: str, current: str, target: str):
        self.resource_id = resource_id
        self.current = current
        self.target = target
        super().__init__(f"{resource} {resource_id} cannot move from {current} to {target}")


# =============================================================================
# Synchronous node access
# =============================================================================

class NodeUnreachableError(ControlPlaneError):
    code = "NodeUnreachable"


class WPCliError(ControlPlaneError):
    code = "WPCliError"
