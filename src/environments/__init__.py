"""
Environment lifecycle service and preview URLs.
"""

from .preview import derive_preview_url, sslip_preview_url
from .service import (
    DeployResult,
    EnvironmentCreateResult,
    EnvironmentService,
    RestoreResult,
    UpdatesResult,
    load_active_environment,
)

__all__ = [
    # Service
    "EnvironmentService",
    "EnvironmentCreateResult",
    "DeployResult",
    "UpdatesResult",
    "RestoreResult",
    "load_active_environment",
    # Preview URLs
    "sslip_preview_url",
    "derive_preview_url",
]
