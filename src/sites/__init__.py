"""
Site lifecycle service.
"""

from .service import SiteCreateResult, SiteImportResult, SiteService

__all__ = [
    "SiteCreateResult",
    "SiteImportResult",
    "SiteService",
]
