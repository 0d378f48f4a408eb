"""
Custom domain service.
"""

from .service import DomainAddResult, DomainService, dns_mismatch_error, normalize_hostname

__all__ = [
    "DomainService",
    "DomainAddResult",
    "normalize_hostname",
    "dns_mismatch_error",
]
