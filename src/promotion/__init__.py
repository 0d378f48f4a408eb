"""
Drift checks and environment promotion.
"""

from .service import DriftCheckResult, PromoteResult, PromotionService

__all__ = [
    "PromotionService",
    "DriftCheckResult",
    "PromoteResult",
]
