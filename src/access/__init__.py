"""
Synchronous node access that bypasses the job queue.
"""

from .magic_login import MagicLoginResult, MagicLoginService

__all__ = [
    "MagicLoginService",
    "MagicLoginResult",
]
