"""
Releases, health checks and rollback.
"""

from .service import (
    ReleaseService,
    find_previous_release,
    insert_release,
    release_path,
    set_current_release,
)

__all__ = [
    "ReleaseService",
    "find_previous_release",
    "insert_release",
    "release_path",
    "set_current_release",
]
