"""
Audit events emitted by services and the worker.
"""

from .recorder import (
    AuditEntry,
    AuditRecorder,
    SqliteAuditRecorder,
    record_accepted,
    RESULT_ACCEPTED,
    RESULT_SUCCEEDED,
    RESULT_RETRYING,
    RESULT_FAILED,
    SYSTEM_USER_ID,
)

__all__ = [
    "AuditEntry",
    "AuditRecorder",
    "SqliteAuditRecorder",
    "record_accepted",
    "RESULT_ACCEPTED",
    "RESULT_SUCCEEDED",
    "RESULT_RETRYING",
    "RESULT_FAILED",
    "SYSTEM_USER_ID",
]
