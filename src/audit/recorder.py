"""
Audit recorder.

The core emits audit events through the AuditRecorder interface; the sqlite
implementation stores them in `audit_logs`.

Async correlation: a job's accepted entry is keyed by
(action, resource_type, resource_id). Recording it twice is idempotent and
UpdateAsyncResult overwrites the result as the job progresses.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from src.infra.clock import Clock, SystemClock
from src.store.database import Database
from src.store.entities import format_timestamp, generate_uuid

logger = logging.getLogger(__name__)

RESULT_ACCEPTED = "accepted"
RESULT_SUCCEEDED = "succeeded"
RESULT_RETRYING = "retrying"
RESULT_FAILED = "failed"

SYSTEM_USER_ID = "admin"


@dataclass
class AuditEntry:
    action: str
    resource_type: str
    resource_id: str
    user_id: str = SYSTEM_USER_ID
    result: str = ""
    created_at: Optional[str] = None


class AuditRecorder(Protocol):
    """Sink for audit events."""

    def record(self, entry: AuditEntry) -> None:
        ...

    def record_async_accepted(self, entry: AuditEntry) -> None:
        ...

    def update_async_result(
        self,
        action: str,
        resource_type: str,
        resource_id: str,
        result: str,
    ) -> None:
        ...


class SqliteAuditRecorder:
    """AuditRecorder backed by the control plane database."""

    def __init__(self, database: Database, clock: Optional[Clock] = None):
        self.database = database
        self.clock = clock or SystemClock()

    def record(self, entry: AuditEntry) -> None:
        """Append an entry unconditionally."""
        now = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            conn.execute(
                """
                INSERT INTO audit_logs (
                    audit_id, user_id, action, resource_type, resource_id,
                    result, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    generate_uuid(),
                    entry.user_id,
                    entry.action,
                    entry.resource_type,
                    entry.resource_id,
                    entry.result or RESULT_ACCEPTED,
                    entry.created_at or now,
                    now,
                ),
            )

    def record_async_accepted(self, entry: AuditEntry) -> None:
        """Record (or re-record) the accepted entry for an async operation."""
        self._upsert(
            entry.action,
            entry.resource_type,
            entry.resource_id,
            entry.result or RESULT_ACCEPTED,
            user_id=entry.user_id,
            created_at=entry.created_at,
        )

    def update_async_result(
        self,
        action: str,
        resource_type: str,
        resource_id: str,
        result: str,
    ) -> None:
        """Overwrite the result of the correlated entry."""
        self._upsert(action, resource_type, resource_id, result)

    def _upsert(
        self,
        action: str,
        resource_type: str,
        resource_id: str,
        result: str,
        user_id: str = SYSTEM_USER_ID,
        created_at: Optional[str] = None,
    ) -> None:
        now = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE audit_logs SET result = ?, updated_at = ?
                WHERE action = ? AND resource_type = ? AND resource_id = ?
                """,
                (result, now, action, resource_type, resource_id),
            )
            if cursor.rowcount > 0:
                return

            conn.execute(
                """
                INSERT INTO audit_logs (
                    audit_id, user_id, action, resource_type, resource_id,
                    result, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (generate_uuid(), user_id, action, resource_type, resource_id,
                 result, created_at or now, now),
            )

    def list_entries(
        self,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[AuditEntry]:
        """Entries newest first."""
        query = "SELECT * FROM audit_logs WHERE 1 = 1"
        params: list = []
        if resource_type:
            query += " AND resource_type = ?"
            params.append(resource_type)
        if resource_id:
            query += " AND resource_id = ?"
            params.append(resource_id)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        with self.database.connection() as conn:
            return [
                AuditEntry(
                    action=row["action"],
                    resource_type=row["resource_type"],
                    resource_id=row["resource_id"],
                    user_id=row["user_id"],
                    result=row["result"],
                    created_at=row["created_at"],
                )
                for row in conn.execute(query, params).fetchall()
            ]


def record_accepted(recorder: Optional[AuditRecorder], action: str, resource_type: str, resource_id: str) -> None:
    """
    Record a command's accepted entry after its transaction committed.

    The command already took effect, so a failing audit sink is logged
    rather than surfaced to the caller.
    """
    if recorder is None:
        return
    try:
        recorder.record(AuditEntry(
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            result=RESULT_ACCEPTED,
        ))
    except Exception as e:
        logger.error(f"Audit write failed for {action} {resource_type}/{resource_id}: {e}")
