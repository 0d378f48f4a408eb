"""
Node inventory and provisioning.

Nodes are registered in `provisioning` and a node_provision job configures
them; success makes the node `active`, failure `unreachable`.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from src.audit.recorder import AuditRecorder, record_accepted
from src.common.errors import InvalidInputError
from src.infra.clock import Clock, SystemClock
from src.jobs.entities import JobType
from src.jobs.execution import NODE_PROVISION_FAILED
from src.jobs.payloads import NodeProvisionPayload
from src.jobs.queue import enqueue_mutation_job, mark_job_failed, mark_job_succeeded
from src.store.database import Database
from src.store.entities import Node, NodeStatus, format_timestamp, generate_uuid
from src.store.queries import get_node

logger = logging.getLogger(__name__)


@dataclass
class NodeRegisterResult:
    node_id: str
    job_id: str


class NodeService:
    def __init__(
        self,
        database: Database,
        clock: Optional[Clock] = None,
        audit: Optional[AuditRecorder] = None,
    ):
        self.database = database
        self.clock = clock or SystemClock()
        self.audit = audit

    # =========================================================================
    # Commands
    # =========================================================================

    def register(
        self,
        hostname: str,
        public_ip: Optional[str] = None,
        ssh_port: int = 22,
        ssh_user: str = "root",
        ssh_private_key_path: Optional[str] = None,
        is_local: bool = False,
    ) -> NodeRegisterResult:
        """
        Register a node and enqueue its provisioning.

        Raises:
            InvalidInputError: empty hostname/user or port outside 1..65535
        """
        hostname = (hostname or "").strip()
        ssh_user = (ssh_user or "").strip()
        if not hostname:
            raise InvalidInputError("hostname is required")
        if not ssh_user:
            raise InvalidInputError("ssh_user is required")
        if not 1 <= int(ssh_port) <= 65535:
            raise InvalidInputError(f"ssh_port must be between 1 and 65535, got {ssh_port}")

        now = self.clock.now()
        moment = format_timestamp(now)
        node_id = generate_uuid()

        with self.database.transaction() as conn:
            conn.execute(
                """
                INSERT INTO nodes (
                    node_id, hostname, public_ip, ssh_port, ssh_user,
                    ssh_private_key_path, status, is_local, state_version,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                """,
                (
                    node_id,
                    hostname,
                    (public_ip or "").strip() or None,
                    int(ssh_port),
                    ssh_user,
                    (ssh_private_key_path or "").strip() or None,
                    NodeStatus.PROVISIONING.value,
                    1 if is_local else 0,
                    moment,
                    moment,
                ),
            )
            job = enqueue_mutation_job(
                conn,
                JobType.NODE_PROVISION.value,
                now,
                payload=NodeProvisionPayload(node_id=node_id).to_payload(),
                node_id=node_id,
            )

        record_accepted(self.audit, "node.register", "node", node_id)
        logger.info(f"Registered node {node_id} ({hostname}), provisioning job {job.job_id}")
        return NodeRegisterResult(node_id=node_id, job_id=job.job_id)

    def provision(self, node_id: str) -> str:
        """Re-run provisioning for an existing node. Returns the job id."""
        now = self.clock.now()
        moment = format_timestamp(now)

        with self.database.transaction() as conn:
            node = get_node(conn, node_id)
            if node.status == NodeStatus.DECOMMISSIONED:
                raise InvalidInputError(f"node {node_id} is decommissioned")
            self._set_status(conn, node.node_id, NodeStatus.PROVISIONING, moment)
            job = enqueue_mutation_job(
                conn,
                JobType.NODE_PROVISION.value,
                now,
                payload=NodeProvisionPayload(node_id=node_id).to_payload(),
                node_id=node_id,
            )

        record_accepted(self.audit, "node.provision", "node", node_id)
        return job.job_id

    # =========================================================================
    # Completion
    # =========================================================================

    def mark_provision_succeeded(self, job_id: str, node_id: str) -> None:
        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            self._set_status(conn, node_id, NodeStatus.ACTIVE, moment)
            mark_job_succeeded(conn, job_id, moment)

    def mark_provision_failed(
        self,
        job_id: str,
        node_id: str,
        code: str = NODE_PROVISION_FAILED,
        message: str = "",
    ) -> None:
        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            self._set_status(conn, node_id, NodeStatus.UNREACHABLE, moment)
            mark_job_failed(conn, job_id, code or NODE_PROVISION_FAILED, message, moment)

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, node_id: str) -> Node:
        with self.database.connection() as conn:
            return get_node(conn, node_id)

    def list_nodes(self) -> list[Node]:
        with self.database.connection() as conn:
            rows = conn.execute("SELECT * FROM nodes ORDER BY created_at ASC").fetchall()
            return [Node.from_row(row) for row in rows]

    def _set_status(self, conn, node_id: str, status: NodeStatus, moment: str) -> None:
        get_node(conn, node_id)
        conn.execute(
            """
            UPDATE nodes
            SET status = ?, state_version = state_version + 1, updated_at = ?
            WHERE node_id = ?
            """,
            (status.value, moment, node_id),
        )


def select_active_node(conn) -> Optional[Node]:
    """Preferred node for new sites: local nodes first, then oldest."""
    row = conn.execute(
        """
        SELECT * FROM nodes
        WHERE status = ?
        ORDER BY is_local DESC, created_at ASC
        LIMIT 1
        """,
        (NodeStatus.ACTIVE.value,),
    ).fetchone()
    return Node.from_row(row) if row else None
