"""
Custom domains attached to environments.

A domain is inserted `pending` and becomes `active` only when domain_add
succeeds; the first active domain becomes the environment's primary.
Removal deletes the row only once domain_remove succeeds.
"""

import ipaddress
import logging
import re
import sqlite3
from dataclasses import dataclass
from typing import Optional

from src.audit.recorder import AuditRecorder, record_accepted
from src.common.errors import (
    DomainConflictError,
    DomainNotFoundError,
    InvalidInputError,
    NodeMissingPublicIPError,
)
from src.environments.service import load_active_environment
from src.infra.clock import Clock, SystemClock
from src.jobs.entities import JobType
from src.jobs.execution import (
    DOMAIN_ADD_FAILED,
    DOMAIN_DNS_MISMATCH,
    DOMAIN_REMOVE_FAILED,
    ExecutionError,
)
from src.jobs.payloads import DomainAddPayload, DomainRemovePayload
from src.jobs.queue import enqueue_mutation_job, mark_job_failed, mark_job_succeeded
from src.store.database import Database
from src.store.entities import Domain, TLSStatus, format_timestamp, generate_uuid
from src.store.queries import get_domain, get_environment, get_node

logger = logging.getLogger(__name__)

TLS_ISSUER = "letsencrypt"
LABEL_PATTERN = re.compile(r"^[a-z0-9-]{1,63}$")


@dataclass
class DomainAddResult:
    domain_id: str
    job_id: str


def normalize_hostname(hostname: str) -> str:
    """
    Lowercase and validate a hostname.

    Raises:
        InvalidInputError: empty, whitespace, IP literal, fewer than two
            labels, or a label that is empty, too long, has characters other
            than a-z, 0-9 and '-', or starts/ends with '-'
    """
    raw = hostname or ""
    host = raw.strip().lower()
    if not host:
        raise InvalidInputError("hostname is required")
    if any(ch.isspace() for ch in host):
        raise InvalidInputError(f"hostname must not contain whitespace: {raw!r}")
    try:
        ipaddress.ip_address(host)
    except ValueError:
        pass
    else:
        raise InvalidInputError(f"hostname must not be an ip address: {host}")

    labels = host.split(".")
    if len(labels) < 2:
        raise InvalidInputError(f"hostname must contain a dot: {host}")
    for label in labels:
        if not LABEL_PATTERN.match(label):
            raise InvalidInputError(f"invalid hostname label {label!r} in {host}")
        if label.startswith("-") or label.endswith("-"):
            raise InvalidInputError(f"hostname label must not start or end with '-': {label}")
    return host


def dns_mismatch_error(hostname: str, node_ip: str) -> ExecutionError:
    host = (hostname or "").strip().lower() or "<unknown-hostname>"
    ip = (node_ip or "").strip() or "<unknown-node-ip>"
    return ExecutionError(
        DOMAIN_DNS_MISMATCH,
        f"dns mismatch: {host} does not resolve to node ip {ip}",
        retryable=False,
    )


class DomainService:
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

    def add(self, environment_id: str, hostname: str) -> DomainAddResult:
        """
        Attach a hostname to an active environment and enqueue domain_add.

        Raises:
            InvalidInputError: malformed hostname
            EnvironmentNotActiveError: environment is not active
            NodeMissingPublicIPError: the environment's node has no public ip
            DomainConflictError: hostname already attached anywhere
            ConcurrencyConflictError: site or node busy
        """
        host = normalize_hostname(hostname)
        now = self.clock.now()
        moment = format_timestamp(now)
        domain_id = generate_uuid()

        with self.database.transaction() as conn:
            environment = load_active_environment(conn, environment_id)
            node = get_node(conn, environment.node_id)
            public_ip = (node.public_ip or "").strip()
            if not public_ip:
                raise NodeMissingPublicIPError(node.node_id)

            if conn.execute("SELECT 1 FROM domains WHERE hostname = ?", (host,)).fetchone():
                raise DomainConflictError(host)
            try:
                conn.execute(
                    """
                    INSERT INTO domains (
                        domain_id, environment_id, hostname, tls_status, tls_issuer,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        domain_id,
                        environment.environment_id,
                        host,
                        TLSStatus.PENDING.value,
                        TLS_ISSUER,
                        moment,
                        moment,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise DomainConflictError(host) from e

            job = enqueue_mutation_job(
                conn,
                JobType.DOMAIN_ADD.value,
                now,
                payload=DomainAddPayload(
                    environment_id=environment.environment_id,
                    domain_id=domain_id,
                    domain_hostname=host,
                    node_public_ip=public_ip,
                ).to_payload(),
                site_id=environment.site_id,
                environment_id=environment.environment_id,
                node_id=environment.node_id,
            )

        record_accepted(self.audit, "domain.add", "domain", domain_id)
        return DomainAddResult(domain_id=domain_id, job_id=job.job_id)

    def remove(self, domain_id: str) -> str:
        """
        Enqueue domain_remove; the row is deleted when the job succeeds.

        Returns:
            job_id

        Raises:
            DomainNotFoundError: unknown domain
            EnvironmentNotActiveError: owning environment is not active
            ConcurrencyConflictError: site or node busy
        """
        now = self.clock.now()

        with self.database.transaction() as conn:
            domain = get_domain(conn, domain_id)
            environment = load_active_environment(conn, domain.environment_id)
            job = enqueue_mutation_job(
                conn,
                JobType.DOMAIN_REMOVE.value,
                now,
                payload=DomainRemovePayload(
                    environment_id=environment.environment_id,
                    domain_id=domain.domain_id,
                    domain_hostname=domain.hostname,
                    preview_url=environment.preview_url,
                ).to_payload(),
                site_id=environment.site_id,
                environment_id=environment.environment_id,
                node_id=environment.node_id,
            )

        record_accepted(self.audit, "domain.remove", "domain", domain_id)
        return job.job_id

    # =========================================================================
    # Completion
    # =========================================================================

    def mark_add_succeeded(self, job_id: str, domain_id: str, environment_id: str) -> None:
        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE domains SET tls_status = ?, updated_at = ?
                WHERE domain_id = ? AND environment_id = ?
                """,
                (TLSStatus.ACTIVE.value, moment, domain_id, environment_id),
            )
            if cursor.rowcount == 0:
                raise DomainNotFoundError(domain_id)
            conn.execute(
                """
                UPDATE environments
                SET primary_domain_id = COALESCE(primary_domain_id, ?),
                    state_version = state_version + 1, updated_at = ?
                WHERE environment_id = ?
                """,
                (domain_id, moment, environment_id),
            )
            mark_job_succeeded(conn, job_id, moment)

    def mark_add_failed(
        self,
        job_id: str,
        domain_id: str,
        code: str = DOMAIN_ADD_FAILED,
        message: str = "",
    ) -> None:
        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            conn.execute(
                "UPDATE domains SET tls_status = ?, updated_at = ? WHERE domain_id = ?",
                (TLSStatus.FAILED.value, moment, domain_id),
            )
            mark_job_failed(conn, job_id, code or DOMAIN_ADD_FAILED, message or "domain add failed", moment)

    def mark_remove_succeeded(self, job_id: str, domain_id: str, environment_id: str) -> None:
        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            get_environment(conn, environment_id)
            conn.execute(
                """
                UPDATE environments
                SET primary_domain_id = CASE WHEN primary_domain_id = ? THEN NULL ELSE primary_domain_id END,
                    state_version = state_version + 1, updated_at = ?
                WHERE environment_id = ?
                """,
                (domain_id, moment, environment_id),
            )
            conn.execute(
                "DELETE FROM domains WHERE domain_id = ? AND environment_id = ?",
                (domain_id, environment_id),
            )
            mark_job_succeeded(conn, job_id, moment)

    def mark_remove_failed(self, job_id: str, code: str = DOMAIN_REMOVE_FAILED, message: str = "") -> None:
        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            mark_job_failed(conn, job_id, code or DOMAIN_REMOVE_FAILED, message or "domain remove failed", moment)

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, domain_id: str) -> Domain:
        with self.database.connection() as conn:
            return get_domain(conn, domain_id)

    def list_by_environment(self, environment_id: str) -> list[Domain]:
        with self.database.connection() as conn:
            get_environment(conn, environment_id)
            rows = conn.execute(
                "SELECT * FROM domains WHERE environment_id = ? ORDER BY created_at ASC, domain_id ASC",
                (environment_id,),
            ).fetchall()
            return [Domain.from_row(row) for row in rows]
