"""
domain_add and domain_remove handlers.

domain_add refuses to request a certificate for a hostname that does not
resolve to the environment's node.
"""

import logging
import socket
from typing import Callable, Optional

from src.domains.service import TLS_ISSUER, DomainService, dns_mismatch_error
from src.jobs.entities import Job, JobType
from src.jobs.payloads import DomainAddPayload, DomainRemovePayload, parse_payload
from src.runner.ansible import PlaybookRunner
from src.store.database import Database

from .base import PlaybookJobHandler, log_stage

logger = logging.getLogger(__name__)

Resolver = Callable[[str], list[str]]


def resolve_hostname(hostname: str) -> list[str]:
    """IPv4 addresses the system resolver returns for hostname."""
    _, _, addresses = socket.gethostbyname_ex(hostname)
    return list(addresses)


class DomainAddHandler(PlaybookJobHandler):
    job_type = JobType.DOMAIN_ADD.value
    playbook = "domain-add"

    def __init__(
        self,
        database: Database,
        runner: PlaybookRunner,
        domains: DomainService,
        resolver: Optional[Resolver] = None,
    ):
        super().__init__(database, runner)
        self.domains = domains
        self.resolver = resolver or resolve_hostname

    def handle(self, job: Job) -> None:
        payload = parse_payload(job, DomainAddPayload)
        environment, node = self.load_environment(payload.environment_id)
        log_stage(job, "start", domain_id=payload.domain_id, hostname=payload.domain_hostname)

        try:
            self.check_dns(payload.domain_hostname, payload.node_public_ip)
            self.run_playbook(node, {
                "environment_id": environment.environment_id,
                "domain_id": payload.domain_id,
                "domain_hostname": payload.domain_hostname,
                "tls_issuer": TLS_ISSUER,
            })
        except Exception as e:
            self.record_failure(
                job,
                e,
                lambda code, message: self.domains.mark_add_failed(
                    job.job_id, payload.domain_id, code, message
                ),
                domain_id=payload.domain_id,
            )
            raise

        self.domains.mark_add_succeeded(job.job_id, payload.domain_id, environment.environment_id)
        log_stage(job, "succeeded", domain_id=payload.domain_id, hostname=payload.domain_hostname)

    def check_dns(self, hostname: str, node_ip: str) -> None:
        """
        Raises:
            ExecutionError: DOMAIN_DNS_MISMATCH when hostname does not resolve
                to node_ip (including when it does not resolve at all)
        """
        try:
            addresses = self.resolver(hostname)
        except OSError as e:
            logger.warning(f"DNS lookup for {hostname} failed: {e}")
            raise dns_mismatch_error(hostname, node_ip) from e

        if node_ip.strip() not in {address.strip() for address in addresses}:
            logger.warning(f"{hostname} resolves to {addresses}, expected {node_ip}")
            raise dns_mismatch_error(hostname, node_ip)


class DomainRemoveHandler(PlaybookJobHandler):
    job_type = JobType.DOMAIN_REMOVE.value
    playbook = "domain-remove"

    def __init__(self, database: Database, runner: PlaybookRunner, domains: DomainService):
        super().__init__(database, runner)
        self.domains = domains

    def handle(self, job: Job) -> None:
        payload = parse_payload(job, DomainRemovePayload)
        environment, node = self.load_environment(payload.environment_id)
        log_stage(job, "start", domain_id=payload.domain_id, hostname=payload.domain_hostname)

        try:
            self.run_playbook(node, {
                "environment_id": environment.environment_id,
                "domain_id": payload.domain_id,
                "domain_hostname": payload.domain_hostname,
                "preview_url": payload.preview_url,
            })
        except Exception as e:
            self.record_failure(
                job,
                e,
                lambda code, message: self.domains.mark_remove_failed(job.job_id, code, message),
                domain_id=payload.domain_id,
            )
            raise

        self.domains.mark_remove_succeeded(job.job_id, payload.domain_id, environment.environment_id)
        log_stage(job, "succeeded", domain_id=payload.domain_id)
