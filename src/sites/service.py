"""
Site lifecycle.

A site is created together with its production environment on an active
node and a site_create job that lays it down. Site status mirrors its
environments: active only while all of them are active.
"""

import logging
import re
import sqlite3
from dataclasses import dataclass
from typing import Optional

from src.audit.recorder import AuditRecorder, record_accepted
from src.common.errors import (
    ConcurrencyConflictError,
    EnvironmentNotActiveError,
    InvalidInputError,
    NoAvailableNodeError,
    NodeMissingPublicIPError,
    ResourceNotFailedError,
    SiteNotFoundError,
    SlugConflictError,
)
from src.environments.preview import sslip_preview_url
from src.infra.clock import Clock, SystemClock
from src.jobs.entities import JobType
from src.jobs.execution import ENV_MUTATION_FAILED
from src.jobs.payloads import SiteCreatePayload, SiteImportPayload
from src.jobs.queue import (
    assert_no_active_mutation,
    enqueue_mutation_job,
    mark_job_failed,
    mark_job_succeeded,
)
from src.nodes.service import select_active_node
from src.releases.service import insert_release, set_current_release
from src.store.database import Database
from src.store.entities import (
    MUTATING_ENVIRONMENT_STATUSES,
    DriftStatus,
    EnvironmentStatus,
    EnvironmentType,
    NodeStatus,
    PromotionPreset,
    Site,
    SiteStatus,
    format_timestamp,
    generate_uuid,
)
from src.store.queries import (
    activate_environment,
    environment_public_url,
    fail_environment,
    get_environment,
    get_node,
    get_site,
    list_site_environments,
    set_environment_status,
    set_site_status,
)

logger = logging.getLogger(__name__)

SLUG_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")


@dataclass
class SiteCreateResult:
    site_id: str
    environment_id: str
    job_id: str


@dataclass
class SiteImportResult:
    job_id: str
    release_id: str


class SiteService:
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
    # Create
    # =========================================================================

    def create(self, name: str, slug: str, node_id: Optional[str] = None) -> SiteCreateResult:
        """
        Create a site with its production environment and enqueue site_create.

        Args:
            name: Display name
            slug: Unique slug (lowercased)
            node_id: Explicit target node; defaults to the preferred active node

        Raises:
            InvalidInputError: empty name or malformed slug
            NoAvailableNodeError: no active node
            NodeMissingPublicIPError: the node has no public ip
            SlugConflictError: slug already in use
        """
        name = (name or "").strip()
        slug = (slug or "").strip().lower()
        if not name:
            raise InvalidInputError("name is required")
        if not slug:
            raise InvalidInputError("slug is required")
        if not SLUG_PATTERN.match(slug):
            raise InvalidInputError(f"slug must contain only a-z, 0-9 and '-': {slug}")

        now = self.clock.now()
        moment = format_timestamp(now)
        site_id = generate_uuid()
        environment_id = generate_uuid()

        with self.database.transaction() as conn:
            if node_id:
                node = get_node(conn, node_id)
                if node.status != NodeStatus.ACTIVE:
                    raise NoAvailableNodeError()
            else:
                node = select_active_node(conn)
                if node is None:
                    raise NoAvailableNodeError()
            if not (node.public_ip or "").strip():
                raise NodeMissingPublicIPError(node.node_id)

            if conn.execute("SELECT 1 FROM sites WHERE slug = ?", (slug,)).fetchone():
                raise SlugConflictError(slug)

            try:
                conn.execute(
                    """
                    INSERT INTO sites (
                        site_id, name, slug, status, primary_environment_id,
                        state_version, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, NULL, 1, ?, ?)
                    """,
                    (site_id, name, slug, SiteStatus.ACTIVE.value, moment, moment),
                )
            except sqlite3.IntegrityError as e:
                raise SlugConflictError(slug) from e

            conn.execute(
                """
                INSERT INTO environments (
                    environment_id, site_id, name, slug, environment_type, status,
                    node_id, source_environment_id, promotion_preset, preview_url,
                    drift_status, fastcgi_cache_enabled, redis_cache_enabled,
                    state_version, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, NULL, ?, ?, ?, 1, 1, 1, ?, ?)
                """,
                (
                    environment_id,
                    site_id,
                    "Production",
                    "production",
                    EnvironmentType.PRODUCTION.value,
                    EnvironmentStatus.ACTIVE.value,
                    node.node_id,
                    PromotionPreset.CONTENT_PROTECT.value,
                    sslip_preview_url(environment_id, node.public_ip),
                    DriftStatus.UNKNOWN.value,
                    moment,
                    moment,
                ),
            )
            conn.execute(
                "UPDATE sites SET primary_environment_id = ? WHERE site_id = ?",
                (environment_id, site_id),
            )

            job = enqueue_mutation_job(
                conn,
                JobType.SITE_CREATE.value,
                now,
                payload=SiteCreatePayload(
                    site_id=site_id,
                    environment_id=environment_id,
                    node_id=node.node_id,
                ).to_payload(),
                site_id=site_id,
                environment_id=environment_id,
                node_id=node.node_id,
            )

        record_accepted(self.audit, "site.create", "site", site_id)
        logger.info(f"Created site {site_id} ({slug}) on node {node.node_id}, job {job.job_id}")
        return SiteCreateResult(site_id=site_id, environment_id=environment_id, job_id=job.job_id)

    # =========================================================================
    # Import
    # =========================================================================

    def import_site(self, site_id: str, archive_url: str) -> SiteImportResult:
        """
        Import an archive into the site's primary environment.

        Raises:
            InvalidInputError: archive_url is not http(s)
            SiteNotFoundError / EnvironmentNotActiveError: site or its
                primary environment not active
            ConcurrencyConflictError: site or node busy
        """
        archive_url = (archive_url or "").strip()
        if not archive_url.startswith(("http://", "https://")):
            raise InvalidInputError("archive_url must be an http or https URL")

        now = self.clock.now()
        moment = format_timestamp(now)

        with self.database.transaction() as conn:
            site = get_site(conn, site_id)
            if site.status != SiteStatus.ACTIVE:
                raise InvalidInputError(f"site {site_id} is {site.status.value}, expected active")
            if not site.primary_environment_id:
                raise InvalidInputError(f"site {site_id} has no primary environment")

            environment = get_environment(conn, site.primary_environment_id)
            if environment.status != EnvironmentStatus.ACTIVE:
                raise EnvironmentNotActiveError(environment.environment_id, environment.status.value)

            target_url = environment_public_url(conn, environment)

            release = insert_release(
                conn, environment.environment_id, "upload", archive_url, moment, notes="site import"
            )
            set_environment_status(conn, environment.environment_id, EnvironmentStatus.RESTORING, moment)
            set_site_status(conn, site_id, SiteStatus.RESTORING, moment)

            job = enqueue_mutation_job(
                conn,
                JobType.SITE_IMPORT.value,
                now,
                payload=SiteImportPayload(
                    site_id=site_id,
                    environment_id=environment.environment_id,
                    node_id=environment.node_id,
                    archive_url=archive_url,
                    release_id=release.release_id,
                    target_url=target_url,
                ).to_payload(),
                site_id=site_id,
                environment_id=environment.environment_id,
                node_id=environment.node_id,
            )

        record_accepted(self.audit, "site.import", "site", site_id)
        return SiteImportResult(job_id=job.job_id, release_id=release.release_id)

    # =========================================================================
    # Reset
    # =========================================================================

    def reset_failed(self, site_id: str) -> Site:
        """
        Return a failed site (and its failed environments) to active.

        Raises:
            ResourceNotFailedError: site is not failed
            ConcurrencyConflictError: a job holds the site or an environment
                is mid-mutation
        """
        moment = format_timestamp(self.clock.now())

        with self.database.transaction() as conn:
            site = get_site(conn, site_id)
            if site.status != SiteStatus.FAILED:
                raise ResourceNotFailedError("site", site_id, site.status.value)

            assert_no_active_mutation(conn, site_id, None)
            environments = list_site_environments(conn, site_id)
            if any(env.status.value in MUTATING_ENVIRONMENT_STATUSES for env in environments):
                raise ConcurrencyConflictError(site_id=site_id)

            for environment in environments:
                if environment.status == EnvironmentStatus.FAILED:
                    set_environment_status(conn, environment.environment_id, EnvironmentStatus.ACTIVE, moment)
            set_site_status(conn, site_id, SiteStatus.ACTIVE, moment)
            site = get_site(conn, site_id)

        record_accepted(self.audit, "site.reset", "site", site_id)
        return site

    # =========================================================================
    # Completion
    # =========================================================================

    def mark_create_succeeded(self, job_id: str, environment_id: str) -> None:
        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            activate_environment(conn, get_environment(conn, environment_id), moment)
            mark_job_succeeded(conn, job_id, moment)

    def mark_create_failed(
        self,
        job_id: str,
        environment_id: str,
        code: str = ENV_MUTATION_FAILED,
        message: str = "",
    ) -> None:
        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            fail_environment(conn, get_environment(conn, environment_id), moment)
            mark_job_failed(conn, job_id, code or ENV_MUTATION_FAILED, message, moment)

    def mark_import_succeeded(self, job_id: str, environment_id: str, release_id: str) -> None:
        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            environment = get_environment(conn, environment_id)
            set_current_release(conn, environment_id, release_id, moment)
            activate_environment(conn, environment, moment)
            mark_job_succeeded(conn, job_id, moment)

    def mark_import_failed(
        self,
        job_id: str,
        environment_id: str,
        code: str = ENV_MUTATION_FAILED,
        message: str = "",
    ) -> None:
        moment = format_timestamp(self.clock.now())
        with self.database.transaction() as conn:
            fail_environment(conn, get_environment(conn, environment_id), moment)
            mark_job_failed(conn, job_id, code or ENV_MUTATION_FAILED, message, moment)

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, site_id: str) -> Site:
        with self.database.connection() as conn:
            return get_site(conn, site_id)

    def get_by_slug(self, slug: str) -> Site:
        slug = (slug or "").strip().lower()
        with self.database.connection() as conn:
            row = conn.execute("SELECT * FROM sites WHERE slug = ?", (slug,)).fetchone()
            if row is None:
                raise SiteNotFoundError(slug)
            return Site.from_row(row)

    def list_sites(self) -> list[Site]:
        with self.database.connection() as conn:
            rows = conn.execute("SELECT * FROM sites ORDER BY created_at ASC").fetchall()
            return [Site.from_row(row) for row in rows]
