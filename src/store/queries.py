"""
Row loaders and status writers shared by the services.

Every function takes an open connection so that it composes into the
caller's transaction.
"""

import sqlite3
from typing import Optional

from src.common.errors import (
    BackupNotFoundError,
    DomainNotFoundError,
    EnvironmentNotFoundError,
    NodeNotFoundError,
    ReleaseNotFoundError,
    SiteNotFoundError,
)

from .entities import (
    Backup,
    Domain,
    DriftCheck,
    Environment,
    EnvironmentStatus,
    MUTATING_ENVIRONMENT_STATUSES,
    Node,
    Release,
    RestoreRequest,
    Site,
    SiteStatus,
)


# =============================================================================
# Loaders
# =============================================================================

def get_node(conn: sqlite3.Connection, node_id: str) -> Node:
    row = conn.execute("SELECT * FROM nodes WHERE node_id = ?", (node_id,)).fetchone()
    if row is None:
        raise NodeNotFoundError(node_id)
    return Node.from_row(row)


def get_site(conn: sqlite3.Connection, site_id: str) -> Site:
    row = conn.execute("SELECT * FROM sites WHERE site_id = ?", (site_id,)).fetchone()
    if row is None:
        raise SiteNotFoundError(site_id)
    return Site.from_row(row)


def get_environment(conn: sqlite3.Connection, environment_id: str) -> Environment:
    row = conn.execute(
        "SELECT * FROM environments WHERE environment_id = ?", (environment_id,)
    ).fetchone()
    if row is None:
        raise EnvironmentNotFoundError(environment_id)
    return Environment.from_row(row)


def get_release(conn: sqlite3.Connection, release_id: str) -> Release:
    row = conn.execute("SELECT * FROM releases WHERE release_id = ?", (release_id,)).fetchone()
    if row is None:
        raise ReleaseNotFoundError(release_id)
    return Release.from_row(row)


def get_backup(conn: sqlite3.Connection, backup_id: str) -> Backup:
    row = conn.execute("SELECT * FROM backups WHERE backup_id = ?", (backup_id,)).fetchone()
    if row is None:
        raise BackupNotFoundError(backup_id)
    return Backup.from_row(row)


def get_domain(conn: sqlite3.Connection, domain_id: str) -> Domain:
    row = conn.execute("SELECT * FROM domains WHERE domain_id = ?", (domain_id,)).fetchone()
    if row is None:
        raise DomainNotFoundError(domain_id)
    return Domain.from_row(row)


def find_drift_check(conn: sqlite3.Connection, drift_check_id: str) -> Optional[DriftCheck]:
    row = conn.execute(
        "SELECT * FROM drift_checks WHERE drift_check_id = ?", (drift_check_id,)
    ).fetchone()
    return DriftCheck.from_row(row) if row else None


def find_restore_request(conn: sqlite3.Connection, job_id: str) -> Optional[RestoreRequest]:
    row = conn.execute("SELECT * FROM restore_requests WHERE job_id = ?", (job_id,)).fetchone()
    return RestoreRequest.from_row(row) if row else None


def list_site_environments(conn: sqlite3.Connection, site_id: str) -> list[Environment]:
    rows = conn.execute(
        "SELECT * FROM environments WHERE site_id = ? ORDER BY created_at ASC, environment_id ASC",
        (site_id,),
    ).fetchall()
    return [Environment.from_row(row) for row in rows]


def environment_public_url(conn: sqlite3.Connection, environment: Environment) -> str:
    """https://<primary domain> when the environment has one, else its preview URL."""
    if environment.primary_domain_id:
        row = conn.execute(
            "SELECT hostname FROM domains WHERE domain_id = ?",
            (environment.primary_domain_id,),
        ).fetchone()
        if row is not None:
            return f"https://{row['hostname']}"
    return environment.preview_url


# =============================================================================
# Status writers
# =============================================================================

def set_environment_status(
    conn: sqlite3.Connection,
    environment_id: str,
    status: EnvironmentStatus,
    now: str,
) -> None:
    """Set an environment's status and bump its state_version."""
    cursor = conn.execute(
        """
        UPDATE environments
        SET status = ?, state_version = state_version + 1, updated_at = ?
        WHERE environment_id = ?
        """,
        (status.value, now, environment_id),
    )
    if cursor.rowcount == 0:
        raise EnvironmentNotFoundError(environment_id)


def set_site_status(conn: sqlite3.Connection, site_id: str, status: SiteStatus, now: str) -> None:
    """Set a site's status and bump its state_version."""
    cursor = conn.execute(
        """
        UPDATE sites
        SET status = ?, state_version = state_version + 1, updated_at = ?
        WHERE site_id = ?
        """,
        (status.value, now, site_id),
    )
    if cursor.rowcount == 0:
        raise SiteNotFoundError(site_id)


def bump_environment_version(conn: sqlite3.Connection, environment_id: str, now: str) -> None:
    conn.execute(
        """
        UPDATE environments
        SET state_version = state_version + 1, updated_at = ?
        WHERE environment_id = ?
        """,
        (now, environment_id),
    )


def sync_site_status(conn: sqlite3.Connection, site_id: str, now: str) -> SiteStatus:
    """
    Return a site to active once every environment is active.

    Leaves the site untouched while any environment is still mutating or
    failed, so the site keeps mirroring the latest transition.
    """
    site = get_site(conn, site_id)
    statuses = {env.status for env in list_site_environments(conn, site_id)}
    if statuses <= {EnvironmentStatus.ACTIVE} and site.status != SiteStatus.ACTIVE:
        set_site_status(conn, site_id, SiteStatus.ACTIVE, now)
        return SiteStatus.ACTIVE
    return site.status


def activate_environment(conn: sqlite3.Connection, environment: Environment, now: str) -> None:
    """Environment back to active, then re-derive its site's status."""
    set_environment_status(conn, environment.environment_id, EnvironmentStatus.ACTIVE, now)
    sync_site_status(conn, environment.site_id, now)


def fail_environment(conn: sqlite3.Connection, environment: Environment, now: str) -> None:
    """Environment and its site both become failed."""
    set_environment_status(conn, environment.environment_id, EnvironmentStatus.FAILED, now)
    set_site_status(conn, environment.site_id, SiteStatus.FAILED, now)


def fail_stranded_environment(conn: sqlite3.Connection, environment_id: Optional[str], now: str) -> bool:
    """
    Fail an environment left mid-mutation by a job that ended without settling it.

    Returns:
        True if the environment (and its site) became failed
    """
    if not environment_id:
        return False
    row = conn.execute(
        "SELECT * FROM environments WHERE environment_id = ?", (environment_id,)
    ).fetchone()
    if row is None:
        return False
    environment = Environment.from_row(row)
    if environment.status.value not in MUTATING_ENVIRONMENT_STATUSES:
        return False
    fail_environment(conn, environment, now)
    return True


def fail_unfinished_backup(conn: sqlite3.Connection, backup_id: str) -> bool:
    """Fail a backup still pending or running. Returns False if it had already settled."""
    cursor = conn.execute(
        """
        UPDATE backups SET status = 'failed'
        WHERE backup_id = ? AND status IN ('pending', 'running')
        """,
        (backup_id,),
    )
    return cursor.rowcount > 0
