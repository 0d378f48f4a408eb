"""
SQLite storage for the control plane.

The database is the sole shared mutable resource. Every command that reads
state, decides, and enqueues a job runs inside `Database.transaction()`,
which takes the write lock up front (BEGIN IMMEDIATE) so two commands can
never interleave between their read and their write.

Provides:
- Connection factory with WAL mode and foreign keys
- Transaction context manager (commit, or roll back and re-raise)
- Idempotent schema creation
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)

DEFAULT_BUSY_TIMEOUT_SECONDS = 30.0


class Database:
    """
    SQLite-backed store shared by the services, the queue and the worker.

    Connections are opened per operation in autocommit mode; transaction
    boundaries are explicit.
    """

    def __init__(self, db_path: str | Path, busy_timeout: float = DEFAULT_BUSY_TIMEOUT_SECONDS):
        """
        Initialize the database.

        Args:
            db_path: Path to SQLite database file. Parent directories are created.
            busy_timeout: Seconds a connection waits for the write lock
        """
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with WAL mode enabled."""
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout * 1000)}")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for read-only connections."""
        conn = self._get_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for write transactions.

        Any exception raised inside the block rolls back every statement
        issued on the yielded connection.
        """
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self.transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS nodes (
                    node_id TEXT PRIMARY KEY,
                    hostname TEXT NOT NULL,
                    public_ip TEXT,
                    ssh_port INTEGER NOT NULL DEFAULT 22 CHECK (ssh_port BETWEEN 1 AND 65535),
                    ssh_user TEXT NOT NULL,
                    ssh_private_key_path TEXT,
                    status TEXT NOT NULL CHECK (status IN ('provisioning', 'active', 'unreachable', 'decommissioned')),
                    is_local INTEGER NOT NULL DEFAULT 0,
                    state_version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS sites (
                    site_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    slug TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL CHECK (status IN ('active', 'cloning', 'deploying', 'restoring', 'failed')),
                    primary_environment_id TEXT,
                    state_version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS environments (
                    environment_id TEXT PRIMARY KEY,
                    site_id TEXT NOT NULL REFERENCES sites(site_id),
                    name TEXT NOT NULL,
                    slug TEXT NOT NULL,
                    environment_type TEXT NOT NULL CHECK (environment_type IN ('production', 'staging', 'clone')),
                    status TEXT NOT NULL CHECK (status IN ('active', 'cloning', 'deploying', 'restoring', 'failed')),
                    node_id TEXT NOT NULL REFERENCES nodes(node_id),
                    source_environment_id TEXT,
                    promotion_preset TEXT NOT NULL CHECK (promotion_preset IN ('content-protect', 'commerce-protect')),
                    preview_url TEXT NOT NULL,
                    primary_domain_id TEXT,
                    current_release_id TEXT,
                    drift_status TEXT NOT NULL DEFAULT 'unknown' CHECK (drift_status IN ('unknown', 'clean', 'drifted')),
                    drift_checked_at TEXT,
                    last_drift_check_id TEXT,
                    fastcgi_cache_enabled INTEGER NOT NULL DEFAULT 1,
                    redis_cache_enabled INTEGER NOT NULL DEFAULT 1,
                    state_version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (site_id, slug)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS releases (
                    release_id TEXT PRIMARY KEY,
                    environment_id TEXT NOT NULL REFERENCES environments(environment_id),
                    source_type TEXT NOT NULL,
                    source_ref TEXT NOT NULL,
                    path TEXT NOT NULL,
                    health_status TEXT NOT NULL DEFAULT 'unknown' CHECK (health_status IN ('unknown', 'healthy', 'unhealthy')),
                    notes TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS backups (
                    backup_id TEXT PRIMARY KEY,
                    environment_id TEXT NOT NULL REFERENCES environments(environment_id),
                    backup_scope TEXT NOT NULL CHECK (backup_scope IN ('db', 'files', 'full')),
                    status TEXT NOT NULL CHECK (status IN ('pending', 'running', 'completed', 'failed', 'expired')),
                    storage_type TEXT NOT NULL,
                    storage_path TEXT NOT NULL,
                    retention_until TEXT NOT NULL,
                    checksum TEXT,
                    size_bytes INTEGER,
                    created_at TEXT NOT NULL,
                    completed_at TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS domains (
                    domain_id TEXT PRIMARY KEY,
                    environment_id TEXT NOT NULL REFERENCES environments(environment_id),
                    hostname TEXT NOT NULL UNIQUE,
                    tls_status TEXT NOT NULL CHECK (tls_status IN ('pending', 'active', 'failed')),
                    tls_issuer TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS drift_checks (
                    drift_check_id TEXT PRIMARY KEY,
                    environment_id TEXT NOT NULL REFERENCES environments(environment_id),
                    promotion_preset TEXT NOT NULL,
                    status TEXT NOT NULL CHECK (status IN ('clean', 'drifted')),
                    db_checksums TEXT NOT NULL DEFAULT '{}',
                    file_checksums TEXT NOT NULL DEFAULT '{}',
                    checked_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    job_type TEXT NOT NULL,
                    status TEXT NOT NULL CHECK (status IN ('queued', 'running', 'succeeded', 'failed', 'cancelled')),
                    site_id TEXT,
                    environment_id TEXT,
                    node_id TEXT,
                    payload_json TEXT NOT NULL DEFAULT '{}',
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 3,
                    run_after TEXT,
                    locked_by TEXT,
                    locked_at TEXT,
                    started_at TEXT,
                    finished_at TEXT,
                    error_code TEXT,
                    error_message TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS restore_requests (
                    job_id TEXT PRIMARY KEY,
                    environment_id TEXT NOT NULL REFERENCES environments(environment_id),
                    backup_id TEXT NOT NULL REFERENCES backups(backup_id),
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_logs (
                    audit_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    resource_type TEXT NOT NULL,
                    resource_id TEXT NOT NULL,
                    result TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            # Claim order and gate lookups
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_status_created
                ON jobs(status, created_at, job_id)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_site_status
                ON jobs(site_id, status)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_node_status
                ON jobs(node_id, status)
            """)

            # Release history per environment (rollback lookup)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_releases_environment_created
                ON releases(environment_id, created_at)
            """)

            # Retention scan for the cleanup scheduler
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_backups_status_retention
                ON backups(status, retention_until)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_backups_environment
                ON backups(environment_id, status, completed_at)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_domains_environment
                ON domains(environment_id, created_at)
            """)

            # Accepted-entry upsert key
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_audit_correlation
                ON audit_logs(action, resource_type, resource_id)
            """)

        logger.debug(f"Database schema ready at {self.db_path}")
