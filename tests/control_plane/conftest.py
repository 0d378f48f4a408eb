"""
Control Plane Test Fixtures.

Base fixtures:
  - Empty database in a temporary file
  - Mocked clock at a fixed UTC instant
  - ControlPlane wired to a fake playbook runner, SSH runner, health probe
    and DNS resolver

Per-test fixtures:
  - Nodes, sites, environments, releases, backups and domains inserted
    directly, so that no job holds the concurrency gate
  - Jobs inserted in any status for ordering and recovery tests
"""

import json
import socket
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Generator, Optional

import pytest

from src.app import ControlPlane
from src.backups.service import insert_backup
from src.environments.preview import sslip_preview_url
from src.infra.config import Settings
from src.jobs import Job, JobQueue, JobStatus, Worker
from src.releases.service import insert_release, set_current_release, set_release_health
from src.runner.ansible import PlaybookResult
from src.store.database import Database
from src.store.entities import (
    Backup,
    BackupScope,
    BackupStatus,
    Domain,
    Environment,
    EnvironmentStatus,
    EnvironmentType,
    HealthStatus,
    Node,
    NodeStatus,
    Release,
    Site,
    SiteStatus,
    TLSStatus,
    format_timestamp,
    generate_uuid,
)
from src.store.queries import get_backup, get_domain, get_environment, get_node, get_release, get_site


# Fixed time for deterministic tests
FIXED_DATETIME = datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
NODE_IP = "203.0.113.10"


class MockClock:
    """
    Mock clock for deterministic time control.

    - Starts at a fixed UTC instant
    - Advances only when explicitly ticked
    """

    def __init__(self, start_time: datetime = FIXED_DATETIME):
        self._current = start_time

    def now(self) -> datetime:
        return self._current

    def tick(self, seconds: float = 1) -> None:
        """Advance time by specified seconds."""
        self._current += timedelta(seconds=seconds)

    def set(self, time: datetime) -> None:
        """Set time to specific value."""
        self._current = time


@dataclass
class PlaybookCall:
    playbook: str
    inventory: str
    extra_vars: dict


class FakePlaybookRunner:
    """
    PlaybookRunner double.

    Records every run. Errors queued with fail() are raised by the next runs
    of that playbook, in order. on_run() callbacks fire on successful runs
    only (e.g. to write a backup artifact).
    """

    def __init__(self):
        self.calls: list[PlaybookCall] = []
        self._errors: dict[str, list[Exception]] = {}
        self._outputs: dict[str, str] = {}
        self._callbacks: dict[str, Callable[[dict], None]] = {}

    def fail(self, playbook: str, *errors: Exception) -> None:
        self._errors.setdefault(playbook, []).extend(errors)

    def set_output(self, playbook: str, output: str) -> None:
        self._outputs[playbook] = output

    def on_run(self, playbook: str, callback: Callable[[dict], None]) -> None:
        self._callbacks[playbook] = callback

    def run(self, playbook: str, inventory: str, extra_vars: dict) -> PlaybookResult:
        self.calls.append(PlaybookCall(playbook, inventory, dict(extra_vars)))

        pending = self._errors.get(playbook)
        if pending:
            raise pending.pop(0)

        callback = self._callbacks.get(playbook)
        if callback is not None:
            callback(extra_vars)
        return PlaybookResult(playbook=playbook, output=self._outputs.get(playbook, ""))

    @property
    def playbooks(self) -> list[str]:
        return [call.playbook for call in self.calls]

    def last_call(self, playbook: str) -> PlaybookCall:
        matching = [call for call in self.calls if call.playbook == playbook]
        assert matching, f"Playbook {playbook} was never run"
        return matching[-1]


class FakeSSHRunner:
    """SSHRunner double returning a fixed output or raising a set error."""

    def __init__(self, output: str = "https://acme.example.test/wp-login.php?session=abc123\n"):
        self.output = output
        self.error: Optional[Exception] = None
        self.calls: list[dict] = []

    def run(self, host, port, user, *remote_args, timeout=10.0, identity_file=None) -> str:
        self.calls.append({
            "host": host,
            "port": port,
            "user": user,
            "args": remote_args,
            "timeout": timeout,
            "identity_file": identity_file,
        })
        if self.error is not None:
            raise self.error
        return self.output


class FakeHealthProbe:
    """Healthy unless errors are queued."""

    def __init__(self):
        self.urls: list[str] = []
        self.errors: list[Exception] = []

    def check(self, url: str) -> None:
        self.urls.append(url)
        if self.errors:
            raise self.errors.pop(0)


class FakeResolver:
    """Hostname -> addresses; unknown names fail like the system resolver."""

    def __init__(self):
        self.answers: dict[str, list[str]] = {}

    def __call__(self, hostname: str) -> list[str]:
        if hostname not in self.answers:
            raise socket.gaierror(f"Name or service not known: {hostname}")
        return self.answers[hostname]


def run_jobs(worker: Worker, limit: int = 20) -> list[Job]:
    """Process runnable jobs until none is left; returns them as stored after processing."""
    processed = []
    for _ in range(limit):
        job = worker.process_next()
        if job is None:
            break
        processed.append(job)
    return processed


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def temp_db_path() -> Generator[str, None, None]:
    """Create a temporary database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield db_path

    # Cleanup
    Path(db_path).unlink(missing_ok=True)
    # Also cleanup WAL and SHM files
    Path(f"{db_path}-wal").unlink(missing_ok=True)
    Path(f"{db_path}-shm").unlink(missing_ok=True)


@pytest.fixture
def mock_clock() -> MockClock:
    """Create a mock clock at fixed time."""
    return MockClock()


# =============================================================================
# Collaborator Doubles
# =============================================================================


@pytest.fixture
def playbook_runner() -> FakePlaybookRunner:
    return FakePlaybookRunner()


@pytest.fixture
def ssh_runner() -> FakeSSHRunner:
    return FakeSSHRunner()


@pytest.fixture
def health_probe() -> FakeHealthProbe:
    return FakeHealthProbe()


@pytest.fixture
def dns_resolver() -> FakeResolver:
    return FakeResolver()


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def settings(temp_db_path: str, tmp_path: Path) -> Settings:
    return Settings(
        db_path=Path(temp_db_path),
        log_dir=str(tmp_path / "logs"),
        poll_interval=0.01,
        playbook_dir=tmp_path / "playbooks",
        artifact_root=tmp_path / "artifacts",
    )


@pytest.fixture
def control_plane(
    settings: Settings,
    mock_clock: MockClock,
    playbook_runner: FakePlaybookRunner,
    ssh_runner: FakeSSHRunner,
    health_probe: FakeHealthProbe,
    dns_resolver: FakeResolver,
) -> Generator[ControlPlane, None, None]:
    """ControlPlane with every outside-world dependency faked."""
    control_plane = ControlPlane.create(
        settings,
        clock=mock_clock,
        playbook_runner=playbook_runner,
        ssh_runner=ssh_runner,
        health_probe=health_probe,
        resolver=dns_resolver,
    )

    yield control_plane

    control_plane.stop(timeout=5.0)


@pytest.fixture
def database(control_plane: ControlPlane) -> Database:
    return control_plane.database


@pytest.fixture
def queue(control_plane: ControlPlane) -> JobQueue:
    return control_plane.queue


@pytest.fixture
def worker(control_plane: ControlPlane) -> Worker:
    """The first pool worker, driven synchronously with process_next()."""
    return control_plane.workers.workers[0]


# =============================================================================
# Entity Factory Fixtures
# =============================================================================


@pytest.fixture
def create_node(database: Database, mock_clock: MockClock) -> Callable:
    """Factory fixture for nodes (active, with a public ip, by default)."""

    def _create(
        hostname: str = "node-1.example.test",
        public_ip: Optional[str] = NODE_IP,
        status: NodeStatus = NodeStatus.ACTIVE,
        is_local: bool = False,
        ssh_port: int = 22,
        ssh_user: str = "root",
        ssh_private_key_path: Optional[str] = None,
    ) -> Node:
        node_id = generate_uuid()
        moment = format_timestamp(mock_clock.now())
        with database.transaction() as conn:
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
                    public_ip,
                    ssh_port,
                    ssh_user,
                    ssh_private_key_path,
                    status.value,
                    1 if is_local else 0,
                    moment,
                    moment,
                ),
            )
            return get_node(conn, node_id)

    return _create


@pytest.fixture
def create_environment(database: Database, mock_clock: MockClock) -> Callable:
    """Factory fixture for environments of an existing site."""

    def _create(
        site_id: str,
        node: Node,
        slug: str = "staging",
        environment_type: EnvironmentType = EnvironmentType.STAGING,
        status: EnvironmentStatus = EnvironmentStatus.ACTIVE,
        source_environment_id: Optional[str] = None,
        environment_id: Optional[str] = None,
    ) -> Environment:
        environment_id = environment_id or generate_uuid()
        moment = format_timestamp(mock_clock.now())
        with database.transaction() as conn:
            conn.execute(
                """
                INSERT INTO environments (
                    environment_id, site_id, name, slug, environment_type, status,
                    node_id, source_environment_id, promotion_preset, preview_url,
                    drift_status, fastcgi_cache_enabled, redis_cache_enabled,
                    state_version, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'content-protect', ?, 'unknown', 1, 1, 1, ?, ?)
                """,
                (
                    environment_id,
                    site_id,
                    slug.title(),
                    slug,
                    environment_type.value,
                    status.value,
                    node.node_id,
                    source_environment_id,
                    sslip_preview_url(environment_id, node.public_ip or "127.0.0.1"),
                    moment,
                    moment,
                ),
            )
            return get_environment(conn, environment_id)

    return _create


@pytest.fixture
def create_site(
    database: Database,
    mock_clock: MockClock,
    create_node: Callable,
    create_environment: Callable,
) -> Callable:
    """
    Factory fixture for a site with its production environment.

    Returns (site, production environment).
    """

    def _create(
        slug: str = "acme",
        node: Optional[Node] = None,
        status: SiteStatus = SiteStatus.ACTIVE,
    ) -> tuple[Site, Environment]:
        node = node or create_node()
        site_id = generate_uuid()
        environment_id = generate_uuid()
        moment = format_timestamp(mock_clock.now())
        with database.transaction() as conn:
            conn.execute(
                """
                INSERT INTO sites (
                    site_id, name, slug, status, primary_environment_id,
                    state_version, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, 1, ?, ?)
                """,
                (site_id, slug.title(), slug, status.value, environment_id, moment, moment),
            )

        environment = create_environment(
            site_id,
            node,
            slug="production",
            environment_type=EnvironmentType.PRODUCTION,
            environment_id=environment_id,
        )
        with database.connection() as conn:
            return get_site(conn, site_id), environment

    return _create


@pytest.fixture
def create_release(database: Database, mock_clock: MockClock) -> Callable:
    """
    Factory fixture for releases.

    The clock advances one second after each release so that release
    history has a strict order.
    """

    def _create(
        environment_id: str,
        source_type: str = "git",
        source_ref: str = "main",
        health: HealthStatus = HealthStatus.HEALTHY,
        current: bool = True,
    ) -> Release:
        moment = format_timestamp(mock_clock.now())
        with database.transaction() as conn:
            release = insert_release(conn, environment_id, source_type, source_ref, moment)
            set_release_health(conn, release.release_id, health)
            if current:
                set_current_release(conn, environment_id, release.release_id, moment)
            release = get_release(conn, release.release_id)
        mock_clock.tick(1)
        return release

    return _create


@pytest.fixture
def create_backup(database: Database, mock_clock: MockClock) -> Callable:
    """Factory fixture for backups (completed full backups by default)."""

    def _create(
        environment_id: str,
        scope: BackupScope = BackupScope.FULL,
        status: BackupStatus = BackupStatus.COMPLETED,
        completed_at: Optional[datetime] = None,
        retention_until: Optional[datetime] = None,
        checksum: str = "sha256:" + "ab" * 32,
        size_bytes: int = 2048,
    ) -> Backup:
        completed = status in (BackupStatus.COMPLETED, BackupStatus.EXPIRED)
        with database.transaction() as conn:
            backup = insert_backup(
                conn,
                environment_id,
                scope,
                status,
                mock_clock.now(),
                checksum=checksum if completed else None,
                size_bytes=size_bytes if completed else None,
            )
            if completed_at is not None:
                conn.execute(
                    "UPDATE backups SET completed_at = ? WHERE backup_id = ?",
                    (format_timestamp(completed_at), backup.backup_id),
                )
            if retention_until is not None:
                conn.execute(
                    "UPDATE backups SET retention_until = ? WHERE backup_id = ?",
                    (format_timestamp(retention_until), backup.backup_id),
                )
            return get_backup(conn, backup.backup_id)

    return _create


@pytest.fixture
def create_domain(database: Database, mock_clock: MockClock) -> Callable:
    """Factory fixture for domains (active and primary by default)."""

    def _create(
        environment_id: str,
        hostname: str = "www.acme.example",
        tls_status: TLSStatus = TLSStatus.ACTIVE,
        primary: bool = True,
    ) -> Domain:
        domain_id = generate_uuid()
        moment = format_timestamp(mock_clock.now())
        with database.transaction() as conn:
            conn.execute(
                """
                INSERT INTO domains (
                    domain_id, environment_id, hostname, tls_status, tls_issuer,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, 'letsencrypt', ?, ?)
                """,
                (domain_id, environment_id, hostname, tls_status.value, moment, moment),
            )
            if primary:
                conn.execute(
                    "UPDATE environments SET primary_domain_id = ? WHERE environment_id = ?",
                    (domain_id, environment_id),
                )
            return get_domain(conn, domain_id)

    return _create


# =============================================================================
# Job Factory Fixtures
# =============================================================================


@pytest.fixture
def create_job(database: Database, mock_clock: MockClock) -> Callable:
    """
    Factory fixture for jobs in any status.

    Rows are written directly, bypassing the enqueue gate, so tests can
    build queue states the gate would refuse.
    """

    def _create(
        job_type: str = "env_deploy",
        status: JobStatus = JobStatus.QUEUED,
        site_id: Optional[str] = None,
        environment_id: Optional[str] = None,
        node_id: Optional[str] = None,
        payload: Optional[dict] = None,
        attempt_count: int = 0,
        max_attempts: int = 3,
        created_at: Optional[datetime] = None,
        run_after: Optional[datetime] = None,
        job_id: Optional[str] = None,
        locked_by: Optional[str] = None,
    ) -> Job:
        job_id = job_id or generate_uuid()
        created = format_timestamp(created_at or mock_clock.now())
        with database.transaction() as conn:
            conn.execute(
                """
                INSERT INTO jobs (
                    job_id, job_type, status, site_id, environment_id, node_id,
                    payload_json, attempt_count, max_attempts, run_after,
                    locked_by, locked_at, started_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    job_type,
                    status.value,
                    site_id,
                    environment_id,
                    node_id,
                    json.dumps(payload or {}),
                    attempt_count,
                    max_attempts,
                    format_timestamp(run_after) if run_after else None,
                    locked_by,
                    created if status == JobStatus.RUNNING else None,
                    created if status == JobStatus.RUNNING else None,
                    created,
                    created,
                ),
            )
        return JobQueue(database).get(job_id)

    return _create


# =============================================================================
# Assertion Helpers
# =============================================================================


def assert_job_status(queue: JobQueue, job_id: str, expected: JobStatus, error_code: Optional[str] = None):
    """Assert a job has the expected status (and error code, when given)."""
    job = queue.get(job_id)
    assert job.status == expected, f"Expected {expected}, got {job.status} ({job.error_code}: {job.error_message})"
    if error_code is not None:
        assert job.error_code == error_code, f"Expected {error_code}, got {job.error_code}"
    return job


def assert_environment_status(database: Database, environment_id: str, expected: EnvironmentStatus):
    with database.connection() as conn:
        environment = get_environment(conn, environment_id)
    assert environment.status == expected, f"Expected {expected}, got {environment.status}"
    return environment


def assert_site_status(database: Database, site_id: str, expected: SiteStatus):
    with database.connection() as conn:
        site = get_site(conn, site_id)
    assert site.status == expected, f"Expected {expected}, got {site.status}"
    return site


def jobs_of_type(queue: JobQueue, job_type: str) -> list[Job]:
    """Jobs of one type, oldest first."""
    return [job for job in reversed(queue.list_jobs(limit=1000)) if job.job_type == job_type]
