"""
Control plane - wiring for all services, handlers and background loops.

Components:
- Database / SqliteAuditRecorder (storage, audit trail)
- JobQueue (durable queue + concurrency gate)
- Services (nodes, sites, environments, backups, domains, promotion,
  releases, magic login)
- Handler registry (one handler per job type)
- WorkerPool (claims and runs jobs)
- RecoveryManager (jobs orphaned by a crash)
- BackupCleanupScheduler (retention sweep)

Usage:
    control_plane = ControlPlane.create(Settings.from_env())
    control_plane.start()
    # ... workers and cleanup run in background threads ...
    control_plane.stop()
"""

import logging
from typing import Optional

from src.access.magic_login import MagicLoginService
from src.audit.recorder import SqliteAuditRecorder
from src.backups.scheduler import BackupCleanupScheduler
from src.backups.service import BackupService
from src.domains.service import DomainService
from src.environments.service import EnvironmentService
from src.handlers import HealthProbe, HttpHealthProbe, Resolver, build_handler_registry
from src.infra.clock import Clock, SystemClock
from src.infra.config import Settings
from src.jobs.queue import JobQueue
from src.jobs.recovery import RecoveryManager
from src.jobs.worker import WorkerPool
from src.nodes.service import NodeService
from src.promotion.service import PromotionService
from src.releases.service import ReleaseService
from src.runner.ansible import AnsiblePlaybookRunner, PlaybookRunner
from src.runner.ssh import SSHRunner, SubprocessSSHRunner
from src.sites.service import SiteService
from src.store.database import Database

logger = logging.getLogger(__name__)


class ControlPlane:
    """
    Owns every component of one control plane process.

    Provides:
    - Component construction and wiring (create)
    - Startup with recovery, worker pool and cleanup scheduler
    - Graceful shutdown
    """

    def __init__(
        self,
        settings: Settings,
        database: Database,
        clock: Clock,
        audit: SqliteAuditRecorder,
        queue: JobQueue,
        nodes: NodeService,
        sites: SiteService,
        environments: EnvironmentService,
        backups: BackupService,
        domains: DomainService,
        promotion: PromotionService,
        releases: ReleaseService,
        magic_login: MagicLoginService,
        workers: WorkerPool,
        recovery: RecoveryManager,
        cleanup_scheduler: BackupCleanupScheduler,
    ):
        """Use ControlPlane.create() for convenient construction."""
        self.settings = settings
        self.database = database
        self.clock = clock
        self.audit = audit
        self.queue = queue
        self.nodes = nodes
        self.sites = sites
        self.environments = environments
        self.backups = backups
        self.domains = domains
        self.promotion = promotion
        self.releases = releases
        self.magic_login = magic_login
        self.workers = workers
        self.recovery = recovery
        self.cleanup_scheduler = cleanup_scheduler

        self._started = False

    @classmethod
    def create(
        cls,
        settings: Settings,
        clock: Optional[Clock] = None,
        playbook_runner: Optional[PlaybookRunner] = None,
        ssh_runner: Optional[SSHRunner] = None,
        health_probe: Optional[HealthProbe] = None,
        resolver: Optional[Resolver] = None,
    ) -> "ControlPlane":
        """
        Create a ControlPlane with all components wired together.

        Args:
            settings: Resolved settings
            clock: Time source (defaults to the system clock)
            playbook_runner: Defaults to ansible-playbook from settings
            ssh_runner: Defaults to the ssh binary from settings
            health_probe: Defaults to an httpx probe
            resolver: Hostname resolver for domain_add DNS checks

        Returns:
            Configured ControlPlane
        """
        clock = clock or SystemClock()
        database = Database(settings.db_path)
        audit = SqliteAuditRecorder(database, clock)
        queue = JobQueue(database, clock)

        nodes = NodeService(database, clock, audit)
        sites = SiteService(database, clock, audit)
        environments = EnvironmentService(database, clock, audit, bucket=settings.backup_bucket)
        backups = BackupService(database, clock, audit, bucket=settings.backup_bucket)
        domains = DomainService(database, clock, audit)
        promotion = PromotionService(database, clock, audit)
        releases = ReleaseService(database, clock)

        playbook_runner = playbook_runner or AnsiblePlaybookRunner(
            playbook_dir=settings.playbook_dir,
            binary=settings.ansible_binary,
            timeout=settings.ansible_timeout,
            syntax_check=settings.syntax_check,
        )
        ssh_runner = ssh_runner or SubprocessSSHRunner(binary=settings.ssh_binary)
        health_probe = health_probe or HttpHealthProbe(timeout=settings.health_check_timeout)

        handlers = build_handler_registry(
            database=database,
            runner=playbook_runner,
            nodes=nodes,
            sites=sites,
            environments=environments,
            backups=backups,
            domains=domains,
            promotion=promotion,
            releases=releases,
            artifact_root=settings.artifact_root,
            health_probe=health_probe,
            resolver=resolver,
        )

        workers = WorkerPool.create(
            count=settings.worker_count,
            queue=queue,
            handlers=handlers,
            audit=audit,
            clock=clock,
            poll_interval=settings.poll_interval,
        )

        return cls(
            settings=settings,
            database=database,
            clock=clock,
            audit=audit,
            queue=queue,
            nodes=nodes,
            sites=sites,
            environments=environments,
            backups=backups,
            domains=domains,
            promotion=promotion,
            releases=releases,
            magic_login=MagicLoginService(database, ssh_runner, clock),
            workers=workers,
            recovery=RecoveryManager(database, queue, clock),
            cleanup_scheduler=BackupCleanupScheduler(backups, interval=settings.cleanup_interval),
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, run_recovery: bool = True) -> dict:
        """
        Start workers and the cleanup scheduler in background threads.

        Args:
            run_recovery: Whether to recover orphaned running jobs first

        Returns:
            Recovery statistics if recovery was run
        """
        if self._started:
            raise RuntimeError("Control plane already started")

        logger.info("Starting control plane...")

        recovery_stats = {}
        if run_recovery:
            recovery_stats = self.recovery.recover_on_startup()

        self.workers.start()
        self.cleanup_scheduler.start(blocking=False)
        self._started = True

        logger.info("Control plane started")
        return recovery_stats

    def stop(self, timeout: float = 30.0) -> None:
        """
        Stop background loops, letting running jobs finish.

        Args:
            timeout: Maximum wait per worker for its current job
        """
        if not self._started:
            return

        logger.info("Stopping control plane...")
        self.cleanup_scheduler.stop()
        self.workers.stop(timeout=timeout)
        self._started = False
        logger.info("Control plane stopped")

    @property
    def is_running(self) -> bool:
        return self._started
