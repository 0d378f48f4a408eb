"""
Job handlers, one per job type.

build_handler_registry() wires every handler to its owning service and
returns the job_type -> handler map the workers dispatch on.
"""

from pathlib import Path
from typing import Optional

from src.backups.service import BackupService
from src.domains.service import DomainService
from src.environments.service import EnvironmentService
from src.jobs.worker import JobHandler
from src.nodes.service import NodeService
from src.promotion.service import PromotionService
from src.releases.service import ReleaseService
from src.runner.ansible import PlaybookRunner
from src.sites.service import SiteService
from src.store.database import Database

from .backups import BackupCleanupHandler, BackupCreateHandler
from .base import PlaybookJobHandler, force_non_retryable, log_stage
from .domains import DomainAddHandler, DomainRemoveHandler, Resolver, resolve_hostname
from .environments import (
    CachePurgeHandler,
    CacheToggleHandler,
    EnvCreateHandler,
    EnvDeployHandler,
    EnvRestoreHandler,
    EnvUpdateHandler,
)
from .nodes import NodeProvisionHandler
from .promotion import DriftCheckHandler, EnvPromoteHandler, parse_drift_checksums
from .releases import HealthCheckHandler, HealthProbe, HttpHealthProbe, ReleaseRollbackHandler
from .sites import SiteCreateHandler, SiteImportHandler


def build_handler_registry(
    database: Database,
    runner: PlaybookRunner,
    nodes: NodeService,
    sites: SiteService,
    environments: EnvironmentService,
    backups: BackupService,
    domains: DomainService,
    promotion: PromotionService,
    releases: ReleaseService,
    artifact_root: str | Path,
    health_probe: Optional[HealthProbe] = None,
    resolver: Optional[Resolver] = None,
) -> dict[str, JobHandler]:
    """
    Build the handler for every job type.

    Returns:
        Mapping of job_type to its handler
    """
    handlers: list[JobHandler] = [
        NodeProvisionHandler(database, runner, nodes),
        SiteCreateHandler(database, runner, sites),
        SiteImportHandler(database, runner, sites),
        EnvCreateHandler(database, runner, environments),
        EnvDeployHandler(database, runner, environments),
        EnvUpdateHandler(database, runner, environments),
        EnvRestoreHandler(database, runner, environments),
        CacheToggleHandler(database, runner, environments),
        CachePurgeHandler(database, runner, environments),
        BackupCreateHandler(database, runner, backups, artifact_root),
        BackupCleanupHandler(database, runner, backups, artifact_root),
        DomainAddHandler(database, runner, domains, resolver),
        DomainRemoveHandler(database, runner, domains),
        DriftCheckHandler(database, runner, promotion),
        EnvPromoteHandler(database, runner, promotion),
        HealthCheckHandler(database, releases, health_probe),
        ReleaseRollbackHandler(database, runner, releases),
    ]
    return {handler.job_type: handler for handler in handlers}


__all__ = [
    "build_handler_registry",
    # Base
    "PlaybookJobHandler",
    "force_non_retryable",
    "log_stage",
    # Handlers
    "NodeProvisionHandler",
    "SiteCreateHandler",
    "SiteImportHandler",
    "EnvCreateHandler",
    "EnvDeployHandler",
    "EnvUpdateHandler",
    "EnvRestoreHandler",
    "CacheToggleHandler",
    "CachePurgeHandler",
    "BackupCreateHandler",
    "BackupCleanupHandler",
    "DomainAddHandler",
    "DomainRemoveHandler",
    "DriftCheckHandler",
    "EnvPromoteHandler",
    "HealthCheckHandler",
    "ReleaseRollbackHandler",
    # Probes / resolvers
    "HealthProbe",
    "HttpHealthProbe",
    "Resolver",
    "resolve_hostname",
    "parse_drift_checksums",
]
