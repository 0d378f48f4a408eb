"""
Environment mutation handlers.

env_create, env_deploy, env_update and env_restore take the environment
out of `active` while they run and put it back (or into `failed`) through
EnvironmentService. Cache toggle and purge never leave `active`.
"""

from src.environments.service import EnvironmentService
from src.jobs.entities import Job, JobType
from src.jobs.payloads import (
    CachePurgePayload,
    CacheTogglePayload,
    EnvCreatePayload,
    EnvDeployPayload,
    EnvRestorePayload,
    EnvUpdatePayload,
    parse_payload,
)
from src.releases.service import release_path
from src.runner.ansible import PlaybookRunner
from src.store.database import Database
from src.store.queries import get_backup

from .base import PlaybookJobHandler, force_non_retryable, log_stage


class EnvironmentJobHandler(PlaybookJobHandler):
    def __init__(self, database: Database, runner: PlaybookRunner, environments: EnvironmentService):
        super().__init__(database, runner)
        self.environments = environments


class EnvCreateHandler(EnvironmentJobHandler):
    job_type = JobType.ENV_CREATE.value
    playbook = "env-create"

    def handle(self, job: Job) -> None:
        payload = parse_payload(job, EnvCreatePayload)
        environment, node = self.load_environment(payload.environment_id)
        log_stage(
            job,
            "start",
            environment_id=environment.environment_id,
            source_environment_id=payload.source_environment_id,
        )

        try:
            self.run_playbook(node, {
                "site_id": payload.site_id,
                "environment_id": environment.environment_id,
                "source_environment_id": payload.source_environment_id,
                "node_id": node.node_id,
                "preview_url": environment.preview_url,
            })
        except Exception as e:
            self.record_failure(
                job,
                e,
                lambda code, message: self.environments.mark_create_failed(
                    job.job_id, environment.environment_id, code, message
                ),
                environment_id=environment.environment_id,
            )
            raise

        self.environments.mark_create_succeeded(job.job_id, environment.environment_id)
        log_stage(job, "succeeded", environment_id=environment.environment_id)


class EnvDeployHandler(EnvironmentJobHandler):
    job_type = JobType.ENV_DEPLOY.value
    playbook = "env-deploy"

    def handle(self, job: Job) -> None:
        payload = parse_payload(job, EnvDeployPayload)
        environment, node = self.load_environment(payload.environment_id)
        log_stage(job, "start", environment_id=environment.environment_id, release_id=payload.release_id)

        try:
            self.run_playbook(node, {
                "environment_id": environment.environment_id,
                "release_id": payload.release_id,
                "release_path": release_path(environment.environment_id, payload.release_id),
                "source_type": payload.source_type,
                "source_ref": payload.source_ref,
            })
        except Exception as e:
            self.record_failure(
                job,
                e,
                lambda code, message: self.environments.mark_deploy_or_update_failed(
                    job.job_id, environment.environment_id, code, message
                ),
                environment_id=environment.environment_id,
            )
            raise

        self.environments.mark_deploy_or_update_succeeded(
            job.job_id, environment.environment_id, payload.release_id
        )
        log_stage(job, "succeeded", environment_id=environment.environment_id, release_id=payload.release_id)


class EnvUpdateHandler(EnvironmentJobHandler):
    job_type = JobType.ENV_UPDATE.value
    playbook = "env-update"

    def handle(self, job: Job) -> None:
        payload = parse_payload(job, EnvUpdatePayload)
        environment, node = self.load_environment(payload.environment_id)
        log_stage(job, "start", environment_id=environment.environment_id, scope=payload.scope)

        try:
            self.run_playbook(node, {
                "environment_id": environment.environment_id,
                "scope": payload.scope,
                "pre_update_backup_id": payload.pre_update_backup_id,
            })
        except Exception as e:
            self.record_failure(
                job,
                e,
                lambda code, message: self.environments.mark_deploy_or_update_failed(
                    job.job_id, environment.environment_id, code, message
                ),
                environment_id=environment.environment_id,
            )
            raise

        self.environments.mark_deploy_or_update_succeeded(job.job_id, environment.environment_id)
        log_stage(job, "succeeded", environment_id=environment.environment_id)


class EnvRestoreHandler(EnvironmentJobHandler):
    """
    Restore an environment from a completed backup.

    Restore failures are never retried: the playbook may have partially
    replaced the environment's content.
    """

    job_type = JobType.ENV_RESTORE.value
    playbook = "env-restore"

    def handle(self, job: Job) -> None:
        payload = parse_payload(job, EnvRestorePayload)
        environment, node = self.load_environment(payload.environment_id)
        with self.database.connection() as conn:
            backup = get_backup(conn, payload.backup_id)
        log_stage(job, "start", environment_id=environment.environment_id, backup_id=backup.backup_id)

        try:
            self.run_playbook(node, {
                "environment_id": environment.environment_id,
                "backup_id": backup.backup_id,
                "backup_scope": backup.backup_scope.value,
                "storage_path": backup.storage_path,
                "checksum": backup.checksum,
                "pre_restore_backup_id": payload.pre_restore_backup_id,
            })
        except Exception as e:
            error = force_non_retryable(e)
            self.record_failure(
                job,
                error,
                lambda code, message: self.environments.mark_restore_failed(
                    job.job_id, environment.environment_id, code, message
                ),
                environment_id=environment.environment_id,
            )
            raise error from e

        self.environments.mark_restore_succeeded(job.job_id, environment.environment_id)
        log_stage(job, "succeeded", environment_id=environment.environment_id, backup_id=backup.backup_id)


class CacheToggleHandler(EnvironmentJobHandler):
    job_type = JobType.ENV_CACHE_TOGGLE.value
    playbook = "env-cache-toggle"

    def handle(self, job: Job) -> None:
        payload = parse_payload(job, CacheTogglePayload)
        environment, node = self.load_environment(payload.environment_id)
        fastcgi = environment.fastcgi_cache_enabled if payload.fastcgi_cache_enabled is None \
            else payload.fastcgi_cache_enabled
        redis = environment.redis_cache_enabled if payload.redis_cache_enabled is None \
            else payload.redis_cache_enabled
        log_stage(job, "start", environment_id=environment.environment_id, fastcgi=fastcgi, redis=redis)

        try:
            self.run_playbook(node, {
                "environment_id": environment.environment_id,
                "fastcgi_cache_enabled": fastcgi,
                "redis_cache_enabled": redis,
            })
        except Exception as e:
            self.record_failure(
                job,
                e,
                lambda code, message: self.environments.mark_cache_failed(job.job_id, code, message),
                environment_id=environment.environment_id,
            )
            raise

        self.environments.mark_cache_succeeded(job.job_id)
        log_stage(job, "succeeded", environment_id=environment.environment_id)


class CachePurgeHandler(EnvironmentJobHandler):
    job_type = JobType.CACHE_PURGE.value
    playbook = "cache-purge"

    def handle(self, job: Job) -> None:
        payload = parse_payload(job, CachePurgePayload)
        environment, node = self.load_environment(payload.environment_id)
        log_stage(job, "start", environment_id=environment.environment_id)

        try:
            self.run_playbook(node, {
                "environment_id": environment.environment_id,
                "fastcgi_cache_enabled": payload.fastcgi_cache_enabled,
                "redis_cache_enabled": payload.redis_cache_enabled,
            })
        except Exception as e:
            self.record_failure(
                job,
                e,
                lambda code, message: self.environments.mark_cache_failed(job.job_id, code, message),
                environment_id=environment.environment_id,
            )
            raise

        self.environments.mark_cache_succeeded(job.job_id)
        log_stage(job, "succeeded", environment_id=environment.environment_id)
