"""site_create and site_import handlers."""

from src.jobs.entities import Job, JobType
from src.jobs.payloads import SiteCreatePayload, SiteImportPayload, parse_payload
from src.releases.service import release_path
from src.runner.ansible import PlaybookRunner
from src.sites.service import SiteService
from src.store.database import Database

from .base import PlaybookJobHandler, log_stage


class SiteCreateHandler(PlaybookJobHandler):
    job_type = JobType.SITE_CREATE.value
    playbook = "site-create"

    def __init__(self, database: Database, runner: PlaybookRunner, sites: SiteService):
        super().__init__(database, runner)
        self.sites = sites

    def handle(self, job: Job) -> None:
        payload = parse_payload(job, SiteCreatePayload)
        environment, node = self.load_environment(payload.environment_id)
        site = self.sites.get(payload.site_id)
        log_stage(job, "start", site_id=site.site_id, environment_id=environment.environment_id)

        try:
            self.run_playbook(node, {
                "site_id": site.site_id,
                "site_slug": site.slug,
                "environment_id": environment.environment_id,
                "node_id": node.node_id,
                "preview_url": environment.preview_url,
            })
        except Exception as e:
            self.record_failure(
                job,
                e,
                lambda code, message: self.sites.mark_create_failed(
                    job.job_id, environment.environment_id, code, message
                ),
                site_id=site.site_id,
            )
            raise

        self.sites.mark_create_succeeded(job.job_id, environment.environment_id)
        log_stage(job, "succeeded", site_id=site.site_id, environment_id=environment.environment_id)


class SiteImportHandler(PlaybookJobHandler):
    job_type = JobType.SITE_IMPORT.value
    playbook = "site-import"

    def __init__(self, database: Database, runner: PlaybookRunner, sites: SiteService):
        super().__init__(database, runner)
        self.sites = sites

    def handle(self, job: Job) -> None:
        payload = parse_payload(job, SiteImportPayload)
        environment, node = self.load_environment(payload.environment_id)
        log_stage(job, "start", site_id=payload.site_id, release_id=payload.release_id)

        try:
            self.run_playbook(node, {
                "site_id": payload.site_id,
                "environment_id": environment.environment_id,
                "archive_url": payload.archive_url,
                "release_id": payload.release_id,
                "release_path": release_path(environment.environment_id, payload.release_id),
                "target_url": payload.target_url,
            })
        except Exception as e:
            self.record_failure(
                job,
                e,
                lambda code, message: self.sites.mark_import_failed(
                    job.job_id, environment.environment_id, code, message
                ),
                site_id=payload.site_id,
            )
            raise

        self.sites.mark_import_succeeded(job.job_id, environment.environment_id, payload.release_id)
        log_stage(job, "succeeded", site_id=payload.site_id, release_id=payload.release_id)
