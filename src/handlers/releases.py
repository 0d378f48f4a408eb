"""
Post-mutation health checks and release rollback.

health_check probes the environment's public URL. A failed probe marks
the release unhealthy and queues release_rollback to the previous
release; with no previous release the environment fails instead.
"""

import logging
from typing import Optional, Protocol

import httpx

from src.common.errors import NoRollbackReleaseError
from src.jobs.entities import Job, JobType
from src.jobs.execution import HEALTH_CHECK_FAILED, HEALTH_CHECK_TIMEOUT, ExecutionError
from src.jobs.payloads import HealthCheckPayload, ReleaseRollbackPayload, parse_payload
from src.jobs.worker import JobHandler
from src.releases.service import ReleaseService, release_path
from src.runner.ansible import PlaybookRunner
from src.store.database import Database
from src.store.queries import environment_public_url, get_environment

from .base import PlaybookJobHandler, log_stage

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 15.0
UNHEALTHY_STATUS = 500


class HealthProbe(Protocol):
    """Capability: decide whether a URL serves a working site."""

    def check(self, url: str) -> None:
        """
        Raises:
            ExecutionError: HEALTH_CHECK_FAILED or HEALTH_CHECK_TIMEOUT
        """
        ...


class HttpHealthProbe:
    """GET the URL; any status below 500 counts as healthy."""

    def __init__(self, timeout: float = DEFAULT_PROBE_TIMEOUT, verify: bool = True):
        self.timeout = timeout
        self.verify = verify

    def check(self, url: str) -> None:
        try:
            with httpx.Client(timeout=self.timeout, verify=self.verify, follow_redirects=True) as client:
                response = client.get(url, headers={"User-Agent": "wpfleet-health-check"})
        except httpx.TimeoutException as e:
            raise ExecutionError(
                HEALTH_CHECK_TIMEOUT,
                f"{url} did not answer within {self.timeout}s",
                retryable=False,
            ) from e
        except httpx.HTTPError as e:
            raise ExecutionError(HEALTH_CHECK_FAILED, f"{url}: {e}", retryable=False) from e

        if response.status_code >= UNHEALTHY_STATUS:
            raise ExecutionError(
                HEALTH_CHECK_FAILED,
                f"{url} answered HTTP {response.status_code}",
                retryable=False,
            )
        logger.debug(f"Health probe {url}: HTTP {response.status_code}")


class HealthCheckHandler(JobHandler):
    job_type = JobType.HEALTH_CHECK.value

    def __init__(self, database: Database, releases: ReleaseService, probe: Optional[HealthProbe] = None):
        self.database = database
        self.releases = releases
        self.probe = probe or HttpHealthProbe()

    def handle(self, job: Job) -> None:
        payload = parse_payload(job, HealthCheckPayload)
        with self.database.connection() as conn:
            environment = get_environment(conn, payload.environment_id)
            url = environment_public_url(conn, environment)
        log_stage(job, "start", environment_id=environment.environment_id, release_id=payload.release_id, url=url)

        try:
            self.probe.check(url)
        except Exception as e:
            if isinstance(e, ExecutionError):
                error = e.non_retryable()
            else:
                error = ExecutionError(HEALTH_CHECK_FAILED, str(e) or type(e).__name__, retryable=False)
            log_stage(job, "failed", code=error.code, environment_id=environment.environment_id)
            self._record_unhealthy(job, payload, error)
            raise error from e

        self.releases.handle_health_check_success(job.job_id, environment.environment_id, payload.release_id)
        log_stage(job, "succeeded", environment_id=environment.environment_id, release_id=payload.release_id)

    def _record_unhealthy(self, job: Job, payload: HealthCheckPayload, error: ExecutionError) -> None:
        try:
            rollback_job = self.releases.handle_health_check_failure(
                job.job_id,
                payload.environment_id,
                payload.release_id,
                error.message,
                timed_out=error.is_timeout,
            )
        except NoRollbackReleaseError:
            logger.error(
                f"Release {payload.release_id} unhealthy and environment {payload.environment_id} "
                f"has no earlier release; marking it failed"
            )
            self.releases.mark_health_check_failed_without_rollback(
                job.job_id,
                payload.environment_id,
                payload.release_id,
                error.message,
                timed_out=error.is_timeout,
            )
            return
        log_stage(job, "rollback_queued", rollback_job_id=rollback_job.job_id)


class ReleaseRollbackHandler(PlaybookJobHandler):
    job_type = JobType.RELEASE_ROLLBACK.value
    playbook = "release-rollback"

    def __init__(self, database: Database, runner: PlaybookRunner, releases: ReleaseService):
        super().__init__(database, runner)
        self.releases = releases

    def handle(self, job: Job) -> None:
        payload = parse_payload(job, ReleaseRollbackPayload)
        environment, node = self.load_environment(payload.environment_id)
        log_stage(
            job,
            "start",
            environment_id=environment.environment_id,
            failed_release_id=payload.failed_release_id,
            restored_release_id=payload.restored_release_id,
        )

        try:
            self.run_playbook(node, {
                "environment_id": environment.environment_id,
                "failed_release_id": payload.failed_release_id,
                "restored_release_id": payload.restored_release_id,
                "release_path": release_path(environment.environment_id, payload.restored_release_id),
            })
        except Exception as e:
            self.record_failure(
                job,
                e,
                lambda code, message: self.releases.apply_rollback_failure(
                    job.job_id,
                    environment.environment_id,
                    message,
                    timed_out=code.endswith("_TIMEOUT"),
                ),
                environment_id=environment.environment_id,
            )
            raise

        self.releases.apply_rollback_success(job.job_id, environment.environment_id, payload.restored_release_id)
        log_stage(job, "succeeded", environment_id=environment.environment_id, release_id=payload.restored_release_id)
