"""
Post-mutation health check and automatic rollback tests.

- Healthy probe: release healthy
- Unhealthy probe: release unhealthy, rollback to the previous release
- No previous release: environment and site fail
- Rollback failure: environment and site fail
"""

from unittest.mock import MagicMock, patch

import httpx
import pytest

from src.common.errors import ConcurrencyConflictError
from src.handlers import HttpHealthProbe
from src.jobs import ExecutionError, JobStatus
from src.jobs.execution import (
    ANSIBLE_PLAY_ERROR,
    HEALTH_CHECK_FAILED,
    HEALTH_CHECK_TIMEOUT,
    RELEASE_ROLLBACK_FAILED,
)
from src.releases.service import enqueue_health_check
from src.store.entities import EnvironmentStatus, HealthStatus, SiteStatus

from .conftest import (
    assert_environment_status,
    assert_job_status,
    assert_site_status,
    jobs_of_type,
    run_jobs,
)


@pytest.fixture
def deployed_site(control_plane, create_site, create_release):
    """
    Site whose production environment runs a healthy v1 and has a v2
    deploy queued.

    Returns (site, environment, v1 release, deploy result).
    """
    site, environment = create_site()
    v1 = create_release(environment.environment_id, source_ref="v1")
    deploy = control_plane.environments.deploy(environment.environment_id, "git", "v2")
    return site, environment, v1, deploy


# =============================================================================
# Health Check
# =============================================================================


class TestHealthCheck:
    def test_healthy_release(self, control_plane, deployed_site, worker, queue):
        _, environment, _, deploy = deployed_site

        run_jobs(worker)

        [health_job] = jobs_of_type(queue, "health_check")
        assert health_job.status == JobStatus.SUCCEEDED
        assert health_job.payload["trigger_job_type"] == "env_deploy"
        assert control_plane.releases.get(deploy.release_id).health_status == HealthStatus.HEALTHY
        assert jobs_of_type(queue, "release_rollback") == []

    def test_probe_uses_primary_domain(self, deployed_site, create_domain, worker, health_probe):
        _, environment, _, _ = deployed_site
        create_domain(environment.environment_id, hostname="www.acme.example")

        run_jobs(worker)

        assert health_probe.urls == ["https://www.acme.example"]

    def test_unhealthy_release_is_rolled_back(
        self, control_plane, deployed_site, worker, queue, database, health_probe, playbook_runner
    ):
        """
        A failing probe after deploy rolls the environment back to v1 and
        brings it back to active.
        """
        # Setup
        site, environment, v1, deploy = deployed_site
        health_probe.errors.append(ExecutionError(HEALTH_CHECK_FAILED, "HTTP 502", retryable=True))

        # Action
        run_jobs(worker)

        # Assertion: health check failed without retry
        [health_job] = jobs_of_type(queue, "health_check")
        assert health_job.status == JobStatus.FAILED
        assert health_job.error_code == HEALTH_CHECK_FAILED
        assert health_job.attempt_count == 1

        # Assertion: rollback ran to v1
        [rollback_job] = jobs_of_type(queue, "release_rollback")
        assert rollback_job.status == JobStatus.SUCCEEDED
        assert rollback_job.payload["failed_release_id"] == deploy.release_id
        assert rollback_job.payload["restored_release_id"] == v1.release_id
        assert rollback_job.payload["health_check_job_id"] == health_job.job_id

        restored = assert_environment_status(database, environment.environment_id, EnvironmentStatus.ACTIVE)
        assert restored.current_release_id == v1.release_id
        assert_site_status(database, site.site_id, SiteStatus.ACTIVE)
        assert control_plane.releases.get(deploy.release_id).health_status == HealthStatus.UNHEALTHY
        assert control_plane.releases.get(v1.release_id).health_status == HealthStatus.HEALTHY

        extra_vars = playbook_runner.last_call("release-rollback").extra_vars
        assert extra_vars["release_path"] == v1.path

    def test_probe_timeout_recorded(self, deployed_site, worker, queue, health_probe):
        health_probe.errors.append(ExecutionError(HEALTH_CHECK_TIMEOUT, "no answer in 15s"))

        run_jobs(worker)

        [health_job] = jobs_of_type(queue, "health_check")
        assert health_job.error_code == HEALTH_CHECK_TIMEOUT
        assert len(jobs_of_type(queue, "release_rollback")) == 1

    def test_unexpected_probe_error_counts_as_failure(self, deployed_site, worker, queue, health_probe):
        health_probe.errors.append(RuntimeError("socket closed"))

        run_jobs(worker)

        [health_job] = jobs_of_type(queue, "health_check")
        assert health_job.error_code == HEALTH_CHECK_FAILED

    def test_unhealthy_first_release_fails_environment(
        self, control_plane, create_site, worker, queue, database, health_probe
    ):
        """
        With nothing to roll back to, the environment and site fail.
        """
        # Setup
        site, environment = create_site()
        deploy = control_plane.environments.deploy(environment.environment_id, "git", "v1")
        health_probe.errors.append(ExecutionError(HEALTH_CHECK_FAILED, "HTTP 500"))

        # Action
        run_jobs(worker)

        # Assertion
        [health_job] = jobs_of_type(queue, "health_check")
        assert health_job.status == JobStatus.FAILED
        assert health_job.error_code == HEALTH_CHECK_FAILED
        assert jobs_of_type(queue, "release_rollback") == []
        assert_environment_status(database, environment.environment_id, EnvironmentStatus.FAILED)
        assert_site_status(database, site.site_id, SiteStatus.FAILED)
        assert control_plane.releases.get(deploy.release_id).health_status == HealthStatus.UNHEALTHY


# =============================================================================
# Rollback
# =============================================================================


class TestRollback:
    def test_rollback_failure_fails_environment(
        self, control_plane, deployed_site, worker, queue, database, health_probe, playbook_runner
    ):
        site, environment, _, deploy = deployed_site
        health_probe.errors.append(ExecutionError(HEALTH_CHECK_FAILED, "HTTP 502"))
        playbook_runner.fail("release-rollback", ExecutionError(ANSIBLE_PLAY_ERROR, "symlink swap failed"))

        run_jobs(worker)

        [rollback_job] = jobs_of_type(queue, "release_rollback")
        assert_job_status(queue, rollback_job.job_id, JobStatus.FAILED, RELEASE_ROLLBACK_FAILED)
        failed = assert_environment_status(database, environment.environment_id, EnvironmentStatus.FAILED)
        assert failed.current_release_id == deploy.release_id
        assert_site_status(database, site.site_id, SiteStatus.FAILED)

    def test_environment_restoring_while_rollback_pending(
        self, deployed_site, worker, queue, database, health_probe
    ):
        site, environment, _, _ = deployed_site
        health_probe.errors.append(ExecutionError(HEALTH_CHECK_FAILED, "HTTP 502"))

        # Deploy, then the health check; the rollback stays queued
        worker.process_next()
        worker.process_next()

        [rollback_job] = jobs_of_type(queue, "release_rollback")
        assert rollback_job.status == JobStatus.QUEUED
        assert_environment_status(database, environment.environment_id, EnvironmentStatus.RESTORING)
        assert_site_status(database, site.site_id, SiteStatus.RESTORING)


# =============================================================================
# Trigger
# =============================================================================


class TestTrigger:
    def test_health_check_queued_with_deploy_success(
        self, control_plane, deployed_site, worker, queue
    ):
        """
        The deploy hands the site straight to its health check; a command
        arriving right after the deploy completes is refused.
        """
        # Setup
        _, environment, _, deploy = deployed_site

        # Action
        processed = worker.process_next()

        # Assertion
        assert processed.job_id == deploy.job_id
        assert processed.status == JobStatus.SUCCEEDED
        [health_job] = jobs_of_type(queue, "health_check")
        assert health_job.status == JobStatus.QUEUED
        assert health_job.payload["release_id"] == deploy.release_id

        with pytest.raises(ConcurrencyConflictError):
            control_plane.backups.create(environment.environment_id, "full")

    def test_unchecked_job_types_are_ignored(self, create_site, create_release, database, mock_clock, queue):
        _, environment = create_site()
        create_release(environment.environment_id)

        with database.transaction() as conn:
            assert enqueue_health_check(conn, environment.environment_id, "env_update", mock_clock.now()) is None

        assert jobs_of_type(queue, "health_check") == []

    def test_environment_without_current_release(self, create_site, database, mock_clock, queue):
        _, environment = create_site()

        with database.transaction() as conn:
            assert enqueue_health_check(conn, environment.environment_id, "env_restore", mock_clock.now()) is None

        assert jobs_of_type(queue, "health_check") == []


# =============================================================================
# HTTP Probe
# =============================================================================


def mock_httpx_client(mock_client_class, response=None, error=None):
    mock_client = MagicMock()
    mock_client.__enter__ = MagicMock(return_value=mock_client)
    mock_client.__exit__ = MagicMock(return_value=False)
    if error is not None:
        mock_client.get.side_effect = error
    else:
        mock_client.get.return_value = response
    mock_client_class.return_value = mock_client
    return mock_client


class TestHttpHealthProbe:
    @pytest.mark.parametrize("status_code", [200, 302, 404])
    def test_below_500_is_healthy(self, status_code):
        with patch("httpx.Client") as mock_client_class:
            mock_client = mock_httpx_client(mock_client_class, response=MagicMock(status_code=status_code))

            HttpHealthProbe(timeout=5.0).check("https://www.acme.example")

            mock_client.get.assert_called_once()
            assert mock_client.get.call_args[0][0] == "https://www.acme.example"
            assert mock_client_class.call_args.kwargs["timeout"] == 5.0

    def test_server_error_is_unhealthy(self):
        with patch("httpx.Client") as mock_client_class:
            mock_httpx_client(mock_client_class, response=MagicMock(status_code=503))

            with pytest.raises(ExecutionError) as exc_info:
                HttpHealthProbe().check("https://www.acme.example")

        assert exc_info.value.code == HEALTH_CHECK_FAILED
        assert "503" in exc_info.value.message
        assert exc_info.value.retryable is False

    def test_timeout(self):
        with patch("httpx.Client") as mock_client_class:
            mock_httpx_client(mock_client_class, error=httpx.ReadTimeout("timed out"))

            with pytest.raises(ExecutionError) as exc_info:
                HttpHealthProbe(timeout=2.0).check("https://www.acme.example")

        assert exc_info.value.code == HEALTH_CHECK_TIMEOUT

    def test_connection_error(self):
        with patch("httpx.Client") as mock_client_class:
            mock_httpx_client(mock_client_class, error=httpx.ConnectError("connection refused"))

            with pytest.raises(ExecutionError) as exc_info:
                HttpHealthProbe().check("https://www.acme.example")

        assert exc_info.value.code == HEALTH_CHECK_FAILED
        assert "connection refused" in exc_info.value.message
