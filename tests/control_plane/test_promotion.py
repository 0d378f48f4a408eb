"""
Drift check and promotion tests.
"""

from datetime import timedelta

import pytest

from src.common.errors import (
    BackupGateNotMetError,
    DriftGateNotMetError,
    EnvironmentNotActiveError,
    InvalidInputError,
)
from src.handlers import parse_drift_checksums
from src.jobs import ExecutionError, JobStatus
from src.jobs.execution import ANSIBLE_PLAY_ERROR
from src.store.entities import DriftStatus, EnvironmentStatus, HealthStatus, SiteStatus

from .conftest import (
    FIXED_DATETIME,
    assert_environment_status,
    assert_job_status,
    assert_site_status,
    jobs_of_type,
    run_jobs,
)

DRIFT_OUTPUT = """
PLAY [target] ******************************************************************
TASK [compare] *****************************************************************
ok: [node-1.example.test]
PLAY RECAP *********************************************************************
node-1.example.test : ok=3 changed=0 unreachable=0 failed=0
{"db_checksums": {"wp_posts": "abc", "wp_options": "def"}, "file_checksums": {"wp-content/themes": "123"}}
"""


@pytest.fixture
def staged_site(control_plane, create_site, create_environment):
    """Site with production and a staging clone of it on the same node."""
    site, production = create_site()
    node = control_plane.nodes.get(production.node_id)
    staging = create_environment(site.site_id, node, source_environment_id=production.environment_id)
    return site, production, staging


# =============================================================================
# Drift Check
# =============================================================================


class TestDriftCheck:
    def test_drift_check_marks_clean_immediately(self, control_plane, staged_site, queue):
        _, _, staging = staged_site

        result = control_plane.promotion.drift_check(staging.environment_id)

        assert result.job_id == result.drift_check_id
        environment = control_plane.environments.get(staging.environment_id)
        assert environment.drift_status == DriftStatus.CLEAN
        assert environment.last_drift_check_id == result.drift_check_id
        assert environment.drift_checked_at == "2026-01-01T00:00:00.000000Z"
        assert queue.get(result.job_id).job_type == "drift_check"

    def test_drift_check_stores_reported_checksums(
        self, control_plane, staged_site, worker, queue, playbook_runner
    ):
        _, _, staging = staged_site
        playbook_runner.set_output("drift-check", DRIFT_OUTPUT)

        result = control_plane.promotion.drift_check(staging.environment_id)
        run_jobs(worker)

        assert_job_status(queue, result.job_id, JobStatus.SUCCEEDED)
        drift_check = control_plane.promotion.get_drift_check(result.drift_check_id)
        assert drift_check.status == DriftStatus.CLEAN
        assert drift_check.db_checksums == {"wp_posts": "abc", "wp_options": "def"}
        assert drift_check.file_checksums == {"wp-content/themes": "123"}

    def test_failed_drift_check_closes_gate(
        self, control_plane, staged_site, worker, queue, playbook_runner
    ):
        _, _, staging = staged_site
        playbook_runner.fail("drift-check", ExecutionError(ANSIBLE_PLAY_ERROR, "wp db export failed"))

        result = control_plane.promotion.drift_check(staging.environment_id)
        run_jobs(worker)

        assert_job_status(queue, result.job_id, JobStatus.FAILED, ANSIBLE_PLAY_ERROR)
        assert control_plane.promotion.get_drift_check(result.drift_check_id).status == DriftStatus.DRIFTED
        environment = control_plane.environments.get(staging.environment_id)
        assert environment.drift_status == DriftStatus.DRIFTED
        assert environment.status == EnvironmentStatus.ACTIVE

    def test_drift_check_requires_active_environment(self, control_plane, create_site, create_environment):
        site, production = create_site()
        failed = create_environment(
            site.site_id, control_plane.nodes.get(production.node_id), status=EnvironmentStatus.FAILED
        )

        with pytest.raises(EnvironmentNotActiveError):
            control_plane.promotion.drift_check(failed.environment_id)


class TestParseDriftChecksums:
    def test_trailing_json_object(self):
        db, files = parse_drift_checksums(DRIFT_OUTPUT)

        assert db == {"wp_posts": "abc", "wp_options": "def"}
        assert files == {"wp-content/themes": "123"}

    @pytest.mark.parametrize(
        "output",
        ["", "PLAY RECAP ok=1", "garbage\n{not json}", '\n["a", "b"]', '\n{"db_checksums": "oops"}'],
    )
    def test_missing_or_malformed(self, output):
        assert parse_drift_checksums(output) == ({}, {})


# =============================================================================
# Promote
# =============================================================================


class TestPromoteGates:
    def test_same_environment_rejected(self, control_plane, staged_site):
        _, production, _ = staged_site

        with pytest.raises(InvalidInputError):
            control_plane.promotion.promote(production.environment_id, production.environment_id)

    def test_environments_of_different_sites_rejected(
        self, control_plane, staged_site, create_site, create_node
    ):
        _, _, staging = staged_site
        _, other_production = create_site(slug="globex", node=create_node("node-2.example.test"))

        with pytest.raises(InvalidInputError):
            control_plane.promotion.promote(staging.environment_id, other_production.environment_id)

    def test_source_without_drift_check_rejected(self, control_plane, staged_site, create_backup):
        _, production, staging = staged_site
        create_backup(production.environment_id)

        with pytest.raises(DriftGateNotMetError):
            control_plane.promotion.promote(staging.environment_id, production.environment_id)

    def test_target_without_fresh_backup_rejected(
        self, control_plane, staged_site, create_backup, worker
    ):
        _, production, staging = staged_site
        control_plane.promotion.drift_check(staging.environment_id)
        run_jobs(worker)
        create_backup(production.environment_id, completed_at=FIXED_DATETIME - timedelta(minutes=90))

        with pytest.raises(BackupGateNotMetError):
            control_plane.promotion.promote(staging.environment_id, production.environment_id)

    def test_target_without_any_backup_rejected(self, control_plane, staged_site, worker):
        _, production, staging = staged_site
        control_plane.promotion.drift_check(staging.environment_id)
        run_jobs(worker)

        with pytest.raises(BackupGateNotMetError):
            control_plane.promotion.promote(staging.environment_id, production.environment_id)


class TestPromote:
    def test_promote_success_then_health_check(
        self, control_plane, staged_site, create_backup, worker, queue, database, playbook_runner, health_probe
    ):
        """
        Clean source and fresh target backup: the target gets a promote
        release, becomes current once the playbook succeeds, and is health
        checked.
        """
        # Setup
        site, production, staging = staged_site
        control_plane.promotion.drift_check(staging.environment_id)
        run_jobs(worker)
        backup = create_backup(production.environment_id)

        # Action
        result = control_plane.promotion.promote(staging.environment_id, production.environment_id)

        # Assertion: in flight
        assert result.pre_promote_backup_id == backup.backup_id
        assert_environment_status(database, production.environment_id, EnvironmentStatus.DEPLOYING)
        assert_site_status(database, site.site_id, SiteStatus.DEPLOYING)

        # Action
        run_jobs(worker)

        # Assertion: completed
        assert_job_status(queue, result.job_id, JobStatus.SUCCEEDED)
        target = assert_environment_status(database, production.environment_id, EnvironmentStatus.ACTIVE)
        assert target.current_release_id == result.release_id
        assert_site_status(database, site.site_id, SiteStatus.ACTIVE)

        release = control_plane.releases.get(result.release_id)
        assert release.source_type == "promote"
        assert release.source_ref == staging.environment_id
        assert release.health_status == HealthStatus.HEALTHY

        extra_vars = playbook_runner.last_call("env-promote").extra_vars
        assert extra_vars["pre_promote_backup_id"] == backup.backup_id
        assert extra_vars["promotion_preset"] == "content-protect"
        assert health_probe.urls == [production.preview_url]
        assert len(jobs_of_type(queue, "health_check")) == 1

    def test_promote_failure_fails_target(
        self, control_plane, staged_site, create_backup, worker, queue, database, playbook_runner
    ):
        site, production, staging = staged_site
        control_plane.promotion.drift_check(staging.environment_id)
        run_jobs(worker)
        create_backup(production.environment_id)
        playbook_runner.fail("env-promote", ExecutionError(ANSIBLE_PLAY_ERROR, "search-replace failed"))

        result = control_plane.promotion.promote(staging.environment_id, production.environment_id)
        run_jobs(worker)

        assert_job_status(queue, result.job_id, JobStatus.FAILED, ANSIBLE_PLAY_ERROR)
        assert_environment_status(database, production.environment_id, EnvironmentStatus.FAILED)
        assert_environment_status(database, staging.environment_id, EnvironmentStatus.ACTIVE)
        assert_site_status(database, site.site_id, SiteStatus.FAILED)
