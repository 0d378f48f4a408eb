"""
Startup recovery tests.

Jobs left `running` by a dead process are requeued while attempts remain,
otherwise failed together with their mid-mutation environment. An
interrupted backup_create is always failed along with its backup.
"""

from src.jobs import JobStatus
from src.jobs.execution import JOB_INTERRUPTED
from src.store.entities import BackupStatus, EnvironmentStatus, SiteStatus

from .conftest import (
    assert_environment_status,
    assert_job_status,
    assert_site_status,
)


class TestRecoverOnStartup:
    def test_no_running_jobs(self, control_plane, create_job):
        create_job(site_id="site-1")

        stats = control_plane.recovery.recover_on_startup()

        assert stats == {"running_found": 0, "requeued": 0, "failed": 0}

    def test_interrupted_job_with_attempts_left_is_requeued(self, control_plane, create_job, queue):
        """
        Running job on attempt 1 of 3 goes back to queued and is claimable
        right away.
        """
        # Setup
        job = create_job(
            site_id="site-1",
            status=JobStatus.RUNNING,
            attempt_count=1,
            locked_by="dead-worker",
        )

        # Action
        stats = control_plane.recovery.recover_on_startup()

        # Assertion
        assert stats == {"running_found": 1, "requeued": 1, "failed": 0}
        recovered = assert_job_status(queue, job.job_id, JobStatus.QUEUED, JOB_INTERRUPTED)
        assert recovered.locked_by is None

        claimed = queue.claim_next_runnable("worker-1")
        assert claimed.job_id == job.job_id
        assert claimed.attempt_count == 2

    def test_exhausted_job_fails_mid_mutation_environment(
        self, control_plane, create_site, create_job, database, queue
    ):
        """
        Last attempt interrupted during a deploy: job, environment and site
        all end failed.
        """
        # Setup
        site, environment = create_site()
        with database.transaction() as conn:
            conn.execute(
                "UPDATE environments SET status = 'deploying' WHERE environment_id = ?",
                (environment.environment_id,),
            )
        job = create_job(
            site_id=site.site_id,
            environment_id=environment.environment_id,
            status=JobStatus.RUNNING,
            attempt_count=3,
            max_attempts=3,
        )

        # Action
        stats = control_plane.recovery.recover_on_startup()

        # Assertion
        assert stats == {"running_found": 1, "requeued": 0, "failed": 1}
        assert_job_status(queue, job.job_id, JobStatus.FAILED, JOB_INTERRUPTED)
        assert_environment_status(database, environment.environment_id, EnvironmentStatus.FAILED)
        assert_site_status(database, site.site_id, SiteStatus.FAILED)

    def test_exhausted_job_leaves_active_environment_alone(
        self, control_plane, create_site, create_job, database, queue
    ):
        site, environment = create_site()
        job = create_job(
            job_type="cache_purge",
            site_id=site.site_id,
            environment_id=environment.environment_id,
            status=JobStatus.RUNNING,
            attempt_count=3,
        )

        control_plane.recovery.recover_on_startup()

        assert_job_status(queue, job.job_id, JobStatus.FAILED, JOB_INTERRUPTED)
        assert_environment_status(database, environment.environment_id, EnvironmentStatus.ACTIVE)
        assert_site_status(database, site.site_id, SiteStatus.ACTIVE)

    def test_start_runs_recovery(self, control_plane, create_job):
        create_job(site_id="site-1", status=JobStatus.RUNNING, attempt_count=1)

        stats = control_plane.start()

        assert stats["requeued"] == 1


class TestInterruptedBackup:
    def test_running_backup_fails_with_attempts_left(
        self, control_plane, create_site, queue, database, mock_clock
    ):
        """
        A backup_create cut off after its row went running is failed outright
        rather than requeued, and the backup becomes eligible for cleanup.
        """
        # Setup
        _, environment = create_site()
        result = control_plane.backups.create(environment.environment_id, "full")
        claimed = queue.claim_next_runnable("dead-worker")
        assert claimed.job_id == result.job_id
        control_plane.backups.mark_running(result.backup_id)

        # Action
        stats = control_plane.recovery.recover_on_startup()

        # Assertion
        assert stats == {"running_found": 1, "requeued": 0, "failed": 1}
        job = assert_job_status(queue, result.job_id, JobStatus.FAILED, JOB_INTERRUPTED)
        assert job.attempt_count == 1
        assert control_plane.backups.get(result.backup_id).status == BackupStatus.FAILED
        assert_environment_status(database, environment.environment_id, EnvironmentStatus.ACTIVE)

        mock_clock.tick(31 * 24 * 3600)
        [cleanup] = control_plane.backups.enqueue_expired_cleanup()
        assert cleanup.payload["backup_id"] == result.backup_id

    def test_pending_backup_fails_too(self, control_plane, create_site, queue):
        _, environment = create_site()
        result = control_plane.backups.create(environment.environment_id, "db")
        queue.claim_next_runnable("dead-worker")

        control_plane.recovery.recover_on_startup()

        assert_job_status(queue, result.job_id, JobStatus.FAILED, JOB_INTERRUPTED)
        assert control_plane.backups.get(result.backup_id).status == BackupStatus.FAILED
