"""
Worker tests.

- Success, retryable and terminal failures, attempt budget and backoff
- Audit correlation: one entry per job, result overwritten as it progresses
- Missing handlers and failing audit writes
- Background loop start/stop
"""

import time
from datetime import timedelta
from typing import Callable

import pytest

from src.audit.recorder import AuditEntry, SqliteAuditRecorder
from src.jobs import (
    ExecutionError,
    Job,
    JobHandler,
    JobQueue,
    JobStatus,
    Worker,
    classify_error,
    retry_backoff,
    will_retry,
)
from src.jobs.execution import (
    ANSIBLE_HOST_FAILED,
    ANSIBLE_PLAY_ERROR,
    ANSIBLE_UNKNOWN_EXIT,
    AUDIT_WRITE_FAILED,
)
from src.jobs.worker import WorkerState
from src.store.entities import format_timestamp

from .conftest import FIXED_DATETIME, MockClock, assert_job_status


class ScriptedHandler(JobHandler):
    """Raises the queued errors one per call, then succeeds."""

    job_type = "env_update"

    def __init__(self, *errors: Exception):
        self.errors = list(errors)
        self.handled: list[Job] = []

    def handle(self, job: Job) -> None:
        self.handled.append(job)
        if self.errors:
            raise self.errors.pop(0)


class BrokenAudit:
    """Audit sink whose writes always fail."""

    def record(self, entry: AuditEntry) -> None:
        raise RuntimeError("audit store unavailable")

    def record_async_accepted(self, entry: AuditEntry) -> None:
        raise RuntimeError("audit store unavailable")

    def update_async_result(self, action, resource_type, resource_id, result) -> None:
        raise RuntimeError("audit store unavailable")


@pytest.fixture
def audit(database, mock_clock) -> SqliteAuditRecorder:
    return SqliteAuditRecorder(database, mock_clock)


@pytest.fixture
def make_worker(queue: JobQueue, audit: SqliteAuditRecorder, mock_clock: MockClock) -> Callable:
    """Factory for a worker over the test queue with the given handlers."""

    def _create(*handlers: JobHandler, audit_recorder=None) -> Worker:
        return Worker(
            queue=queue,
            handlers={handler.job_type: handler for handler in handlers},
            audit=audit_recorder or audit,
            clock=mock_clock,
            worker_id="worker-test",
            poll_interval=0.01,
        )

    return _create


def audit_results(audit: SqliteAuditRecorder, job_id: str) -> list[str]:
    return [entry.result for entry in audit.list_entries(resource_type="job", resource_id=job_id)]


# =============================================================================
# Success
# =============================================================================


class TestSuccess:
    def test_successful_job_is_succeeded_and_audited(self, make_worker, create_job, audit, queue):
        # Setup
        handler = ScriptedHandler()
        worker = make_worker(handler)
        job = create_job(job_type="env_update", site_id="site-1")

        # Action
        processed = worker.process_next()

        # Assertion
        assert processed.job_id == job.job_id
        assert processed.status == JobStatus.SUCCEEDED
        assert handler.handled[0].attempt_count == 1

        entries = audit.list_entries(resource_type="job", resource_id=job.job_id)
        assert len(entries) == 1
        assert entries[0].action == "env_update"
        assert entries[0].user_id == "admin"
        assert entries[0].result == "succeeded"

    def test_idle_worker_returns_none(self, make_worker):
        assert make_worker(ScriptedHandler()).process_next() is None


# =============================================================================
# Retry
# =============================================================================


class TestRetry:
    def test_retryable_failure_requeues_with_backoff(self, make_worker, create_job, audit, queue):
        """
        First retryable failure: back to queued, runnable one minute later.
        """
        # Setup
        worker = make_worker(ScriptedHandler(ExecutionError(ANSIBLE_HOST_FAILED, "host failed", retryable=True)))
        job = create_job(job_type="env_update", site_id="site-1")

        # Action
        processed = worker.process_next()

        # Assertion
        assert processed.status == JobStatus.QUEUED
        assert processed.error_code == ANSIBLE_HOST_FAILED
        assert processed.attempt_count == 1
        assert processed.run_after == format_timestamp(FIXED_DATETIME + timedelta(minutes=1))
        assert audit_results(audit, job.job_id) == ["retrying"]

        # Not runnable before the backoff elapses
        assert worker.process_next() is None

    def test_attempts_exhausted_after_full_backoff(self, make_worker, create_job, audit, queue, mock_clock):
        """
        Three retryable failures: 1 then 5 minute delays, then terminal
        failure. The audit trail keeps a single entry.
        """
        # Setup
        errors = [ExecutionError(ANSIBLE_HOST_FAILED, f"attempt {i}", retryable=True) for i in range(3)]
        worker = make_worker(ScriptedHandler(*errors))
        job = create_job(job_type="env_update", site_id="site-1")

        # Action: attempt 1
        worker.process_next()
        mock_clock.tick(60)

        # Action: attempt 2
        second = worker.process_next()
        assert second.attempt_count == 2
        assert second.run_after == format_timestamp(mock_clock.now() + timedelta(minutes=5))
        mock_clock.tick(300)

        # Action: attempt 3
        third = worker.process_next()

        # Assertion
        assert third.status == JobStatus.FAILED
        assert third.attempt_count == 3
        assert third.error_message == "attempt 2"
        assert audit_results(audit, job.job_id) == ["failed"]

    def test_retry_then_success(self, make_worker, create_job, mock_clock):
        worker = make_worker(ScriptedHandler(ExecutionError(ANSIBLE_HOST_FAILED, "flaky", retryable=True)))
        job = create_job(job_type="env_update", site_id="site-1")

        worker.process_next()
        mock_clock.tick(60)
        processed = worker.process_next()

        assert processed.job_id == job.job_id
        assert processed.status == JobStatus.SUCCEEDED
        assert processed.attempt_count == 2


# =============================================================================
# Terminal Failures
# =============================================================================


class TestTerminalFailure:
    def test_non_retryable_failure_fails_immediately(self, make_worker, create_job, audit):
        worker = make_worker(ScriptedHandler(ExecutionError(ANSIBLE_PLAY_ERROR, "task failed")))
        job = create_job(job_type="env_update", site_id="site-1")

        processed = worker.process_next()

        assert processed.status == JobStatus.FAILED
        assert processed.error_code == ANSIBLE_PLAY_ERROR
        assert processed.attempt_count == 1
        assert audit_results(audit, job.job_id) == ["failed"]

    def test_unclassified_exception_becomes_unknown_exit(self, make_worker, create_job):
        worker = make_worker(ScriptedHandler(RuntimeError("boom")))
        create_job(job_type="env_update", site_id="site-1")

        processed = worker.process_next()

        assert processed.status == JobStatus.FAILED
        assert processed.error_code == ANSIBLE_UNKNOWN_EXIT
        assert processed.error_message == "boom"

    def test_missing_handler_fails_job(self, make_worker, create_job, audit):
        worker = make_worker(ScriptedHandler())
        job = create_job(job_type="domain_add", site_id="site-1")

        processed = worker.process_next()

        assert processed.status == JobStatus.FAILED
        assert processed.error_code == ANSIBLE_UNKNOWN_EXIT
        assert processed.error_message == "handler missing for job type: domain_add"
        assert audit_results(audit, job.job_id) == ["failed"]

    def test_audit_failure_fails_job_without_running_handler(self, make_worker, create_job):
        """
        A job whose accepted entry cannot be written never runs.
        """
        # Setup
        handler = ScriptedHandler()
        worker = make_worker(handler, audit_recorder=BrokenAudit())
        create_job(job_type="env_update", site_id="site-1")

        # Action
        processed = worker.process_next()

        # Assertion
        assert processed.status == JobStatus.FAILED
        assert processed.error_code == AUDIT_WRITE_FAILED
        assert handler.handled == []


# =============================================================================
# Retry Policy
# =============================================================================


class TestRetryPolicy:
    @pytest.mark.parametrize(
        "attempt,expected_minutes",
        [(0, 1), (1, 1), (2, 5), (3, 15), (7, 15)],
    )
    def test_retry_backoff(self, attempt, expected_minutes):
        assert retry_backoff(attempt) == timedelta(minutes=expected_minutes)

    def test_classify_execution_error(self):
        classified = classify_error(ExecutionError(ANSIBLE_HOST_FAILED, "down", retryable=True))

        assert classified.code == ANSIBLE_HOST_FAILED
        assert classified.message == "down"
        assert classified.retryable is True

    def test_classify_plain_exception(self):
        classified = classify_error(ValueError("bad value"))

        assert classified.code == ANSIBLE_UNKNOWN_EXIT
        assert classified.message == "bad value"
        assert classified.retryable is False

    def test_non_retryable_copy(self):
        error = ExecutionError("ANSIBLE_TIMEOUT", "slow", retryable=True)

        assert error.is_timeout
        assert error.non_retryable().retryable is False
        assert error.non_retryable().code == "ANSIBLE_TIMEOUT"

    def test_will_retry_respects_attempt_budget(self, create_job):
        retryable = ExecutionError(ANSIBLE_HOST_FAILED, "down", retryable=True)

        first = create_job(site_id="site-1", attempt_count=1, max_attempts=3)
        last = create_job(site_id="site-2", attempt_count=3, max_attempts=3)

        assert will_retry(first, retryable) is True
        assert will_retry(last, retryable) is False
        assert will_retry(first, ExecutionError(ANSIBLE_PLAY_ERROR, "fatal")) is False
        assert will_retry(first, None) is False


# =============================================================================
# Loop
# =============================================================================


class TestLoop:
    def test_background_loop_processes_jobs(self, make_worker, create_job, queue):
        # Setup
        worker = make_worker(ScriptedHandler())
        job = create_job(job_type="env_update", site_id="site-1")

        # Action
        worker.start(blocking=False)
        try:
            deadline = time.monotonic() + 5.0
            while time.monotonic() < deadline:
                if queue.get(job.job_id).status == JobStatus.SUCCEEDED:
                    break
                time.sleep(0.01)
        finally:
            worker.stop(timeout=5.0)

        # Assertion
        assert_job_status(queue, job.job_id, JobStatus.SUCCEEDED)
        assert worker.state == WorkerState.STOPPED

    def test_double_start_rejected(self, make_worker):
        worker = make_worker(ScriptedHandler())
        worker.start(blocking=False)
        try:
            with pytest.raises(RuntimeError):
                worker.start(blocking=False)
        finally:
            worker.stop(timeout=5.0)
