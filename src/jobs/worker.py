"""
Worker for the job queue.

Each worker processes at most one job at a time:
1. Claim the next runnable job (nothing -> idle)
2. On the first attempt, record the accepted audit entry keyed by
   (job_type, "job", job_id); if that write fails, fail the job with
   AUDIT_WRITE_FAILED
3. Look up the handler for job_type (missing -> fail with ANSIBLE_UNKNOWN_EXIT)
4. Run the handler and interpret its error:
   - none: complete success, audit -> succeeded
   - retryable and attempts remain: requeue with backoff, audit -> retrying
   - otherwise: complete failure, audit -> failed

Several workers (threads or processes) may share one database; the claim
is an atomic guarded UPDATE so a job runs on one worker only.
"""

import logging
import os
import socket
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from src.audit.recorder import (
    RESULT_FAILED,
    RESULT_RETRYING,
    RESULT_SUCCEEDED,
    SYSTEM_USER_ID,
    AuditEntry,
    AuditRecorder,
)
from src.infra.clock import Clock, SystemClock

from .entities import Job
from .execution import (
    ANSIBLE_UNKNOWN_EXIT,
    AUDIT_WRITE_FAILED,
    classify_error,
    retry_backoff,
)
from .queue import JobQueue

logger = logging.getLogger(__name__)

AUDIT_RESOURCE_TYPE = "job"


class JobHandler(ABC):
    """Effect implementation for one job type."""

    job_type: str = ""

    @abstractmethod
    def handle(self, job: Job) -> None:
        """
        Run the job's side effects and record its terminal entity state.

        Raises:
            ExecutionError: classified failure (code, message, retryable)
            Exception: anything else is treated as non-retryable
        """
        ...


class WorkerState(str, Enum):
    """Worker lifecycle states."""

    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"


def default_worker_id(index: int = 0) -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{index}"


class Worker:
    """
    Claims jobs and hands them to their handler.

    Key behaviors:
    - Handler failures never escape process_next(); they end up on the job row
    - A late completion is ignored once the handler has already settled the job
    """

    def __init__(
        self,
        queue: JobQueue,
        handlers: dict[str, JobHandler],
        audit: AuditRecorder,
        clock: Optional[Clock] = None,
        worker_id: Optional[str] = None,
        poll_interval: float = 2.0,
    ):
        """
        Initialize Worker.

        Args:
            queue: JobQueue to claim from
            handlers: Handler per job type
            audit: Recorder for job correlation entries
            clock: Time source (for backoff computation)
            worker_id: Unique id stored in jobs.locked_by
            poll_interval: Seconds to sleep when no job is runnable
        """
        self.queue = queue
        self.handlers = dict(handlers)
        self.audit = audit
        self.clock = clock or SystemClock()
        self.worker_id = worker_id or default_worker_id()
        self.poll_interval = poll_interval

        self._state = WorkerState.STOPPED
        self._current_job: Optional[Job] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def current_job(self) -> Optional[Job]:
        return self._current_job

    # =========================================================================
    # Single Job
    # =========================================================================

    def process_next(self) -> Optional[Job]:
        """
        Claim and process one job.

        Returns:
            The job as stored after processing, or None if nothing was runnable
        """
        job = self.queue.claim_next_runnable(self.worker_id)
        if job is None:
            return None

        self._current_job = job
        try:
            self._process(job)
        finally:
            self._current_job = None

        return self.queue.get(job.job_id)

    def _process(self, job: Job) -> None:
        if job.attempt_count == 1:
            try:
                self.audit.record_async_accepted(AuditEntry(
                    action=job.job_type,
                    resource_type=AUDIT_RESOURCE_TYPE,
                    resource_id=job.job_id,
                    user_id=SYSTEM_USER_ID,
                ))
            except Exception as e:
                logger.error(f"Audit write failed for job {job.job_id}: {e}")
                self.queue.complete_failure(job.job_id, AUDIT_WRITE_FAILED, "audit write failed")
                return

        handler = self.handlers.get(job.job_type)
        if handler is None:
            message = f"handler missing for job type: {job.job_type}"
            logger.error(f"Job {job.job_id}: {message}")
            self.queue.complete_failure(job.job_id, ANSIBLE_UNKNOWN_EXIT, message)
            self._update_audit(job, RESULT_FAILED)
            return

        try:
            handler.handle(job)
        except Exception as e:
            self._handle_failure(job, e)
            return

        self.queue.complete_success(job.job_id)
        self._update_audit(job, RESULT_SUCCEEDED)
        logger.info(f"Job {job.job_id} ({job.job_type}) succeeded")

    def _handle_failure(self, job: Job, error: Exception) -> None:
        classified = classify_error(error)

        if classified.retryable and job.attempt_count < job.max_attempts:
            now = self.clock.now()
            run_after = now + retry_backoff(job.attempt_count)
            self.queue.requeue(job.job_id, run_after, classified.code, classified.message, now=now)
            self._update_audit(job, RESULT_RETRYING)
            logger.warning(
                f"Job {job.job_id} ({job.job_type}) attempt {job.attempt_count}/{job.max_attempts} "
                f"failed with {classified.code}; retrying after {run_after.isoformat()}"
            )
            return

        self.queue.complete_failure(job.job_id, classified.code, classified.message)
        self._update_audit(job, RESULT_FAILED)
        logger.error(
            f"Job {job.job_id} ({job.job_type}) failed with {classified.code}: "
            f"{classified.message[-500:]}"
        )

    def _update_audit(self, job: Job, result: str) -> None:
        try:
            self.audit.update_async_result(job.job_type, AUDIT_RESOURCE_TYPE, job.job_id, result)
        except Exception as e:
            logger.error(f"Audit result update to {result} failed for job {job.job_id}: {e}")

    # =========================================================================
    # Loop
    # =========================================================================

    def start(self, blocking: bool = False) -> None:
        """
        Start the worker loop.

        Args:
            blocking: If True, run in current thread. If False, run in background.
        """
        if self._state != WorkerState.STOPPED:
            raise RuntimeError(f"Cannot start worker in {self._state.value} state")

        self._stop_event.clear()
        self._state = WorkerState.RUNNING

        if blocking:
            self._run_loop()
        else:
            self._thread = threading.Thread(
                target=self._run_loop, name=f"worker-{self.worker_id}", daemon=True
            )
            self._thread.start()

    def stop(self, timeout: float = 30.0) -> None:
        """
        Stop the worker loop, letting the current job finish.

        Args:
            timeout: Maximum seconds to wait for the current job
        """
        if self._state == WorkerState.STOPPED:
            return

        logger.info(f"Stopping worker {self.worker_id}...")
        self._state = WorkerState.STOPPING
        self._stop_event.set()

        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"Worker {self.worker_id} did not stop within timeout")
            self._thread = None

        self._state = WorkerState.STOPPED
        logger.info(f"Worker {self.worker_id} stopped")

    def _run_loop(self) -> None:
        logger.info(f"Worker {self.worker_id} loop started")

        while not self._stop_event.is_set():
            try:
                job = self.process_next()
                if job is None:
                    self._stop_event.wait(self.poll_interval)
            except Exception as e:
                logger.error(f"Error in worker loop: {e}", exc_info=True)
                self._stop_event.wait(self.poll_interval)

        logger.info(f"Worker {self.worker_id} loop ended")


class WorkerPool:
    """N workers sharing one queue and handler registry."""

    def __init__(self, workers: list[Worker]):
        self.workers = workers

    @classmethod
    def create(
        cls,
        count: int,
        queue: JobQueue,
        handlers: dict[str, JobHandler],
        audit: AuditRecorder,
        clock: Optional[Clock] = None,
        poll_interval: float = 2.0,
    ) -> "WorkerPool":
        workers = []
        for index in range(count):
            worker = Worker(
                queue=queue,
                handlers=handlers,
                audit=audit,
                clock=clock,
                worker_id=default_worker_id(index),
                poll_interval=poll_interval,
            )
            workers.append(worker)
        return cls(workers)

    def start(self) -> None:
        for worker in self.workers:
            worker.start(blocking=False)
        logger.info(f"Started {len(self.workers)} worker(s)")

    def stop(self, timeout: float = 30.0) -> None:
        for worker in self.workers:
            worker.stop(timeout=timeout)
