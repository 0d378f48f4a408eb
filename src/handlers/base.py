"""
Shared machinery for job handlers.

A playbook handler:
1. Parses its payload (unknown fields are a non-retryable error)
2. Loads the target node and renders its inventory
3. Runs its playbook through the PlaybookRunner
4. Records the terminal entity state through the owning service

On failure the service's MarkXxxFailed runs only when the worker is not
going to retry the job; the error is always re-raised so the worker can
classify it and update the queue and audit trail.
"""

import logging
from typing import Any, Callable, Optional

from src.jobs.entities import Job
from src.jobs.execution import ANSIBLE_UNKNOWN_EXIT, ExecutionError, classify_error, will_retry
from src.jobs.worker import JobHandler
from src.runner.ansible import PlaybookResult, PlaybookRunner
from src.runner.inventory import build_node_inventory
from src.store.database import Database
from src.store.entities import Environment, Node
from src.store.queries import get_environment, get_node

logger = logging.getLogger(__name__)

FailureRecorder = Callable[[str, str], None]


def log_stage(job: Job, stage: str, **fields: Any) -> None:
    """Emit `event=<job_type> stage=<stage> job_id=... k=v` for a handler step."""
    details = " ".join(f"{key}={value}" for key, value in fields.items() if value is not None)
    line = f"event={job.job_type} stage={stage} job_id={job.job_id} attempt={job.attempt_count}"
    if details:
        line = f"{line} {details}"
    if stage == "failed":
        logger.warning(line)
    else:
        logger.info(line)


class PlaybookJobHandler(JobHandler):
    """Base for handlers that drive one allowlisted playbook."""

    job_type: str = ""
    playbook: str = ""

    def __init__(self, database: Database, runner: PlaybookRunner):
        self.database = database
        self.runner = runner

    # =========================================================================
    # Loading
    # =========================================================================

    def load_node(self, node_id: str) -> Node:
        with self.database.connection() as conn:
            return get_node(conn, node_id)

    def load_environment(self, environment_id: str) -> tuple[Environment, Node]:
        with self.database.connection() as conn:
            environment = get_environment(conn, environment_id)
            return environment, get_node(conn, environment.node_id)

    # =========================================================================
    # Execution
    # =========================================================================

    def run_playbook(self, node: Node, extra_vars: dict[str, Any]) -> PlaybookResult:
        return self.runner.run(self.playbook, build_node_inventory(node), extra_vars)

    def record_failure(
        self,
        job: Job,
        error: BaseException,
        mark_failed: Optional[FailureRecorder] = None,
        **fields: Any,
    ) -> None:
        """
        Log a failed attempt and, if it is the last one, persist the failure.

        Args:
            job: Job being handled
            error: Exception raised by the attempt
            mark_failed: Service completion call taking (code, message)
            fields: Extra ids for the log line
        """
        classified = classify_error(error)
        log_stage(job, "failed", code=classified.code, retryable=classified.retryable, **fields)
        if mark_failed is not None and not will_retry(job, error):
            mark_failed(classified.code, classified.message)


def force_non_retryable(error: BaseException) -> ExecutionError:
    """The classified form of `error` with retry switched off."""
    if isinstance(error, ExecutionError):
        return error.non_retryable()
    return ExecutionError(ANSIBLE_UNKNOWN_EXIT, str(error) or type(error).__name__, retryable=False)
