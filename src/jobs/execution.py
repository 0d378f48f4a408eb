"""
Job execution errors, classification and retry policy.

Handlers raise ExecutionError(code, message, retryable). Anything else a
handler raises has no classification and degrades to a non-retryable
ANSIBLE_UNKNOWN_EXIT carrying the exception text.

Retry policy:
- Retryable and attempt_count < max_attempts: requeue after a backoff of
  1, 5 then 15 minutes indexed by attempt_count (capped at 15 minutes)
- Otherwise: the job fails
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from .entities import Job

# Playbook outcomes
ANSIBLE_PLAY_ERROR = "ANSIBLE_PLAY_ERROR"
ANSIBLE_HOST_FAILED = "ANSIBLE_HOST_FAILED"
ANSIBLE_HOST_UNREACHABLE = "ANSIBLE_HOST_UNREACHABLE"
ANSIBLE_SYNTAX_ERROR = "ANSIBLE_SYNTAX_ERROR"
ANSIBLE_UNEXPECTED_ERROR = "ANSIBLE_UNEXPECTED_ERROR"
ANSIBLE_TIMEOUT = "ANSIBLE_TIMEOUT"
ANSIBLE_UNKNOWN_EXIT = "ANSIBLE_UNKNOWN_EXIT"

# Node provisioning
NODE_PROVISION_FAILED = "NODE_PROVISION_FAILED"
NODE_PROVISION_TIMEOUT = "NODE_PROVISION_TIMEOUT"

# Domains
DOMAIN_DNS_MISMATCH = "DOMAIN_DNS_MISMATCH"
DOMAIN_ADD_FAILED = "DOMAIN_ADD_FAILED"
DOMAIN_REMOVE_FAILED = "DOMAIN_REMOVE_FAILED"

# Health and rollback
HEALTH_CHECK_FAILED = "HEALTH_CHECK_FAILED"
HEALTH_CHECK_TIMEOUT = "HEALTH_CHECK_TIMEOUT"
RELEASE_ROLLBACK_FAILED = "RELEASE_ROLLBACK_FAILED"
RELEASE_ROLLBACK_TIMEOUT = "RELEASE_ROLLBACK_TIMEOUT"

# Service-level defaults
ENV_MUTATION_FAILED = "ENV_MUTATION_FAILED"
ENV_RESTORE_FAILED = "ENV_RESTORE_FAILED"
ENV_PROMOTE_FAILED = "ENV_PROMOTE_FAILED"

# Infrastructure
AUDIT_WRITE_FAILED = "AUDIT_WRITE_FAILED"
JOB_INTERRUPTED = "JOB_INTERRUPTED"

RETRY_DELAYS = (
    timedelta(minutes=1),
    timedelta(minutes=5),
    timedelta(minutes=15),
)


class ExecutionError(Exception):
    """Structured handler failure stored on the job row."""

    def __init__(self, code: str, message: str, retryable: bool = False):
        self.code = code
        self.message = message
        self.retryable = retryable
        super().__init__(f"{code}: {message}")

    def non_retryable(self) -> "ExecutionError":
        """Same error with retry forced off."""
        return ExecutionError(self.code, self.message, retryable=False)

    @property
    def is_timeout(self) -> bool:
        return self.code.endswith("_TIMEOUT")


@dataclass(frozen=True)
class Classification:
    code: str
    message: str
    retryable: bool


def classify_error(error: BaseException) -> Classification:
    """Reduce any handler exception to (code, message, retryable)."""
    if isinstance(error, ExecutionError):
        return Classification(error.code, error.message, error.retryable)
    return Classification(ANSIBLE_UNKNOWN_EXIT, str(error) or type(error).__name__, False)


def retry_backoff(attempt_count: int) -> timedelta:
    """
    Delay before the next attempt after failing attempt `attempt_count`.

    Args:
        attempt_count: 1-indexed attempt that just failed

    Returns:
        1 minute after attempt 1, 5 after attempt 2, 15 after any later attempt
    """
    index = min(max(attempt_count, 1), len(RETRY_DELAYS)) - 1
    return RETRY_DELAYS[index]


def will_retry(job: Job, error: Optional[BaseException]) -> bool:
    """True when the worker is going to requeue `job` after `error`."""
    if error is None:
        return False
    return classify_error(error).retryable and job.attempt_count < job.max_attempts
