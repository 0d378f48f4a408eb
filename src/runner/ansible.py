"""
Ansible playbook runner.

Wrapper for executing allowlisted playbooks against a generated inventory.
Exit codes are mapped to job error codes here, once, so handlers only ever
see ExecutionError:

    0   -> success
    1   -> ANSIBLE_PLAY_ERROR        (retryable)
    2   -> ANSIBLE_HOST_FAILED       (retryable)
    4   -> ANSIBLE_HOST_UNREACHABLE  (retryable)
    5   -> ANSIBLE_SYNTAX_ERROR
    250 -> ANSIBLE_UNEXPECTED_ERROR
    other nonzero -> ANSIBLE_UNKNOWN_EXIT
    timeout -> ANSIBLE_TIMEOUT       (retryable)
    process could not run -> ANSIBLE_UNEXPECTED_ERROR
"""

import json
import logging
import os
import re
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from src.jobs.execution import (
    ANSIBLE_HOST_FAILED,
    ANSIBLE_HOST_UNREACHABLE,
    ANSIBLE_PLAY_ERROR,
    ANSIBLE_SYNTAX_ERROR,
    ANSIBLE_TIMEOUT,
    ANSIBLE_UNEXPECTED_ERROR,
    ANSIBLE_UNKNOWN_EXIT,
    ExecutionError,
)

logger = logging.getLogger(__name__)

# Playbooks the control plane is allowed to run (without .yml)
ALLOWED_PLAYBOOKS = frozenset({
    "node-provision",
    "site-create",
    "site-import",
    "env-create",
    "env-deploy",
    "env-update",
    "env-restore",
    "env-promote",
    "env-cache-toggle",
    "cache-purge",
    "backup-create",
    "backup-cleanup",
    "domain-add",
    "domain-remove",
    "drift-check",
    "release-rollback",
})

EXIT_CODE_MAP: dict[int, tuple[str, bool]] = {
    1: (ANSIBLE_PLAY_ERROR, True),
    2: (ANSIBLE_HOST_FAILED, True),
    4: (ANSIBLE_HOST_UNREACHABLE, True),
    5: (ANSIBLE_SYNTAX_ERROR, False),
    250: (ANSIBLE_UNEXPECTED_ERROR, False),
}

SENSITIVE_KEY_MARKERS = ("token", "password", "secret")
REDACTED = "***"

SSH_EXTRA_ARGS = "--ssh-extra-args=-o StrictHostKeyChecking=accept-new"


@dataclass
class PlaybookResult:
    """Result of a successful playbook run."""

    playbook: str
    output: str
    return_code: int = 0
    stats: dict[str, int] = field(default_factory=dict)


class PlaybookRunner(Protocol):
    """Capability: run a named playbook against an inventory."""

    def run(self, playbook: str, inventory: str, extra_vars: dict[str, Any]) -> PlaybookResult:
        """
        Run `playbook` (name without .yml).

        Raises:
            ExecutionError: mapped from the exit code or timeout
        """
        ...


def map_exit_code(return_code: int, output: str, error_text: str = "") -> ExecutionError:
    """Map a nonzero ansible-playbook exit status to an ExecutionError."""
    code, retryable = EXIT_CODE_MAP.get(return_code, (ANSIBLE_UNKNOWN_EXIT, False))
    message = (output or "").strip() or error_text or f"ansible-playbook exited with status {return_code}"
    return ExecutionError(code, message, retryable=retryable)


def redact_extra_vars(extra_vars: Any) -> Any:
    """Copy of extra vars with sensitive values masked for logging."""
    if isinstance(extra_vars, dict):
        redacted = {}
        for key, value in extra_vars.items():
            if any(marker in str(key).lower() for marker in SENSITIVE_KEY_MARKERS):
                redacted[key] = REDACTED
            else:
                redacted[key] = redact_extra_vars(value)
        return redacted
    if isinstance(extra_vars, list):
        return [redact_extra_vars(item) for item in extra_vars]
    return extra_vars


def parse_recap_stats(output: str) -> dict[str, int]:
    """Parse the PLAY RECAP counters of the first host, if present."""
    if "PLAY RECAP" not in output:
        return {}
    recap_section = output[output.find("PLAY RECAP"):]
    match = re.search(
        r"ok=(\d+)\s+changed=(\d+)\s+unreachable=(\d+)\s+failed=(\d+)",
        recap_section,
    )
    if not match:
        return {}
    return {
        "ok": int(match.group(1)),
        "changed": int(match.group(2)),
        "unreachable": int(match.group(3)),
        "failed": int(match.group(4)),
    }


class AnsiblePlaybookRunner:
    """
    Runs ansible-playbook as a subprocess.

    Each run gets its own temporary directory holding inventory.ini and
    extra-vars.json; the directory is removed afterwards.
    """

    def __init__(
        self,
        playbook_dir: str | Path,
        binary: str = "ansible-playbook",
        timeout: int = 1800,
        syntax_check: bool = True,
    ):
        """
        Initialize the runner.

        Args:
            playbook_dir: Directory holding <name>.yml playbooks
            binary: ansible-playbook executable
            timeout: Seconds before a run is killed and reported as ANSIBLE_TIMEOUT
            syntax_check: Run --syntax-check before each playbook
        """
        self.playbook_dir = Path(playbook_dir)
        self.binary = binary
        self.timeout = timeout
        self.syntax_check = syntax_check

    def playbook_path(self, playbook: str) -> Path:
        return self.playbook_dir / f"{playbook}.yml"

    def run(self, playbook: str, inventory: str, extra_vars: dict[str, Any]) -> PlaybookResult:
        if playbook not in ALLOWED_PLAYBOOKS:
            raise ExecutionError(
                ANSIBLE_UNEXPECTED_ERROR,
                f"playbook not allowed: {playbook}",
                retryable=False,
            )

        playbook_path = self.playbook_path(playbook)
        logger.info(
            f"[Ansible] Running {playbook_path.name} with vars "
            f"{json.dumps(redact_extra_vars(extra_vars), sort_keys=True)}"
        )

        with tempfile.TemporaryDirectory(prefix="control-plane-ansible-") as workdir:
            inventory_path = Path(workdir) / "inventory.ini"
            vars_path = Path(workdir) / "extra-vars.json"
            inventory_path.write_text(inventory, encoding="utf-8")
            vars_path.write_text(json.dumps(extra_vars), encoding="utf-8")

            if self.syntax_check:
                self._execute(
                    playbook,
                    [self.binary, "--syntax-check", "-i", str(inventory_path), str(playbook_path)],
                )

            output = self._execute(
                playbook,
                [
                    self.binary,
                    "-i",
                    str(inventory_path),
                    "-e",
                    f"@{vars_path}",
                    SSH_EXTRA_ARGS,
                    str(playbook_path),
                ],
            )

        logger.info(f"[Ansible] Playbook {playbook_path.name}: success")
        return PlaybookResult(playbook=playbook, output=output, stats=parse_recap_stats(output))

    def _execute(self, playbook: str, cmd: list[str]) -> str:
        """Run one ansible-playbook invocation, returning combined output."""
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env={**os.environ, "ANSIBLE_FORCE_COLOR": "0"},
            )
        except subprocess.TimeoutExpired as e:
            logger.error(f"[Ansible] Playbook {playbook} timed out after {self.timeout}s")
            raise ExecutionError(
                ANSIBLE_TIMEOUT,
                f"playbook {playbook} timed out after {self.timeout} seconds",
                retryable=True,
            ) from e
        except OSError as e:
            logger.error(f"[Ansible] Could not run {self.binary}: {e}")
            raise ExecutionError(ANSIBLE_UNEXPECTED_ERROR, str(e), retryable=False) from e

        output = (result.stdout or "") + (result.stderr or "")
        if result.returncode != 0:
            logger.error(
                f"[Ansible] Playbook {playbook} exited {result.returncode}: {output.strip()[-1000:]}"
            )
            raise map_exit_code(result.returncode, output)
        return output

