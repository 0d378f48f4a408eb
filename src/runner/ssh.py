"""
SSH command runner for synchronous node queries.

The only place that sniffs command output is `is_connection_error`: ssh
reports transport failures on stderr with exit status 255, which cannot be
told apart from a remote command exiting 255 any other way.
"""

import logging
import subprocess
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

SSH_OPTIONS = (
    "-o", "BatchMode=yes",
    "-o", "StrictHostKeyChecking=accept-new",
    "-o", "ConnectTimeout=10",
)

CONNECTION_ERROR_MARKERS = (
    "connection refused",
    "connection timed out",
    "timed out",
    "no route to host",
    "could not resolve hostname",
    "connection closed",
)


class SSHCommandError(Exception):
    """Remote command (or ssh itself) exited nonzero."""

    def __init__(self, exit_code: int, output: str):
        self.exit_code = exit_code
        self.output = output
        super().__init__(f"ssh command exited {exit_code}: {output.strip()[-500:]}")


class SSHTimeoutError(Exception):
    """The command did not finish before its deadline."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"ssh command timed out after {timeout} seconds")


class SSHRunner(Protocol):
    """Capability: run a command on a node over SSH."""

    def run(
        self,
        host: str,
        port: int,
        user: str,
        *remote_args: str,
        timeout: float = 10.0,
        identity_file: Optional[str] = None,
    ) -> str:
        """
        Returns combined stdout+stderr.

        Raises:
            SSHCommandError: nonzero exit
            SSHTimeoutError: deadline exceeded
        """
        ...


def is_connection_error(output: str) -> bool:
    """True when ssh output describes a transport failure rather than a remote error."""
    lowered = (output or "").lower()
    return any(marker in lowered for marker in CONNECTION_ERROR_MARKERS)


def build_ssh_command(
    binary: str,
    host: str,
    port: int,
    user: str,
    remote_args: tuple[str, ...],
    identity_file: Optional[str] = None,
) -> list[str]:
    cmd = [binary, *SSH_OPTIONS, "-p", str(port)]
    if identity_file:
        cmd.extend(["-i", identity_file])
    cmd.extend([f"{user}@{host}", "--", *remote_args])
    return cmd


class SubprocessSSHRunner:
    """SSHRunner backed by the system ssh client."""

    def __init__(self, binary: str = "ssh"):
        self.binary = binary

    def run(
        self,
        host: str,
        port: int,
        user: str,
        *remote_args: str,
        timeout: float = 10.0,
        identity_file: Optional[str] = None,
    ) -> str:
        cmd = build_ssh_command(self.binary, host, port, user, remote_args, identity_file)
        logger.debug(f"[SSH] {user}@{host}:{port} {' '.join(remote_args)}")

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise SSHTimeoutError(timeout) from e
        except OSError as e:
            raise SSHCommandError(255, str(e)) from e

        output = (result.stdout or "") + (result.stderr or "")
        if result.returncode != 0:
            raise SSHCommandError(result.returncode, output)
        return output
