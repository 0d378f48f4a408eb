"""
One-shot administrator login links.

Magic login bypasses the job queue: it asks wp-cli on the environment's
node for a session URL over SSH and returns it directly. Nothing is
persisted.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from src.common.errors import EnvironmentNotActiveError, NodeUnreachableError, WPCliError
from src.infra.clock import Clock, SystemClock
from src.releases.service import RELEASES_ROOT
from src.runner.ssh import SSHCommandError, SSHRunner, SSHTimeoutError, is_connection_error
from src.store.database import Database
from src.store.entities import EnvironmentStatus, format_timestamp
from src.store.queries import get_environment, get_node

logger = logging.getLogger(__name__)

NODE_QUERY_TIMEOUT = 10.0
TOKEN_LIFETIME = timedelta(seconds=60)
LOGIN_USER = "admin"


@dataclass
class MagicLoginResult:
    login_url: str
    expires_at: str


def wp_session_command(environment_id: str) -> tuple[str, ...]:
    return (
        "wp",
        f"--path={RELEASES_ROOT}/{environment_id}/current",
        "user",
        "session",
        "create",
        LOGIN_USER,
        "--porcelain",
    )


class MagicLoginService:
    def __init__(
        self,
        database: Database,
        ssh_runner: SSHRunner,
        clock: Optional[Clock] = None,
        timeout: float = NODE_QUERY_TIMEOUT,
    ):
        self.database = database
        self.ssh_runner = ssh_runner
        self.clock = clock or SystemClock()
        self.timeout = timeout

    def create_magic_login(self, environment_id: str) -> MagicLoginResult:
        """
        Mint a login URL for the environment's admin user.

        Raises:
            EnvironmentNotFoundError: unknown environment
            EnvironmentNotActiveError: environment is not active
            NodeUnreachableError: ssh timed out or could not connect
            WPCliError: wp-cli failed or printed nothing
        """
        with self.database.connection() as conn:
            environment = get_environment(conn, environment_id)
            if environment.status != EnvironmentStatus.ACTIVE:
                raise EnvironmentNotActiveError(environment_id, environment.status.value)
            node = get_node(conn, environment.node_id)

        try:
            output = self.ssh_runner.run(
                node.hostname,
                node.ssh_port,
                node.ssh_user,
                *wp_session_command(environment.environment_id),
                timeout=self.timeout,
                identity_file=node.ssh_private_key_path,
            )
        except SSHTimeoutError as e:
            raise NodeUnreachableError(f"node {node.node_id} did not answer within {self.timeout}s") from e
        except SSHCommandError as e:
            if is_connection_error(f"{e.output} {e}"):
                raise NodeUnreachableError(f"node {node.node_id} unreachable: {e.output.strip()[-200:]}") from e
            raise WPCliError(f"wp-cli exited {e.exit_code}: {e.output.strip()[-200:]}") from e

        login_url = (output or "").strip()
        if not login_url:
            raise WPCliError("wp-cli returned an empty login url")

        logger.info(f"Magic login issued for environment {environment_id}")
        return MagicLoginResult(
            login_url=login_url,
            expires_at=format_timestamp(self.clock.now() + TOKEN_LIFETIME),
        )
