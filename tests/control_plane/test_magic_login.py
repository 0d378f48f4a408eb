"""
Magic login tests: wp-cli session over SSH, no job queue involved.
"""

import pytest

from src.access.magic_login import wp_session_command
from src.common.errors import EnvironmentNotActiveError, EnvironmentNotFoundError, NodeUnreachableError, WPCliError
from src.runner.ssh import SSHCommandError, SSHTimeoutError
from src.store.entities import EnvironmentStatus

from .conftest import assert_environment_status


class TestCreateMagicLogin:
    def test_returns_login_url_valid_for_a_minute(self, control_plane, create_site, create_node, ssh_runner, queue):
        """
        The URL printed by wp-cli is returned trimmed; the command runs on the
        environment's node with its SSH settings.
        """
        # Setup
        node = create_node(ssh_port=2222, ssh_user="deploy", ssh_private_key_path="/keys/id_ed25519")
        _, environment = create_site(node=node)

        # Action
        result = control_plane.magic_login.create_magic_login(environment.environment_id)

        # Assertion
        assert result.login_url == "https://acme.example.test/wp-login.php?session=abc123"
        assert result.expires_at == "2026-01-01T00:01:00.000000Z"

        [call] = ssh_runner.calls
        assert call["host"] == "node-1.example.test"
        assert call["port"] == 2222
        assert call["user"] == "deploy"
        assert call["identity_file"] == "/keys/id_ed25519"
        assert call["timeout"] == 10.0
        assert call["args"] == wp_session_command(environment.environment_id)
        assert queue.list_jobs() == []

    def test_wp_session_command(self):
        assert wp_session_command("env-1") == (
            "wp",
            "--path=/var/www/sites/env-1/current",
            "user",
            "session",
            "create",
            "admin",
            "--porcelain",
        )

    def test_environment_must_be_active(self, control_plane, create_site, ssh_runner):
        _, environment = create_site()
        control_plane.environments.deploy(environment.environment_id, "git", "v1")

        with pytest.raises(EnvironmentNotActiveError):
            control_plane.magic_login.create_magic_login(environment.environment_id)
        assert ssh_runner.calls == []

    def test_unknown_environment(self, control_plane):
        with pytest.raises(EnvironmentNotFoundError):
            control_plane.magic_login.create_magic_login("missing-environment")


class TestErrors:
    def test_timeout_is_node_unreachable(self, control_plane, create_site, ssh_runner):
        _, environment = create_site()
        ssh_runner.error = SSHTimeoutError(10.0)

        with pytest.raises(NodeUnreachableError):
            control_plane.magic_login.create_magic_login(environment.environment_id)

    @pytest.mark.parametrize(
        "output",
        [
            "ssh: connect to host node-1.example.test port 22: Connection refused",
            "ssh: Could not resolve hostname node-1.example.test: Name or service not known",
            "ssh: connect to host node-1.example.test port 22: No route to host",
        ],
    )
    def test_transport_failure_is_node_unreachable(self, control_plane, create_site, ssh_runner, output):
        _, environment = create_site()
        ssh_runner.error = SSHCommandError(255, output)

        with pytest.raises(NodeUnreachableError):
            control_plane.magic_login.create_magic_login(environment.environment_id)

    def test_remote_command_failure_is_wp_cli_error(self, control_plane, create_site, ssh_runner):
        _, environment = create_site()
        ssh_runner.error = SSHCommandError(1, "Error: Invalid user ID, email or login: 'admin'")

        with pytest.raises(WPCliError):
            control_plane.magic_login.create_magic_login(environment.environment_id)

    @pytest.mark.parametrize("output", ["", "   \n"])
    def test_empty_output_is_wp_cli_error(self, control_plane, create_site, ssh_runner, output):
        _, environment = create_site()
        ssh_runner.output = output

        with pytest.raises(WPCliError):
            control_plane.magic_login.create_magic_login(environment.environment_id)

    def test_failure_leaves_environment_untouched(self, control_plane, create_site, ssh_runner, database):
        _, environment = create_site()
        ssh_runner.error = SSHTimeoutError(10.0)

        with pytest.raises(NodeUnreachableError):
            control_plane.magic_login.create_magic_login(environment.environment_id)

        assert_environment_status(database, environment.environment_id, EnvironmentStatus.ACTIVE)
