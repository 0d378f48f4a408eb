"""
External process capabilities: ansible-playbook and ssh.
"""

from .ansible import (
    ALLOWED_PLAYBOOKS,
    AnsiblePlaybookRunner,
    PlaybookResult,
    PlaybookRunner,
    map_exit_code,
    redact_extra_vars,
)
from .inventory import build_local_inventory, build_node_inventory, build_ssh_inventory
from .ssh import (
    SSHCommandError,
    SSHRunner,
    SSHTimeoutError,
    SubprocessSSHRunner,
    is_connection_error,
)

__all__ = [
    # ansible
    "ALLOWED_PLAYBOOKS",
    "AnsiblePlaybookRunner",
    "PlaybookResult",
    "PlaybookRunner",
    "map_exit_code",
    "redact_extra_vars",
    # inventory
    "build_local_inventory",
    "build_node_inventory",
    "build_ssh_inventory",
    # ssh
    "SSHCommandError",
    "SSHRunner",
    "SSHTimeoutError",
    "SubprocessSSHRunner",
    "is_connection_error",
]
