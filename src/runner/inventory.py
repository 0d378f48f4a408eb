"""
Ansible inventory rendering.

SSH targets:
    [target]
    <hostname> ansible_port=<p> ansible_user=<u> ansible_ssh_private_key_file=<k>

Each connection variable is written only when set. Local targets use
`ansible_connection=local`.
"""

from typing import Optional

from src.store.entities import Node

INVENTORY_GROUP = "target"


def build_ssh_inventory(
    hostname: str,
    port: Optional[int] = None,
    user: Optional[str] = None,
    private_key_path: Optional[str] = None,
) -> str:
    parts = [hostname.strip()]
    if port:
        parts.append(f"ansible_port={port}")
    if user and user.strip():
        parts.append(f"ansible_user={user.strip()}")
    if private_key_path and private_key_path.strip():
        parts.append(f"ansible_ssh_private_key_file={private_key_path.strip()}")
    return f"[{INVENTORY_GROUP}]\n{' '.join(parts)}\n"


def build_local_inventory(hostname: str = "localhost") -> str:
    return f"[{INVENTORY_GROUP}]\n{hostname.strip() or 'localhost'} ansible_connection=local\n"


def build_node_inventory(node: Node) -> str:
    """Inventory for a node: local connection for local nodes, SSH otherwise."""
    if node.is_local:
        return build_local_inventory(node.hostname)
    return build_ssh_inventory(
        node.hostname,
        port=node.ssh_port,
        user=node.ssh_user,
        private_key_path=node.ssh_private_key_path,
    )
