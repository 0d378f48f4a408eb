"""
Node registry and provisioning.
"""

from .service import NodeRegisterResult, NodeService, select_active_node

__all__ = [
    "NodeRegisterResult",
    "NodeService",
    "select_active_node",
]
