"""
Process wiring for the control plane.
"""

from .service import ControlPlane

__all__ = ["ControlPlane"]
