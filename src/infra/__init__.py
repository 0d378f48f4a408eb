"""
Infrastructure module - configuration, logging and clock.
"""

from .clock import Clock, SystemClock
from .config import Settings, get_project_root
from .logging_config import setup_logging

__all__ = [
    # clock
    "Clock",
    "SystemClock",
    # config
    "Settings",
    "get_project_root",
    # logging
    "setup_logging",
]
