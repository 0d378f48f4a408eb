"""
Pytest configuration and shared fixtures.
"""

import logging
import os

import pytest

from src.infra.logging_config import LOGGER_NAME

CONFIG_ENV_VARS = (
    "CONTROL_PLANE_DB_PATH",
    "LOG_LEVEL",
    "LOG_DIR",
    "LOG_RETENTION_DAYS",
    "WORKER_COUNT",
    "WORKER_POLL_INTERVAL",
    "BACKUP_CLEANUP_INTERVAL",
    "ANSIBLE_PLAYBOOK_BINARY",
    "ANSIBLE_PLAYBOOK_DIR",
    "ANSIBLE_TIMEOUT",
    "ANSIBLE_SYNTAX_CHECK",
    "ARTIFACT_ROOT",
    "BACKUP_BUCKET",
    "SSH_BINARY",
    "HEALTH_CHECK_TIMEOUT",
)


@pytest.fixture(autouse=True, scope="function")
def reset_control_plane_env():
    """
    Reset configuration and logging state around each test.

    Tests start without any control plane environment variables so that
    Settings.from_env() yields defaults unless a test sets them. The `src`
    logger is returned to its unconfigured state afterwards, since
    setup_logging() turns off propagation.
    """
    # Store original values
    original = {key: os.environ.get(key) for key in CONFIG_ENV_VARS}
    for key in CONFIG_ENV_VARS:
        os.environ.pop(key, None)

    yield

    # Restore original values
    for key, value in original.items():
        if value is not None:
            os.environ[key] = value
        else:
            os.environ.pop(key, None)

    package_logger = logging.getLogger(LOGGER_NAME)
    for handler in list(package_logger.handlers):
        handler.close()
    package_logger.handlers.clear()
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)
