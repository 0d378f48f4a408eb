"""
Runtime configuration for the control plane.

Values come from environment variables (optionally seeded from a .env file
by the CLI via python-dotenv). Every setting has a default so that tests and
local runs work without any configuration.

Environment Variables:
- CONTROL_PLANE_DB_PATH: sqlite database file (default: data/control_plane.db)
- LOG_LEVEL / LOG_DIR: logging level and log directory
- LOG_RETENTION_DAYS: rotated daily log files kept (default: 14)
- WORKER_COUNT / WORKER_POLL_INTERVAL: worker pool size and idle poll seconds
- BACKUP_CLEANUP_INTERVAL: seconds between backup cleanup passes (default: 6h)
- ANSIBLE_PLAYBOOK_BINARY / ANSIBLE_PLAYBOOK_DIR / ANSIBLE_TIMEOUT
- ANSIBLE_SYNTAX_CHECK: run --syntax-check before each playbook (default: true)
- ARTIFACT_ROOT: local directory mirroring backup storage paths
- BACKUP_BUCKET: bucket name used in backup storage paths
- SSH_BINARY: ssh client used for synchronous node commands
- HEALTH_CHECK_TIMEOUT: seconds allowed for a post-mutation health probe
"""

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_INTERVAL_SECONDS = 6 * 60 * 60


# =============================================================================
# Environment Variable Helpers
# =============================================================================

def _get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    val = os.getenv(key, "").lower()
    if val in ("true", "1", "yes", "on"):
        return True
    elif val in ("false", "0", "no", "off"):
        return False
    return default


def _get_env_int(key: str, default: int) -> int:
    """Get integer value from environment variable."""
    val = os.getenv(key)
    if val is not None:
        try:
            return int(val)
        except ValueError:
            logger.warning(f"[Config] Invalid integer for {key}: {val}, using default: {default}")
    return default


def _get_env_float(key: str, default: float) -> float:
    """Get float value from environment variable."""
    val = os.getenv(key)
    if val is not None:
        try:
            return float(val)
        except ValueError:
            logger.warning(f"[Config] Invalid number for {key}: {val}, using default: {default}")
    return default


def _get_env_str(key: str, default: str) -> str:
    """Get a non-empty string from environment variable."""
    val = os.getenv(key, "").strip()
    return val or default


# =============================================================================
# Paths
# =============================================================================

def get_project_root() -> Path:
    """
    Get the project root directory.

    File is at src/infra/config.py, so project root is 2 levels up.

    Returns:
        Path: Project root directory
    """
    return Path(__file__).parent.parent.parent.resolve()


def get_default_db_path() -> Path:
    """Default sqlite database location under data/."""
    return get_project_root() / "data" / "control_plane.db"


def get_default_artifact_root() -> Path:
    """Default local mirror of backup storage paths."""
    return Path(tempfile.gettempdir()) / "control-plane-artifacts"


# =============================================================================
# Settings
# =============================================================================

@dataclass(frozen=True)
class Settings:
    """Resolved control plane settings."""

    db_path: Path
    log_level: str = "INFO"
    log_dir: str = "logs"
    log_retention_days: int = 14
    worker_count: int = 1
    poll_interval: float = 2.0
    cleanup_interval: int = DEFAULT_CLEANUP_INTERVAL_SECONDS
    ansible_binary: str = "ansible-playbook"
    playbook_dir: Path = Path("ansible/playbooks")
    ansible_timeout: int = 1800
    syntax_check: bool = True
    artifact_root: Path = get_default_artifact_root()
    backup_bucket: str = "control-plane"
    ssh_binary: str = "ssh"
    health_check_timeout: float = 15.0

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the current process environment."""
        worker_count = _get_env_int("WORKER_COUNT", 1)
        if worker_count < 1:
            logger.warning(f"[Config] WORKER_COUNT must be >= 1, got {worker_count}; using 1")
            worker_count = 1

        return cls(
            db_path=Path(_get_env_str("CONTROL_PLANE_DB_PATH", str(get_default_db_path()))),
            log_level=_get_env_str("LOG_LEVEL", "INFO").upper(),
            log_dir=_get_env_str("LOG_DIR", "logs"),
            log_retention_days=_get_env_int("LOG_RETENTION_DAYS", 14),
            worker_count=worker_count,
            poll_interval=_get_env_float("WORKER_POLL_INTERVAL", 2.0),
            cleanup_interval=_get_env_int("BACKUP_CLEANUP_INTERVAL", DEFAULT_CLEANUP_INTERVAL_SECONDS),
            ansible_binary=_get_env_str("ANSIBLE_PLAYBOOK_BINARY", "ansible-playbook"),
            playbook_dir=Path(_get_env_str("ANSIBLE_PLAYBOOK_DIR", "ansible/playbooks")),
            ansible_timeout=_get_env_int("ANSIBLE_TIMEOUT", 1800),
            syntax_check=_get_env_bool("ANSIBLE_SYNTAX_CHECK", True),
            artifact_root=Path(_get_env_str("ARTIFACT_ROOT", str(get_default_artifact_root()))),
            backup_bucket=_get_env_str("BACKUP_BUCKET", "control-plane"),
            ssh_binary=_get_env_str("SSH_BINARY", "ssh"),
            health_check_timeout=_get_env_float("HEALTH_CHECK_TIMEOUT", 15.0),
        )
