"""
Local backup artifacts.

Backup playbooks write the archive for `s3://<bucket>/<key>` to
`<artifact root>/<bucket>/<key>` on the control plane host; the checksum
and size recorded on the Backup row are taken from that file.
"""

import hashlib
from pathlib import Path

S3_SCHEME = "s3://"
CHECKSUM_PREFIX = "sha256:"
CHUNK_SIZE = 1024 * 1024


def storage_path_for(bucket: str, environment_id: str, backup_id: str) -> str:
    return f"{S3_SCHEME}{bucket}/backups/{environment_id}/{backup_id}.tar.zst"


def local_artifact_path(storage_path: str, artifact_root: str | Path) -> Path:
    """Deterministic local path mirroring a storage path."""
    relative = storage_path[len(S3_SCHEME):] if storage_path.startswith(S3_SCHEME) else storage_path
    return Path(artifact_root) / relative.lstrip("/")


def checksum_file(path: Path) -> tuple[str, int]:
    """
    SHA-256 and size of a file.

    Returns:
        ("sha256:<hex>", size_bytes)
    """
    digest = hashlib.sha256()
    size = 0
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
            size += len(chunk)
    return f"{CHECKSUM_PREFIX}{digest.hexdigest()}", size


def placeholder_checksum(backup_id: str) -> str:
    """Deterministic checksum for backup records that have no artifact of their own."""
    return f"{CHECKSUM_PREFIX}{hashlib.sha256(backup_id.encode('utf-8')).hexdigest()}"
