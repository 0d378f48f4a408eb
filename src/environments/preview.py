"""Preview URL derivation for environments without a custom domain."""

from urllib.parse import urlsplit

PREVIEW_ID_LENGTH = 8


def sslip_preview_url(environment_id: str, public_ip: str) -> str:
    """http://<env id prefix>.<ip with dashes>.sslip.io"""
    dashed_ip = public_ip.strip().replace(".", "-")
    return f"http://{environment_id[:PREVIEW_ID_LENGTH]}.{dashed_ip}.sslip.io"


def derive_preview_url(source_preview_url: str, environment_id: str) -> str:
    """
    Preview URL for a clone, on the same sslip domain as its source.

    The first host label (the source's id prefix) is swapped for the new
    environment's id prefix; scheme and remaining labels are kept.
    """
    parts = urlsplit(source_preview_url)
    labels = (parts.hostname or "").split(".")
    if len(labels) < 2:
        raise ValueError(f"cannot derive preview url from {source_preview_url!r}")
    labels[0] = environment_id[:PREVIEW_ID_LENGTH]
    scheme = parts.scheme or "http"
    return f"{scheme}://{'.'.join(labels)}"
