"""Message trimming helpers."""

JOB_ERROR_MESSAGE_LIMIT = 10 * 1024
SERVICE_ERROR_MESSAGE_LIMIT = 512


def truncate_tail(message: str, limit: int) -> str:
    """
    Keep at most `limit` UTF-8 bytes of `message`, dropping the head.

    Tracebacks and playbook output put the useful part at the end, so the
    tail is what survives.
    """
    message = (message or "").strip()
    encoded = message.encode("utf-8")
    if len(encoded) <= limit:
        return message
    return encoded[-limit:].decode("utf-8", errors="ignore")


def truncate_job_message(message: str) -> str:
    return truncate_tail(message, JOB_ERROR_MESSAGE_LIMIT)


def truncate_service_message(message: str) -> str:
    return truncate_tail(message, SERVICE_ERROR_MESSAGE_LIMIT)
