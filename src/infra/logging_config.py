"""
Logging for the control plane process.

Every module logs through `logging.getLogger(__name__)`, so configuring the
`src` logger captures the whole tree: commands, workers and the cleanup
scheduler. Workers run in threads, so the thread name is part of each line.

Files:
    <log_dir>/control_plane.log            current day
    <log_dir>/control_plane.log.YYYY-MM-DD earlier days, oldest pruned
"""

import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

LOGGER_NAME = "src"
LOG_FILE_NAME = "control_plane.log"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"
DEFAULT_RETENTION_DAYS = 14


def build_file_handler(log_dir: str, retention_days: int = DEFAULT_RETENTION_DAYS) -> TimedRotatingFileHandler:
    """File handler rolling over at UTC midnight, keeping `retention_days` old files."""
    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    return TimedRotatingFileHandler(
        directory / LOG_FILE_NAME,
        when="midnight",
        backupCount=max(retention_days, 0),
        encoding="utf-8",
        utc=True,
    )


def setup_logging(
    log_level: str = "INFO",
    log_dir: str = "logs",
    retention_days: int = DEFAULT_RETENTION_DAYS,
) -> logging.Logger:
    """
    Send the `src` logger to stderr and the rotating log file.

    Safe to call more than once: earlier handlers are closed and replaced.

    Returns:
        The configured `src` logger
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = build_file_handler(log_dir, retention_days)
    for handler in (logging.StreamHandler(), file_handler):
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.debug(f"Logging to {file_handler.baseFilename} at {logging.getLevelName(level)}")
    return logger
