"""
Tests for logging_config module.
"""

import logging
import threading
from logging.handlers import TimedRotatingFileHandler

from src.infra.logging_config import (
    DEFAULT_RETENTION_DAYS,
    LOG_FILE_NAME,
    LOGGER_NAME,
    build_file_handler,
    setup_logging,
)


def flush_package_logger() -> None:
    for handler in logging.getLogger(LOGGER_NAME).handlers:
        handler.flush()


class TestBuildFileHandler:
    def test_creates_log_directory(self, tmp_path):
        log_dir = tmp_path / "new_logs"

        handler = build_file_handler(str(log_dir))
        handler.close()

        assert (log_dir / LOG_FILE_NAME).exists()

    def test_rotates_at_midnight_with_retention(self, tmp_path):
        handler = build_file_handler(str(tmp_path), retention_days=3)
        handler.close()

        assert handler.when == "MIDNIGHT"
        assert handler.utc is True
        assert handler.backupCount == 3

    def test_negative_retention_keeps_everything(self, tmp_path):
        handler = build_file_handler(str(tmp_path), retention_days=-1)
        handler.close()

        assert handler.backupCount == 0


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_returns_package_logger(self, tmp_path):
        logger = setup_logging("INFO", log_dir=str(tmp_path))

        assert logger.name == LOGGER_NAME == "src"
        assert logger.propagate is False

    def test_sets_level(self, tmp_path):
        assert setup_logging("debug", log_dir=str(tmp_path)).level == logging.DEBUG
        assert setup_logging("WARNING", log_dir=str(tmp_path)).level == logging.WARNING

    def test_unknown_level_defaults_to_info(self, tmp_path):
        logger = setup_logging("CHATTY", log_dir=str(tmp_path))

        assert logger.level == logging.INFO

    def test_console_and_file_handlers(self, tmp_path):
        logger = setup_logging("INFO", log_dir=str(tmp_path), retention_days=5)

        file_handlers = [h for h in logger.handlers if isinstance(h, TimedRotatingFileHandler)]
        stream_handlers = [h for h in logger.handlers if type(h) is logging.StreamHandler]
        assert len(file_handlers) == 1
        assert len(stream_handlers) == 1
        assert file_handlers[0].backupCount == 5

    def test_repeated_setup_replaces_handlers(self, tmp_path):
        first = setup_logging("INFO", log_dir=str(tmp_path))
        [old_file_handler] = [h for h in first.handlers if isinstance(h, TimedRotatingFileHandler)]

        logger = setup_logging("INFO", log_dir=str(tmp_path))

        assert len(logger.handlers) == 2
        assert old_file_handler not in logger.handlers
        assert old_file_handler.stream is None

    def test_default_retention(self, tmp_path):
        logger = setup_logging("INFO", log_dir=str(tmp_path))

        [file_handler] = [h for h in logger.handlers if isinstance(h, TimedRotatingFileHandler)]
        assert file_handler.backupCount == DEFAULT_RETENTION_DAYS

    def test_module_loggers_reach_the_file(self, tmp_path):
        setup_logging("INFO", log_dir=str(tmp_path))

        logging.getLogger("src.jobs.queue").info("queue message")
        flush_package_logger()

        content = (tmp_path / LOG_FILE_NAME).read_text()
        assert "INFO [MainThread] src.jobs.queue: queue message" in content

    def test_worker_thread_name_is_logged(self, tmp_path):
        setup_logging("INFO", log_dir=str(tmp_path))

        thread = threading.Thread(
            target=lambda: logging.getLogger("src.jobs.worker").info("claimed job"),
            name="worker-1",
        )
        thread.start()
        thread.join()
        flush_package_logger()

        assert "[worker-1] src.jobs.worker: claimed job" in (tmp_path / LOG_FILE_NAME).read_text()

    def test_records_below_level_are_dropped(self, tmp_path):
        setup_logging("WARNING", log_dir=str(tmp_path))

        logging.getLogger("src.backups.scheduler").info("cleanup pass")
        flush_package_logger()

        assert "cleanup pass" not in (tmp_path / LOG_FILE_NAME).read_text()
