"""
Periodic backup retention sweep.

Runs one cleanup pass immediately on start, then every `interval` seconds
until stopped. A failing pass is logged and retried on the next tick.
"""

import logging
import threading
from typing import Optional

from src.jobs.entities import Job

from .service import BackupService

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_INTERVAL = 6 * 60 * 60


class BackupCleanupScheduler:
    def __init__(self, service: BackupService, interval: float = DEFAULT_CLEANUP_INTERVAL):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.service = service
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> list[Job]:
        """Single retention pass; errors propagate to the caller."""
        return self.service.enqueue_expired_cleanup()

    def start(self, blocking: bool = False) -> None:
        if self.is_running:
            raise RuntimeError("Backup cleanup scheduler already running")

        self._stop_event.clear()
        if blocking:
            self._run_loop()
        else:
            self._thread = threading.Thread(
                target=self._run_loop, name="backup-cleanup", daemon=True
            )
            self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Backup cleanup scheduler did not stop within timeout")
            self._thread = None

    def _run_loop(self) -> None:
        logger.info(f"[BackupCleanup] Scheduler started (interval={self.interval}s)")

        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"[BackupCleanup] Pass failed: {e}", exc_info=True)
            self._stop_event.wait(self.interval)

        logger.info("[BackupCleanup] Scheduler stopped")
