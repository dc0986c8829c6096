# -*- coding: utf-8 -*-
"""
Background Sync Service

Runs a sync cycle at a fixed interval. Offline is retried on every tick;
after an error the service backs off exponentially.
"""

import logging
import threading
import time
from typing import Optional

from ctt.settings import settings
from .models import SyncResult, SyncState

logger = logging.getLogger(__name__)

TICK_STATES = (SyncState.IDLE, SyncState.OFFLINE, SyncState.ERROR)


class SyncService:
    """
    Background sync scheduler.

    The periodic tick and the manual trigger go through the same guarded
    entry point of the SyncManager.
    """

    def __init__(self, sync_manager: 'SyncManager', interval: int = None,
                 max_backoff: int = None):
        """
        Args:
            sync_manager: SyncManager instance
            interval: Tick interval (seconds)
            max_backoff: Upper bound of the error backoff (seconds)
        """
        self.sync_manager = sync_manager
        self.interval = interval or settings.SYNC_INTERVAL_SECONDS
        self.max_backoff = max_backoff or settings.SYNC_MAX_BACKOFF_SECONDS

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._next_attempt = 0.0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.is_running:
            logger.warning("Sync service is already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, daemon=True)
        self._thread.name = "SyncService"
        self._thread.start()
        logger.info(f"Sync service started (interval={self.interval}s)")

    def stop(self, timeout: float = 30, shutdown_manager: bool = True):
        """
        Stop ticking; a running cycle is allowed to finish.

        Args:
            timeout: Seconds to wait for the thread
            shutdown_manager: Also shut down the SyncManager
        """
        self._stop_event.set()
        if shutdown_manager:
            self.sync_manager.shutdown()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("Sync service stopped")

    def backoff_delay(self) -> float:
        failures = max(self.sync_manager.consecutive_failures, 1)
        return min(self.interval * (2 ** failures), self.max_backoff)

    def tick(self) -> Optional[SyncResult]:
        """
        One scheduler tick.

        Returns:
            The cycle result, or None if no cycle was started
        """
        state = self.sync_manager.state
        if state not in TICK_STATES:
            return None
        if state == SyncState.ERROR and time.monotonic() < self._next_attempt:
            return None

        result = self.sync_manager.sync_now()
        if result.state == SyncState.ERROR:
            delay = self.backoff_delay()
            self._next_attempt = time.monotonic() + delay
            logger.info(f"Next sync attempt in {delay}s")
        return result

    def trigger(self) -> SyncResult:
        """Manual sync."""
        result = self.sync_manager.sync_now()
        if result.success:
            self._next_attempt = 0.0
        return result

    def initial_sync(self, mode) -> SyncResult:
        return self.sync_manager.initial_sync(mode)

    def _run_loop(self):
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.exception(f"Sync loop error: {e}")

            self._stop_event.wait(self.interval)


# Global instance (lazy initialization)
_sync_service: Optional[SyncService] = None


def get_sync_service() -> Optional[SyncService]:
    return _sync_service


def init_sync_service(sync_manager: 'SyncManager', interval: int = None,
                      start: bool = True) -> SyncService:
    """
    Create (and start) the process-wide sync service.

    Args:
        sync_manager: SyncManager instance
        interval: Tick interval (seconds)
        start: Start the background thread
    """
    global _sync_service

    if _sync_service:
        # The manager survives when the new service reuses it
        _sync_service.stop(shutdown_manager=_sync_service.sync_manager is not sync_manager)

    _sync_service = SyncService(sync_manager=sync_manager, interval=interval)
    if start:
        _sync_service.start()

    return _sync_service


def stop_sync_service():
    global _sync_service

    if _sync_service:
        _sync_service.stop()
        _sync_service = None
