# -*- coding: utf-8 -*-
"""
Status Publisher

Point-in-time status of the sync engine. Never waits for a running cycle.
"""

import logging

from .models import SyncStatusSnapshot

logger = logging.getLogger(__name__)


class StatusPublisher:
    """Builds SyncStatusSnapshot from the live config, changelog and state."""

    def __init__(self, manager: 'SyncManager'):
        self.manager = manager

    def snapshot(self) -> SyncStatusSnapshot:
        config = self.manager.store.get()
        # Live query on every call; no cached count
        pending = self.manager.tracker.pending_count(config.last_sync_at)
        return SyncStatusSnapshot(
            enabled=config.enabled,
            last_sync_at=config.last_sync_at,
            instance_id=config.instance_id,
            pending_count=pending,
            state=self.manager.state,
            last_error=self.manager.last_error,
            consecutive_failures=self.manager.consecutive_failures,
        )
