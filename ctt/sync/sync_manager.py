# -*- coding: utf-8 -*-
"""
Sync Manager

Coordinates the sync components and owns the sync state machine.

    disabled -> idle                        enabled and configured
    idle / offline / error -> syncing       a cycle starts
    syncing -> idle | offline | error       cycle outcome
    idle / offline / error -> disabled      sync turned off

Only one cycle runs at a time. A trigger that arrives while a cycle is
running gets a ``busy`` result and causes no network activity.
"""

import logging
import threading
import time
from typing import Optional, Dict, Any, List, Tuple, Callable

from .changelog import ChangeTracker
from .config import ConfigStore, SyncConfig, is_masked
from .config_codec import PortableConfig, export_config, import_config
from .conflict_handler import ConflictHandler
from .errors import SyncError, ConnectivityFailure, ApplyFailure
from .gateway import RemoteGateway
from .models import (
    ChangeRecord, SyncConflict, SyncResult, SyncState, InitialSyncMode,
    TABLE_RANK, shift_timestamp,
)
from .status import StatusPublisher
from ctt.settings import settings

logger = logging.getLogger(__name__)


TRANSITIONS = {
    SyncState.DISABLED: {SyncState.IDLE},
    SyncState.IDLE: {SyncState.SYNCING, SyncState.DISABLED},
    SyncState.OFFLINE: {SyncState.SYNCING, SyncState.DISABLED},
    SyncState.ERROR: {SyncState.SYNCING, SyncState.DISABLED},
    SyncState.SYNCING: {SyncState.IDLE, SyncState.OFFLINE, SyncState.ERROR},
}

SECRET_KEYS = ('restricted_key', 'elevated_key', 'database_url')


class SyncManager:
    """
    Sync orchestrator.

    Usage:
        sync_manager = SyncManager(db_path)
        result = sync_manager.sync_now()
        status = sync_manager.get_status()
    """

    def __init__(self, db_path: str, store: Optional[ConfigStore] = None,
                 gateway_factory: Callable[..., RemoteGateway] = RemoteGateway):
        """
        Args:
            db_path: SQLite database path
            store: Config store (created on db_path if omitted)
            gateway_factory: Builds a RemoteGateway from
                (database_url, remote_endpoint, restricted_key)
        """
        self.db_path = db_path
        self.store = store or ConfigStore(db_path)

        config = self.store.get()
        self.instance_id = config.instance_id

        self.tracker = ChangeTracker(db_path, self.instance_id)
        self.tracker.install()
        self.conflict_handler = ConflictHandler(db_path)
        self.status_publisher = StatusPublisher(self)

        self._gateway_factory = gateway_factory
        self._gateway: Optional[RemoteGateway] = None
        self._gateway_key: Optional[Tuple[str, str, str]] = None

        self._cycle_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = SyncState.DISABLED
        self._state_changes: List[SyncState] = []
        self._shutting_down = False

        self.last_error: Optional[str] = None
        self.consecutive_failures = 0

        # Callbacks
        self.on_state_change: Optional[Callable[[SyncState], None]] = None

        self.store.add_listener(self._on_config_change)
        if config.enabled and config.is_configured:
            self._transition(SyncState.IDLE)

    # ============================================================
    # STATE
    # ============================================================

    @property
    def state(self) -> SyncState:
        with self._state_lock:
            return self._state

    def _set_state(self, target: SyncState):
        """Change state. Caller holds _state_lock."""
        if target == self._state:
            return
        if target not in TRANSITIONS[self._state]:
            raise RuntimeError(f"Illegal sync transition: {self._state.value} -> {target.value}")

        logger.debug(f"Sync state: {self._state.value} -> {target.value}")
        self._state = target
        self._state_changes.append(target)

    def _notify_state_changes(self):
        """Deliver queued transitions to on_state_change. Caller must not hold _state_lock."""
        with self._state_lock:
            changes, self._state_changes = self._state_changes, []

        if not self.on_state_change:
            return
        for state in changes:
            try:
                self.on_state_change(state)
            except Exception as e:
                logger.error(f"State callback error: {e}")

    def _transition(self, target: SyncState):
        with self._state_lock:
            self._set_state(target)
        self._notify_state_changes()

    def _on_config_change(self, old: SyncConfig, new: SyncConfig):
        active = new.enabled and new.is_configured
        with self._state_lock:
            # A running cycle re-checks config when it ends
            if self._state != SyncState.SYNCING:
                if active and self._state == SyncState.DISABLED:
                    self._set_state(SyncState.IDLE)
                    logger.info("Sync enabled")
                elif not active and self._state != SyncState.DISABLED:
                    self._set_state(SyncState.DISABLED)
                    logger.info("Sync disabled")
        self._notify_state_changes()

    # ============================================================
    # GATEWAY
    # ============================================================

    def _build_gateway(self, config: SyncConfig) -> RemoteGateway:
        return self._gateway_factory(
            config.database_url,
            config.remote_endpoint,
            config.credentials.restricted_key,
        )

    def _get_gateway(self, config: SyncConfig) -> RemoteGateway:
        """Cached gateway, rebuilt when the remote settings change."""
        key = (config.database_url, config.remote_endpoint, config.credentials.restricted_key)
        if self._gateway is None or self._gateway_key != key:
            if self._gateway is not None:
                self._gateway.close()
            self._gateway = self._build_gateway(config)
            self._gateway_key = key
        return self._gateway

    # ============================================================
    # CYCLE
    # ============================================================

    def sync_now(self) -> SyncResult:
        """Run one sync cycle, or report busy if one is running."""
        return self._guarded(self._run_cycle)

    def initial_sync(self, mode) -> SyncResult:
        """
        Bulk sync used once when an installation joins a populated remote.

        Args:
            mode: 'push', 'pull' or 'merge' (or InitialSyncMode)

        Raises:
            ValueError: unknown mode
        """
        mode = InitialSyncMode(mode)
        return self._guarded(lambda: self._run_initial_sync(mode))

    def _guarded(self, body: Callable[[], SyncResult]) -> SyncResult:
        if self._shutting_down:
            return SyncResult(success=False, errors=["Sync is shutting down"], state=self.state)

        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Sync trigger ignored, a cycle is running")
            return SyncResult(
                success=False,
                busy=True,
                errors=["Sync is already in progress"],
                state=SyncState.SYNCING,
            )

        try:
            return body()
        finally:
            self._cycle_lock.release()

    def _run_cycle(self) -> SyncResult:
        config = self.store.get()
        if not config.enabled or not config.is_configured:
            self._transition(SyncState.DISABLED)
            reason = "Sync is disabled" if not config.enabled else "Sync is not configured"
            return SyncResult(success=False, errors=[reason], state=SyncState.DISABLED)

        def steps(gateway: RemoteGateway, result: SyncResult):
            since = config.last_sync_at

            # 1. Push local changes; remote versions that beat them come back
            records = self.tracker.collect_since(since)
            superseded: List[ChangeRecord] = []
            if records:
                result.pushed = gateway.push(records, superseded)

            # 2. Pull remote changes; the overlap catches late receive stamps
            pulled = gateway.pull(
                shift_timestamp(since, -settings.PULL_OVERLAP_SECONDS),
                self.instance_id,
            )
            pulled_keys = {(r.table, r.record_id) for r in pulled}
            missed = [r for r in superseded if (r.table, r.record_id) not in pulled_keys]
            result.pulled, result.conflicts = self._apply_pulled(pulled + missed)

            # 3. Commit progress
            self.tracker.acknowledge(max((r.change_id for r in records), default=0))
            watermark = self._latest_stamp(since, records, pulled)
            updated = self.store.advance_watermark(watermark)
            self.tracker.purge_acknowledged(updated.last_sync_at)

            logger.info(
                f"Sync completed: {result.pushed} pushed, {result.pulled} pulled, "
                f"{len(result.conflicts)} conflicts"
            )

        return self._run_syncing(config, steps)

    def _run_initial_sync(self, mode: InitialSyncMode) -> SyncResult:
        config = self.store.get()
        if not config.is_configured:
            return SyncResult(success=False, errors=["Sync is not configured"], state=self.state)

        def steps(gateway: RemoteGateway, result: SyncResult):
            gateway.ensure_schema()
            marker = self.tracker.latest_change_id()

            pushed: List[ChangeRecord] = []
            superseded: List[ChangeRecord] = []
            if mode in (InitialSyncMode.PUSH, InitialSyncMode.MERGE):
                pushed = self.tracker.snapshot_all()
                result.pushed = gateway.push(pushed, superseded)
            if mode == InitialSyncMode.PUSH and superseded:
                result.pulled, result.conflicts = self._apply_pulled(superseded)

            pulled: List[ChangeRecord] = []
            if mode in (InitialSyncMode.PULL, InitialSyncMode.MERGE):
                pulled = gateway.pull_all()
                result.pulled, result.conflicts = self._apply_pulled(
                    pulled, force=(mode == InitialSyncMode.PULL)
                )

            self.tracker.acknowledge(marker)
            self.store.advance_watermark(self._latest_stamp(None, pushed, pulled))
            if not config.enabled:
                self.store.update({'enabled': True})

            logger.info(
                f"Initial sync ({mode.value}) completed: {result.pushed} pushed, "
                f"{result.pulled} pulled"
            )

        return self._run_syncing(config, steps)

    def _run_syncing(self, config: SyncConfig,
                     steps: Callable[[RemoteGateway, SyncResult], None]) -> SyncResult:
        """Run ``steps`` in the syncing state and settle the outcome state."""
        started = time.monotonic()
        result = SyncResult(success=False)

        with self._state_lock:
            if self._state == SyncState.DISABLED:
                self._set_state(SyncState.IDLE)
            self._set_state(SyncState.SYNCING)
        self._notify_state_changes()

        final = SyncState.ERROR
        try:
            steps(self._get_gateway(config), result)
            result.success = True
            self.last_error = None
            self.consecutive_failures = 0
            final = SyncState.IDLE

        except ConnectivityFailure as e:
            final = SyncState.OFFLINE
            self._record_failure(result, e)

        except ApplyFailure as e:
            if e.record is not None:
                logger.error(f"Rejected record: {e.record.table}:{e.record.record_id}")
            self._record_failure(result, e)

        except SyncError as e:
            self._record_failure(result, e)

        except Exception as e:
            logger.exception(f"Unexpected sync error: {e}")
            self._record_failure(result, e)

        finally:
            result.duration_ms = round((time.monotonic() - started) * 1000, 1)
            result.state = self._finish(final)

        return result

    def _finish(self, final: SyncState) -> SyncState:
        latest = self.store.get()
        with self._state_lock:
            self._set_state(final)
            if not (latest.enabled and latest.is_configured):
                self._set_state(SyncState.DISABLED)
            state = self._state
        self._notify_state_changes()
        return state

    def _record_failure(self, result: SyncResult, error: Exception):
        message = str(error) or error.__class__.__name__
        result.errors.append(message)
        result.pushed = getattr(error, 'accepted', 0) or result.pushed
        self.last_error = message
        self.consecutive_failures += 1
        logger.warning(f"Sync failed ({error.__class__.__name__}): {message}")

    def _apply_pulled(self, records: List[ChangeRecord],
                      force: bool = False) -> Tuple[int, List[SyncConflict]]:
        """
        Apply pulled records: upserts parents first, tombstones children first.

        Returns:
            (applied count, conflicts)
        """
        last_rank = len(TABLE_RANK)
        upserts = sorted(
            (r for r in records if not r.is_tombstone),
            key=lambda r: (TABLE_RANK.get(r.table, last_rank), r.updated_at),
        )
        tombstones = sorted(
            (r for r in records if r.is_tombstone),
            key=lambda r: (-TABLE_RANK.get(r.table, last_rank), r.updated_at),
        )

        conflicts: List[SyncConflict] = []
        applied = 0
        self.conflict_handler.on_conflict = conflicts.append
        try:
            for record in upserts + tombstones:
                if self.tracker.apply(record, self.conflict_handler, force=force):
                    applied += 1
        finally:
            self.conflict_handler.on_conflict = None

        return applied, conflicts

    @staticmethod
    def _latest_stamp(current: Optional[str], pushed: List[ChangeRecord],
                      pulled: List[ChangeRecord]) -> Optional[str]:
        """Latest remote receive stamp seen in a cycle."""
        stamps = [current] + [r.synced_at for r in pushed] + [r.synced_at for r in pulled]
        stamps = [s for s in stamps if s]
        return max(stamps) if stamps else None

    def shutdown(self):
        """No new cycles; wait for a running one to finish."""
        self._shutting_down = True
        with self._cycle_lock:
            if self._gateway is not None:
                self._gateway.close()
                self._gateway = None
                self._gateway_key = None
        logger.info("SyncManager shut down")

    # ============================================================
    # BOUNDARY OPERATIONS
    # ============================================================

    def get_config_for_display(self) -> Dict[str, Any]:
        return self.store.get().redacted()

    def update_config(self, partial: Dict[str, Any]) -> SyncConfig:
        """
        Update config from the admin boundary.

        Masked secrets echoed back by a client are ignored; the watermark and
        instance id are not writable here.

        Raises:
            ValueError: unknown key
        """
        cleaned = {}
        for key, value in partial.items():
            if key in ('last_sync_at', 'instance_id'):
                continue
            if key in SECRET_KEYS and is_masked(value):
                continue
            cleaned[key] = value
        return self.store.update(cleaned)

    def test_connection(self) -> Tuple[bool, str]:
        config = self.store.get()
        if not config.database_url:
            return False, "Database URL is not configured"
        gateway = self._build_gateway(config)
        try:
            return gateway.test_connection()
        finally:
            gateway.close()

    def verify_schema(self) -> Tuple[bool, str]:
        config = self.store.get()
        if not config.database_url:
            return False, "Database URL is not configured"
        gateway = self._build_gateway(config)
        try:
            return gateway.verify_schema()
        finally:
            gateway.close()

    def get_status(self):
        return self.status_publisher.snapshot()

    def export_config(self) -> str:
        """
        Raises:
            ValueError: nothing to export yet
        """
        return export_config(self.store.get())

    def import_config(self, value: str) -> PortableConfig:
        """
        Decode a portable string and apply it.

        Nothing is written unless decoding succeeds. A different remote
        database resets the watermark.

        Raises:
            ConfigCodecError subclass
        """
        portable = import_config(value)
        old = self.store.get()
        self.store.update({
            'remote_endpoint': portable.remote_endpoint,
            'restricted_key': portable.restricted_key,
            'elevated_key': portable.elevated_key,
            'database_url': portable.database_url,
        })
        if old.database_url != portable.database_url:
            self.store.reset_watermark()
            logger.info("Remote database changed, watermark reset")
        return portable
