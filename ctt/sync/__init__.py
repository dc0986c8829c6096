# -*- coding: utf-8 -*-
"""
CTT Sync Module

Local-first sync: every installation keeps a full local SQLite database and
exchanges row versions with a shared remote database.

Components:
1. ConfigStore: sync settings and the watermark (last_sync_at)
2. ChangeTracker: trigger-maintained changelog and row versions
3. RemoteGateway: push/pull against the remote sync_records table
4. ConflictHandler: last-write-wins on (updated_at, origin_instance_id)
5. SyncManager: state machine and sync cycle
6. SyncService: background scheduler

Conflict resolution: Last-Write-Wins (later updated_at, then greater instance id)
"""

from .models import (
    SyncState,
    SyncOperation,
    InitialSyncMode,
    ChangeRecord,
    RowVersion,
    SyncConflict,
    SyncResult,
    SyncStatusSnapshot,
    SYNCED_TABLES,
)
from .config import SyncConfig, RemoteCredentials, ConfigStore, mask_key
from .config_codec import PortableConfig, export_config, import_config
from .errors import (
    SyncError,
    ConnectivityFailure,
    AuthFailure,
    SchemaFailure,
    ApplyFailure,
    ConfigCodecError,
    MalformedConfig,
    UnsupportedVersion,
    DecodeFailure,
)
from .changelog import ChangeTracker
from .conflict_handler import ConflictHandler
from .gateway import RemoteGateway, classify_error
from .status import StatusPublisher
from .sync_manager import SyncManager
from .sync_service import (
    SyncService,
    get_sync_service,
    init_sync_service,
    stop_sync_service,
)

__all__ = [
    # Models
    'SyncState',
    'SyncOperation',
    'InitialSyncMode',
    'ChangeRecord',
    'RowVersion',
    'SyncConflict',
    'SyncResult',
    'SyncStatusSnapshot',
    'SYNCED_TABLES',
    # Config
    'SyncConfig',
    'RemoteCredentials',
    'ConfigStore',
    'mask_key',
    'PortableConfig',
    'export_config',
    'import_config',
    # Core
    'ChangeTracker',
    'ConflictHandler',
    'RemoteGateway',
    'classify_error',
    'StatusPublisher',
    'SyncManager',
    # Background Service
    'SyncService',
    'get_sync_service',
    'init_sync_service',
    'stop_sync_service',
    # Errors
    'SyncError',
    'ConnectivityFailure',
    'AuthFailure',
    'SchemaFailure',
    'ApplyFailure',
    'ConfigCodecError',
    'MalformedConfig',
    'UnsupportedVersion',
    'DecodeFailure',
]
