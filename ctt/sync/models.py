# -*- coding: utf-8 -*-
"""
Sync data models

Data structures shared by the sync components.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple


class SyncState(Enum):
    """Sync states. Exactly one is live at a time."""
    IDLE = "idle"               # Configured, no cycle running
    SYNCING = "syncing"         # A cycle is in progress
    OFFLINE = "offline"         # Last attempt failed on connectivity
    ERROR = "error"             # Last attempt failed on a non-transient cause
    DISABLED = "disabled"       # Sync turned off (initial state)


class SyncOperation(Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class InitialSyncMode(Enum):
    PUSH = "push"
    PULL = "pull"
    MERGE = "merge"


# Synced tables in dependency order (parents before children) with their
# primary key column.
SYNCED_TABLES: List[Tuple[str, str]] = [
    ('users', 'id'),
    ('clients', 'id'),
    ('job_types', 'id'),
    ('rate_tiers', 'id'),
    ('projects', 'id'),
    ('client_chat_logs', 'id'),
    ('invoices', 'id'),
    ('time_entries', 'id'),
    ('invoice_line_items', 'id'),
    ('payments', 'id'),
    ('partner_splits', 'id'),
    ('partner_payments', 'id'),
    ('app_settings', 'key'),
]

TABLE_PRIMARY_KEYS: Dict[str, str] = dict(SYNCED_TABLES)
TABLE_RANK: Dict[str, int] = {name: rank for rank, (name, _) in enumerate(SYNCED_TABLES)}


# ============================================================
# TIMESTAMPS
# ============================================================
# ISO-8601 UTC with milliseconds. Fixed width, so comparing the strings
# compares the instants. Same format as strftime('%Y-%m-%dT%H:%M:%fZ') in
# SQLite triggers.

def format_timestamp(value: datetime) -> str:
    value = value.astimezone(timezone.utc)
    return value.strftime('%Y-%m-%dT%H:%M:%S.') + f'{value.microsecond // 1000:03d}Z'


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, '%Y-%m-%dT%H:%M:%S.%fZ').replace(tzinfo=timezone.utc)


def utc_now() -> str:
    return format_timestamp(datetime.now(timezone.utc))


def shift_timestamp(value: Optional[str], seconds: float) -> Optional[str]:
    """``value`` moved by ``seconds``; None stays None."""
    if not value:
        return None
    return format_timestamp(parse_timestamp(value) + timedelta(seconds=seconds))


# ============================================================
# RECORDS
# ============================================================

@dataclass
class ChangeRecord:
    """One logical row mutation exchanged with the remote."""
    table: str
    record_id: str
    operation: SyncOperation
    payload: Dict[str, Any]
    updated_at: str
    origin_instance_id: str
    synced_at: Optional[str] = None
    change_id: int = 0

    @property
    def is_tombstone(self) -> bool:
        return self.operation == SyncOperation.DELETE

    @property
    def version(self) -> Tuple[str, str]:
        return (self.updated_at, self.origin_instance_id)


@dataclass
class RowVersion:
    """Current version of a local row, tombstones included."""
    table: str
    record_id: str
    updated_at: str
    origin_instance_id: str
    is_deleted: bool = False

    @property
    def version(self) -> Tuple[str, str]:
        return (self.updated_at, self.origin_instance_id)


@dataclass
class SyncConflict:
    """Outcome of comparing a pulled record with the local version."""
    table: str
    record_id: str
    local: Optional[RowVersion]
    remote: ChangeRecord
    resolution: str = ''    # 'remote', 'local' or 'identical'

    @property
    def remote_wins(self) -> bool:
        return self.resolution == 'remote'


@dataclass
class SyncResult:
    """Result of one sync cycle or initial sync."""
    success: bool
    busy: bool = False
    pushed: int = 0
    pulled: int = 0
    conflicts: List[SyncConflict] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    state: Optional[SyncState] = None
    duration_ms: float = 0


@dataclass(frozen=True)
class SyncStatusSnapshot:
    enabled: bool
    last_sync_at: Optional[str]
    instance_id: str
    pending_count: int
    state: SyncState
    last_error: Optional[str] = None
    consecutive_failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'last_sync_at': self.last_sync_at,
            'instance_id': self.instance_id,
            'pending_count': self.pending_count,
            'state': self.state.value,
            'last_error': self.last_error,
            'consecutive_failures': self.consecutive_failures,
        }
