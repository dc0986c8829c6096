# -*- coding: utf-8 -*-
"""
Sync configuration

Stored in the local database, in the sync_config key/value table.
"""

import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field, replace
from typing import Optional, Dict, Any, Callable, List

from ctt.db import connect

logger = logging.getLogger(__name__)


def mask_key(key: str) -> str:
    """First 8 and last 4 characters of a secret, for display."""
    if not key or len(key) < 16:
        return '***' if key else ''
    return key[:8] + '...' + key[-4:]


def is_masked(value: Any) -> bool:
    return isinstance(value, str) and ('...' in value or value == '***')


@dataclass(frozen=True)
class RemoteCredentials:
    """Tiered remote keys. Real values inside; masked only for display."""
    restricted_key: str = ""
    elevated_key: str = ""

    def __repr__(self) -> str:
        return (f"RemoteCredentials(restricted_key={mask_key(self.restricted_key)!r}, "
                f"elevated_key={mask_key(self.elevated_key)!r})")

    @property
    def is_complete(self) -> bool:
        return bool(self.restricted_key and self.elevated_key)


@dataclass(frozen=True)
class SyncConfig:
    """Sync configuration."""

    enabled: bool = False
    remote_endpoint: str = ""
    credentials: RemoteCredentials = field(default_factory=RemoteCredentials)
    database_url: str = ""
    instance_id: str = ""
    last_sync_at: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.remote_endpoint and self.credentials.is_complete and self.database_url)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'remote_endpoint': self.remote_endpoint,
            'restricted_key': self.credentials.restricted_key,
            'elevated_key': self.credentials.elevated_key,
            'database_url': self.database_url,
            'instance_id': self.instance_id,
            'last_sync_at': self.last_sync_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncConfig':
        return cls(
            enabled=bool(data.get('enabled', False)),
            remote_endpoint=data.get('remote_endpoint') or '',
            credentials=RemoteCredentials(
                restricted_key=data.get('restricted_key') or '',
                elevated_key=data.get('elevated_key') or '',
            ),
            database_url=data.get('database_url') or '',
            instance_id=data.get('instance_id') or '',
            last_sync_at=data.get('last_sync_at') or None,
        )

    def redacted(self) -> Dict[str, Any]:
        """Dict for display: keys and the connection string masked."""
        data = self.to_dict()
        data['restricted_key'] = mask_key(self.credentials.restricted_key)
        data['elevated_key'] = mask_key(self.credentials.elevated_key)
        data['database_url'] = mask_key(self.database_url)
        return data


CONFIG_KEYS = (
    'enabled', 'remote_endpoint', 'restricted_key', 'elevated_key',
    'database_url', 'instance_id', 'last_sync_at',
)


class ConfigStore:
    """
    Owner of SyncConfig.

    Every update merges into the stored config and writes all keys in a
    single transaction. Listeners receive (old, new) after each update.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._listeners: List[Callable[[SyncConfig, SyncConfig], None]] = []
        self._ensure_config_table()

    def _get_connection(self) -> sqlite3.Connection:
        return connect(self.db_path)

    def _ensure_config_table(self):
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_config (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)
            conn.commit()
        finally:
            conn.close()

    def _load(self, conn: sqlite3.Connection) -> Dict[str, Any]:
        data = {}
        for row in conn.execute("SELECT key, value FROM sync_config"):
            try:
                data[row['key']] = json.loads(row['value'])
            except (TypeError, ValueError):
                data[row['key']] = row['value']
        return data

    def _write(self, conn: sqlite3.Connection, config: SyncConfig):
        conn.executemany(
            "INSERT OR REPLACE INTO sync_config (key, value) VALUES (?, ?)",
            [(key, json.dumps(value)) for key, value in config.to_dict().items()],
        )

    def add_listener(self, callback: Callable[[SyncConfig, SyncConfig], None]):
        self._listeners.append(callback)

    def _read(self, conn: sqlite3.Connection) -> SyncConfig:
        """Stored config; generates the instance id on first use. Caller holds _lock."""
        config = SyncConfig.from_dict(self._load(conn))
        if not config.instance_id:
            config = replace(config, instance_id=str(uuid.uuid4()))
            self._write(conn, config)
            conn.commit()
            logger.info(f"Instance id generated: {config.instance_id}")
        return config

    def get(self) -> SyncConfig:
        with self._lock:
            conn = self._get_connection()
            try:
                return self._read(conn)
            finally:
                conn.close()

    def update(self, partial: Dict[str, Any]) -> SyncConfig:
        """
        Merge ``partial`` into the stored config.

        Read, merge and write happen under one lock so concurrent updates
        of different keys do not overwrite each other.

        Raises:
            ValueError: unknown key, or an attempt to change instance_id
        """
        unknown = set(partial) - set(CONFIG_KEYS)
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")

        with self._lock:
            conn = self._get_connection()
            try:
                old = self._read(conn)
                if partial.get('instance_id') and partial['instance_id'] != old.instance_id:
                    raise ValueError("instance_id cannot be changed")

                merged = old.to_dict()
                merged.update(partial)
                new = SyncConfig.from_dict(merged)

                self._write(conn, new)
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
            finally:
                conn.close()

        for listener in self._listeners:
            try:
                listener(old, new)
            except Exception as e:
                logger.error(f"Config listener error: {e}")

        return new

    def is_configured(self) -> bool:
        return self.get().is_configured

    def advance_watermark(self, timestamp: Optional[str]) -> SyncConfig:
        """Move last_sync_at forward. Never moves it back."""
        current = self.get()
        if not timestamp or (current.last_sync_at and timestamp <= current.last_sync_at):
            return current
        return self.update({'last_sync_at': timestamp})

    def reset_watermark(self) -> SyncConfig:
        return self.update({'last_sync_at': None})
