# -*- coding: utf-8 -*-
"""
Conflict Handler

Decides, per record, whether the local or the remote version wins.

Policy: last-write-wins on the version key (updated_at, origin_instance_id).
The later timestamp wins; equal timestamps go to the greater instance id, so
every instance picks the same winner without asking the others. A delete is
a version like any other: a later delete suppresses an earlier update and a
later update revives an earlier delete.

This is lossy for concurrent edits to different fields of the same row. There
is no field-level merge.
"""

import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional, Tuple, Callable

from ctt.db import connect
from .models import ChangeRecord, RowVersion, SyncConflict, format_timestamp, utc_now

logger = logging.getLogger(__name__)


def newer_version(a: Tuple[str, str], b: Tuple[str, str]) -> bool:
    """True if version key ``a`` beats ``b``."""
    return a > b


class ConflictHandler:
    """
    Conflict resolver.

    Resolutions where both sides carry different versions written by
    different instances are kept in the sync_conflicts table.
    """

    def __init__(self, db_path: str):
        """
        Args:
            db_path: SQLite database path
        """
        self.db_path = db_path
        self.on_conflict: Optional[Callable[[SyncConflict], None]] = None
        self._ensure_conflicts_table()

    def _get_connection(self) -> sqlite3.Connection:
        return connect(self.db_path)

    def _ensure_conflicts_table(self):
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_conflicts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    table_name TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    local_version TEXT,
                    remote_version TEXT,
                    resolution TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            conn.commit()
        finally:
            conn.close()

    def resolve(self, local: Optional[RowVersion], remote: ChangeRecord) -> SyncConflict:
        """
        Compare a pulled record with the local version of the same row.

        Args:
            local: Current local version (None if the row was never seen)
            remote: Pulled record

        Returns:
            SyncConflict with resolution 'remote', 'local' or 'identical'

        Pure decision; call record() once the caller's transaction is closed.
        """
        conflict = SyncConflict(
            table=remote.table,
            record_id=remote.record_id,
            local=local,
            remote=remote,
        )

        if local is None or newer_version(remote.version, local.version):
            conflict.resolution = 'remote'
        elif remote.version == local.version:
            conflict.resolution = 'identical'
        else:
            conflict.resolution = 'local'

        return conflict

    @staticmethod
    def is_real_conflict(conflict: SyncConflict) -> bool:
        """Both sides hold different versions written by different instances."""
        return (conflict.local is not None
                and conflict.resolution != 'identical'
                and conflict.local.origin_instance_id != conflict.remote.origin_instance_id)

    def record(self, conflict: SyncConflict) -> bool:
        """Log the resolution if it settled a real conflict."""
        if not self.is_real_conflict(conflict):
            return False

        logger.info(
            f"Conflict on {conflict.table}:{conflict.record_id} resolved "
            f"({conflict.resolution} wins)"
        )
        if self.on_conflict:
            self.on_conflict(conflict)

        local = conflict.local
        conn = self._get_connection()
        try:
            conn.execute("""
                INSERT INTO sync_conflicts
                (table_name, record_id, local_version, remote_version, resolution, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                conflict.table,
                conflict.record_id,
                json.dumps({
                    'updated_at': local.updated_at,
                    'origin_instance_id': local.origin_instance_id,
                    'is_deleted': local.is_deleted,
                }),
                json.dumps({
                    'updated_at': conflict.remote.updated_at,
                    'origin_instance_id': conflict.remote.origin_instance_id,
                    'operation': conflict.remote.operation.value,
                }),
                conflict.resolution,
                utc_now(),
            ))
            conn.commit()
        except sqlite3.Error as e:
            # The log is informational; the resolution itself stands.
            logger.warning(f"Conflict could not be logged: {e}")
            return False
        finally:
            conn.close()
        return True

    def get_conflicts(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent conflict log entries."""
        conn = self._get_connection()
        try:
            rows = conn.execute("""
                SELECT * FROM sync_conflicts
                ORDER BY id DESC
                LIMIT ?
            """, (limit,)).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def clear_old_conflicts(self, older_than_days: int = 30) -> int:
        cutoff = format_timestamp(datetime.now(timezone.utc) - timedelta(days=older_than_days))
        conn = self._get_connection()
        try:
            cur = conn.execute("DELETE FROM sync_conflicts WHERE created_at < ?", (cutoff,))
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()
