# -*- coding: utf-8 -*-
"""
Change Tracker

Local audit trail of every mutation on the synced tables.

Triggers fill two tables:

- sync_changelog: one entry per INSERT/UPDATE/DELETE, flagged ``synced``
  once the remote has accepted it.
- sync_row_versions: the current version key of every row, tombstones
  included. This is what the conflict resolver compares against.

While a pulled record is being applied, sync_context carries the remote
origin and stamp so the triggers record the remote version instead of a new
local one.
"""

import logging
import sqlite3
from typing import Optional, Dict, Any, List, Tuple

from ctt.db import connect
from .errors import ApplyFailure
from .models import (
    ChangeRecord, RowVersion, SyncOperation, SYNCED_TABLES, TABLE_PRIMARY_KEYS,
    utc_now,
)

logger = logging.getLogger(__name__)

STAMP_SQL = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


class ChangeTracker:
    """
    Change collection and remote apply for the local database.

    Usage:
        tracker = ChangeTracker(db_path, instance_id)
        tracker.install()
        records = tracker.collect_since(last_sync_at)
    """

    def __init__(self, db_path: str, instance_id: str):
        """
        Args:
            db_path: SQLite database path
            instance_id: Identifier of this installation
        """
        self.db_path = db_path
        self.instance_id = instance_id

    def _get_connection(self) -> sqlite3.Connection:
        return connect(self.db_path)

    # ============================================================
    # INSTALLATION
    # ============================================================

    def install(self):
        """Create the tracking tables and (re)create the triggers."""
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_changelog (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    table_name TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    changed_at TEXT NOT NULL,
                    origin_instance_id TEXT NOT NULL,
                    synced INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_sync_changelog_changed_at
                ON sync_changelog(changed_at)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_sync_changelog_origin_synced
                ON sync_changelog(origin_instance_id, synced)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_row_versions (
                    table_name TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    origin_instance_id TEXT NOT NULL,
                    is_deleted INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (table_name, record_id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_context (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    instance_id TEXT NOT NULL,
                    apply_origin TEXT,
                    apply_stamp TEXT
                )
            """)
            conn.execute(
                "INSERT OR IGNORE INTO sync_context (id, instance_id) VALUES (1, ?)",
                (self.instance_id,)
            )
            conn.execute(
                "UPDATE sync_context SET instance_id = ?, apply_origin = NULL, apply_stamp = NULL "
                "WHERE id = 1",
                (self.instance_id,)
            )

            for table, pk in SYNCED_TABLES:
                if not self._table_exists(conn, table):
                    continue
                self._create_triggers(conn, table, pk)

            conn.commit()
            logger.info("Change tracking installed")
        finally:
            conn.close()

    def _table_exists(self, conn: sqlite3.Connection, table: str) -> bool:
        return conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
            (table,)
        ).fetchone() is not None

    def _create_triggers(self, conn: sqlite3.Connection, table: str, pk: str):
        qt = _quote(table)
        qpk = _quote(pk)

        for suffix in ('insert', 'update', 'delete'):
            conn.execute(f"DROP TRIGGER IF EXISTS {_quote(f'{table}_sync_{suffix}')}")

        # Statements inside a trigger inherit the conflict policy of the
        # outer statement, so the version row is written without OR REPLACE.
        for suffix, event, ref, operation, deleted in (
            ('insert', 'INSERT', 'NEW', 'INSERT', 0),
            ('update', 'UPDATE', 'NEW', 'UPDATE', 0),
            ('delete', 'DELETE', 'OLD', 'DELETE', 1),
        ):
            rid = f"CAST({ref}.{qpk} AS TEXT)"
            conn.execute(f"""
                CREATE TRIGGER IF NOT EXISTS {_quote(f'{table}_sync_{suffix}')}
                AFTER {event} ON {qt}
                BEGIN
                    INSERT INTO sync_changelog
                        (table_name, record_id, operation, changed_at, origin_instance_id, synced)
                    SELECT '{table}', {rid}, '{operation}',
                           COALESCE(apply_stamp, {STAMP_SQL}),
                           COALESCE(apply_origin, instance_id),
                           CASE WHEN apply_origin IS NULL THEN 0 ELSE 1 END
                    FROM sync_context WHERE id = 1;

                    UPDATE sync_row_versions SET
                        updated_at = (SELECT COALESCE(apply_stamp, {STAMP_SQL})
                                      FROM sync_context WHERE id = 1),
                        origin_instance_id = (SELECT COALESCE(apply_origin, instance_id)
                                              FROM sync_context WHERE id = 1),
                        is_deleted = {deleted}
                    WHERE table_name = '{table}' AND record_id = {rid};

                    INSERT INTO sync_row_versions
                        (table_name, record_id, updated_at, origin_instance_id, is_deleted)
                    SELECT '{table}', {rid},
                           COALESCE(apply_stamp, {STAMP_SQL}),
                           COALESCE(apply_origin, instance_id),
                           {deleted}
                    FROM sync_context
                    WHERE id = 1 AND NOT EXISTS (
                        SELECT 1 FROM sync_row_versions
                        WHERE table_name = '{table}' AND record_id = {rid}
                    );
                END;
            """)

        logger.debug(f"{table} triggers created")

    # ============================================================
    # COLLECTION
    # ============================================================

    def collect_since(self, since: Optional[str]) -> List[ChangeRecord]:
        """
        Local changes not yet confirmed by the remote.

        Entries are unacknowledged or newer than ``since``; one record per
        (table, record_id) carrying the current row.
        """
        conn = self._get_connection()
        try:
            conn.execute("BEGIN")
            entries = conn.execute("""
                SELECT id, table_name, record_id, operation, changed_at
                FROM sync_changelog
                WHERE origin_instance_id = ?
                  AND (synced = 0 OR changed_at > ?)
                ORDER BY id
            """, (self.instance_id, since or '')).fetchall()

            grouped: Dict[Tuple[str, str], Dict[str, Any]] = {}
            for entry in entries:
                key = (entry['table_name'], entry['record_id'])
                group = grouped.get(key)
                if group is None:
                    grouped[key] = {
                        'first_operation': entry['operation'],
                        'change_id': entry['id'],
                        'changed_at': entry['changed_at'],
                    }
                else:
                    group['change_id'] = entry['id']
                    group['changed_at'] = entry['changed_at']

            records = []
            for (table, record_id), group in grouped.items():
                pk = TABLE_PRIMARY_KEYS.get(table)
                if pk is None:
                    continue

                version = self._row_version(conn, table, record_id)
                if version is not None and version.origin_instance_id != self.instance_id:
                    # Superseded by a remote version; nothing left to push
                    conn.execute("""
                        UPDATE sync_changelog SET synced = 1
                        WHERE origin_instance_id = ? AND table_name = ? AND record_id = ?
                          AND id <= ?
                    """, (self.instance_id, table, record_id, group['change_id']))
                    continue

                row = self._fetch_row(conn, table, pk, record_id)
                if row is None:
                    operation = SyncOperation.DELETE
                elif group['first_operation'] == 'INSERT':
                    operation = SyncOperation.CREATE
                else:
                    operation = SyncOperation.UPDATE

                records.append(ChangeRecord(
                    table=table,
                    record_id=record_id,
                    operation=operation,
                    payload=row or {},
                    updated_at=version.updated_at if version else group['changed_at'],
                    origin_instance_id=self.instance_id,
                    change_id=group['change_id'],
                ))

            conn.commit()
            return records
        finally:
            conn.close()

    def pending_count(self, since: Optional[str]) -> int:
        """Number of records collect_since() would return."""
        conn = self._get_connection()
        try:
            row = conn.execute("""
                SELECT COUNT(*) AS n FROM (
                    SELECT DISTINCT c.table_name, c.record_id
                    FROM sync_changelog c
                    LEFT JOIN sync_row_versions v
                      ON v.table_name = c.table_name AND v.record_id = c.record_id
                    WHERE c.origin_instance_id = ?
                      AND (c.synced = 0 OR c.changed_at > ?)
                      AND (v.origin_instance_id IS NULL OR v.origin_instance_id = ?)
                )
            """, (self.instance_id, since or '', self.instance_id)).fetchone()
            return row['n']
        finally:
            conn.close()

    def latest_change_id(self) -> int:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT COALESCE(MAX(id), 0) AS n FROM sync_changelog").fetchone()
            return row['n']
        finally:
            conn.close()

    def acknowledge(self, max_change_id: int) -> int:
        """Mark local entries up to ``max_change_id`` as accepted by the remote."""
        if not max_change_id:
            return 0
        conn = self._get_connection()
        try:
            cur = conn.execute("""
                UPDATE sync_changelog SET synced = 1
                WHERE synced = 0 AND origin_instance_id = ? AND id <= ?
            """, (self.instance_id, max_change_id))
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()

    def purge_acknowledged(self, watermark: Optional[str]) -> int:
        """Delete synced entries at or before the watermark."""
        if not watermark:
            return 0
        conn = self._get_connection()
        try:
            cur = conn.execute(
                "DELETE FROM sync_changelog WHERE synced = 1 AND changed_at <= ?",
                (watermark,)
            )
            conn.commit()
            if cur.rowcount:
                logger.debug(f"{cur.rowcount} changelog entries purged")
            return cur.rowcount
        finally:
            conn.close()

    def snapshot_all(self) -> List[ChangeRecord]:
        """
        Every local row and tombstone as a ChangeRecord.

        Rows written before tracking was installed get a fresh local version.
        """
        stamp = utc_now()
        records = []
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            for table, pk in SYNCED_TABLES:
                if not self._table_exists(conn, table):
                    continue

                for row in conn.execute(f"SELECT * FROM {_quote(table)}").fetchall():
                    payload = dict(row)
                    record_id = str(payload[pk])
                    version = self._row_version(conn, table, record_id)
                    if version is None:
                        version = RowVersion(table, record_id, stamp, self.instance_id)
                        self._write_version(conn, version)
                    records.append(ChangeRecord(
                        table=table,
                        record_id=record_id,
                        operation=SyncOperation.CREATE,
                        payload=payload,
                        updated_at=version.updated_at,
                        origin_instance_id=version.origin_instance_id,
                    ))

                tombstones = conn.execute("""
                    SELECT record_id, updated_at, origin_instance_id
                    FROM sync_row_versions
                    WHERE table_name = ? AND is_deleted = 1
                """, (table,)).fetchall()
                for t in tombstones:
                    records.append(ChangeRecord(
                        table=table,
                        record_id=t['record_id'],
                        operation=SyncOperation.DELETE,
                        payload={},
                        updated_at=t['updated_at'],
                        origin_instance_id=t['origin_instance_id'],
                    ))

            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise
        finally:
            conn.close()

        logger.info(f"Snapshot: {len(records)} records")
        return records

    # ============================================================
    # APPLY
    # ============================================================

    def apply(self, record: ChangeRecord, resolver, force: bool = False) -> bool:
        """
        Apply a pulled record in its own transaction.

        Args:
            record: Remote version
            resolver: ConflictHandler deciding local vs remote
            force: Skip resolution, the remote version always wins

        Returns:
            True if the local row changed

        Raises:
            ApplyFailure: the record could not be written
        """
        pk = TABLE_PRIMARY_KEYS.get(record.table)
        if pk is None:
            logger.warning(f"Unknown table skipped: {record.table}")
            return False

        conflict = None
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            local = self._row_version(conn, record.table, record.record_id)

            if not force:
                conflict = resolver.resolve(local, record)
                if not conflict.remote_wins:
                    conn.rollback()
                    conn.close()
                    resolver.record(conflict)
                    return False

            conn.execute(
                "UPDATE sync_context SET apply_origin = ?, apply_stamp = ? WHERE id = 1",
                (record.origin_instance_id, record.updated_at)
            )

            if record.is_tombstone:
                conn.execute(
                    f"DELETE FROM {_quote(record.table)} WHERE {_quote(pk)} = ?",
                    (record.record_id,)
                )
            else:
                self._upsert(conn, record.table, pk, record)

            self._write_version(conn, RowVersion(
                table=record.table,
                record_id=record.record_id,
                updated_at=record.updated_at,
                origin_instance_id=record.origin_instance_id,
                is_deleted=record.is_tombstone,
            ))
            conn.execute(
                "UPDATE sync_context SET apply_origin = NULL, apply_stamp = NULL WHERE id = 1"
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"Apply failed for {record.table}:{record.record_id}: {e}")
            raise ApplyFailure(
                f"Could not apply {record.table}:{record.record_id}: {e}", record
            ) from e
        finally:
            conn.close()

        if conflict is not None:
            resolver.record(conflict)
        return True

    def _upsert(self, conn: sqlite3.Connection, table: str, pk: str, record: ChangeRecord):
        table_columns = {row['name'] for row in conn.execute(f"PRAGMA table_info({_quote(table)})")}
        if not table_columns:
            raise sqlite3.OperationalError(f"no such table: {table}")

        payload = dict(record.payload)
        payload[pk] = payload.get(pk) or record.record_id
        columns = [c for c in payload if c in table_columns]
        dropped = set(payload) - set(columns)
        if dropped:
            logger.debug(f"{table}: unknown columns ignored: {sorted(dropped)}")

        # No conflict clause here: the tracking triggers would inherit it
        updates = [c for c in columns if c != pk]
        if updates:
            cur = conn.execute(
                f"UPDATE {_quote(table)} SET "
                + ", ".join(f"{_quote(c)} = ?" for c in updates)
                + f" WHERE {_quote(pk)} = ?",
                [payload[c] for c in updates] + [record.record_id]
            )
            if cur.rowcount:
                return
        elif self._fetch_row(conn, table, pk, record.record_id) is not None:
            return

        conn.execute(
            f"INSERT INTO {_quote(table)} ({', '.join(_quote(c) for c in columns)}) "
            f"VALUES ({', '.join('?' * len(columns))})",
            [payload[c] for c in columns]
        )

    # ============================================================
    # HELPERS
    # ============================================================

    def _row_version(self, conn: sqlite3.Connection, table: str,
                     record_id: str) -> Optional[RowVersion]:
        row = conn.execute("""
            SELECT updated_at, origin_instance_id, is_deleted
            FROM sync_row_versions
            WHERE table_name = ? AND record_id = ?
        """, (table, record_id)).fetchone()
        if not row:
            return None
        return RowVersion(
            table=table,
            record_id=record_id,
            updated_at=row['updated_at'],
            origin_instance_id=row['origin_instance_id'],
            is_deleted=bool(row['is_deleted']),
        )

    def _write_version(self, conn: sqlite3.Connection, version: RowVersion):
        conn.execute("""
            INSERT OR REPLACE INTO sync_row_versions
            (table_name, record_id, updated_at, origin_instance_id, is_deleted)
            VALUES (?, ?, ?, ?, ?)
        """, (version.table, version.record_id, version.updated_at,
              version.origin_instance_id, int(version.is_deleted)))

    def _fetch_row(self, conn: sqlite3.Connection, table: str, pk: str,
                   record_id: str) -> Optional[Dict[str, Any]]:
        row = conn.execute(
            f"SELECT * FROM {_quote(table)} WHERE {_quote(pk)} = ?",
            (record_id,)
        ).fetchone()
        return dict(row) if row else None

    def get_row_version(self, table: str, record_id: str) -> Optional[RowVersion]:
        conn = self._get_connection()
        try:
            return self._row_version(conn, table, record_id)
        finally:
            conn.close()
