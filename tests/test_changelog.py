# -*- coding: utf-8 -*-
"""Change tracking: triggers, collection, acknowledgment and apply."""

from __future__ import annotations

import unittest

from support import (
    SyncTestCase, insert_client, rename_client, delete_client, fetch_client, execute,
)

from ctt.db import connect
from ctt.sync import ChangeTracker, ConflictHandler, ChangeRecord, SyncOperation, ApplyFailure


LOCAL = "aaaaaaaa-0000-4000-8000-000000000001"
REMOTE = "bbbbbbbb-0000-4000-8000-000000000002"


class ChangeTrackerTestCase(SyncTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.db_path = self.local_db("local")
        self.tracker = ChangeTracker(self.db_path, LOCAL)
        self.tracker.install()
        self.resolver = ConflictHandler(self.db_path)

    def _records(self, since=None):
        return {(r.table, r.record_id): r for r in self.tracker.collect_since(since)}

    def test_insert_is_collected_as_create(self) -> None:
        insert_client(self.db_path, "c1", "Acme")

        records = self._records()
        record = records[("clients", "c1")]
        self.assertEqual(record.operation, SyncOperation.CREATE)
        self.assertEqual(record.payload["name"], "Acme")
        self.assertEqual(record.origin_instance_id, LOCAL)
        self.assertTrue(record.updated_at.endswith("Z"))
        self.assertGreater(record.change_id, 0)

    def test_multiple_edits_collapse_to_latest_state(self) -> None:
        insert_client(self.db_path, "c1", "Acme")
        rename_client(self.db_path, "c1", "Acme Ltd")
        rename_client(self.db_path, "c1", "Acme Holdings")

        records = self.tracker.collect_since(None)
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].operation, SyncOperation.CREATE)
        self.assertEqual(records[0].payload["name"], "Acme Holdings")

    def test_update_after_acknowledgment_is_an_update(self) -> None:
        insert_client(self.db_path, "c1", "Acme")
        self.tracker.acknowledge(self.tracker.latest_change_id())
        self.assertEqual(self.tracker.collect_since("9999-01-01T00:00:00.000Z"), [])

        rename_client(self.db_path, "c1", "Acme Ltd")
        records = self.tracker.collect_since("9999-01-01T00:00:00.000Z")
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].operation, SyncOperation.UPDATE)

    def test_delete_is_a_tombstone(self) -> None:
        insert_client(self.db_path, "c1", "Acme")
        delete_client(self.db_path, "c1")

        record = self._records()[("clients", "c1")]
        self.assertEqual(record.operation, SyncOperation.DELETE)
        self.assertEqual(record.payload, {})
        self.assertTrue(self.tracker.get_row_version("clients", "c1").is_deleted)

    def test_pending_count_matches_collection(self) -> None:
        insert_client(self.db_path, "c1", "Acme")
        insert_client(self.db_path, "c2", "Globex")
        rename_client(self.db_path, "c1", "Acme Ltd")
        execute(self.db_path, "INSERT INTO app_settings (key, value) VALUES (?, ?)", ("theme", "dark"))

        self.assertEqual(self.tracker.pending_count(None), 3)
        self.assertEqual(len(self.tracker.collect_since(None)), 3)

    def test_acknowledge_clears_pending_and_purge_removes_entries(self) -> None:
        insert_client(self.db_path, "c1", "Acme")
        records = self.tracker.collect_since(None)
        self.tracker.acknowledge(max(r.change_id for r in records))

        watermark = "9999-01-01T00:00:00.000Z"
        self.assertEqual(self.tracker.pending_count(watermark), 0)
        self.assertEqual(self.tracker.purge_acknowledged(watermark), 1)

    def test_changes_after_collection_stay_pending(self) -> None:
        insert_client(self.db_path, "c1", "Acme")
        records = self.tracker.collect_since(None)
        insert_client(self.db_path, "c2", "Globex")

        self.tracker.acknowledge(max(r.change_id for r in records))
        remaining = self.tracker.collect_since("9999-01-01T00:00:00.000Z")
        self.assertEqual([r.record_id for r in remaining], ["c2"])

    def test_apply_writes_row_without_creating_local_changes(self) -> None:
        record = ChangeRecord(
            table="clients",
            record_id="r1",
            operation=SyncOperation.UPDATE,
            payload={"id": "r1", "name": "Remote Co", "is_active": 1, "unknown_column": "x"},
            updated_at="2024-05-01T10:00:00.000Z",
            origin_instance_id=REMOTE,
        )

        self.assertTrue(self.tracker.apply(record, self.resolver))
        self.assertEqual(fetch_client(self.db_path, "r1")["name"], "Remote Co")
        self.assertEqual(self.tracker.pending_count(None), 0)

        version = self.tracker.get_row_version("clients", "r1")
        self.assertEqual(version.version, ("2024-05-01T10:00:00.000Z", REMOTE))

        # Same version again changes nothing
        self.assertFalse(self.tracker.apply(record, self.resolver))

    def test_newer_remote_version_updates_existing_row(self) -> None:
        insert_client(self.db_path, "c1", "Acme")
        self.tracker.acknowledge(self.tracker.latest_change_id())

        update = ChangeRecord(
            table="clients",
            record_id="c1",
            operation=SyncOperation.UPDATE,
            payload={"id": "c1", "name": "Acme Ltd", "phone": "555-0100"},
            updated_at="9999-01-01T00:00:00.000Z",
            origin_instance_id=REMOTE,
        )

        self.assertTrue(self.tracker.apply(update, self.resolver))
        row = fetch_client(self.db_path, "c1")
        self.assertEqual(row["name"], "Acme Ltd")
        self.assertEqual(row["phone"], "555-0100")

        version = self.tracker.get_row_version("clients", "c1")
        self.assertEqual(version.version, ("9999-01-01T00:00:00.000Z", REMOTE))
        self.assertEqual(self.tracker.pending_count(None), 0)

    def test_remote_tombstone_deletes_row(self) -> None:
        insert_client(self.db_path, "c1", "Acme")
        self.tracker.acknowledge(self.tracker.latest_change_id())

        tombstone = ChangeRecord(
            table="clients",
            record_id="c1",
            operation=SyncOperation.DELETE,
            payload={},
            updated_at="9999-01-01T00:00:00.000Z",
            origin_instance_id=REMOTE,
        )
        self.assertTrue(self.tracker.apply(tombstone, self.resolver))
        self.assertIsNone(fetch_client(self.db_path, "c1"))
        self.assertTrue(self.tracker.get_row_version("clients", "c1").is_deleted)

    def test_older_remote_version_loses_to_local_edit(self) -> None:
        insert_client(self.db_path, "c1", "Local name")
        stale = ChangeRecord(
            table="clients",
            record_id="c1",
            operation=SyncOperation.UPDATE,
            payload={"id": "c1", "name": "Stale name"},
            updated_at="2000-01-01T00:00:00.000Z",
            origin_instance_id=REMOTE,
        )

        self.assertFalse(self.tracker.apply(stale, self.resolver))
        self.assertEqual(fetch_client(self.db_path, "c1")["name"], "Local name")
        self.assertEqual(len(self.resolver.get_conflicts()), 1)

    def test_local_edit_superseded_by_remote_is_not_pushed(self) -> None:
        insert_client(self.db_path, "c1", "Local name")
        newer = ChangeRecord(
            table="clients",
            record_id="c1",
            operation=SyncOperation.UPDATE,
            payload={"id": "c1", "name": "Remote name"},
            updated_at="9999-01-01T00:00:00.000Z",
            origin_instance_id=REMOTE,
        )
        self.assertTrue(self.tracker.apply(newer, self.resolver))

        self.assertEqual(self.tracker.collect_since(None), [])
        self.assertEqual(self.tracker.pending_count(None), 0)

    def test_apply_failure_names_the_record(self) -> None:
        orphan = ChangeRecord(
            table="projects",
            record_id="p1",
            operation=SyncOperation.CREATE,
            payload={"id": "p1", "client_id": "missing-client", "name": "Orphan"},
            updated_at="2024-05-01T10:00:00.000Z",
            origin_instance_id=REMOTE,
        )

        with self.assertRaises(ApplyFailure) as ctx:
            self.tracker.apply(orphan, self.resolver)
        self.assertIs(ctx.exception.record, orphan)
        self.assertIsNone(self.tracker.get_row_version("projects", "p1"))

    def test_snapshot_includes_untracked_rows_and_tombstones(self) -> None:
        conn = connect(self.db_path)
        try:
            conn.execute('DROP TRIGGER "clients_sync_insert"')
            conn.execute("INSERT INTO clients (id, name) VALUES ('old', 'Before tracking')")
            conn.commit()
        finally:
            conn.close()
        self.tracker.install()

        insert_client(self.db_path, "gone", "Deleted later")
        delete_client(self.db_path, "gone")

        snapshot = {(r.table, r.record_id): r for r in self.tracker.snapshot_all()}
        self.assertEqual(snapshot[("clients", "old")].operation, SyncOperation.CREATE)
        self.assertEqual(snapshot[("clients", "old")].origin_instance_id, LOCAL)
        self.assertEqual(snapshot[("clients", "gone")].operation, SyncOperation.DELETE)
        self.assertIsNotNone(self.tracker.get_row_version("clients", "old"))


if __name__ == "__main__":
    unittest.main()
