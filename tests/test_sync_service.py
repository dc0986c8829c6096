# -*- coding: utf-8 -*-
"""Background scheduler ticks and backoff."""

from __future__ import annotations

import time
import unittest

from support import SyncTestCase, insert_client

from ctt.sync import SyncService, SyncState, init_sync_service, get_sync_service, stop_sync_service


class SyncServiceTestCase(SyncTestCase):

    def test_tick_skips_disabled_instance(self) -> None:
        manager = self.make_instance("a", configure=False)
        service = SyncService(manager, interval=1)
        self.assertIsNone(service.tick())

    def test_tick_runs_cycle_when_idle(self) -> None:
        self.prepare_remote()
        manager = self.make_instance("a")
        insert_client(manager.db_path, "c1", "Acme")
        service = SyncService(manager, interval=1)

        result = service.tick()

        self.assertIsNotNone(result)
        self.assertTrue(result.success, result.errors)
        self.assertEqual(result.pushed, 1)

    def test_offline_is_retried_every_tick(self) -> None:
        unreachable = f"sqlite:///{self.root / 'missing-dir' / 'remote.db'}"
        manager = self.make_instance("a", database_url=unreachable)
        insert_client(manager.db_path, "c1", "Acme")
        service = SyncService(manager, interval=1)

        first = service.tick()
        second = service.tick()

        self.assertEqual(first.state, SyncState.OFFLINE)
        self.assertIsNotNone(second)
        self.assertEqual(manager.consecutive_failures, 2)

    def test_error_backs_off(self) -> None:
        # Remote file without the sync table: schema failure
        manager = self.make_instance("a", database_url=f"sqlite:///{self.root / 'bare.db'}")
        insert_client(manager.db_path, "c1", "Acme")
        service = SyncService(manager, interval=1, max_backoff=300)

        first = service.tick()
        self.assertEqual(first.state, SyncState.ERROR)
        self.assertIsNone(service.tick())
        self.assertEqual(service.backoff_delay(), 2)

        # Manual trigger is not held back by the backoff
        self.assertIsNotNone(service.trigger())

    def test_backoff_is_capped(self) -> None:
        manager = self.make_instance("a", configure=False)
        service = SyncService(manager, interval=15, max_backoff=300)
        manager.consecutive_failures = 10
        self.assertEqual(service.backoff_delay(), 300)

    def test_start_and_stop(self) -> None:
        self.prepare_remote()
        manager = self.make_instance("a")
        insert_client(manager.db_path, "c1", "Acme")

        service = init_sync_service(manager, interval=1)
        self.assertIs(get_sync_service(), service)
        self.assertTrue(service.is_running)

        deadline = time.monotonic() + 5
        while manager.get_status().pending_count and time.monotonic() < deadline:
            time.sleep(0.05)
        self.assertEqual(manager.get_status().pending_count, 0)

        stop_sync_service()
        self.assertIsNone(get_sync_service())
        self.assertFalse(service.is_running)
        self.assertFalse(manager.sync_now().success)

    def test_reinit_with_same_manager_keeps_it_usable(self) -> None:
        self.prepare_remote()
        manager = self.make_instance("a")
        self.addCleanup(stop_sync_service)

        first = init_sync_service(manager, start=False)
        second = init_sync_service(manager, start=False)

        self.assertIsNot(first, second)
        insert_client(manager.db_path, "c1", "Acme")
        result = second.trigger()
        self.assertTrue(result.success, result.errors)

    def test_reinit_with_new_manager_shuts_down_the_old_one(self) -> None:
        self.prepare_remote()
        old = self.make_instance("a")
        new = self.make_instance("b")
        self.addCleanup(stop_sync_service)

        init_sync_service(old, start=False)
        init_sync_service(new, start=False)

        self.assertFalse(old.sync_now().success)
        self.assertTrue(new.sync_now().success)


if __name__ == "__main__":
    unittest.main()
