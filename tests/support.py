# -*- coding: utf-8 -*-
"""Shared fixtures: temporary local instances and a SQLite remote."""

from __future__ import annotations

import sys
import tempfile
import unittest
from pathlib import Path
from typing import Any, Dict, List, Optional


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from ctt.db import connect, initialize_database
from ctt.sync import RemoteGateway, SyncManager


RESTRICTED_KEY = "restricted-key-0123456789abcdef"
ELEVATED_KEY = "elevated-key-0123456789abcdef"


class SyncTestCase(unittest.TestCase):
    """Temporary directory holding local databases and a remote.db file."""

    def setUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self._temp_dir.cleanup)
        self.root = Path(self._temp_dir.name)
        self.remote_url = f"sqlite:///{self.root / 'remote.db'}"

    def local_db(self, name: str) -> str:
        db_path = str(self.root / f"{name}.db")
        initialize_database(db_path)
        return db_path

    def make_instance(
        self,
        name: str,
        configure: bool = True,
        enabled: bool = True,
        database_url: Optional[str] = None,
        **kwargs: Any,
    ) -> SyncManager:
        manager = SyncManager(self.local_db(name), **kwargs)
        self.addCleanup(manager.shutdown)
        if configure:
            manager.store.update({
                "remote_endpoint": "https://remote.example.test",
                "restricted_key": RESTRICTED_KEY,
                "elevated_key": ELEVATED_KEY,
                "database_url": database_url or self.remote_url,
                "enabled": enabled,
            })
        return manager

    def remote(self) -> RemoteGateway:
        gateway = RemoteGateway(self.remote_url)
        self.addCleanup(gateway.close)
        return gateway

    def prepare_remote(self) -> None:
        ok, message = self.remote().verify_schema()
        self.assertTrue(ok, message)


def execute(db_path: str, sql: str, params: tuple = ()) -> None:
    conn = connect(db_path)
    try:
        conn.execute(sql, params)
        conn.commit()
    finally:
        conn.close()


def insert_client(db_path: str, client_id: str, name: str) -> None:
    execute(db_path, "INSERT INTO clients (id, name) VALUES (?, ?)", (client_id, name))


def rename_client(db_path: str, client_id: str, name: str) -> None:
    execute(db_path, "UPDATE clients SET name = ? WHERE id = ?", (name, client_id))


def delete_client(db_path: str, client_id: str) -> None:
    execute(db_path, "DELETE FROM clients WHERE id = ?", (client_id,))


def fetch_all(db_path: str, table: str) -> List[Dict[str, Any]]:
    conn = connect(db_path)
    try:
        rows = conn.execute(f"SELECT * FROM {table} ORDER BY 1").fetchall()
        return [dict(row) for row in rows]
    finally:
        conn.close()


def fetch_client(db_path: str, client_id: str) -> Optional[Dict[str, Any]]:
    conn = connect(db_path)
    try:
        row = conn.execute("SELECT * FROM clients WHERE id = ?", (client_id,)).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()
