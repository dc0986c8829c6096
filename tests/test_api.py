# -*- coding: utf-8 -*-
"""Admin API routes under /api/sync."""

from __future__ import annotations

import unittest

from fastapi.testclient import TestClient

from support import SyncTestCase, insert_client, RESTRICTED_KEY, ELEVATED_KEY

from ctt.auth import create_access_token
from ctt.server import create_app


class SyncApiTestCase(SyncTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.db_path = str(self.root / "api.db")
        self.client = TestClient(create_app(self.db_path, start_service=False))
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

        token, _ = create_access_token("admin")
        self.headers = {"Authorization": f"Bearer {token}"}

    def configure(self) -> None:
        response = self.client.put("/api/sync/config", headers=self.headers, json={
            "enabled": True,
            "remote_endpoint": "https://remote.example.test",
            "restricted_key": RESTRICTED_KEY,
            "elevated_key": ELEVATED_KEY,
            "database_url": self.remote_url,
        })
        self.assertEqual(response.status_code, 200, response.text)

    def test_token_is_required(self) -> None:
        self.assertEqual(self.client.get("/api/sync/status").status_code, 401)

        bad = {"Authorization": "Bearer not-a-token"}
        self.assertEqual(self.client.get("/api/sync/status", headers=bad).status_code, 401)

    def test_non_admin_is_forbidden(self) -> None:
        token, _ = create_access_token("viewer", role="basic")
        response = self.client.get("/api/sync/status", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(response.status_code, 403)

    def test_get_config_masks_secrets(self) -> None:
        self.configure()
        data = self.client.get("/api/sync/config", headers=self.headers).json()

        self.assertTrue(data["enabled"])
        self.assertNotEqual(data["restricted_key"], RESTRICTED_KEY)
        self.assertTrue(data["restricted_key"].startswith(RESTRICTED_KEY[:8]))
        self.assertTrue(data["instance_id"])

    def test_put_config_returns_instance_id(self) -> None:
        response = self.client.put("/api/sync/config", headers=self.headers, json={"enabled": False})
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertTrue(body["instance_id"])

    def test_status(self) -> None:
        data = self.client.get("/api/sync/status", headers=self.headers).json()
        self.assertEqual(data["state"], "disabled")
        self.assertEqual(data["pending_count"], 0)
        self.assertFalse(data["enabled"])

    def test_sync_when_disabled_is_400(self) -> None:
        response = self.client.post("/api/sync/sync", headers=self.headers)
        self.assertEqual(response.status_code, 400)

    def test_setup_schema_then_sync(self) -> None:
        self.configure()

        response = self.client.post("/api/sync/setup-schema", headers=self.headers)
        self.assertTrue(response.json()["success"], response.text)

        insert_client(self.db_path, "c1", "Acme")
        response = self.client.post("/api/sync/sync", headers=self.headers)
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json(), {"success": True, "pushed": 1, "pulled": 0})

        status = self.client.get("/api/sync/status", headers=self.headers).json()
        self.assertEqual(status["pending_count"], 0)
        self.assertEqual(status["state"], "idle")

    def test_sync_failure_is_502(self) -> None:
        self.configure()
        insert_client(self.db_path, "c1", "Acme")
        # No schema on the remote yet
        response = self.client.post("/api/sync/sync", headers=self.headers)
        self.assertEqual(response.status_code, 502)

    def test_initial_sync(self) -> None:
        self.configure()
        insert_client(self.db_path, "c1", "Acme")

        response = self.client.post("/api/sync/initial-sync", headers=self.headers,
                                    json={"direction": "push"})
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["stats"], {"pushed": 1, "pulled": 0})

    def test_initial_sync_validates_direction(self) -> None:
        self.configure()
        response = self.client.post("/api/sync/initial-sync", headers=self.headers,
                                    json={"direction": "sideways"})
        self.assertEqual(response.status_code, 422)

    def test_initial_sync_requires_configuration(self) -> None:
        response = self.client.post("/api/sync/initial-sync", headers=self.headers,
                                    json={"direction": "pull"})
        self.assertEqual(response.status_code, 400)

    def test_export_and_import(self) -> None:
        self.assertEqual(self.client.post("/api/sync/config/export", headers=self.headers).status_code, 400)

        self.configure()
        exported = self.client.post("/api/sync/config/export", headers=self.headers).json()["export_string"]
        self.assertTrue(exported.startswith("CTT:v1:"))

        response = self.client.post("/api/sync/config/import", headers=self.headers,
                                    json={"export_string": exported})
        self.assertEqual(response.status_code, 200, response.text)
        config = response.json()["config"]
        self.assertEqual(config["remote_endpoint"], "https://remote.example.test")
        self.assertNotEqual(config["elevated_key"], ELEVATED_KEY)

    def test_import_rejects_bad_strings(self) -> None:
        for value in ("hello", "CTT:v7:abc.def", "CTT:v1:abc.def"):
            with self.subTest(value=value):
                response = self.client.post("/api/sync/config/import", headers=self.headers,
                                            json={"export_string": value})
                self.assertEqual(response.status_code, 400)

    def test_test_connection_reports_failure(self) -> None:
        response = self.client.post("/api/sync/test-connection", headers=self.headers)
        body = response.json()
        self.assertFalse(body["success"])
        self.assertIn("not configured", body["message"])


if __name__ == "__main__":
    unittest.main()
