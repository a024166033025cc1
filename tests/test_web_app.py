import inspect
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml
from fastapi.testclient import TestClient

from studiosync.feed_client import FeedBlockedError, FeedURLError
from studiosync.remote_client import session_token
from studiosync.web_app import create_app


class WebAppTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        config_path = root / "config.yaml"
        config_path.write_text(
            yaml.safe_dump(
                {
                    "server": {
                        "password": "studio-pass",
                        "session_secret": "pepper",
                        "max_payload_bytes": 2048,
                    }
                }
            ),
            encoding="utf-8",
        )
        self.env = mock.patch.dict(
            os.environ,
            {
                "STUDIOSYNC_CONFIG_PATH": str(config_path),
                "STUDIOSYNC_STATE_PATH": str(root / "state.db"),
            },
        )
        self.env.start()
        self.client = TestClient(create_app())
        self.token = session_token("studio-pass", "pepper")

    def tearDown(self) -> None:
        self.env.stop()
        self.temp_dir.cleanup()

    def _auth(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def test_healthz(self) -> None:
        response = self.client.get("/healthz")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_config_is_masked_and_secrets_are_preserved(self) -> None:
        config = self.client.get("/api/config").json()
        self.assertEqual(config["server"]["password"], "***")
        self.assertEqual(config["server"]["session_secret"], "***")

        response = self.client.put(
            "/api/config",
            json={"payload": {"server": {"password": "***", "session_secret": ""}, "sync": {"cooldown_seconds": 60}}},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["config"]["sync"]["cooldown_seconds"], 60)
        login = self.client.post("/api/login", json={"password": "studio-pass"})
        self.assertEqual(login.json(), {"token": self.token})

    def test_login_rejects_wrong_password(self) -> None:
        self.assertEqual(self.client.post("/api/login", json={"password": "nope"}).status_code, 401)

    def test_data_endpoints_require_token(self) -> None:
        self.assertEqual(self.client.get("/api/data").status_code, 401)
        self.assertEqual(self.client.get("/api/data", headers={"Authorization": "Bearer wrong"}).status_code, 401)
        self.assertEqual(self.client.post("/api/data", json={}).status_code, 401)

    def test_data_round_trip_with_bearer_and_query_token(self) -> None:
        initial = self.client.get("/api/data", headers=self._auth())
        self.assertEqual(initial.status_code, 200)
        self.assertIsNone(initial.json())

        document = {"weekNotes": [], "settings": {"theme": "dark"}}
        stored = self.client.post("/api/data", params={"token": self.token}, content=json.dumps(document))
        self.assertEqual(stored.status_code, 200)
        self.assertEqual(stored.json(), {"success": True})
        self.assertEqual(self.client.get("/api/data", headers=self._auth()).json(), document)

    def test_data_rejects_oversized_and_malformed_bodies(self) -> None:
        too_large = json.dumps({"blob": "x" * 4096})
        self.assertEqual(self.client.post("/api/data", headers=self._auth(), content=too_large).status_code, 413)
        self.assertEqual(self.client.post("/api/data", headers=self._auth(), content="{nope").status_code, 400)
        self.assertEqual(self.client.post("/api/data", headers=self._auth(), content="[1, 2]").status_code, 400)
        self.assertIsNone(self.client.get("/api/data", headers=self._auth()).json())

    def test_calendar_proxy_requires_token(self) -> None:
        with mock.patch("studiosync.web_app.fetch_feed_text") as fetch:
            response = self.client.get("/api/calendar/proxy", params={"url": "https://cal.example.com/a.ics"})
            wrong = self.client.get(
                "/api/calendar/proxy",
                params={"url": "https://cal.example.com/a.ics"},
                headers={"Authorization": "Bearer wrong"},
            )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(wrong.status_code, 401)
        fetch.assert_not_called()

    def test_calendar_proxy_maps_feed_errors(self) -> None:
        with mock.patch("studiosync.web_app.fetch_feed_text", side_effect=FeedURLError("Only HTTPS")):
            response = self.client.get("/api/calendar/proxy", params={"url": "http://x"}, headers=self._auth())
            self.assertEqual(response.status_code, 400)
        with mock.patch("studiosync.web_app.fetch_feed_text", side_effect=FeedBlockedError("blocked")):
            response = self.client.get(
                "/api/calendar/proxy",
                params={"url": "https://127.0.0.1/"},
                headers=self._auth(),
            )
            self.assertEqual(response.status_code, 403)

    def test_calendar_proxy_returns_calendar_text(self) -> None:
        with mock.patch("studiosync.web_app.fetch_feed_text", return_value="BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n"):
            response = self.client.get(
                "/api/calendar/proxy",
                params={"token": self.token, "url": "https://cal.example.com/a.ics"},
            )
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers["content-type"].startswith("text/calendar"))
        self.assertEqual(response.headers["cache-control"], "public, max-age=300")
        self.assertIn("BEGIN:VCALENDAR", response.text)

    def test_body_handlers_run_in_the_threadpool(self) -> None:
        endpoints = {
            (route.path, method): route.endpoint
            for route in self.client.app.routes
            for method in getattr(route, "methods", None) or ()
        }
        for key in (("/api/data", "POST"), ("/api/local/import", "POST")):
            self.assertFalse(inspect.iscoroutinefunction(endpoints[key]), key)
        stored = self.client.post("/api/data", headers=self._auth(), content='{"weekNotes": []}')
        self.assertEqual(stored.status_code, 200)
        self.assertEqual(self.client.get("/api/data", headers=self._auth()).json(), {"weekNotes": []})

    def test_sync_status_and_unknown_warning(self) -> None:
        status = self.client.get("/api/sync/status").json()
        self.assertEqual(status["status"], "idle")
        self.assertEqual(status["runs"], [])
        self.assertEqual(self.client.post("/api/warnings/sync-failures/dismiss").status_code, 404)

    def test_pull_without_remote_is_skipped(self) -> None:
        result = self.client.post("/api/sync/pull", json={"force": True}).json()["result"]
        self.assertEqual(result["status"], "skipped")

    def test_local_edits_and_export_import(self) -> None:
        week = {"weekOf": "2024-01-01", "classNotes": {"c1": {"classId": "c1", "plan": "Barre"}}}
        saved = self.client.put("/api/local/week-notes", json=week)
        self.assertEqual(saved.status_code, 200)
        self.assertEqual(saved.json()["result"]["data"]["weekNotes"][0]["weekOf"], "2024-01-01")
        self.assertEqual(self.client.put("/api/local/week-notes", json={"classNotes": {}}).status_code, 400)

        self.client.patch("/api/local/self-care", json={"water": 4})
        self.client.patch("/api/local/settings", json={"theme": "dark"})
        local = self.client.get("/api/local").json()
        self.assertEqual(local["selfCare"]["water"], 4)
        self.assertEqual(local["settings"], {"theme": "dark"})

        exported = self.client.get("/api/local/export")
        self.assertIn("attachment", exported.headers["content-disposition"])
        self.assertEqual(self.client.post("/api/local/import", content="not json").status_code, 400)
        imported = self.client.post("/api/local/import", content=exported.text)
        self.assertEqual(imported.status_code, 200)

    def test_links_for_unknown_occurrence_is_404(self) -> None:
        response = self.client.put("/api/local/calendar-events/cal-missing/links", json={"ids": ["n1"]})
        self.assertEqual(response.status_code, 404)

    def test_feeds_are_validated_added_and_removed(self) -> None:
        self.assertEqual(self.client.post("/api/feeds", json={"url": "http://cal.example.com/a.ics"}).status_code, 400)
        self.assertEqual(self.client.post("/api/feeds", json={"url": "https://10.0.0.1/a.ics"}).status_code, 403)

        added = self.client.post("/api/feeds", json={"name": "Studio", "url": "webcal://cal.example.com/a.ics"})
        self.assertEqual(added.status_code, 200)
        self.assertEqual(added.json()["feeds"], [{"name": "Studio", "url": "https://cal.example.com/a.ics"}])
        self.assertEqual(len(self.client.get("/api/feeds").json()["feeds"]), 1)

        removed = self.client.delete("/api/feeds", params={"url": "https://cal.example.com/a.ics"})
        self.assertEqual(removed.status_code, 200)
        self.assertEqual(self.client.get("/api/feeds").json()["feeds"], [])
        self.assertEqual(self.client.delete("/api/feeds", params={"url": "https://cal.example.com/a.ics"}).status_code, 404)

    def test_audit_events_endpoint(self) -> None:
        self.assertEqual(self.client.get("/api/audit/events").json(), {"events": []})


if __name__ == "__main__":
    unittest.main()
