import tempfile
import unittest
from pathlib import Path

from studiosync.state_store import StateStore


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = str(Path(self.temp_dir.name) / "nested" / "state.db")

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_documents_and_meta_upsert(self) -> None:
        store = StateStore(self.db_path)
        self.assertIsNone(store.get_document("app-data"))
        store.set_document("app-data", '{"v": 1}')
        store.set_document("app-data", '{"v": 2}')
        self.assertEqual(store.get_document("app-data"), '{"v": 2}')
        store.set_meta("last_sync_success_at", "2024-01-01T00:00:00Z")
        self.assertEqual(store.get_meta("last_sync_success_at"), "2024-01-01T00:00:00Z")
        self.assertIsNone(store.get_meta("missing"))

    def test_sync_runs_are_newest_first_and_pruned(self) -> None:
        store = StateStore(self.db_path, history_limit=3)
        for index in range(5):
            store.record_sync_run(
                trigger="scheduled",
                status="success",
                message=f"run {index}",
                duration_ms=index,
                pushed=index % 2 == 0,
            )
        runs = store.recent_sync_runs(limit=10)
        self.assertEqual([run["message"] for run in runs], ["run 4", "run 3", "run 2"])
        self.assertIs(runs[0]["pushed"], True)

    def test_audit_events_filter_by_action(self) -> None:
        store = StateStore(self.db_path)
        store.record_audit_event(scope="sync", subject="cloud", action="merged", details={"notes": 2})
        store.record_audit_event(scope="feeds", subject="Studio", action="feed_error", details={"error": "boom"})
        merged = store.recent_audit_events(action="merged")
        self.assertEqual(len(merged), 1)
        self.assertEqual(merged[0]["details"], {"notes": 2})
        self.assertEqual(len(store.recent_audit_events()), 2)


if __name__ == "__main__":
    unittest.main()
