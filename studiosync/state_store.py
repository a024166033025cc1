from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

DEFAULT_HISTORY_LIMIT = 500

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_at TEXT NOT NULL,
    trigger TEXT NOT NULL,
    status TEXT NOT NULL,
    message TEXT,
    duration_ms INTEGER NOT NULL,
    notes_merged INTEGER NOT NULL DEFAULT 0,
    pushed INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS audit_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER,
    created_at TEXT NOT NULL,
    scope TEXT NOT NULL,
    subject TEXT NOT NULL,
    action TEXT NOT NULL,
    details_json TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS audit_events_action ON audit_events(action);

CREATE TABLE IF NOT EXISTS documents (
    key TEXT PRIMARY KEY,
    value_json TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS app_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _audit_row(row: sqlite3.Row) -> dict[str, Any]:
    item = dict(row)
    item["details"] = json.loads(item.pop("details_json") or "{}")
    return item


class StateStore:
    """SQLite persistence for the local snapshot, the relay document and sync history.

    Every call opens a short-lived connection; the RLock serializes writers
    from the scheduler thread, the debounce timer and request handlers.
    """

    def __init__(self, db_path: str, history_limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.history_limit = max(1, int(history_limit))
        self._lock = threading.RLock()
        with self._lock, self._connect() as conn:
            conn.executescript(SCHEMA_SQL)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(sql, tuple(params))
            conn.commit()
            return int(cursor.lastrowid or 0)

    def _fetch(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        with self._lock, self._connect() as conn:
            return conn.execute(sql, tuple(params)).fetchall()

    def _prune(self, table: str) -> None:
        self._execute(
            f"DELETE FROM {table} WHERE id <= (SELECT MAX(id) FROM {table}) - ?",
            (self.history_limit,),
        )

    # -- sync history ---------------------------------------------------------

    def record_sync_run(
        self,
        *,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        notes_merged: int = 0,
        pushed: bool = False,
    ) -> int:
        run_id = self._execute(
            "INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms, notes_merged, pushed) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (_utc_now(), trigger, status, message, int(duration_ms), int(notes_merged), int(bool(pushed))),
        )
        self._prune("sync_runs")
        return run_id

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        rows = self._fetch(
            "SELECT id, run_at, trigger, status, message, duration_ms, notes_merged, pushed "
            "FROM sync_runs ORDER BY id DESC LIMIT ?",
            (max(1, limit),),
        )
        return [{**dict(row), "pushed": bool(row["pushed"])} for row in rows]

    def record_audit_event(
        self,
        *,
        scope: str,
        subject: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        self._execute(
            "INSERT INTO audit_events(run_id, created_at, scope, subject, action, details_json) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (run_id, _utc_now(), scope, subject, action, json.dumps(details, ensure_ascii=False)),
        )
        self._prune("audit_events")

    def recent_audit_events(self, limit: int = 100, action: str | None = None) -> list[dict[str, Any]]:
        columns = "id, run_id, created_at, scope, subject, action, details_json"
        if action is None:
            rows = self._fetch(
                f"SELECT {columns} FROM audit_events ORDER BY id DESC LIMIT ?",
                (max(1, limit),),
            )
        else:
            rows = self._fetch(
                f"SELECT {columns} FROM audit_events WHERE action = ? ORDER BY id DESC LIMIT ?",
                (str(action), max(1, limit)),
            )
        return [_audit_row(row) for row in rows]

    # -- documents and metadata -----------------------------------------------

    def set_document(self, key: str, value_json: str) -> None:
        self._execute(
            "INSERT INTO documents(key, value_json, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json, updated_at = excluded.updated_at",
            (str(key), str(value_json), _utc_now()),
        )

    def get_document(self, key: str) -> str | None:
        rows = self._fetch("SELECT value_json FROM documents WHERE key = ?", (str(key),))
        return str(rows[0]["value_json"]) if rows else None

    def set_meta(self, key: str, value: str) -> None:
        self._execute(
            "INSERT INTO app_meta(key, value, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
            (str(key), str(value), _utc_now()),
        )

    def get_meta(self, key: str) -> str | None:
        rows = self._fetch("SELECT value FROM app_meta WHERE key = ?", (str(key),))
        return str(rows[0]["value"]) if rows else None
