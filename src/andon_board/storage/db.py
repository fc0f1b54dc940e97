"""SQLite access layer for the durable log and key-value snapshots."""

from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from andon_board.errors import PersistenceError
from andon_board.utils.time import utc_now_iso

_SqlValue = str | bytes | int | float | None
_SqlParams = Sequence[_SqlValue] | Mapping[str, _SqlValue]


class SqliteStore:
    def __init__(self, path: str, wal: bool = True) -> None:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._closed = False
        if wal:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS log_entries (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                type TEXT NOT NULL,
                ts INTEGER,
                dept TEXT NOT NULL,
                cell_id TEXT NOT NULL,
                call_id TEXT,
                ticket_id TEXT,
                payload TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_log_entries_ts ON log_entries(ts);
            CREATE INDEX IF NOT EXISTS idx_log_entries_dept_type ON log_entries(dept, type);
            """
        )
        self._conn.commit()

    def execute(
        self,
        query: str,
        params: _SqlParams,
    ) -> int:
        """Run a write statement; returns the cursor's ``lastrowid``."""
        with self._lock:
            try:
                cursor = self._conn.execute(query, params)
                self._conn.commit()
            except sqlite3.Error as exc:
                raise PersistenceError(f"SQLite write failed: {exc}") from exc
            return int(cursor.lastrowid or 0)

    def fetch_one(
        self,
        query: str,
        params: _SqlParams,
    ) -> sqlite3.Row | None:
        with self._lock:
            try:
                return self._conn.execute(query, params).fetchone()
            except sqlite3.Error as exc:
                raise PersistenceError(f"SQLite read failed: {exc}") from exc

    def fetch_all(
        self,
        query: str,
        params: _SqlParams,
    ) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(query, params).fetchall()
            except sqlite3.Error as exc:
                raise PersistenceError(f"SQLite read failed: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True

    def insert_log(
        self,
        *,
        type: str,
        ts: int | None,
        dept: str,
        cell_id: str,
        call_id: str | None,
        ticket_id: str | None,
        payload: Mapping[str, Any],
    ) -> int:
        return self.execute(
            """
            INSERT INTO log_entries (type, ts, dept, cell_id, call_id, ticket_id, payload)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (type, ts, dept, cell_id, call_id, ticket_id, json.dumps(dict(payload))),
        )

    def read_log_tail(self, limit: int) -> list[sqlite3.Row]:
        """Return the last ``limit`` log rows in append order."""
        rows = self.fetch_all(
            "SELECT * FROM log_entries ORDER BY seq DESC LIMIT ?",
            (int(limit),),
        )
        rows.reverse()
        return rows

    def delete_log_rows(self, predicate: Callable[[sqlite3.Row], bool]) -> int:
        """Delete every log row matching ``predicate`` in one transaction.

        Returns:
            Number of rows deleted.
        """
        with self._lock:
            try:
                rows = self._conn.execute("SELECT * FROM log_entries").fetchall()
                doomed = [(row["seq"],) for row in rows if predicate(row)]
                if not doomed:
                    return 0
                self._conn.executemany("DELETE FROM log_entries WHERE seq = ?", doomed)
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise PersistenceError(f"SQLite log rewrite failed: {exc}") from exc
            return len(doomed)

    def kv_get(self, key: str) -> Any | None:
        row = self.fetch_one("SELECT value FROM kv WHERE key = ?", (key,))
        if row is None:
            return None
        return json.loads(row["value"])

    def kv_put(self, key: str, value: Any) -> None:
        self.kv_put_raw(key, json.dumps(value))

    def kv_put_raw(self, key: str, encoded: str) -> None:
        self.execute(
            """
            INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, encoded, utc_now_iso()),
        )
