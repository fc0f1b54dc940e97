"""Append-only lifecycle log backed by SQLite."""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Callable

from andon_board.domain.models import LogEntry, LogType
from andon_board.storage.db import SqliteStore

logger = logging.getLogger(__name__)

# Older deployments wrote call events under these names.
_TYPE_ALIASES: dict[str, LogType] = {
    "request": LogType.REQUEST,
    "requested": LogType.REQUEST,
    "open": LogType.REQUEST,
    "call_open": LogType.REQUEST,
    "cancel": LogType.CANCEL,
    "canceled": LogType.CANCEL,
    "cancelled": LogType.CANCEL,
    "call_cancel": LogType.CANCEL,
    "complete": LogType.COMPLETE,
    "completed": LogType.COMPLETE,
    "call_complete": LogType.COMPLETE,
}


def parse_log_type(value: object) -> LogType | None:
    return _TYPE_ALIASES.get(str(value or "").strip().lower())


def _row_to_entry(row: sqlite3.Row) -> LogEntry | None:
    log_type = parse_log_type(row["type"])
    if log_type is None:
        logger.debug("Skipping log row %s with unknown type %r", row["seq"], row["type"])
        return None
    try:
        payload = json.loads(row["payload"]) or {}
    except json.JSONDecodeError:
        logger.warning("Log row %s has a corrupt payload; reading it without one", row["seq"])
        payload = {}
    return LogEntry(
        type=log_type,
        ts=row["ts"],
        dept=row["dept"],
        cell_id=row["cell_id"],
        call_id=row["call_id"],
        ticket_id=row["ticket_id"],
        payload=payload,
        seq=row["seq"],
    )


class DurableLog:
    """Historical source of truth for every request, cancel and completion."""

    def __init__(self, store: SqliteStore) -> None:
        self._store = store

    def append(self, entry: LogEntry) -> LogEntry:
        """Persist ``entry``; raises ``PersistenceError`` on failure."""
        seq = self._store.insert_log(
            type=entry.type.value,
            ts=entry.ts,
            dept=entry.dept,
            cell_id=entry.cell_id,
            call_id=entry.call_id,
            ticket_id=entry.ticket_id,
            payload=entry.payload,
        )
        return entry.with_seq(seq)

    def read_last(self, limit: int) -> list[LogEntry]:
        """Last ``limit`` entries, oldest first."""
        if limit <= 0:
            return []
        entries = (_row_to_entry(row) for row in self._store.read_log_tail(limit))
        return [entry for entry in entries if entry is not None]

    def rewrite_excluding(self, predicate: Callable[[LogEntry], bool]) -> int:
        """Drop every entry matching ``predicate``; returns how many were removed."""

        def _matches(row: sqlite3.Row) -> bool:
            entry = _row_to_entry(row)
            return entry is not None and predicate(entry)

        removed = self._store.delete_log_rows(_matches)
        logger.info("Durable log rewrite removed %d entries", removed)
        return removed

    def clear_completions(self, dept: str) -> int:
        """Administrative history clear for one department."""
        return self.rewrite_excluding(
            lambda e: e.type is LogType.COMPLETE and e.dept == dept
        )

    def completions(self, dept: str, limit: int, *, scan: int | None = None) -> list[LogEntry]:
        """Most recent completion entries for ``dept``, newest first."""
        window = max(limit, scan or 0)
        entries = [
            e
            for e in self.read_last(window)
            if e.type is LogType.COMPLETE and e.dept == dept
        ]
        entries.sort(key=lambda e: e.ts or 0, reverse=True)
        return entries[:limit]
