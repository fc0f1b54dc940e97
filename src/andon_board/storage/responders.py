"""Per-department responder name lists."""

from __future__ import annotations

import logging
import threading

from andon_board.catalog import Catalog
from andon_board.errors import ValidationError
from andon_board.storage.db import SqliteStore
from andon_board.utils.text import clean_text, name_key

logger = logging.getLogger(__name__)

RESPONDERS_KEY = "responders"


def normalize_names(names: object) -> list[str]:
    """Clean, de-duplicate case-insensitively and sort a list of names."""
    if not isinstance(names, list):
        return []
    seen: set[str] = set()
    cleaned: list[str] = []
    for raw in names:
        name = clean_text(raw)
        key = name_key(name)
        if not key or key in seen:
            continue
        seen.add(key)
        cleaned.append(name)
    cleaned.sort(key=name_key)
    return cleaned


class ResponderRegistry:
    def __init__(self, db: SqliteStore, catalog: Catalog) -> None:
        self._db = db
        self._catalog = catalog
        self._lock = threading.Lock()

    def _load_all(self) -> dict[str, list[str]]:
        raw = self._db.kv_get(RESPONDERS_KEY)
        stored = raw if isinstance(raw, dict) else {}
        return {d.id: normalize_names(stored.get(d.id)) for d in self._catalog.departments}

    def list(self, dept_id: str) -> list[str]:
        self._catalog.department(dept_id)
        return self._load_all()[dept_id]

    def add(self, dept_id: str, name: str | None) -> list[str]:
        self._catalog.department(dept_id)
        cleaned = clean_text(name)
        if not cleaned:
            raise ValidationError("Name required")
        with self._lock:
            all_names = self._load_all()
            current = all_names[dept_id]
            if any(name_key(n) == name_key(cleaned) for n in current):
                return current
            all_names[dept_id] = normalize_names([*current, cleaned])
            self._db.kv_put(RESPONDERS_KEY, all_names)
        logger.info("Added responder %r to %s", cleaned, dept_id)
        return all_names[dept_id]

    def remove(self, dept_id: str, name: str | None) -> list[str]:
        self._catalog.department(dept_id)
        key = name_key(name)
        if not key:
            raise ValidationError("Name required")
        with self._lock:
            all_names = self._load_all()
            all_names[dept_id] = [n for n in all_names[dept_id] if name_key(n) != key]
            self._db.kv_put(RESPONDERS_KEY, all_names)
        logger.info("Removed responder %r from %s", clean_text(name), dept_id)
        return all_names[dept_id]
