from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Mapping

import pytest

from andon_board.catalog import Catalog, CatalogConfig
from andon_board.storage.db import SqliteStore
from andon_board.storage.durable_log import DurableLog
from andon_board.storage.state_store import StateStore

T0 = 1_700_000_000_000

CATALOG_DATA: dict[str, Any] = {
    "departments": [
        {"id": "quality", "name": "Quality", "requires_part_number": True},
        {"id": "mfg-eng", "name": "Manufacturing Engineering", "bar_label": "Mfg Eng"},
        {"id": "maintenance", "name": "Maintenance", "kind": "multi_ticket", "bar_label": "Maint"},
    ],
    "cells": [
        {"id": "c1", "name": "Cell One"},
        {"id": "c2", "name": "Cell Two"},
    ],
    "maintenance": {
        "assets": {
            "c1": [
                {"name": "Press", "id": 101},
                {"name": "Oven", "code": "OV-1"},
                {"name": "", "id": 5},
                {"name": "Broken", "id": -1},
            ],
        },
        "sites": {"c1": 7},
        "users": {"Jane  Doe": 55},
    },
}


class FakeClock:
    """Deterministic millisecond clock for engines and services."""

    def __init__(self, now: int = T0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class RecordingListener:
    def __init__(self) -> None:
        self.changes: list[tuple[str, str, Mapping[str, Any] | None]] = []

    def state_changed(
        self, dept_id: str, cell_id: str, event: Mapping[str, Any] | None = None
    ) -> None:
        self.changes.append((dept_id, cell_id, event))

    @property
    def events(self) -> list[str]:
        return [e["event"] for _, _, e in self.changes if e is not None]


@pytest.fixture
def catalog() -> Catalog:
    return Catalog(CatalogConfig.model_validate(CATALOG_DATA))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    sqlite_store = SqliteStore(str(tmp_path / "andon.sqlite"))
    yield sqlite_store
    sqlite_store.close()


@pytest.fixture
def log(store: SqliteStore) -> DurableLog:
    return DurableLog(store)


@pytest.fixture
def state(catalog: Catalog) -> StateStore:
    return StateStore(catalog)


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture(autouse=True)
def _close_default_event_loop() -> None:
    yield
    policy = asyncio.get_event_loop_policy()
    local = getattr(policy, "_local", None)
    loop = getattr(local, "_loop", None) if local is not None else None
    if loop is not None and not loop.is_running() and not loop.is_closed():
        with contextlib.suppress(Exception):
            loop.close()
    if loop is not None:
        with contextlib.suppress(Exception):
            policy.set_event_loop(None)
