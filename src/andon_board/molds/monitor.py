"""Periodic mold-cleaning snapshot pushed to the ``molds`` room."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Mapping

import pydantic

from andon_board.molds.models import MoldConfig, compute_mold_snapshot
from andon_board.push.hub import SnapshotHub
from andon_board.storage.db import SqliteStore
from andon_board.timeline.telemetry import TelemetrySource
from andon_board.utils.time import Clock, now_ms

logger = logging.getLogger(__name__)

MOLDS_ROOM = "molds"
MOLDS_EVENT = "moldsSnapshot"
CONFIG_KEY = "mold_config"


class MoldMonitor:
    """Holds the latest mold snapshot and refreshes it from telemetry.

    A failed refresh keeps the previous snapshot. Overlapping refreshes are
    skipped rather than queued.
    """

    def __init__(
        self,
        telemetry: TelemetrySource,
        store: SqliteStore,
        hub: SnapshotHub,
        *,
        refresh_seconds: float = 60.0,
        clock: Clock = now_ms,
    ) -> None:
        self._telemetry = telemetry
        self._store = store
        self._hub = hub
        self._refresh_seconds = refresh_seconds
        self._clock = clock
        self._config = self._load_config()
        self._snapshot = compute_mold_snapshot([], self._config, clock())
        self._refreshing = False
        self._task: asyncio.Task[None] | None = None

    @property
    def config(self) -> MoldConfig:
        return self._config

    @property
    def snapshot(self) -> dict[str, Any]:
        return self._snapshot

    def _load_config(self) -> MoldConfig:
        raw = self._store.kv_get(CONFIG_KEY)
        if not isinstance(raw, Mapping):
            return MoldConfig()
        try:
            return MoldConfig.model_validate(raw)
        except pydantic.ValidationError as exc:
            logger.warning("Ignoring unreadable mold config: %s", exc)
            return MoldConfig()

    async def update_config(self, body: Mapping[str, Any]) -> MoldConfig:
        config = self._config.updated(body)
        await asyncio.to_thread(self._store.kv_put, CONFIG_KEY, config.to_dict())
        self._config = config
        logger.info(
            "Mold cleaning threshold set to %s cycles (due soon at %s)",
            config.clean_threshold_cycles,
            config.due_soon_at,
        )
        await self.refresh()
        return config

    async def refresh(self) -> bool:
        """Recompute and publish the snapshot; False when skipped or failed."""
        if self._refreshing:
            return False
        self._refreshing = True
        try:
            rows = await self._telemetry.latest_molds()
            self._snapshot = compute_mold_snapshot(rows, self._config, self._clock())
        except Exception as exc:
            logger.error("Mold snapshot refresh failed: %s", exc)
            return False
        finally:
            self._refreshing = False
        self._hub.publish(MOLDS_ROOM, MOLDS_EVENT, self._snapshot)
        return True

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(
                self._run(), name="mold-refresh"
            )

    async def _run(self) -> None:
        while True:
            await self.refresh()
            await asyncio.sleep(self._refresh_seconds)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
