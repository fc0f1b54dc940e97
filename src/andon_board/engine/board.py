"""The andon board: engine dispatch, snapshots and change fan-out."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Collection, Mapping

from andon_board.catalog import Catalog, Department, DepartmentKind
from andon_board.config import TimelineSettings
from andon_board.domain.models import Interval, LogEntry
from andon_board.engine.calls import CallEngine
from andon_board.engine.history import to_csv
from andon_board.engine.tasks import TaskRunner
from andon_board.engine.tickets import TicketEngine
from andon_board.errors import PersistenceError, ValidationError
from andon_board.notify.webhooks import DeliveryResult, WebhookNotifier
from andon_board.push.hub import SnapshotHub, cell_room, dept_room
from andon_board.storage.durable_log import DurableLog
from andon_board.storage.state_store import SnapshotPersister, StateStore
from andon_board.timeline.oven import build_plug_performance
from andon_board.timeline.reconstruct import reconstruct_intervals
from andon_board.timeline.telemetry import NullTelemetrySource, TelemetrySource
from andon_board.timeline.window import TimeWindow, bucket_minutes_for, bucket_timeline
from andon_board.utils.masking import mask_secret
from andon_board.utils.time import DAY_MS, MINUTE_MS, Clock, ms_to_iso, now_ms

logger = logging.getLogger(__name__)

HISTORY_SCAN = 2000
EXPORT_SCAN = 5000


class AndonBoard:
    """Front door for every lifecycle operation.

    Picks the call or ticket engine from the department's kind and, after
    each committed change, schedules a snapshot save, pushes fresh snapshots
    to subscribers and fires the department webhook.
    """

    def __init__(
        self,
        *,
        state: StateStore,
        log: DurableLog,
        persister: SnapshotPersister,
        runner: TaskRunner,
        calls: CallEngine,
        tickets: TicketEngine,
        hub: SnapshotHub,
        notifier: WebhookNotifier | None = None,
        env_webhooks: Mapping[str, str] | None = None,
        timeline: TimelineSettings | None = None,
        telemetry: TelemetrySource | None = None,
        log_read_limit: int = 20_000,
        clock: Clock = now_ms,
    ) -> None:
        self.state = state
        self.log = log
        self.runner = runner
        self.calls = calls
        self.tickets = tickets
        self.hub = hub
        self._persister = persister
        self._notifier = notifier
        self._env_webhooks = dict(env_webhooks or {})
        self._timeline = timeline or TimelineSettings()
        self._telemetry = telemetry or NullTelemetrySource()
        self._log_read_limit = log_read_limit
        self._clock = clock
        calls.set_listener(self)
        tickets.set_listener(self)

    @property
    def catalog(self) -> Catalog:
        return self.state.catalog

    # -- lifecycle dispatch ---------------------------------------------

    def _kind(self, dept_id: str) -> Department:
        return self.catalog.department(dept_id)

    async def request(self, dept_id: str, cell_id: str) -> str:
        dept = self._kind(dept_id)
        if dept.kind is DepartmentKind.MULTI_TICKET:
            raise ValidationError("Use /api/maintenance/request")
        return await self.calls.open_call(dept.id, cell_id)

    async def cancel(
        self,
        dept_id: str,
        cell_id: str,
        *,
        call_id: str | None = None,
        ticket_id: str | None = None,
        cancelled_by: str | None = None,
        reason: str | None = None,
    ) -> dict[str, Any]:
        dept = self._kind(dept_id)
        if dept.kind is DepartmentKind.MULTI_TICKET:
            ticket = await self.tickets.cancel_ticket(
                cell_id, ticket_id, cancelled_by=cancelled_by, reason=reason
            )
            if ticket is None:
                raise ValidationError("No open maintenance ticket found")
            return {"ok": True, "ticketId": ticket.ticket_id}
        cancelled = await self.calls.cancel_call(
            dept.id, cell_id, call_id, cancelled_by=cancelled_by, reason=reason
        )
        if not cancelled:
            raise ValidationError("No matching open call to cancel")
        return {"ok": True}

    async def complete(
        self,
        dept_id: str,
        cell_id: str,
        *,
        responder: str | None,
        result: str | None,
        note: str | None = None,
        part_number: str | None = None,
        ticket_id: str | None = None,
    ) -> dict[str, Any]:
        dept = self._kind(dept_id)
        if dept.kind is DepartmentKind.MULTI_TICKET:
            ticket = await self.tickets.complete_ticket(
                cell_id,
                ticket_id,
                responder=responder,
                result=result,
                note=note,
                part_number=part_number,
            )
            if ticket is None:
                raise ValidationError("No open maintenance ticket found")
            return {"ok": True, "ticketId": ticket.ticket_id}
        await self.calls.complete_call(
            dept.id,
            cell_id,
            responder=responder,
            result=result,
            note=note,
            part_number=part_number,
        )
        return {"ok": True}

    # -- snapshots ------------------------------------------------------

    def dept_snapshot(self, dept_id: str) -> dict[str, Any]:
        dept = self.catalog.department(dept_id)
        now = self._clock()
        if dept.kind is DepartmentKind.MULTI_TICKET:
            tickets: list[dict[str, Any]] = []
            for cell in self.catalog.cells:
                for ticket in self.state.open_tickets(cell.id):
                    tickets.append(
                        {**ticket.to_public(), "cellId": cell.id, "cellName": cell.name}
                    )
            return {"now": now, "dept": dept.id, "tickets": tickets}
        cells = [
            {"id": cell.id, "name": cell.name, **self.state.slot(dept.id, cell.id).to_dict()}
            for cell in self.catalog.cells
        ]
        return {"now": now, "dept": dept.id, "cells": cells}

    def cell_snapshot(self, cell_id: str) -> dict[str, Any]:
        cell = self.catalog.cell(cell_id)
        active: dict[str, Any] = {}
        for dept in self.catalog.departments:
            if dept.kind is DepartmentKind.MULTI_TICKET:
                active[dept.id] = {
                    "tickets": [t.to_public() for t in self.state.open_tickets(cell.id)]
                }
            else:
                active[dept.id] = self.state.slot(dept.id, cell.id).to_dict()
        return {
            "now": self._clock(),
            "cell": {"id": cell.id, "name": cell.name},
            "active": active,
        }

    # -- change fan-out -------------------------------------------------

    def state_changed(
        self, dept_id: str, cell_id: str, event: Mapping[str, Any] | None = None
    ) -> None:
        self.schedule_save()
        self.hub.publish(dept_room(dept_id), "deptSnapshot", self.dept_snapshot(dept_id))
        self.hub.publish(cell_room(cell_id), "cellSnapshot", self.cell_snapshot(cell_id))
        if event is not None and self._notifier is not None:
            url = self.webhook_url(dept_id)
            if url:
                self.runner.spawn(
                    self._notifier.send(url, dict(event)),
                    name=f"webhook-{dept_id}-{event.get('event', 'event')}",
                )

    def schedule_save(self) -> None:
        revision, encoded = self._persister.capture(self.state)
        self.runner.spawn(self._save(revision, encoded), name=f"save-snapshot-{revision}")

    async def _save(self, revision: int, encoded: str) -> None:
        try:
            await asyncio.to_thread(self._persister.write, revision, encoded)
        except PersistenceError as exc:
            logger.error("Snapshot save (revision %d) failed: %s", revision, exc)

    async def flush(self) -> None:
        """Wait for background work and write the latest snapshot."""
        await self.runner.drain()
        try:
            await asyncio.to_thread(self._persister.save_now, self.state)
        except PersistenceError as exc:
            logger.error("Final snapshot save failed: %s", exc)

    # -- history --------------------------------------------------------

    async def history(self, dept_id: str, limit: int = 1000) -> list[LogEntry]:
        dept = self.catalog.department(dept_id)
        return await asyncio.to_thread(
            self.log.completions, dept.id, limit, scan=HISTORY_SCAN
        )

    async def export_csv(self, dept_id: str, limit: int = 5000) -> str:
        dept = self.catalog.department(dept_id)
        entries = await asyncio.to_thread(
            self.log.completions, dept.id, limit, scan=EXPORT_SCAN
        )
        return to_csv(entries)

    async def clear_history(self, dept_id: str) -> int:
        dept = self.catalog.department(dept_id)
        removed = await asyncio.to_thread(self.log.clear_completions, dept.id)
        logger.info("Cleared %d completion entries for %s", removed, dept.id)
        return removed

    # -- timeline -------------------------------------------------------

    async def intervals(
        self,
        window: TimeWindow,
        departments: Collection[str] | None = None,
    ) -> list[Interval]:
        if departments:
            wanted = tuple(self.catalog.department(d).id for d in departments)
        else:
            # Configured defaults the catalog lacks are skipped, not rejected.
            wanted = tuple(
                d for d in self._timeline.departments if self.catalog.has_department(d)
            )
        entries = await asyncio.to_thread(self.log.read_last, self._log_read_limit)
        return reconstruct_intervals(
            entries,
            window,
            now=self._clock(),
            catalog=self.catalog,
            departments=wanted,
            padding_ms=self._timeline.padding_days * DAY_MS,
        )

    async def plug_performance(self, window: TimeWindow) -> dict[str, Any]:
        bucket_minutes = bucket_minutes_for(window.duration_ms)
        buckets = bucket_timeline(window, bucket_minutes)
        covered = TimeWindow(buckets[0], buckets[-1] + bucket_minutes * MINUTE_MS)
        fill_rows, cure_rows, cure_kpis = await asyncio.gather(
            self._telemetry.fill_stats(covered, bucket_minutes),
            self._telemetry.cure_series(covered, bucket_minutes),
            self._telemetry.cure_kpis(covered),
        )
        events = await self.intervals(covered)
        return {
            "ok": True,
            "start": ms_to_iso(buckets[0]),
            "end": ms_to_iso(buckets[-1]),
            "bucketMinutes": bucket_minutes,
            **build_plug_performance(buckets, bucket_minutes, fill_rows, cure_rows, cure_kpis),
            "events": [i.to_dict() for i in events],
        }

    # -- webhooks -------------------------------------------------------

    def webhook_url(self, dept_id: str) -> str | None:
        return self.state.webhooks.get(dept_id) or self._env_webhooks.get(dept_id) or None

    def masked_webhooks(self) -> dict[str, str | None]:
        return {d.id: mask_secret(self.webhook_url(d.id)) for d in self.catalog.departments}

    def set_webhooks(self, updates: Mapping[str, str | None]) -> dict[str, str | None]:
        """Persist runtime webhook overrides; a blank URL clears the override."""
        applied: dict[str, str | None] = {}
        for dept_id, url in updates.items():
            dept = self.catalog.department(str(dept_id).lower())
            cleaned = str(url or "").strip()
            if cleaned:
                self.state.webhooks[dept.id] = cleaned
            else:
                self.state.webhooks.pop(dept.id, None)
            applied[dept.id] = mask_secret(self.webhook_url(dept.id))
        self.state.touch()
        self.schedule_save()
        return applied

    async def test_webhook(self, dept_id: str, event: Mapping[str, Any]) -> DeliveryResult:
        dept = self.catalog.department(dept_id)
        if self._notifier is None:
            return DeliveryResult(ok=False, error="notifications disabled")
        payload = {"event": "test", "status": "test", **event, "dept": dept.id, "ts": self._clock()}
        return await self._notifier.send(self.webhook_url(dept.id), payload)
