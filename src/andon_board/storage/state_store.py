"""Live snapshot of open calls and tickets, plus its persistence."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Any, Iterator, Mapping

from andon_board.catalog import Catalog, DepartmentKind
from andon_board.domain.models import CallSlot, MaintenanceTicket
from andon_board.errors import NotFoundError, ValidationError
from andon_board.storage.db import SqliteStore
from andon_board.storage.schema import SNAPSHOT_VERSION, normalize_snapshot

logger = logging.getLogger(__name__)

STATE_KEY = "state"


class StateStore:
    """Single authority over live call slots and ticket lists.

    Engines mutate slots and tickets only while holding the matching lock
    from :meth:`slot_lock` or :meth:`ticket_lock`, and call :meth:`touch`
    after each committed change so persistence can order its writes.
    """

    def __init__(
        self,
        catalog: Catalog,
        slots: Mapping[tuple[str, str], CallSlot] | None = None,
        tickets: Mapping[str, list[MaintenanceTicket]] | None = None,
        webhooks: Mapping[str, str] | None = None,
    ) -> None:
        self._catalog = catalog
        self._slots: dict[tuple[str, str], CallSlot] = dict(slots or {})
        self._tickets: dict[str, list[MaintenanceTicket]] = {
            k: list(v) for k, v in (tickets or {}).items()
        }
        self.webhooks: dict[str, str] = dict(webhooks or {})
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._revision = 0
        for dept in catalog.departments_of_kind(DepartmentKind.SINGLE_SLOT):
            for cell in catalog.cells:
                self._slots.setdefault((dept.id, cell.id), CallSlot())
        for cell in catalog.cells:
            self._tickets.setdefault(cell.id, [])

    @property
    def catalog(self) -> Catalog:
        return self._catalog

    @property
    def revision(self) -> int:
        return self._revision

    def touch(self) -> int:
        """Mark the state as changed; returns the new revision."""
        self._revision += 1
        return self._revision

    def _lock(self, key: tuple[str, str]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def slot_lock(self, dept_id: str, cell_id: str) -> asyncio.Lock:
        return self._lock(("slot", f"{dept_id}:{cell_id}"))

    def ticket_lock(self, cell_id: str) -> asyncio.Lock:
        return self._lock(("tickets", cell_id))

    def slot(self, dept_id: str, cell_id: str) -> CallSlot:
        slot = self._slots.get((dept_id, cell_id))
        if slot is None:
            raise NotFoundError(f"No call slot for {dept_id!r} at {cell_id!r}")
        return slot

    def slots_for(self, dept_id: str) -> Iterator[tuple[str, CallSlot]]:
        for cell in self._catalog.cells:
            slot = self._slots.get((dept_id, cell.id))
            if slot is not None:
                yield cell.id, slot

    def tickets(self, cell_id: str) -> list[MaintenanceTicket]:
        tickets = self._tickets.get(cell_id)
        if tickets is None:
            raise NotFoundError(f"Unknown cell: {cell_id!r}")
        return tickets

    def open_tickets(self, cell_id: str) -> list[MaintenanceTicket]:
        """OPEN tickets for ``cell_id`` ordered oldest first."""
        return sorted(
            (t for t in self.tickets(cell_id) if t.is_open),
            key=lambda t: t.created_at,
        )

    def find_ticket(self, cell_id: str, ticket_id: str) -> MaintenanceTicket:
        for ticket in self.tickets(cell_id):
            if ticket.ticket_id == ticket_id:
                return ticket
        raise NotFoundError(f"Unknown ticket {ticket_id!r} at {cell_id!r}")

    def add_ticket(self, cell_id: str, ticket: MaintenanceTicket) -> None:
        tickets = self.tickets(cell_id)
        if any(t.ticket_id == ticket.ticket_id for t in tickets):
            raise ValidationError(f"Duplicate ticket id: {ticket.ticket_id}")
        tickets.append(ticket)

    def to_snapshot(self) -> dict[str, Any]:
        active: dict[str, dict[str, Any]] = {}
        for dept in self._catalog.departments:
            active[dept.id] = {}
            for cell in self._catalog.cells:
                if dept.kind is DepartmentKind.MULTI_TICKET:
                    active[dept.id][cell.id] = {
                        "tickets": [t.to_dict() for t in self._tickets.get(cell.id, [])]
                    }
                else:
                    active[dept.id][cell.id] = self.slot(dept.id, cell.id).to_dict()
        return {
            "version": SNAPSHOT_VERSION,
            "active": active,
            "webhooks": dict(self.webhooks),
        }

    @classmethod
    def from_snapshot(cls, catalog: Catalog, raw: Any) -> "StateStore":
        doc = normalize_snapshot(raw, catalog)
        slots: dict[tuple[str, str], CallSlot] = {}
        tickets: dict[str, list[MaintenanceTicket]] = {}
        for dept in catalog.departments:
            per_cell = doc["active"][dept.id]
            for cell in catalog.cells:
                cur = per_cell[cell.id]
                if dept.kind is DepartmentKind.MULTI_TICKET:
                    loaded: list[MaintenanceTicket] = []
                    for item in cur["tickets"]:
                        try:
                            ticket = MaintenanceTicket.from_dict(item)
                        except (KeyError, TypeError, ValueError) as exc:
                            logger.warning(
                                "Dropping unreadable ticket at %s: %s", cell.id, exc
                            )
                            continue
                        loaded.append(ticket)
                    tickets.setdefault(cell.id, []).extend(loaded)
                else:
                    slots[(dept.id, cell.id)] = CallSlot.from_dict(cur)
        return cls(catalog, slots=slots, tickets=tickets, webhooks=doc.get("webhooks"))


class SnapshotPersister:
    """Serializes snapshot writes and discards stale revisions."""

    def __init__(self, db: SqliteStore, key: str = STATE_KEY) -> None:
        self._db = db
        self._key = key
        self._lock = threading.Lock()
        self._written_revision = -1

    @property
    def written_revision(self) -> int:
        return self._written_revision

    def load(self, catalog: Catalog) -> StateStore:
        raw = self._db.kv_get(self._key)
        state = StateStore.from_snapshot(catalog, raw)
        logger.info(
            "Loaded state snapshot (%s)", "empty" if raw is None else "existing"
        )
        return state

    def capture(self, state: StateStore) -> tuple[int, str]:
        """Encode the current state; must run on the event loop thread."""
        return state.revision, json.dumps(state.to_snapshot())

    def write(self, revision: int, encoded: str) -> bool:
        """Store ``encoded`` unless a newer revision is already stored.

        Returns:
            True if the snapshot was written.
        """
        with self._lock:
            if revision <= self._written_revision:
                logger.debug(
                    "Skipping stale snapshot revision %d (stored %d)",
                    revision,
                    self._written_revision,
                )
                return False
            self._db.kv_put_raw(self._key, encoded)
            self._written_revision = revision
            return True

    def save_now(self, state: StateStore) -> bool:
        revision, encoded = self.capture(state)
        return self.write(revision, encoded)
