"""Shared plumbing for the call and ticket lifecycle engines."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from andon_board.catalog import Catalog, Cell, Department
from andon_board.domain.models import LogEntry
from andon_board.errors import PersistenceError, ValidationError
from andon_board.storage.durable_log import DurableLog
from andon_board.storage.state_store import StateStore
from andon_board.utils.text import clean_text
from andon_board.utils.time import Clock, now_ms

logger = logging.getLogger(__name__)

DEFAULT_CANCELLED_BY = "operator"
DEFAULT_CANCEL_REASON = "Cancelled from tablet"
COMPLETION_NOTES_LIMIT = 4000


class ChangeListener(Protocol):
    """Receives committed state changes; must not block."""

    def state_changed(
        self, dept_id: str, cell_id: str, event: Mapping[str, Any] | None = None
    ) -> None: ...


@dataclass(frozen=True)
class Completion:
    responder: str
    result: str
    note: str
    part_number: str


def validate_completion(
    dept: Department,
    *,
    responder: str | None,
    result: str | None,
    note: str | None = None,
    part_number: str | None = None,
) -> Completion:
    completion = Completion(
        responder=clean_text(responder),
        result=clean_text(result),
        note=str(note or "").strip(),
        part_number=clean_text(part_number),
    )
    if not completion.responder:
        raise ValidationError("Responder name required")
    if not completion.result:
        raise ValidationError("Result required")
    if dept.requires_part_number and not completion.part_number:
        raise ValidationError(f"Part Number required for {dept.name}")
    return completion


def completion_notes(completion: Completion) -> str:
    """Notes sent to the CMMS when a work order is closed."""
    notes = f"{completion.result}\nCompleted by {completion.responder}"
    if completion.note:
        notes += f"\n{completion.note}"
    return notes[:COMPLETION_NOTES_LIMIT]


class LifecycleEngine:
    def __init__(
        self,
        state: StateStore,
        log: DurableLog,
        *,
        listener: ChangeListener | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self._state = state
        self._log = log
        self._listener = listener
        self._clock = clock

    @property
    def catalog(self) -> Catalog:
        return self._state.catalog

    def set_listener(self, listener: ChangeListener | None) -> None:
        self._listener = listener

    def _context(self, dept: Department, cell: Cell) -> dict[str, Any]:
        return {"deptName": dept.name, "cellName": cell.name}

    async def _append(self, entry: LogEntry) -> LogEntry:
        """Append to the durable log; a failed write is logged, never raised."""
        try:
            return await asyncio.to_thread(self._log.append, entry)
        except PersistenceError as exc:
            logger.error(
                "Failed to append %s entry for %s/%s: %s",
                entry.type.value,
                entry.dept,
                entry.cell_id,
                exc,
            )
            return entry

    def _notify(
        self, dept_id: str, cell_id: str, event: Mapping[str, Any] | None = None
    ) -> None:
        if self._listener is None:
            return
        try:
            self._listener.state_changed(dept_id, cell_id, event)
        except Exception:
            logger.exception("Change listener failed for %s/%s", dept_id, cell_id)
