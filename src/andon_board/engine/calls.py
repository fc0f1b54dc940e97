"""Single-slot call lifecycle: READY -> WAITING -> READY."""

from __future__ import annotations

import logging

from andon_board.catalog import Department, DepartmentKind
from andon_board.domain.models import LogEntry, LogType
from andon_board.engine.base import (
    DEFAULT_CANCELLED_BY,
    LifecycleEngine,
    validate_completion,
)
from andon_board.errors import ValidationError
from andon_board.utils.ids import make_id
from andon_board.utils.text import clean_text

logger = logging.getLogger(__name__)


class CallEngine(LifecycleEngine):
    """Open, cancel and complete calls for single-slot departments."""

    kind = DepartmentKind.SINGLE_SLOT

    def _department(self, dept_id: str) -> Department:
        dept = self.catalog.department(dept_id)
        if dept.kind is not self.kind:
            raise ValidationError(f"{dept.name} takes tickets, not calls")
        return dept

    async def open_call(self, dept_id: str, cell_id: str) -> str:
        """Open a call; repeated opens return the waiting call's id unchanged."""
        dept = self._department(dept_id)
        cell = self.catalog.cell(cell_id)
        async with self._state.slot_lock(dept.id, cell.id):
            slot = self._state.slot(dept.id, cell.id)
            if slot.is_waiting and slot.call_id:
                return slot.call_id
            requested_at = self._clock()
            call_id = make_id(f"call_{dept.id}", ts=requested_at)
            slot.open(call_id, requested_at)
            await self._append(
                LogEntry(
                    type=LogType.REQUEST,
                    ts=requested_at,
                    dept=dept.id,
                    cell_id=cell.id,
                    call_id=call_id,
                    payload=self._context(dept, cell),
                )
            )
            self._state.touch()
        logger.info("Call %s opened for %s at %s", call_id, dept.id, cell.id)
        self._notify(
            dept.id,
            cell.id,
            {
                "event": "call.request",
                "ts": requested_at,
                "dept": dept.id,
                "cellId": cell.id,
                "cellName": cell.name,
                "callId": call_id,
                "status": "open",
            },
        )
        return call_id

    async def cancel_call(
        self,
        dept_id: str,
        cell_id: str,
        expected_call_id: str | None = None,
        *,
        cancelled_by: str | None = None,
        reason: str | None = None,
    ) -> bool:
        """Cancel the waiting call.

        Returns False without touching anything when the slot is READY or
        when ``expected_call_id`` names a call that is no longer current.
        """
        dept = self._department(dept_id)
        cell = self.catalog.cell(cell_id)
        actor = clean_text(cancelled_by) or DEFAULT_CANCELLED_BY
        note = str(reason or "").strip()
        async with self._state.slot_lock(dept.id, cell.id):
            slot = self._state.slot(dept.id, cell.id)
            if not slot.is_waiting:
                return False
            if expected_call_id and expected_call_id != slot.call_id:
                return False
            call_id = slot.call_id
            cancelled_at = self._clock()
            # Logged before the slot is cleared; the entry needs the call id.
            await self._append(
                LogEntry(
                    type=LogType.CANCEL,
                    ts=cancelled_at,
                    dept=dept.id,
                    cell_id=cell.id,
                    call_id=call_id,
                    payload={
                        **self._context(dept, cell),
                        "startedAt": slot.requested_at,
                        "cancelledBy": actor,
                        "note": note,
                    },
                )
            )
            slot.reset()
            self._state.touch()
        logger.info("Call %s cancelled for %s at %s by %s", call_id, dept.id, cell.id, actor)
        self._notify(
            dept.id,
            cell.id,
            {
                "event": "call.cancel",
                "ts": cancelled_at,
                "dept": dept.id,
                "cellId": cell.id,
                "cellName": cell.name,
                "callId": call_id,
                "note": note,
                "status": "cancelled",
            },
        )
        return True

    async def complete_call(
        self,
        dept_id: str,
        cell_id: str,
        *,
        responder: str | None,
        result: str | None,
        note: str | None = None,
        part_number: str | None = None,
    ) -> LogEntry:
        """Complete the waiting call and return the ``complete`` log entry."""
        dept = self._department(dept_id)
        cell = self.catalog.cell(cell_id)
        completion = validate_completion(
            dept,
            responder=responder,
            result=result,
            note=note,
            part_number=part_number,
        )
        async with self._state.slot_lock(dept.id, cell.id):
            slot = self._state.slot(dept.id, cell.id)
            if not slot.is_waiting:
                raise ValidationError("No open call to complete")
            completed_at = self._clock()
            elapsed_ms = (
                completed_at - slot.requested_at if slot.requested_at is not None else None
            )
            entry = await self._append(
                LogEntry(
                    type=LogType.COMPLETE,
                    ts=completed_at,
                    dept=dept.id,
                    cell_id=cell.id,
                    call_id=slot.call_id,
                    payload={
                        **self._context(dept, cell),
                        "startedAt": slot.requested_at,
                        "elapsedMs": elapsed_ms,
                        "responderName": completion.responder,
                        "partNumber": completion.part_number,
                        "result": completion.result,
                        "note": completion.note,
                        "externalWorkOrder": (
                            slot.external_work_order.to_dict()
                            if slot.external_work_order
                            else None
                        ),
                    },
                )
            )
            slot.reset()
            self._state.touch()
        logger.info("Call %s completed for %s at %s", entry.call_id, dept.id, cell.id)
        self._notify(
            dept.id,
            cell.id,
            {
                "event": "call.complete",
                "ts": completed_at,
                "dept": dept.id,
                "cellId": cell.id,
                "cellName": cell.name,
                "callId": entry.call_id,
                "responderName": completion.responder,
                "result": completion.result,
                "note": completion.note,
                "elapsedMs": elapsed_ms,
                "status": "completed",
            },
        )
        return entry
