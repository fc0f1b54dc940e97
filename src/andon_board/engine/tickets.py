"""Multi-ticket maintenance queue with best-effort CMMS correlation."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from andon_board.catalog import AssetOption, Cell, Department, DepartmentKind
from andon_board.cmms.work_orders import WorkOrderRequest, WorkOrderService
from andon_board.domain.models import (
    ExternalWorkOrder,
    LogEntry,
    LogType,
    MaintenanceTicket,
    Priority,
    TicketStatus,
)
from andon_board.engine.base import (
    DEFAULT_CANCEL_REASON,
    DEFAULT_CANCELLED_BY,
    ChangeListener,
    LifecycleEngine,
    completion_notes,
    validate_completion,
)
from andon_board.engine.tasks import TaskRunner
from andon_board.errors import NotFoundError, ValidationError
from andon_board.storage.durable_log import DurableLog
from andon_board.storage.state_store import StateStore
from andon_board.utils.ids import make_id
from andon_board.utils.text import clean_text
from andon_board.utils.time import Clock, now_ms

logger = logging.getLogger(__name__)

PROGRESS_NOTE_LIMIT = 160


def _describe_failure(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "CMMS request timed out"
    return str(exc) or type(exc).__name__


class TicketEngine(LifecycleEngine):
    """Open, cancel, complete and annotate maintenance tickets.

    CMMS work happens outside the per-cell lock. Creation is awaited (with a
    timeout) so the correlation can be attached to the new ticket; close and
    cancel run as background tasks after the local transition commits.
    """

    kind = DepartmentKind.MULTI_TICKET

    def __init__(
        self,
        state: StateStore,
        log: DurableLog,
        *,
        runner: TaskRunner,
        work_orders: WorkOrderService | None = None,
        work_order_timeout: float | None = None,
        listener: ChangeListener | None = None,
        clock: Clock = now_ms,
    ) -> None:
        super().__init__(state, log, listener=listener, clock=clock)
        self._runner = runner
        self._work_orders = work_orders
        self._work_order_timeout = work_order_timeout

    def _department(self) -> Department:
        return self.catalog.ticket_department()

    def _event(
        self, event: str, dept: Department, cell: Cell, ticket: MaintenanceTicket, **extra: Any
    ) -> dict[str, Any]:
        return {
            "event": event,
            "ts": self._clock(),
            "dept": dept.id,
            "cellId": cell.id,
            "cellName": cell.name,
            "ticketId": ticket.ticket_id,
            "externalWorkOrder": (
                ticket.external_work_order.to_dict() if ticket.external_work_order else None
            ),
            **extra,
        }

    async def _create_work_order(
        self,
        cell: Cell,
        issue: str,
        priority: Priority,
        asset: AssetOption | None,
    ) -> ExternalWorkOrder | None:
        if self._work_orders is None:
            return None
        request = WorkOrderRequest(
            cell=cell,
            description=issue,
            priority=priority,
            asset=asset,
            site_id=self.catalog.site_id(cell.id),
        )
        try:
            return await asyncio.wait_for(
                self._work_orders.create(request), timeout=self._work_order_timeout
            )
        except Exception as exc:
            # Operators must always be able to raise a ticket.
            logger.warning("Work order creation failed for %s: %s", cell.id, exc)
            return ExternalWorkOrder(
                error=_describe_failure(exc),
                request_description=issue,
                request_priority=priority.value,
                request_asset=asset.label if asset else "",
            )

    async def open_ticket(
        self,
        cell_id: str,
        *,
        issue_text: str | None,
        priority: str | None = None,
        asset_value: str | None = None,
    ) -> MaintenanceTicket:
        """Create a new OPEN ticket; never collapses into an existing one."""
        dept = self._department()
        cell = self.catalog.cell(cell_id)
        issue = str(issue_text or "").strip()
        if not issue:
            raise ValidationError("Description is required")
        level = Priority.parse(priority)
        asset: AssetOption | None = None
        if clean_text(asset_value):
            asset = self.catalog.find_asset(cell.id, str(asset_value))
            if asset is None:
                raise ValidationError("Selected asset is not allowed for this cell")

        correlation = await self._create_work_order(cell, issue, level, asset)

        async with self._state.ticket_lock(cell.id):
            created_at = self._clock()
            ticket = MaintenanceTicket(
                ticket_id=make_id("mnt", ts=created_at),
                created_at=created_at,
                priority=level,
                issue_text=issue,
                asset_label=asset.label if asset else "",
                external_work_order=correlation,
            )
            self._state.add_ticket(cell.id, ticket)
            await self._append(
                LogEntry(
                    type=LogType.REQUEST,
                    ts=created_at,
                    dept=dept.id,
                    cell_id=cell.id,
                    ticket_id=ticket.ticket_id,
                    payload={
                        **self._context(dept, cell),
                        "note": issue,
                        "priority": level.value,
                        "assetLabel": ticket.asset_label,
                        "externalWorkOrder": correlation.to_dict() if correlation else None,
                    },
                )
            )
            self._state.touch()
        logger.info("Ticket %s opened at %s", ticket.ticket_id, cell.id)
        self._notify(
            dept.id,
            cell.id,
            self._event("ticket.request", dept, cell, ticket, note=issue, status="open"),
        )
        return ticket

    def _select(
        self, cell_id: str, ticket_id: str | None, *, newest: bool
    ) -> MaintenanceTicket | None:
        if ticket_id:
            try:
                ticket = self._state.find_ticket(cell_id, ticket_id)
            except NotFoundError:
                return None
            return ticket if ticket.is_open else None
        open_tickets = self._state.open_tickets(cell_id)
        if not open_tickets:
            return None
        return open_tickets[-1] if newest else open_tickets[0]

    async def cancel_ticket(
        self,
        cell_id: str,
        ticket_id: str | None = None,
        *,
        cancelled_by: str | None = None,
        reason: str | None = None,
    ) -> MaintenanceTicket | None:
        """Cancel ``ticket_id`` or, when omitted, the newest OPEN ticket.

        Returns ``None`` when no OPEN ticket matches.
        """
        dept = self._department()
        cell = self.catalog.cell(cell_id)
        actor = clean_text(cancelled_by) or DEFAULT_CANCELLED_BY
        note = str(reason or "").strip()
        async with self._state.ticket_lock(cell.id):
            ticket = self._select(cell.id, ticket_id, newest=True)
            if ticket is None:
                return None
            ticket.status = TicketStatus.CANCELLED
            ticket.cancelled_at = self._clock()
            await self._append(
                LogEntry(
                    type=LogType.CANCEL,
                    ts=ticket.cancelled_at,
                    dept=dept.id,
                    cell_id=cell.id,
                    ticket_id=ticket.ticket_id,
                    payload={
                        **self._context(dept, cell),
                        "startedAt": ticket.created_at,
                        "cancelledBy": actor,
                        "note": note,
                        "externalWorkOrder": (
                            ticket.external_work_order.to_dict()
                            if ticket.external_work_order
                            else None
                        ),
                    },
                )
            )
            self._state.touch()
        logger.info("Ticket %s cancelled at %s by %s", ticket.ticket_id, cell.id, actor)

        correlation = ticket.external_work_order
        if self._work_orders is not None and correlation and correlation.has_work_order:
            self._runner.spawn(
                self._cancel_work_order(
                    dept, cell, ticket, actor, note or DEFAULT_CANCEL_REASON
                ),
                name=f"cancel-work-order-{ticket.ticket_id}",
            )
        self._notify(
            dept.id,
            cell.id,
            self._event("ticket.cancel", dept, cell, ticket, note=note, status="cancelled"),
        )
        return ticket

    async def _cancel_work_order(
        self,
        dept: Department,
        cell: Cell,
        ticket: MaintenanceTicket,
        actor: str,
        reason: str,
    ) -> None:
        correlation = ticket.external_work_order
        if self._work_orders is None or correlation is None or correlation.external_id is None:
            return
        try:
            await asyncio.wait_for(
                self._work_orders.cancel(correlation.external_id, actor=actor, reason=reason),
                timeout=self._work_order_timeout,
            )
        except Exception as exc:
            logger.warning(
                "Cancelling work order %s failed: %s", correlation.external_id, exc
            )
            async with self._state.ticket_lock(cell.id):
                correlation.cancel_error = _describe_failure(exc)
                self._state.touch()
            self._notify(dept.id, cell.id)

    async def complete_ticket(
        self,
        cell_id: str,
        ticket_id: str | None = None,
        *,
        responder: str | None,
        result: str | None,
        note: str | None = None,
        part_number: str | None = None,
    ) -> MaintenanceTicket | None:
        """Complete ``ticket_id`` or, when omitted, the oldest OPEN ticket.

        Returns ``None`` when no OPEN ticket matches.
        """
        dept = self._department()
        cell = self.catalog.cell(cell_id)
        completion = validate_completion(
            dept, responder=responder, result=result, note=note, part_number=part_number
        )
        async with self._state.ticket_lock(cell.id):
            ticket = self._select(cell.id, ticket_id, newest=False)
            if ticket is None:
                return None
            completed_at = self._clock()
            elapsed_ms = completed_at - ticket.created_at
            ticket.status = TicketStatus.COMPLETED
            ticket.completed_at = completed_at
            ticket.completed_by = completion.responder
            ticket.result = completion.result
            ticket.solution_note = completion.note
            await self._append(
                LogEntry(
                    type=LogType.COMPLETE,
                    ts=completed_at,
                    dept=dept.id,
                    cell_id=cell.id,
                    ticket_id=ticket.ticket_id,
                    payload={
                        **self._context(dept, cell),
                        "startedAt": ticket.created_at,
                        "elapsedMs": elapsed_ms,
                        "responderName": completion.responder,
                        "partNumber": completion.part_number,
                        "result": completion.result,
                        "note": completion.note,
                        "issue": ticket.issue_text,
                        "priority": ticket.priority.value,
                        "assetLabel": ticket.asset_label,
                        "progressStatus": ticket.progress_note,
                        "externalWorkOrder": (
                            ticket.external_work_order.to_dict()
                            if ticket.external_work_order
                            else None
                        ),
                    },
                )
            )
            self._state.touch()
        logger.info("Ticket %s completed at %s", ticket.ticket_id, cell.id)

        correlation = ticket.external_work_order
        if self._work_orders is not None and correlation and correlation.has_work_order:
            self._runner.spawn(
                self._close_work_order(
                    dept, cell, ticket, completion.responder, completion_notes(completion)
                ),
                name=f"close-work-order-{ticket.ticket_id}",
            )
        self._notify(
            dept.id,
            cell.id,
            self._event(
                "ticket.complete",
                dept,
                cell,
                ticket,
                responderName=completion.responder,
                result=completion.result,
                note=completion.note,
                elapsedMs=elapsed_ms,
                status="completed",
            ),
        )
        return ticket

    async def _close_work_order(
        self,
        dept: Department,
        cell: Cell,
        ticket: MaintenanceTicket,
        responder: str,
        notes: str,
    ) -> None:
        correlation = ticket.external_work_order
        if self._work_orders is None or correlation is None or correlation.external_id is None:
            return
        try:
            await asyncio.wait_for(
                self._work_orders.close(
                    correlation.external_id, responder=responder, notes=notes
                ),
                timeout=self._work_order_timeout,
            )
        except Exception as exc:
            logger.warning("Closing work order %s failed: %s", correlation.external_id, exc)
            async with self._state.ticket_lock(cell.id):
                correlation.close_error = _describe_failure(exc)
                self._state.touch()
            self._notify(dept.id, cell.id)

    async def set_progress(
        self, cell_id: str, ticket_id: str | None, note: str | None
    ) -> MaintenanceTicket:
        """Overwrite the progress note of an OPEN ticket."""
        dept = self._department()
        cell = self.catalog.cell(cell_id)
        if not ticket_id:
            raise ValidationError("Missing ticketId")
        async with self._state.ticket_lock(cell.id):
            ticket = self._state.find_ticket(cell.id, ticket_id)
            if not ticket.is_open:
                raise ValidationError("Ticket not open")
            ticket.progress_note = str(note or "").strip()[:PROGRESS_NOTE_LIMIT]
            self._state.touch()
        self._notify(dept.id, cell.id)
        return ticket
