"""Data models for calls, maintenance tickets and log entries.

Wire dictionaries use camelCase keys because dashboards and the durable log
share them; attribute names stay snake_case.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping

from andon_board.errors import ValidationError

logger = logging.getLogger(__name__)


class CallStatus(str, Enum):
    READY = "READY"
    WAITING = "WAITING"

    @classmethod
    def parse(cls, value: Any) -> "CallStatus":
        """Read a persisted status; anything unrecognised loads as READY."""
        if value is None or not str(value).strip():
            return cls.READY
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            logger.warning("Unknown call status %r; treating slot as READY", value)
            return cls.READY


class TicketStatus(str, Enum):
    OPEN = "OPEN"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class Priority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"

    @classmethod
    def parse(cls, value: str | None) -> "Priority":
        if value is None or not str(value).strip():
            return cls.MEDIUM
        wanted = str(value).strip().lower()
        for member in cls:
            if member.value.lower() == wanted:
                return member
        raise ValidationError(f"Invalid priority: {value!r} (expected Low, Medium or High)")


class LogType(str, Enum):
    REQUEST = "request"
    CANCEL = "cancel"
    COMPLETE = "complete"


TERMINAL_LOG_TYPES = frozenset({LogType.CANCEL, LogType.COMPLETE})


@dataclass
class ExternalWorkOrder:
    """Local record linking a call or ticket to a CMMS work order."""

    external_id: int | None = None
    display_number: str | None = None
    external_url: str | None = None
    request_description: str = ""
    request_priority: str = Priority.MEDIUM.value
    request_asset: str = ""
    error: str | None = None
    close_error: str | None = None
    cancel_error: str | None = None

    @property
    def has_work_order(self) -> bool:
        return self.external_id is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "externalId": self.external_id,
            "displayNumber": self.display_number,
            "externalUrl": self.external_url,
            "requestDescription": self.request_description,
            "requestPriority": self.request_priority,
            "requestAsset": self.request_asset,
            "error": self.error,
            "closeError": self.close_error,
            "cancelError": self.cancel_error,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "ExternalWorkOrder | None":
        if not data:
            return None
        external_id = data.get("externalId")
        return cls(
            external_id=int(external_id) if external_id is not None else None,
            display_number=_opt_str(data.get("displayNumber")),
            external_url=_opt_str(data.get("externalUrl")),
            request_description=str(data.get("requestDescription") or ""),
            request_priority=str(data.get("requestPriority") or Priority.MEDIUM.value),
            request_asset=str(data.get("requestAsset") or ""),
            error=_opt_str(data.get("error")),
            close_error=_opt_str(data.get("closeError")),
            cancel_error=_opt_str(data.get("cancelError")),
        )


@dataclass
class CallSlot:
    """Single-slot call for one department at one cell.

    ``status == READY`` exactly when ``requested_at`` and ``call_id`` are None.
    """

    status: CallStatus = CallStatus.READY
    requested_at: int | None = None
    call_id: str | None = None
    external_work_order: ExternalWorkOrder | None = None

    @property
    def is_waiting(self) -> bool:
        return self.status is CallStatus.WAITING

    def open(self, call_id: str, requested_at: int) -> None:
        self.status = CallStatus.WAITING
        self.requested_at = requested_at
        self.call_id = call_id
        self.external_work_order = None

    def reset(self) -> None:
        self.status = CallStatus.READY
        self.requested_at = None
        self.call_id = None
        self.external_work_order = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "requestedAt": self.requested_at,
            "callId": self.call_id,
            "externalWorkOrder": (
                self.external_work_order.to_dict() if self.external_work_order else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CallSlot":
        slot = cls(
            status=CallStatus.parse(data.get("status")),
            requested_at=data.get("requestedAt"),
            call_id=data.get("callId"),
            external_work_order=ExternalWorkOrder.from_dict(data.get("externalWorkOrder")),
        )
        if slot.status is CallStatus.READY or slot.requested_at is None or not slot.call_id:
            slot.reset()
        return slot


@dataclass
class MaintenanceTicket:
    ticket_id: str
    created_at: int
    status: TicketStatus = TicketStatus.OPEN
    priority: Priority = Priority.MEDIUM
    issue_text: str = ""
    asset_label: str = ""
    progress_note: str = ""
    external_work_order: ExternalWorkOrder | None = None
    completed_at: int | None = None
    cancelled_at: int | None = None
    completed_by: str | None = None
    result: str | None = None
    solution_note: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status is TicketStatus.OPEN

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticketId": self.ticket_id,
            "status": self.status.value,
            "createdAt": self.created_at,
            "priority": self.priority.value,
            "issue": self.issue_text,
            "assetLabel": self.asset_label,
            "progressStatus": self.progress_note,
            "externalWorkOrder": (
                self.external_work_order.to_dict() if self.external_work_order else None
            ),
            "completedAt": self.completed_at,
            "cancelledAt": self.cancelled_at,
            "completedBy": self.completed_by,
            "result": self.result,
            "solutionNote": self.solution_note,
        }

    def to_public(self) -> dict[str, Any]:
        """Fields dashboards need for an open ticket."""
        return {
            "ticketId": self.ticket_id,
            "createdAt": self.created_at,
            "priority": self.priority.value,
            "issue": self.issue_text,
            "assetLabel": self.asset_label,
            "progressStatus": self.progress_note,
            "externalWorkOrder": (
                self.external_work_order.to_dict() if self.external_work_order else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MaintenanceTicket":
        return cls(
            ticket_id=str(data["ticketId"]),
            created_at=int(data["createdAt"]),
            status=TicketStatus(str(data.get("status") or "OPEN").strip().upper()),
            priority=Priority.parse(data.get("priority")),
            issue_text=str(data.get("issue") or ""),
            asset_label=str(data.get("assetLabel") or ""),
            progress_note=str(data.get("progressStatus") or ""),
            external_work_order=ExternalWorkOrder.from_dict(data.get("externalWorkOrder")),
            completed_at=data.get("completedAt"),
            cancelled_at=data.get("cancelledAt"),
            completed_by=data.get("completedBy"),
            result=data.get("result"),
            solution_note=data.get("solutionNote"),
        )


@dataclass(frozen=True)
class LogEntry:
    """Immutable lifecycle fact appended to the durable log."""

    type: LogType
    ts: int | None
    dept: str
    cell_id: str
    call_id: str | None = None
    ticket_id: str | None = None
    payload: Mapping[str, Any] = field(default_factory=dict)
    seq: int | None = None

    @property
    def correlation_id(self) -> str | None:
        return self.ticket_id or self.call_id

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)

    def with_seq(self, seq: int) -> "LogEntry":
        return replace(self, seq=seq)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.payload)
        data.update(
            {
                "type": self.type.value,
                "ts": self.ts,
                "dept": self.dept,
                "cellId": self.cell_id,
            }
        )
        if self.call_id is not None:
            data["callId"] = self.call_id
        if self.ticket_id is not None:
            data["ticketId"] = self.ticket_id
        return data


@dataclass(frozen=True)
class Interval:
    """Derived time range during which a department had an open item at a cell."""

    id: str
    dept: str
    cell_id: str
    start_ms: int
    end_ms: int
    status: str
    label: str
    detail: str = ""
    cell_name: str = ""
    issue: str = ""
    responder: str = ""
    result: str = ""
    priority: str = ""

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "dept": self.dept,
            "cellId": self.cell_id,
            "cellName": self.cell_name,
            "startMs": self.start_ms,
            "endMs": self.end_ms,
            "status": self.status,
            "label": self.label,
            "detail": self.detail,
            "issue": self.issue,
            "responder": self.responder,
            "result": self.result,
            "priority": self.priority,
        }


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None
