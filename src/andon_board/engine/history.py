"""Completion history views and CSV export."""

from __future__ import annotations

import csv
import io
from typing import Any, Iterable, Mapping

from andon_board.domain.models import LogEntry
from andon_board.utils.time import ms_to_iso

CSV_HEADER = (
    "CompletedAt",
    "Department",
    "Cell",
    "ResponderName",
    "PartNumber",
    "Result",
    "ElapsedSeconds",
    "Note",
    "FiixWorkOrderId",
    "FiixWorkOrderNumber",
    "FiixUrl",
    "OriginalIssue",
    "TicketId",
    "CallId",
    "ProgressStatus",
)


def _work_order(entry: LogEntry) -> Mapping[str, Any]:
    value = entry.get("externalWorkOrder")
    return value if isinstance(value, Mapping) else {}


def csv_row(entry: LogEntry) -> list[Any]:
    work_order = _work_order(entry)
    elapsed = entry.get("elapsedMs")
    return [
        ms_to_iso(entry.ts) if entry.ts is not None else "",
        entry.get("deptName") or entry.dept,
        entry.get("cellName") or entry.cell_id,
        entry.get("responderName") or "",
        entry.get("partNumber") or "",
        entry.get("result") or "",
        round(elapsed / 1000) if elapsed else "",
        entry.get("note") or "",
        work_order.get("externalId") or "",
        work_order.get("displayNumber") or "",
        work_order.get("externalUrl") or "",
        work_order.get("requestDescription") or entry.get("issue") or "",
        entry.ticket_id or "",
        entry.call_id or "",
        entry.get("progressStatus") or "",
    ]


def to_csv(entries: Iterable[LogEntry]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for entry in entries:
        writer.writerow(csv_row(entry))
    return buffer.getvalue()
