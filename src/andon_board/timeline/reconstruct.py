"""Rebuild open/closed intervals ("bars") by replaying the durable log.

A request entry opens an interval keyed by its correlation id (ticket id or
call id). The earliest terminal entry with the same id closes it. Cancelled
intervals are never drawn; intervals with no terminal entry run until
``min(now, window end)``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Collection, Iterable, Mapping

from andon_board.catalog import Catalog
from andon_board.domain.models import Interval, LogEntry, LogType
from andon_board.timeline.window import TimeWindow
from andon_board.utils.time import DAY_MS

logger = logging.getLogger(__name__)

DEFAULT_PADDING_MS = 7 * DAY_MS

STATUS_COMPLETED = "COMPLETED"
STATUS_OPEN = "OPEN"


@dataclass
class _Group:
    request: LogEntry | None = None
    terminals: list[LogEntry] = field(default_factory=list)


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _end_ts(entry: LogEntry, fallback_start: int | None) -> int | None:
    """Terminal timestamp; without one, ``start + elapsedMs`` when known."""
    if entry.ts is not None:
        return entry.ts
    elapsed = _as_int(entry.get("elapsedMs"))
    start = _as_int(entry.get("startedAt"))
    if start is None:
        start = fallback_start
    if elapsed is None or start is None:
        return None
    return start + elapsed


def _work_order(entry: LogEntry | None) -> Mapping[str, Any]:
    if entry is None:
        return {}
    current = entry.get("externalWorkOrder")
    if isinstance(current, Mapping):
        return current
    legacy = entry.get("fiix")
    if isinstance(legacy, Mapping):
        return {
            "displayNumber": legacy.get("workOrderNumber"),
            "externalId": legacy.get("workOrderId"),
            "requestDescription": legacy.get("requestDescription"),
        }
    return {}


def _detail(request: LogEntry, end: LogEntry | None) -> str:
    req_wo, end_wo = _work_order(request), _work_order(end)
    number = req_wo.get("displayNumber") or end_wo.get("displayNumber")
    if number:
        return str(number)
    external_id = req_wo.get("externalId") or end_wo.get("externalId")
    if external_id:
        return f"#{external_id}"
    return ""


def _first_text(*values: Any) -> str:
    for value in values:
        if value:
            return str(value)
    return ""


def _in_window(ts: int | None, window: TimeWindow) -> bool:
    return ts is None or window.start_ms <= ts <= window.end_ms


def group_by_correlation(
    entries: Iterable[LogEntry],
    *,
    search: TimeWindow,
    departments: Collection[str] | None = None,
) -> dict[str, _Group]:
    groups: dict[str, _Group] = {}
    for entry in entries:
        if departments is not None and entry.dept not in departments:
            continue
        key = entry.correlation_id
        if not key or not _in_window(entry.ts, search):
            continue
        group = groups.setdefault(key, _Group())
        if entry.type is LogType.REQUEST:
            if entry.ts is None:
                continue
            # Retried writes can duplicate a request; the earliest wins.
            if group.request is None or entry.ts < (group.request.ts or 0):
                group.request = entry
        else:
            group.terminals.append(entry)
    return groups


def reconstruct_intervals(
    entries: Iterable[LogEntry],
    window: TimeWindow,
    *,
    now: int,
    catalog: Catalog | None = None,
    departments: Collection[str] | None = None,
    padding_ms: int = DEFAULT_PADDING_MS,
) -> list[Interval]:
    """Intervals overlapping ``window``, sorted by start then longest first."""
    groups = group_by_correlation(
        entries, search=window.padded(padding_ms), departments=departments
    )
    intervals: list[Interval] = []
    for key, group in groups.items():
        request = group.request
        if request is None or request.ts is None:
            continue
        raw_start = request.ts

        end_entry: LogEntry | None = None
        raw_end: int | None = None
        for terminal in group.terminals:
            ts = _end_ts(terminal, raw_start)
            if ts is None:
                continue
            if raw_end is None or ts < raw_end:
                end_entry, raw_end = terminal, ts

        if end_entry is None or raw_end is None:
            status = STATUS_OPEN
            closed_at = min(now, window.end_ms)
        elif end_entry.type is LogType.CANCEL:
            continue
        else:
            status = STATUS_COMPLETED
            closed_at = raw_end

        start_ms = max(raw_start, window.start_ms)
        end_ms = min(closed_at, window.end_ms)
        if end_ms <= start_ms:
            continue

        dept = request.dept
        label = dept
        cell_name = _first_text(request.get("cellName"))
        if catalog is not None:
            if catalog.has_department(dept):
                label = catalog.department(dept).label
            if not cell_name and catalog.has_cell(request.cell_id):
                cell_name = catalog.cell(request.cell_id).name

        end_payload: Mapping[str, Any] = end_entry.payload if end_entry else {}
        intervals.append(
            Interval(
                id=key,
                dept=dept,
                cell_id=request.cell_id,
                start_ms=start_ms,
                end_ms=end_ms,
                status=status,
                label=label,
                detail=_detail(request, end_entry),
                cell_name=cell_name or request.cell_id,
                issue=_first_text(
                    request.get("note"),
                    request.get("issue"),
                    end_payload.get("issue"),
                    _work_order(request).get("requestDescription"),
                ),
                responder=_first_text(end_payload.get("responderName")),
                result=_first_text(end_payload.get("result")),
                priority=_first_text(request.get("priority")),
            )
        )

    intervals.sort(key=lambda i: (i.start_ms, -i.duration_ms))
    return intervals
