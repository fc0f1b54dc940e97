"""Versioned loader for persisted state snapshots.

Snapshots are normalized to the current shape once, at load time, before
any engine touches the state. Version 1 documents (no ``version`` key) come
from the single-slot era: maintenance used the same READY/WAITING slot as
every other department and CMMS data lived under ``fiix``.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

from andon_board.catalog import Catalog, DepartmentKind
from andon_board.domain.models import CallStatus, Priority, TicketStatus
from andon_board.utils.ids import make_id

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 2

_READY_SLOT: dict[str, Any] = {
    "status": CallStatus.READY.value,
    "requestedAt": None,
    "callId": None,
    "externalWorkOrder": None,
}


def detect_version(raw: Mapping[str, Any]) -> int:
    version = raw.get("version")
    if isinstance(version, int) and version >= 1:
        return version
    return 1


def _legacy_work_order(fiix: Any) -> dict[str, Any] | None:
    if not isinstance(fiix, Mapping) or not fiix:
        return None
    return {
        "externalId": fiix.get("workOrderId"),
        "displayNumber": (
            str(fiix["workOrderNumber"]) if fiix.get("workOrderNumber") is not None else None
        ),
        "externalUrl": fiix.get("url"),
        "requestDescription": fiix.get("requestDescription") or "",
        "requestPriority": fiix.get("requestPriority") or Priority.MEDIUM.value,
        "requestAsset": fiix.get("requestAsset") or "",
        "error": fiix.get("error"),
        "closeError": fiix.get("closeError"),
        "cancelError": fiix.get("cancelError"),
    }


def _migrate_slot_v1(cur: Any) -> dict[str, Any]:
    if not isinstance(cur, Mapping):
        return dict(_READY_SLOT)
    return {
        "status": cur.get("status") or CallStatus.READY.value,
        "requestedAt": cur.get("requestedAt"),
        "callId": cur.get("callId"),
        "externalWorkOrder": _legacy_work_order(cur.get("fiix")),
    }


def _migrate_ticket_v1(ticket: Mapping[str, Any]) -> dict[str, Any]:
    migrated = dict(ticket)
    if "externalWorkOrder" not in migrated:
        migrated["externalWorkOrder"] = _legacy_work_order(migrated.pop("fiix", None))
    return migrated


def _migrate_bucket_v1(
    cur: Any,
    *,
    id_factory: Callable[[], str],
) -> dict[str, Any]:
    if isinstance(cur, Mapping) and isinstance(cur.get("tickets"), list):
        return {
            "tickets": [
                _migrate_ticket_v1(t) for t in cur["tickets"] if isinstance(t, Mapping)
            ]
        }
    # Legacy single-slot maintenance record: a WAITING slot becomes one OPEN ticket.
    tickets: list[dict[str, Any]] = []
    if (
        isinstance(cur, Mapping)
        and cur.get("status") == CallStatus.WAITING.value
        and cur.get("requestedAt")
    ):
        fiix = cur.get("fiix") if isinstance(cur.get("fiix"), Mapping) else {}
        tickets.append(
            {
                "ticketId": id_factory(),
                "status": TicketStatus.OPEN.value,
                "createdAt": cur["requestedAt"],
                "priority": fiix.get("requestPriority") or Priority.MEDIUM.value,
                "issue": fiix.get("requestDescription") or "",
                "assetLabel": fiix.get("requestAsset") or "",
                "progressStatus": "",
                "externalWorkOrder": _legacy_work_order(fiix),
            }
        )
    return {"tickets": tickets}


def _upgrade_v1(
    raw: Mapping[str, Any],
    catalog: Catalog,
    id_factory: Callable[[], str],
) -> dict[str, Any]:
    active_in = raw.get("active") if isinstance(raw.get("active"), Mapping) else {}
    active: dict[str, dict[str, Any]] = {}
    for dept in catalog.departments:
        dept_in = active_in.get(dept.id) if isinstance(active_in.get(dept.id), Mapping) else {}
        active[dept.id] = {}
        for cell in catalog.cells:
            cur = dept_in.get(cell.id)
            if dept.kind is DepartmentKind.MULTI_TICKET:
                active[dept.id][cell.id] = _migrate_bucket_v1(cur, id_factory=id_factory)
            else:
                active[dept.id][cell.id] = _migrate_slot_v1(cur)
    return {
        "version": SNAPSHOT_VERSION,
        "active": active,
        "webhooks": dict(raw.get("webhooks") or {}),
    }


def _fill_catalog(doc: Mapping[str, Any], catalog: Catalog) -> dict[str, Any]:
    """Ensure every department x cell exists and drop ids the catalog no longer has."""
    active_in = doc.get("active") if isinstance(doc.get("active"), Mapping) else {}
    active: dict[str, dict[str, Any]] = {}
    for dept in catalog.departments:
        dept_in = active_in.get(dept.id) if isinstance(active_in.get(dept.id), Mapping) else {}
        active[dept.id] = {}
        for cell in catalog.cells:
            cur = dept_in.get(cell.id)
            if dept.kind is DepartmentKind.MULTI_TICKET:
                tickets = cur.get("tickets") if isinstance(cur, Mapping) else None
                active[dept.id][cell.id] = {
                    "tickets": [t for t in (tickets or []) if isinstance(t, Mapping)]
                }
            elif isinstance(cur, Mapping) and "tickets" not in cur:
                active[dept.id][cell.id] = {**_READY_SLOT, **cur}
            else:
                active[dept.id][cell.id] = dict(_READY_SLOT)
    return {
        "version": SNAPSHOT_VERSION,
        "active": active,
        "webhooks": dict(doc.get("webhooks") or {}),
    }


def normalize_snapshot(
    raw: Any,
    catalog: Catalog,
    *,
    id_factory: Callable[[], str] | None = None,
) -> dict[str, Any]:
    """Return a current-version snapshot document for ``catalog``."""
    make_ticket_id = id_factory or (lambda: make_id("mnt"))
    if not isinstance(raw, Mapping):
        return _fill_catalog({}, catalog)

    version = detect_version(raw)
    if version > SNAPSHOT_VERSION:
        raise ValueError(
            f"Snapshot version {version} is newer than supported version {SNAPSHOT_VERSION}"
        )
    doc: Mapping[str, Any] = raw
    if version == 1:
        logger.info("Migrating version 1 state snapshot to version %d", SNAPSHOT_VERSION)
        doc = _upgrade_v1(raw, catalog, make_ticket_id)
    return _fill_catalog(doc, catalog)
