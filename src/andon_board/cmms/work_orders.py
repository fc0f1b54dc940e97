"""Work order create, close and cancel on top of :class:`FiixClient`."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from andon_board.catalog import AssetOption, Catalog, Cell
from andon_board.cmms.client import FiixClient
from andon_board.domain.models import ExternalWorkOrder, Priority
from andon_board.errors import ExternalIntegrationError
from andon_board.utils.text import clean_text
from andon_board.utils.time import Clock, ms_to_iso, now_ms

logger = logging.getLogger(__name__)

FIELD_COMPLETED_BY = "intCompletedByUserID"
FIELD_COMPLETION_NOTES = "strCompletionNotes"
FIELD_DATE_COMPLETED = "dtmDateCompleted"

ASSET_CLASS = "Asset"
WORK_ORDER_ASSET_CLASS = "WorkOrderAsset"
WORK_ORDER_TASK_CLASS = "WorkOrderTask"
FIELD_TASK_ASSIGNEE = "intAssignedToUserID"

SUMMARY_DESCRIPTION_LIMIT = 120
NOTES_LIMIT = 4000
TASK_DESCRIPTION_LIMIT = 250
ASSIGNED_TASK_DESCRIPTION = "API Dispatch Task (assigned on completion)"


@dataclass(frozen=True)
class WorkOrderRequest:
    cell: Cell
    description: str
    priority: Priority = Priority.MEDIUM
    asset: AssetOption | None = None
    site_id: int | None = None


class WorkOrderService:
    """Best-effort mirror of maintenance tickets as CMMS work orders.

    Every method raises :class:`ExternalIntegrationError` on failure; the
    ticket engine decides what a failure means for local state.
    """

    def __init__(self, client: FiixClient, catalog: Catalog, *, clock: Clock = now_ms) -> None:
        self._client = client
        self._catalog = catalog
        self._clock = clock
        self._settings = client.settings

    @property
    def enabled(self) -> bool:
        return self._client.enabled

    def priority_id(self, priority: Priority) -> int | None:
        settings = self._settings
        if priority is Priority.HIGH and settings.priority_id_high:
            return settings.priority_id_high
        if priority is Priority.LOW and settings.priority_id_low:
            return settings.priority_id_low
        return settings.priority_id_medium or None

    async def resolve_asset_id(self, asset: AssetOption | None) -> int | None:
        if asset is None:
            return None
        if asset.kind == "id":
            return int(asset.value)
        objects = await self._client.find(
            ASSET_CLASS,
            fields="id,strCode,strName",
            filters=[{"ql": "strCode = ?", "parameters": [asset.value]}],
            max_objects=5,
        )
        asset_id = objects[0].get("id") if objects else None
        if not asset_id:
            raise ExternalIntegrationError(
                f"Could not resolve asset code {asset.value} to a Fiix asset id"
            )
        return int(asset_id)

    async def lookup_display_number(self, work_order_id: int) -> str | None:
        field = self._settings.field_number
        objects = await self._client.find(
            self._settings.work_order_class,
            fields=f"id,{field}",
            filters=[{"ql": "id = ?", "parameters": [int(work_order_id)]}],
            max_objects=1,
        )
        if not objects or objects[0].get(field) is None:
            return None
        return str(objects[0][field])

    def _details(self, request: WorkOrderRequest) -> str:
        asset_line = (
            f"Asset: {request.asset.label}"
            if request.asset
            else "Asset: General Maintenance (No Asset)"
        )
        return (
            f"Cell: {request.cell.name} ({request.cell.id})\n"
            f"{asset_line}\n"
            f"Priority: {request.priority.value}\n\n"
            f"Description:\n{request.description}\n\n"
            f"Submitted: {ms_to_iso(self._clock())}"
        )

    async def create(self, request: WorkOrderRequest) -> ExternalWorkOrder | None:
        """Create a work order for a new ticket.

        Returns:
            The correlation record, or ``None`` when CMMS credentials are not
            configured.
        """
        if not self.enabled:
            return None
        settings = self._settings
        wo_class = settings.work_order_class
        asset_id = await self.resolve_asset_id(request.asset)

        short_desc = clean_text(request.description)[:SUMMARY_DESCRIPTION_LIMIT]
        fields: dict[str, object] = {
            settings.field_summary: f"API Request - {request.cell.name} - {short_desc}",
            settings.field_details: self._details(request),
            settings.field_status: settings.status_id_requested,
        }
        if request.site_id:
            fields[settings.field_site] = int(request.site_id)
        created = await self._client.add(wo_class, fields)
        work_order_id = created.get("id")
        if not work_order_id:
            raise ExternalIntegrationError("Fiix did not return a work order id")
        work_order_id = int(work_order_id)

        changes: dict[str, object] = {}
        if request.site_id:
            changes[settings.field_site] = int(request.site_id)
        priority_id = self.priority_id(request.priority)
        if priority_id:
            changes[settings.field_priority] = priority_id
        if changes:
            await self._client.change(wo_class, work_order_id, changes)

        if asset_id:
            await self._client.add(
                WORK_ORDER_ASSET_CLASS,
                {"intWorkOrderID": work_order_id, "intAssetID": asset_id},
            )

        display_number: str | None = None
        try:
            display_number = await self.lookup_display_number(work_order_id)
        except ExternalIntegrationError as exc:
            logger.warning("Work order %s number lookup failed: %s", work_order_id, exc)

        logger.info(
            "Created work order %s (%s) for %s",
            work_order_id,
            display_number or "no number",
            request.cell.id,
        )
        return ExternalWorkOrder(
            external_id=work_order_id,
            display_number=display_number,
            external_url=settings.resolved_ui_base_url,
            request_description=request.description,
            request_priority=request.priority.value,
            request_asset=request.asset.label if request.asset else "",
        )

    async def _assign(self, work_order_id: int, user_id: int) -> None:
        tasks = await self._client.find(
            WORK_ORDER_TASK_CLASS,
            fields="id,intWorkOrderID,strDescription,intAssignedToUserID",
            filters=[{"ql": "intWorkOrderID = ?", "parameters": [work_order_id]}],
            max_objects=50,
        )
        tasks = [t for t in tasks if t.get("id")]
        if tasks:
            first = min(tasks, key=lambda t: int(t["id"]))
            await self._client.change(
                WORK_ORDER_TASK_CLASS, int(first["id"]), {FIELD_TASK_ASSIGNEE: user_id}
            )
            return
        await self._client.add(
            WORK_ORDER_TASK_CLASS,
            {
                "intWorkOrderID": work_order_id,
                "strDescription": ASSIGNED_TASK_DESCRIPTION[:TASK_DESCRIPTION_LIMIT],
                FIELD_TASK_ASSIGNEE: user_id,
            },
        )

    async def close(self, work_order_id: int, *, responder: str, notes: str) -> None:
        """Record completion on the work order and move it to closed-complete."""
        settings = self._settings
        wo_class = settings.work_order_class
        user_id = self._catalog.cmms_user_id(responder)
        if user_id is not None:
            try:
                await self._assign(work_order_id, user_id)
            except ExternalIntegrationError as exc:
                logger.error("Fiix task assignment failed for %s: %s", work_order_id, exc)
        else:
            logger.debug("No CMMS user for responder %r; closing without assignee", responder)

        completion: dict[str, object] = {
            FIELD_DATE_COMPLETED: self._clock(),
            FIELD_COMPLETION_NOTES: notes[:NOTES_LIMIT],
        }
        if user_id is not None:
            completion[FIELD_COMPLETED_BY] = user_id
        await self._client.change(wo_class, work_order_id, completion)
        await self._client.change(
            wo_class,
            work_order_id,
            {settings.field_status: settings.status_id_closed_complete},
        )
        logger.info("Closed work order %s", work_order_id)

    async def cancel(self, work_order_id: int, *, actor: str, reason: str = "") -> None:
        settings = self._settings
        if settings.status_id_cancelled is None:
            raise ExternalIntegrationError("FIIX_WO_STATUS_ID_CANCELLED is not set")
        note = f"Cancelled by {actor}"
        if reason:
            note += f"\n{reason}"
        await self._client.change(
            settings.work_order_class,
            work_order_id,
            {
                settings.field_status: settings.status_id_cancelled,
                FIELD_COMPLETION_NOTES: note[:NOTES_LIMIT],
            },
        )
        logger.info("Cancelled work order %s", work_order_id)
