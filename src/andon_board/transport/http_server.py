"""Starlette HTTP and WebSocket surface for tablets and dashboards."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from andon_board.app import AppContext, get_app_context
from andon_board.errors import AndonError, ValidationError
from andon_board.molds.monitor import MOLDS_EVENT, MOLDS_ROOM
from andon_board.push.hub import cell_room, dept_room
from andon_board.timeline.window import parse_range
from andon_board.utils.text import clean_text

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 1000
DEFAULT_EXPORT_LIMIT = 5000


async def _error_handler(request: Request, exc: Exception) -> Response:
    status = exc.status_code if isinstance(exc, AndonError) else 500
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse({"ok": False, "error": str(exc)}, status_code=status)


async def _json_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError("Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise ValidationError("JSON body must be an object")
    return body


def _positive_int(value: str | None, default: int) -> int:
    try:
        parsed = int(value) if value else default
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def create_http_app(context: AppContext | None = None) -> Starlette:
    """Create the andon board application."""
    ctx = context or get_app_context()
    settings = ctx.settings
    board = ctx.board
    catalog = ctx.catalog

    def require_dept(value: Any) -> str:
        dept_id = clean_text(value)
        if not dept_id or not catalog.has_department(dept_id):
            raise ValidationError("Missing or invalid dept")
        return dept_id

    def require_cell(value: Any) -> str:
        cell_id = clean_text(value)
        if not cell_id or not catalog.has_cell(cell_id):
            raise ValidationError("Missing or invalid cellId")
        return cell_id

    middleware: list[Middleware] = []
    if settings.server.http_enable_cors and settings.server.http_allowed_origins:
        from starlette.middleware.cors import CORSMiddleware

        middleware.append(
            Middleware(
                CORSMiddleware,
                allow_origins=list(settings.server.http_allowed_origins),
                allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
                allow_headers=["Content-Type", "Accept"],
            )
        )

    async def health_handler(request: Request) -> Response:
        return JSONResponse({"status": "healthy"})

    async def config_handler(request: Request) -> Response:
        return JSONResponse(catalog.to_public())

    async def snapshot_handler(request: Request) -> Response:
        dept_id = require_dept(request.query_params.get("dept"))
        return JSONResponse(board.dept_snapshot(dept_id))

    async def cell_snapshot_handler(request: Request) -> Response:
        return JSONResponse(board.cell_snapshot(request.path_params["cell_id"]))

    async def request_handler(request: Request) -> Response:
        body = await _json_body(request)
        dept_id = require_dept(body.get("dept"))
        cell_id = require_cell(body.get("cellId"))
        call_id = await board.request(dept_id, cell_id)
        return JSONResponse({"ok": True, "callId": call_id})

    async def cancel_handler(request: Request) -> Response:
        body = await _json_body(request)
        dept_id = require_dept(body.get("dept"))
        cell_id = require_cell(body.get("cellId"))
        result = await board.cancel(
            dept_id,
            cell_id,
            call_id=body.get("callId"),
            ticket_id=body.get("ticketId"),
            cancelled_by=body.get("cancelledBy"),
            reason=body.get("reason"),
        )
        return JSONResponse(result)

    async def complete_handler(request: Request) -> Response:
        body = await _json_body(request)
        dept_id = require_dept(body.get("dept"))
        cell_id = require_cell(body.get("cellId"))
        result = await board.complete(
            dept_id,
            cell_id,
            responder=body.get("responderName"),
            result=body.get("result"),
            note=body.get("note"),
            part_number=body.get("partNumber"),
            ticket_id=body.get("ticketId"),
        )
        return JSONResponse(result)

    async def maintenance_request_handler(request: Request) -> Response:
        body = await _json_body(request)
        cell_id = require_cell(body.get("cellId"))
        ticket = await board.tickets.open_ticket(
            cell_id,
            issue_text=body.get("description"),
            priority=body.get("priority"),
            asset_value=body.get("assetValue"),
        )
        return JSONResponse(
            {
                "ok": True,
                "ticketId": ticket.ticket_id,
                "externalWorkOrder": (
                    ticket.external_work_order.to_dict() if ticket.external_work_order else None
                ),
            }
        )

    async def ticket_status_handler(request: Request) -> Response:
        body = await _json_body(request)
        cell_id = require_cell(body.get("cellId"))
        await board.tickets.set_progress(
            cell_id, clean_text(body.get("ticketId")) or None, body.get("progressStatus")
        )
        return JSONResponse({"ok": True})

    async def assets_handler(request: Request) -> Response:
        cell_id = require_cell(request.query_params.get("cellId"))
        assets = [a.model_dump() for a in catalog.asset_options(cell_id)]
        return JSONResponse({"ok": True, "assets": assets})

    async def all_assets_handler(request: Request) -> Response:
        assets = [a.model_dump() for a in catalog.all_asset_options()]
        return JSONResponse({"ok": True, "assets": assets})

    async def responders_handler(request: Request) -> Response:
        if request.method == "GET":
            dept_id = require_dept(request.query_params.get("dept"))
            names = await asyncio.to_thread(ctx.responders.list, dept_id)
        elif request.method == "POST":
            body = await _json_body(request)
            dept_id = require_dept(body.get("dept"))
            names = await asyncio.to_thread(ctx.responders.add, dept_id, body.get("name"))
        else:
            dept_id = require_dept(request.query_params.get("dept"))
            names = await asyncio.to_thread(
                ctx.responders.remove, dept_id, request.query_params.get("name")
            )
        return JSONResponse({"ok": True, "dept": dept_id, "responders": names})

    async def history_handler(request: Request) -> Response:
        dept_id = require_dept(request.query_params.get("dept"))
        if request.method == "DELETE":
            removed = await board.clear_history(dept_id)
            return JSONResponse({"ok": True, "removed": removed})
        limit = _positive_int(request.query_params.get("n"), DEFAULT_HISTORY_LIMIT)
        entries = await board.history(dept_id, limit)
        return JSONResponse({"ok": True, "dept": dept_id, "logs": [e.to_dict() for e in entries]})

    async def export_handler(request: Request) -> Response:
        dept_id = require_dept(request.query_params.get("dept"))
        limit = _positive_int(request.query_params.get("n"), DEFAULT_EXPORT_LIMIT)
        body = await board.export_csv(dept_id, limit)
        return Response(
            body,
            media_type="text/csv",
            headers={"Content-Disposition": f"attachment; filename={dept_id}_history.csv"},
        )

    async def timeline_handler(request: Request) -> Response:
        params = request.query_params
        window = parse_range(
            params.get("start"), params.get("end"), max_days=settings.timeline.max_range_days
        )
        departments = [
            require_dept(d) for d in (params.get("dept") or "").split(",") if d.strip()
        ]
        intervals = await board.intervals(window, departments or None)
        return JSONResponse(
            {
                "ok": True,
                **window.to_dict(),
                "intervals": [i.to_dict() for i in intervals],
            }
        )

    async def plug_performance_handler(request: Request) -> Response:
        params = request.query_params
        window = parse_range(
            params.get("start"), params.get("end"), max_days=settings.timeline.max_range_days
        )
        return JSONResponse(await board.plug_performance(window))

    async def webhooks_handler(request: Request) -> Response:
        if request.method == "GET":
            return JSONResponse({"ok": True, "webhooks": board.masked_webhooks()})
        body = await _json_body(request)
        if body.get("dept") and "url" in body:
            updates = {require_dept(str(body["dept"]).lower()): body.get("url")}
        else:
            updates = {
                str(k).lower(): v
                for k, v in body.items()
                if catalog.has_department(str(k).lower())
            }
        updated = board.set_webhooks(updates)
        return JSONResponse({"ok": True, "updated": updated, "webhooks": board.masked_webhooks()})

    async def webhook_test_handler(request: Request) -> Response:
        if request.method == "GET":
            fields: dict[str, Any] = dict(request.query_params)
        else:
            fields = await _json_body(request)
        dept_id = require_dept(str(fields.pop("dept", None) or "mfg-eng").lower())
        sample = {
            "cellId": "test-cell",
            "cellName": "Test Cell",
            "note": f"Webhook test from server ({request.method})",
            **{k: v for k, v in fields.items() if v not in (None, "")},
        }
        result = await board.test_webhook(dept_id, sample)
        return JSONResponse({"ok": True, "sent": sample, "result": result.to_dict()})

    async def mold_snapshot_handler(request: Request) -> Response:
        return JSONResponse(ctx.molds.snapshot)

    async def mold_config_handler(request: Request) -> Response:
        if request.method == "GET":
            return JSONResponse(ctx.molds.config.to_dict())
        body = await _json_body(request)
        config = await ctx.molds.update_config(body)
        return JSONResponse(config.to_dict())

    async def websocket_handler(websocket: WebSocket) -> None:
        dept_id = clean_text(websocket.query_params.get("dept"))
        cell_id = clean_text(websocket.query_params.get("cellId"))
        rooms: set[str] = set()
        if catalog.has_department(dept_id):
            rooms.add(dept_room(dept_id))
        if catalog.has_cell(cell_id):
            rooms.add(cell_room(cell_id))
        if websocket.query_params.get("room") == MOLDS_ROOM:
            rooms.add(MOLDS_ROOM)

        await websocket.accept()
        sub = board.hub.subscribe(rooms)
        receiver = asyncio.create_task(_wait_for_disconnect(websocket))
        try:
            if dept_room(dept_id) in rooms:
                await websocket.send_json(
                    {"event": "deptSnapshot", "data": board.dept_snapshot(dept_id)}
                )
            if cell_room(cell_id) in rooms:
                await websocket.send_json(
                    {"event": "cellSnapshot", "data": board.cell_snapshot(cell_id)}
                )
            if MOLDS_ROOM in rooms:
                await websocket.send_json({"event": MOLDS_EVENT, "data": ctx.molds.snapshot})
            while True:
                getter = asyncio.create_task(sub.next())
                done, _ = await asyncio.wait(
                    {getter, receiver}, return_when=asyncio.FIRST_COMPLETED
                )
                if receiver in done:
                    getter.cancel()
                    break
                await websocket.send_json(getter.result())
        except WebSocketDisconnect:
            pass
        finally:
            receiver.cancel()
            board.hub.unsubscribe(sub)

    routes = [
        Route("/health", endpoint=health_handler, methods=["GET"]),
        Route("/api/config", endpoint=config_handler, methods=["GET"]),
        Route("/api/snapshot", endpoint=snapshot_handler, methods=["GET"]),
        Route("/api/cell/{cell_id}/snapshot", endpoint=cell_snapshot_handler, methods=["GET"]),
        Route("/api/request", endpoint=request_handler, methods=["POST"]),
        Route("/api/cancel", endpoint=cancel_handler, methods=["POST"]),
        Route("/api/complete", endpoint=complete_handler, methods=["POST"]),
        Route(
            "/api/maintenance/request", endpoint=maintenance_request_handler, methods=["POST"]
        ),
        Route(
            "/api/maintenance/ticket/status", endpoint=ticket_status_handler, methods=["POST"]
        ),
        Route("/api/maintenance/assets", endpoint=assets_handler, methods=["GET"]),
        Route("/api/maintenance/assets/all", endpoint=all_assets_handler, methods=["GET"]),
        Route(
            "/api/responders", endpoint=responders_handler, methods=["GET", "POST", "DELETE"]
        ),
        Route("/api/history", endpoint=history_handler, methods=["GET", "DELETE"]),
        Route("/api/export.csv", endpoint=export_handler, methods=["GET"]),
        Route("/api/timeline", endpoint=timeline_handler, methods=["GET"]),
        Route(
            "/api/oven/plug-performance", endpoint=plug_performance_handler, methods=["GET"]
        ),
        Route("/api/molds/snapshot", endpoint=mold_snapshot_handler, methods=["GET"]),
        Route("/api/molds/config", endpoint=mold_config_handler, methods=["GET", "POST"]),
        Route("/api/debug/webhooks", endpoint=webhooks_handler, methods=["GET", "POST"]),
        Route("/api/webhook-test", endpoint=webhook_test_handler, methods=["GET", "POST"]),
        WebSocketRoute("/ws", endpoint=websocket_handler),
    ]

    @asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info(
            "Andon board started: %d departments, %d cells",
            len(catalog.departments),
            len(catalog.cells),
        )
        ctx.molds.start()
        try:
            yield
        finally:
            logger.info("Stopping andon board, flushing state...")
            await ctx.aclose()

    app = Starlette(
        routes=routes,
        middleware=middleware,
        exception_handlers={AndonError: _error_handler},
        lifespan=lifespan,
    )
    app.state.context = ctx
    return app


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
