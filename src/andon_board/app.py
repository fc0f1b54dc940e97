"""Application context assembly."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

import httpx

from andon_board.catalog import Catalog
from andon_board.catalog.loader import load_catalog
from andon_board.cmms.client import FiixClient
from andon_board.cmms.work_orders import WorkOrderService
from andon_board.config import Settings, load_settings
from andon_board.engine.board import AndonBoard
from andon_board.engine.calls import CallEngine
from andon_board.engine.tasks import TaskRunner
from andon_board.engine.tickets import TicketEngine
from andon_board.molds.monitor import MoldMonitor
from andon_board.notify.webhooks import WebhookNotifier
from andon_board.push.hub import SnapshotHub
from andon_board.storage.db import SqliteStore
from andon_board.storage.durable_log import DurableLog
from andon_board.storage.responders import ResponderRegistry
from andon_board.storage.state_store import SnapshotPersister
from andon_board.timeline.telemetry import NullTelemetrySource, TelemetrySource
from andon_board.utils.time import Clock, now_ms

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Application-wide dependency container.

    Built once at startup. The board owns every piece of mutable state; the
    remaining fields are here so the HTTP layer and shutdown can reach them.
    """

    settings: Settings
    catalog: Catalog
    store: SqliteStore
    board: AndonBoard
    responders: ResponderRegistry
    cmms: FiixClient
    notifier: WebhookNotifier
    molds: MoldMonitor

    async def aclose(self) -> None:
        """Flush pending work, persist the final snapshot and release clients."""
        await self.molds.stop()
        await self.board.flush()
        await self.cmms.aclose()
        await self.notifier.aclose()
        self.store.close()


def build_app_context(
    settings: Settings,
    *,
    cmms_transport: httpx.AsyncBaseTransport | None = None,
    notify_transport: httpx.AsyncBaseTransport | None = None,
    telemetry: TelemetrySource | None = None,
    clock: Clock = now_ms,
) -> AppContext:
    catalog = Catalog(load_catalog(settings.catalog.path))
    store = SqliteStore(settings.storage.sqlite_path, wal=settings.storage.sqlite_wal)
    log = DurableLog(store)
    persister = SnapshotPersister(store)
    state = persister.load(catalog)
    runner = TaskRunner()
    telemetry = telemetry or NullTelemetrySource()
    hub = SnapshotHub(max_queue=settings.server.push_queue_size)

    cmms = FiixClient(settings.cmms, transport=cmms_transport, clock=clock)
    work_orders = WorkOrderService(cmms, catalog, clock=clock) if cmms.enabled else None
    if work_orders is None:
        logger.info("Fiix credentials not configured; work orders will not be created")

    calls = CallEngine(state, log, clock=clock)
    tickets = TicketEngine(
        state,
        log,
        runner=runner,
        work_orders=work_orders,
        work_order_timeout=settings.cmms.operation_timeout_seconds,
        clock=clock,
    )
    notifier = WebhookNotifier(settings.notify, transport=notify_transport)
    board = AndonBoard(
        state=state,
        log=log,
        persister=persister,
        runner=runner,
        calls=calls,
        tickets=tickets,
        hub=hub,
        notifier=notifier,
        env_webhooks=settings.notify.webhooks,
        timeline=settings.timeline,
        telemetry=telemetry,
        log_read_limit=settings.storage.log_read_limit,
        clock=clock,
    )
    return AppContext(
        settings=settings,
        catalog=catalog,
        store=store,
        board=board,
        responders=ResponderRegistry(store, catalog),
        cmms=cmms,
        notifier=notifier,
        molds=MoldMonitor(
            telemetry,
            store,
            hub,
            refresh_seconds=settings.molds.refresh_seconds,
            clock=clock,
        ),
    )


@lru_cache(maxsize=1)
def get_app_context() -> AppContext:
    """Get or create the process-wide application context."""
    return build_app_context(load_settings())
