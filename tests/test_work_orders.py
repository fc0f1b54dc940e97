from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from andon_board.catalog import AssetOption, Catalog
from andon_board.cmms.client import FiixClient
from andon_board.cmms.work_orders import (
    FIELD_COMPLETED_BY,
    FIELD_COMPLETION_NOTES,
    FIELD_DATE_COMPLETED,
    WorkOrderRequest,
    WorkOrderService,
)
from andon_board.config import CMMSSettings
from andon_board.domain.models import Priority
from andon_board.errors import ExternalIntegrationError

from conftest import T0, FakeClock


class FakeFiix:
    """Records commands and answers like a small Fiix tenant."""

    def __init__(self, *, tasks: list[dict[str, Any]] | None = None, fail_on: str | None = None):
        self.commands: list[dict[str, Any]] = []
        self.tasks = tasks or []
        self.fail_on = fail_on

    def __call__(self, request: httpx.Request) -> httpx.Response:
        command = json.loads(request.content)
        self.commands.append(command)
        key = f"{command['_maCn']}:{command['className']}"
        if key == self.fail_on:
            return httpx.Response(200, json={"error": {"message": f"{key} rejected"}})
        if key == "AddRequest:WorkOrder":
            return httpx.Response(200, json={"object": {"id": 9001}})
        if key == "FindRequest:WorkOrder":
            return httpx.Response(200, json={"objects": [{"id": 9001, "strCode": "WO-9001"}]})
        if key == "FindRequest:Asset":
            return httpx.Response(200, json={"objects": [{"id": 314, "strCode": "OV-1"}]})
        if key == "FindRequest:WorkOrderTask":
            return httpx.Response(200, json={"objects": self.tasks})
        if command["_maCn"] == "AddRequest":
            return httpx.Response(200, json={"object": {"id": 1}})
        return httpx.Response(200, json={"count": 1})

    def kinds(self) -> list[str]:
        return [f"{c['_maCn']}:{c['className']}" for c in self.commands]


def _service(catalog: Catalog, fake: FakeFiix, **settings: Any) -> WorkOrderService:
    values: dict[str, Any] = {
        "base_url": "https://plant.macmms.com",
        "ui_base_url": "https://plant-ui.macmms.com/",
        "app_key": "app",
        "access_key": "acc",
        "secret_key": "sec",
        "priority_id_high": 11,
        "priority_id_medium": 12,
    }
    values.update(settings)
    clock = FakeClock()
    client = FiixClient(CMMSSettings(**values), transport=httpx.MockTransport(fake), clock=clock)
    return WorkOrderService(client, catalog, clock=clock)


def _request(catalog: Catalog, asset: AssetOption | None = None, **kwargs) -> WorkOrderRequest:
    return WorkOrderRequest(
        cell=catalog.cell("c1"),
        description=kwargs.pop("description", "Oven door will not latch"),
        priority=kwargs.pop("priority", Priority.HIGH),
        asset=asset,
        site_id=kwargs.pop("site_id", 7),
    )


@pytest.mark.asyncio
async def test_create_runs_full_sequence(catalog: Catalog) -> None:
    fake = FakeFiix()
    service = _service(catalog, fake)

    correlation = await service.create(_request(catalog, catalog.find_asset("c1", "OV-1")))

    assert fake.kinds() == [
        "FindRequest:Asset",
        "AddRequest:WorkOrder",
        "ChangeRequest:WorkOrder",
        "AddRequest:WorkOrderAsset",
        "FindRequest:WorkOrder",
    ]
    add = fake.commands[1]["object"]
    assert add["strDescription"] == "API Request - Cell One - Oven door will not latch"
    assert add["intWorkOrderStatusID"] == 28696
    assert add["intSiteID"] == 7
    assert "Asset: Oven" in add["strWorkInstructions"]
    assert "Priority: High" in add["strWorkInstructions"]
    assert fake.commands[2]["object"]["intPriorityID"] == 11
    assert fake.commands[3]["object"] == {
        "className": "WorkOrderAsset",
        "intWorkOrderID": 9001,
        "intAssetID": 314,
    }
    assert correlation.external_id == 9001
    assert correlation.display_number == "WO-9001"
    assert correlation.external_url == "https://plant-ui.macmms.com"
    assert correlation.request_asset == "Oven"
    assert correlation.request_priority == "High"


@pytest.mark.asyncio
async def test_create_without_asset_or_site(catalog: Catalog) -> None:
    fake = FakeFiix()
    service = _service(catalog, fake, priority_id_medium=None)

    correlation = await service.create(
        _request(catalog, priority=Priority.MEDIUM, site_id=None, description="x" * 300)
    )

    assert fake.kinds() == ["AddRequest:WorkOrder", "FindRequest:WorkOrder"]
    summary = fake.commands[0]["object"]["strDescription"]
    assert summary == "API Request - Cell One - " + "x" * 120
    assert "General Maintenance (No Asset)" in fake.commands[0]["object"]["strWorkInstructions"]
    assert correlation.external_id == 9001


@pytest.mark.asyncio
async def test_create_with_asset_id_skips_lookup(catalog: Catalog) -> None:
    fake = FakeFiix()
    service = _service(catalog, fake)

    await service.create(_request(catalog, catalog.find_asset("c1", "101")))

    assert "FindRequest:Asset" not in fake.kinds()
    link = next(c for c in fake.commands if c["className"] == "WorkOrderAsset")
    assert link["object"]["intAssetID"] == 101


@pytest.mark.asyncio
async def test_create_returns_none_when_disabled(catalog: Catalog) -> None:
    fake = FakeFiix()
    service = _service(catalog, fake, secret_key="")

    assert await service.create(_request(catalog)) is None
    assert fake.commands == []


@pytest.mark.asyncio
async def test_number_lookup_failure_is_tolerated(catalog: Catalog) -> None:
    service = _service(catalog, FakeFiix(fail_on="FindRequest:WorkOrder"))

    correlation = await service.create(_request(catalog))

    assert correlation.external_id == 9001
    assert correlation.display_number is None


@pytest.mark.asyncio
async def test_create_failures_raise(catalog: Catalog) -> None:
    service = _service(catalog, FakeFiix(fail_on="AddRequest:WorkOrder"))
    with pytest.raises(ExternalIntegrationError, match="rejected"):
        await service.create(_request(catalog))


@pytest.mark.asyncio
async def test_unresolvable_asset_code_raises(catalog: Catalog) -> None:
    class NoAssets(FakeFiix):
        def __call__(self, request: httpx.Request) -> httpx.Response:
            if json.loads(request.content)["className"] == "Asset":
                return httpx.Response(200, json={"objects": []})
            return super().__call__(request)

    service = _service(catalog, NoAssets())
    with pytest.raises(ExternalIntegrationError, match="Could not resolve asset code OV-1"):
        await service.create(_request(catalog, catalog.find_asset("c1", "OV-1")))


@pytest.mark.asyncio
async def test_close_reassigns_lowest_existing_task(catalog: Catalog) -> None:
    fake = FakeFiix(tasks=[{"id": 8}, {"id": 3}, {"strDescription": "no id"}])
    service = _service(catalog, fake)

    await service.close(9001, responder="jane doe", notes="Fixed\nCompleted by jane doe")

    assert fake.kinds() == [
        "FindRequest:WorkOrderTask",
        "ChangeRequest:WorkOrderTask",
        "ChangeRequest:WorkOrder",
        "ChangeRequest:WorkOrder",
    ]
    assert fake.commands[1]["id"] == 3
    assert fake.commands[1]["object"]["intAssignedToUserID"] == 55
    completion = fake.commands[2]["object"]
    assert completion[FIELD_DATE_COMPLETED] == T0
    assert completion[FIELD_COMPLETION_NOTES] == "Fixed\nCompleted by jane doe"
    assert completion[FIELD_COMPLETED_BY] == 55
    assert fake.commands[3]["object"]["intWorkOrderStatusID"] == 28702


@pytest.mark.asyncio
async def test_close_adds_task_when_none_exist(catalog: Catalog) -> None:
    fake = FakeFiix()
    service = _service(catalog, fake)

    await service.close(9001, responder="Jane Doe", notes="n")

    assert fake.kinds()[:2] == ["FindRequest:WorkOrderTask", "AddRequest:WorkOrderTask"]
    assert fake.commands[1]["object"]["intWorkOrderID"] == 9001


@pytest.mark.asyncio
async def test_close_without_known_user_or_with_assign_failure(catalog: Catalog) -> None:
    fake = FakeFiix()
    await _service(catalog, fake).close(9001, responder="Stranger", notes="n")
    assert fake.kinds() == ["ChangeRequest:WorkOrder", "ChangeRequest:WorkOrder"]
    assert FIELD_COMPLETED_BY not in fake.commands[0]["object"]

    failing = FakeFiix(fail_on="FindRequest:WorkOrderTask")
    await _service(catalog, failing).close(9001, responder="Jane Doe", notes="n")
    assert failing.kinds()[-1] == "ChangeRequest:WorkOrder"


@pytest.mark.asyncio
async def test_cancel(catalog: Catalog) -> None:
    with pytest.raises(ExternalIntegrationError, match="FIIX_WO_STATUS_ID_CANCELLED"):
        await _service(catalog, FakeFiix()).cancel(9001, actor="operator")

    fake = FakeFiix()
    await _service(catalog, fake, status_id_cancelled=28705).cancel(
        9001, actor="Lead", reason="Raised twice"
    )

    (command,) = fake.commands
    assert command["object"]["intWorkOrderStatusID"] == 28705
    assert command["object"][FIELD_COMPLETION_NOTES] == "Cancelled by Lead\nRaised twice"
