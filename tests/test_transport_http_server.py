from __future__ import annotations

import json

import httpx
import pytest
import yaml
from starlette.testclient import TestClient

from andon_board.app import build_app_context
from andon_board.config import (
    CatalogSettings,
    NotifySettings,
    ServerSettings,
    Settings,
    StorageSettings,
)
from andon_board.timeline.telemetry import MoldRow, NullTelemetrySource
from andon_board.transport.http_server import create_http_app
from andon_board.utils.masking import mask_secret
from andon_board.utils.time import HOUR_MS, MINUTE_MS

from conftest import CATALOG_DATA, T0, FakeClock

QUALITY_HOOK = "https://example.webhook.office.com/webhookb2/quality-secret-token"
MFG_HOOK = "https://prod-01.westus.logic.azure.com/powerautomate/mfg-secret-token"


class MoldFeed(NullTelemetrySource):
    async def latest_molds(self) -> list[MoldRow]:
        return [
            MoldRow(mold_number=3, mold_size=2, cycles_since_cleaning=220),
            MoldRow(mold_number=7, mold_size=1, cycles_since_cleaning=300),
            MoldRow(mold_number=9, mold_size=1, cycles_since_cleaning=10),
        ]


class Outbox:
    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(200)

    def payloads(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


@pytest.fixture
def settings(tmp_path) -> Settings:
    catalog_path = tmp_path / "catalog.yaml"
    catalog_path.write_text(yaml.safe_dump(CATALOG_DATA), encoding="utf-8")
    return Settings(
        storage=StorageSettings(sqlite_path=str(tmp_path / "andon.sqlite")),
        catalog=CatalogSettings(path=str(catalog_path)),
        notify=NotifySettings(webhooks={"quality": QUALITY_HOOK}),
    )


@pytest.fixture
def outbox() -> Outbox:
    return Outbox()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def client(settings: Settings, outbox: Outbox, clock: FakeClock):
    context = build_app_context(
        settings, notify_transport=httpx.MockTransport(outbox), clock=clock
    )
    with TestClient(create_http_app(context)) as test_client:
        yield test_client


def _cells(client: TestClient, dept: str) -> dict[str, dict]:
    response = client.get("/api/snapshot", params={"dept": dept})
    assert response.status_code == 200
    return {c["id"]: c for c in response.json()["cells"]}


def test_health_and_config(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "healthy"}

    config = client.get("/api/config").json()
    assert [d["id"] for d in config["departments"]] == ["quality", "mfg-eng", "maintenance"]
    assert config["departments"][2]["kind"] == "multi_ticket"
    assert config["cells"][0] == {"id": "c1", "name": "Cell One"}


def test_call_lifecycle(client: TestClient) -> None:
    response = client.post("/api/request", json={"dept": "quality", "cellId": "c1"})
    assert response.status_code == 200
    call_id = response.json()["callId"]

    again = client.post("/api/request", json={"dept": "quality", "cellId": "c1"})
    assert again.json()["callId"] == call_id
    assert _cells(client, "quality")["c1"]["status"] == "WAITING"

    missing_part = client.post(
        "/api/complete",
        json={"dept": "quality", "cellId": "c1", "responderName": "Ann", "result": "Fixed"},
    )
    assert missing_part.status_code == 400
    assert missing_part.json() == {"ok": False, "error": "Part Number required for Quality"}

    done = client.post(
        "/api/complete",
        json={
            "dept": "quality",
            "cellId": "c1",
            "responderName": "Ann",
            "result": "Fixed",
            "partNumber": "P-1",
        },
    )
    assert done.json() == {"ok": True}
    assert _cells(client, "quality")["c1"]["status"] == "READY"

    history = client.get("/api/history", params={"dept": "quality"}).json()
    assert history["ok"] is True
    assert [log["callId"] for log in history["logs"]] == [call_id]
    assert history["logs"][0]["partNumber"] == "P-1"

    export = client.get("/api/export.csv", params={"dept": "quality"})
    assert export.headers["content-type"].startswith("text/csv")
    assert "quality_history.csv" in export.headers["content-disposition"]
    assert export.text.splitlines()[1].count("P-1") == 1

    cleared = client.delete("/api/history", params={"dept": "quality"})
    assert cleared.json() == {"ok": True, "removed": 1}


def test_cancel_call(client: TestClient) -> None:
    call_id = client.post("/api/request", json={"dept": "mfg-eng", "cellId": "c2"}).json()[
        "callId"
    ]

    stale = client.post(
        "/api/cancel", json={"dept": "mfg-eng", "cellId": "c2", "callId": "call_mfg-eng_old"}
    )
    assert stale.status_code == 400
    assert stale.json()["error"] == "No matching open call to cancel"

    cancelled = client.post(
        "/api/cancel",
        json={"dept": "mfg-eng", "cellId": "c2", "callId": call_id, "cancelledBy": "Lead"},
    )
    assert cancelled.json() == {"ok": True}
    assert _cells(client, "mfg-eng")["c2"]["callId"] is None


@pytest.mark.parametrize(
    "path, body, status, error",
    [
        ("/api/request", {"cellId": "c1"}, 400, "Missing or invalid dept"),
        ("/api/request", {"dept": "quality", "cellId": "zz"}, 400, "Missing or invalid cellId"),
        ("/api/request", {"dept": "maintenance", "cellId": "c1"}, 400, "Use /api/maintenance/request"),
        ("/api/request", [1, 2], 400, "JSON body must be an object"),
        ("/api/cancel", {"dept": "quality", "cellId": "c1"}, 400, "No matching open call to cancel"),
        (
            "/api/maintenance/request",
            {"cellId": "c1", "description": " "},
            400,
            "Description is required",
        ),
        (
            "/api/maintenance/request",
            {"cellId": "c1", "description": "Leak", "assetValue": "999"},
            400,
            "Selected asset is not allowed for this cell",
        ),
        (
            "/api/maintenance/request",
            {"cellId": "c1", "description": "Leak", "priority": "Urgent"},
            400,
            "Invalid priority: 'Urgent' (expected Low, Medium or High)",
        ),
    ],
)
def test_rejected_requests(client: TestClient, path, body, status, error) -> None:
    response = client.post(path, json=body)
    assert response.status_code == status
    assert response.json() == {"ok": False, "error": error}


def test_invalid_json_and_unknown_cell(client: TestClient) -> None:
    response = client.post(
        "/api/request", content=b"{not json", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid JSON body"

    assert client.get("/api/cell/zz/snapshot").status_code == 404
    assert client.get("/api/snapshot").status_code == 400


def test_maintenance_ticket_flow(client: TestClient) -> None:
    created = client.post(
        "/api/maintenance/request",
        json={"cellId": "c1", "description": "Leak", "priority": "high", "assetValue": "101"},
    ).json()
    assert created["ok"] is True
    assert created["externalWorkOrder"] is None
    ticket_id = created["ticketId"]

    second = client.post(
        "/api/maintenance/request", json={"cellId": "c1", "description": "Guard loose"}
    ).json()
    assert second["ticketId"] != ticket_id

    status = client.post(
        "/api/maintenance/ticket/status",
        json={"cellId": "c1", "ticketId": ticket_id, "progressStatus": "Waiting on parts"},
    )
    assert status.json() == {"ok": True}

    tickets = client.get("/api/snapshot", params={"dept": "maintenance"}).json()["tickets"]
    by_id = {t["ticketId"]: t for t in tickets}
    assert by_id[ticket_id]["progressStatus"] == "Waiting on parts"
    assert by_id[ticket_id]["priority"] == "High"
    assert by_id[ticket_id]["assetLabel"] == "Press"
    assert by_id[ticket_id]["cellName"] == "Cell One"

    cell = client.get("/api/cell/c1/snapshot").json()
    assert len(cell["active"]["maintenance"]["tickets"]) == 2

    done = client.post(
        "/api/complete",
        json={
            "dept": "maintenance",
            "cellId": "c1",
            "ticketId": ticket_id,
            "responderName": "Jane Doe",
            "result": "Fixed",
        },
    )
    assert done.json() == {"ok": True, "ticketId": ticket_id}

    cancelled = client.post("/api/cancel", json={"dept": "maintenance", "cellId": "c1"})
    assert cancelled.json() == {"ok": True, "ticketId": second["ticketId"]}
    assert client.get("/api/snapshot", params={"dept": "maintenance"}).json()["tickets"] == []


def test_assets(client: TestClient) -> None:
    assets = client.get("/api/maintenance/assets", params={"cellId": "c1"}).json()["assets"]
    assert [a["label"] for a in assets] == ["Press", "Oven"]

    everything = client.get("/api/maintenance/assets/all").json()["assets"]
    assert [a["label"] for a in everything] == ["Oven", "Press"]


def test_responders(client: TestClient) -> None:
    added = client.post("/api/responders", json={"dept": "quality", "name": "  Ann  Lee "})
    assert added.json() == {"ok": True, "dept": "quality", "responders": ["Ann Lee"]}

    listed = client.get("/api/responders", params={"dept": "quality"}).json()
    assert listed["responders"] == ["Ann Lee"]

    removed = client.delete("/api/responders", params={"dept": "quality", "name": "ann lee"})
    assert removed.json()["responders"] == []


def test_timeline_and_plug_performance(client: TestClient, clock: FakeClock) -> None:
    client.post("/api/request", json={"dept": "mfg-eng", "cellId": "c1"})
    clock.advance(HOUR_MS)
    client.post(
        "/api/complete",
        json={"dept": "mfg-eng", "cellId": "c1", "responderName": "Bo", "result": "Done"},
    )

    params = {"start": str(T0 - HOUR_MS), "end": str(T0 + 2 * HOUR_MS)}
    timeline = client.get("/api/timeline", params=params).json()
    assert timeline["ok"] is True
    (interval,) = timeline["intervals"]
    assert interval["label"] == "Mfg Eng"
    assert interval["endMs"] - interval["startMs"] == HOUR_MS

    only_maintenance = client.get("/api/timeline", params={**params, "dept": "maintenance"})
    assert only_maintenance.json()["intervals"] == []

    unknown = client.get("/api/timeline", params={**params, "dept": "shipping"})
    assert unknown.status_code == 400

    bad = client.get("/api/timeline", params={"start": "nope", "end": params["end"]})
    assert bad.json() == {"ok": False, "error": "Invalid start"}

    plug = client.get(
        "/api/oven/plug-performance",
        params={"start": str(T0), "end": str(T0 + 30 * MINUTE_MS)},
    ).json()
    assert plug["bucketMinutes"] == 5
    assert len(plug["buckets"]) == 7
    assert plug["series"]["1"] == [0] * 7
    assert plug["kpis"]["totalCycles"] == 0
    assert plug["kpis"]["efficiencyPct"] is None
    assert plug["cure"]["series"]["1"] == [None] * 7


def test_debug_webhooks(client: TestClient) -> None:
    masked = client.get("/api/debug/webhooks").json()["webhooks"]
    assert masked["quality"] == mask_secret(QUALITY_HOOK)
    assert masked["mfg-eng"] is None

    single = client.post("/api/debug/webhooks", json={"dept": "MFG-ENG", "url": MFG_HOOK}).json()
    assert single["updated"] == {"mfg-eng": mask_secret(MFG_HOOK)}
    assert single["webhooks"]["mfg-eng"] == mask_secret(MFG_HOOK)

    bulk = client.post(
        "/api/debug/webhooks", json={"maintenance": MFG_HOOK, "bogus": "https://x"}
    ).json()
    assert list(bulk["updated"]) == ["maintenance"]


def test_webhook_test_and_change_notifications(
    settings: Settings, outbox: Outbox, clock: FakeClock
) -> None:
    context = build_app_context(
        settings, notify_transport=httpx.MockTransport(outbox), clock=clock
    )
    with TestClient(create_http_app(context)) as client:
        result = client.get("/api/webhook-test", params={"dept": "quality", "note": "ping"}).json()
        assert result["ok"] is True
        assert result["result"]["ok"] is True
        assert result["sent"]["note"] == "ping"

        untargeted = client.post("/api/webhook-test", json={}).json()
        assert untargeted["result"] == {
            "ok": False,
            "status": None,
            "error": "no_webhook_configured",
        }

        client.post("/api/request", json={"dept": "quality", "cellId": "c1"})

    assert [str(r.url) for r in outbox.requests] == [QUALITY_HOOK, QUALITY_HOOK]
    cards = [p["attachments"][0]["content"] for p in outbox.payloads()]
    assert cards[1]["body"][0]["text"] == "QUALITY - call.request"


def test_webhook_test_with_non_mapping_work_order(client: TestClient, outbox: Outbox) -> None:
    response = client.post(
        "/api/webhook-test", json={"dept": "quality", "externalWorkOrder": "WO-1"}
    )

    assert response.status_code == 200
    assert response.json()["result"]["ok"] is True
    card = outbox.payloads()[0]["attachments"][0]["content"]
    assert card["body"][0]["text"] == "QUALITY - test"


def test_state_survives_restart(settings: Settings, clock: FakeClock) -> None:
    with TestClient(create_http_app(build_app_context(settings, clock=clock))) as client:
        call_id = client.post("/api/request", json={"dept": "quality", "cellId": "c2"}).json()[
            "callId"
        ]

    with TestClient(create_http_app(build_app_context(settings, clock=clock))) as client:
        cells = _cells(client, "quality")
    assert cells["c2"]["callId"] == call_id
    assert cells["c2"]["requestedAt"] == T0


def test_websocket_receives_snapshots(client: TestClient) -> None:
    with client.websocket_connect("/ws?dept=quality&cellId=c1") as ws:
        first = ws.receive_json()
        assert first["event"] == "deptSnapshot"
        assert first["data"]["dept"] == "quality"
        assert ws.receive_json()["event"] == "cellSnapshot"

        client.post("/api/request", json={"dept": "quality", "cellId": "c1"})

        pushed = ws.receive_json()
        assert pushed["event"] == "deptSnapshot"
        cells = {c["id"]: c for c in pushed["data"]["cells"]}
        assert cells["c1"]["status"] == "WAITING"
        cell_msg = ws.receive_json()
        assert cell_msg["event"] == "cellSnapshot"
        assert cell_msg["data"]["active"]["quality"]["status"] == "WAITING"


def test_cors_preflight(settings: Settings) -> None:
    settings.server = ServerSettings(
        http_enable_cors=True, http_allowed_origins=("http://tablet.local",)
    )
    with TestClient(create_http_app(build_app_context(settings))) as client:
        response = client.options(
            "/api/request",
            headers={
                "Origin": "http://tablet.local",
                "Access-Control-Request-Method": "POST",
            },
        )
    assert response.headers["access-control-allow-origin"] == "http://tablet.local"


def test_mold_config_and_snapshot(settings: Settings, clock: FakeClock) -> None:
    context = build_app_context(settings, telemetry=MoldFeed(), clock=clock)
    with TestClient(create_http_app(context)) as client:
        config = client.get("/api/molds/config").json()
        assert config["cleanThresholdCycles"] == 250
        assert config["dueSoonRatio"] == 0.85

        bad = client.post("/api/molds/config", json={"cleanThresholdCycles": 0})
        assert bad.status_code == 400
        assert bad.json() == {"ok": False, "error": "Invalid cleanThresholdCycles"}
        bad_ratio = client.post(
            "/api/molds/config", json={"cleanThresholdCycles": 200, "dueSoonRatio": 1}
        )
        assert bad_ratio.json() == {"ok": False, "error": "Invalid dueSoonRatio (0-1)"}

        saved = client.post("/api/molds/config", json={"cleanThresholdCycles": 200}).json()
        assert saved["cleanThresholdCycles"] == 200
        assert saved["dueSoonRatio"] == 0.85
        assert saved["mode"] == "global"

        snapshot = client.get("/api/molds/snapshot").json()
        assert snapshot["counts"] == {"total": 3, "overdue": 2, "dueSoon": 0, "ok": 1}
        assert [m["moldNumber"] for m in snapshot["molds"]] == [7, 3, 9]
        assert snapshot["worst"]["overBy"] == 100

    with TestClient(create_http_app(build_app_context(settings, clock=clock))) as client:
        assert client.get("/api/molds/config").json()["cleanThresholdCycles"] == 200


def test_websocket_molds_room(settings: Settings, clock: FakeClock) -> None:
    context = build_app_context(settings, telemetry=MoldFeed(), clock=clock)
    with TestClient(create_http_app(context)) as client:
        with client.websocket_connect("/ws?room=molds") as ws:
            first = ws.receive_json()
            assert first["event"] == "moldsSnapshot"

            client.post("/api/molds/config", json={"cleanThresholdCycles": 400})

            for _ in range(3):
                pushed = ws.receive_json()
                if pushed["data"]["config"]["cleanThresholdCycles"] == 400:
                    break
            assert pushed["event"] == "moldsSnapshot"
            assert pushed["data"]["counts"] == {"total": 3, "overdue": 0, "dueSoon": 0, "ok": 3}
