from __future__ import annotations

import json

import pytest

from andon_board.catalog import Catalog
from andon_board.domain.models import (
    CallStatus,
    ExternalWorkOrder,
    MaintenanceTicket,
    TicketStatus,
)
from andon_board.errors import NotFoundError, ValidationError
from andon_board.storage.db import SqliteStore
from andon_board.storage.responders import ResponderRegistry, normalize_names
from andon_board.storage.schema import SNAPSHOT_VERSION, detect_version, normalize_snapshot
from andon_board.storage.state_store import SnapshotPersister, StateStore

from conftest import T0


def test_every_department_cell_pair_exists(state: StateStore) -> None:
    assert state.slot("quality", "c2").status is CallStatus.READY
    assert state.tickets("c1") == []
    with pytest.raises(NotFoundError):
        state.slot("maintenance", "c1")
    with pytest.raises(NotFoundError):
        state.tickets("nowhere")


def test_open_tickets_oldest_first_and_duplicates_rejected(state: StateStore) -> None:
    state.add_ticket("c1", MaintenanceTicket(ticket_id="b", created_at=T0 + 5))
    state.add_ticket("c1", MaintenanceTicket(ticket_id="a", created_at=T0))
    state.add_ticket(
        "c1",
        MaintenanceTicket(ticket_id="done", created_at=T0 - 5, status=TicketStatus.COMPLETED),
    )

    assert [t.ticket_id for t in state.open_tickets("c1")] == ["a", "b"]
    with pytest.raises(ValidationError):
        state.add_ticket("c1", MaintenanceTicket(ticket_id="a", created_at=T0))
    with pytest.raises(NotFoundError):
        state.find_ticket("c1", "zzz")


def test_snapshot_round_trip_keeps_closed_tickets(catalog: Catalog, state: StateStore) -> None:
    state.slot("quality", "c1").open("call_quality_1", T0)
    state.add_ticket(
        "c2",
        MaintenanceTicket(
            ticket_id="mnt_1",
            created_at=T0,
            issue_text="Leak",
            external_work_order=ExternalWorkOrder(external_id=9, display_number="WO-9"),
        ),
    )
    state.add_ticket(
        "c2",
        MaintenanceTicket(ticket_id="mnt_0", created_at=T0 - 1, status=TicketStatus.CANCELLED),
    )
    state.webhooks["quality"] = "https://hooks.example/q"

    restored = StateStore.from_snapshot(catalog, json.loads(json.dumps(state.to_snapshot())))

    slot = restored.slot("quality", "c1")
    assert (slot.status, slot.call_id, slot.requested_at) == (
        CallStatus.WAITING,
        "call_quality_1",
        T0,
    )
    assert [(t.ticket_id, t.status) for t in restored.tickets("c2")] == [
        ("mnt_1", TicketStatus.OPEN),
        ("mnt_0", TicketStatus.CANCELLED),
    ]
    assert [t.ticket_id for t in restored.open_tickets("c2")] == ["mnt_1"]
    assert restored.tickets("c2")[0].external_work_order.display_number == "WO-9"
    assert restored.webhooks == {"quality": "https://hooks.example/q"}


def test_from_snapshot_drops_unreadable_tickets(catalog: Catalog) -> None:
    raw = {
        "version": 2,
        "active": {"maintenance": {"c1": {"tickets": [{"issue": "no id"}, {
            "ticketId": "ok", "createdAt": T0, "status": "OPEN"}]}}},
    }
    restored = StateStore.from_snapshot(catalog, raw)
    assert [t.ticket_id for t in restored.tickets("c1")] == ["ok"]


def test_inconsistent_slot_is_normalized_to_ready(catalog: Catalog) -> None:
    raw = {
        "version": 2,
        "active": {"quality": {"c1": {"status": "WAITING", "requestedAt": None, "callId": "x"}}},
    }
    slot = StateStore.from_snapshot(catalog, raw).slot("quality", "c1")
    assert slot.status is CallStatus.READY
    assert slot.call_id is None


def test_unexpected_slot_statuses_do_not_abort_loading(catalog: Catalog, caplog) -> None:
    raw = {
        "version": 2,
        "active": {
            "quality": {"c1": {"status": "waiting", "requestedAt": T0, "callId": "call_q"}},
            "mfg-eng": {"c2": {"status": "PAUSED", "requestedAt": T0, "callId": "call_m"}},
            "maintenance": {"c1": {"tickets": [
                {"ticketId": "t1", "createdAt": T0, "status": "completed"}]}},
        },
    }

    with caplog.at_level("WARNING", logger="andon_board.domain.models"):
        restored = StateStore.from_snapshot(catalog, raw)

    assert restored.slot("quality", "c1").status is CallStatus.WAITING
    assert restored.slot("quality", "c1").call_id == "call_q"
    paused = restored.slot("mfg-eng", "c2")
    assert (paused.status, paused.call_id) == (CallStatus.READY, None)
    assert "Unknown call status 'PAUSED'" in caplog.text
    assert restored.tickets("c1")[0].status is TicketStatus.COMPLETED


def test_version_one_snapshot_is_migrated(catalog: Catalog) -> None:
    raw = {
        "active": {
            "quality": {
                "c1": {
                    "status": "WAITING",
                    "requestedAt": T0,
                    "callId": "call_q",
                    "fiix": {"workOrderId": 4, "workOrderNumber": 1234},
                },
                "retired-cell": {"status": "WAITING", "requestedAt": T0, "callId": "old"},
            },
            "maintenance": {
                "c1": {
                    "status": "WAITING",
                    "requestedAt": T0 - 100,
                    "fiix": {
                        "workOrderId": 77,
                        "workOrderNumber": "WO-77",
                        "url": "https://ui.example",
                        "requestDescription": "Belt slipping",
                        "requestPriority": "High",
                        "requestAsset": "Press",
                    },
                },
                "c2": {"status": "READY"},
            },
        },
        "webhooks": {"maintenance": "https://hooks.example/m"},
    }
    ids = iter(["mnt_migrated"])

    doc = normalize_snapshot(raw, catalog, id_factory=lambda: next(ids))

    assert detect_version(raw) == 1
    assert doc["version"] == SNAPSHOT_VERSION
    assert "retired-cell" not in doc["active"]["quality"]
    assert doc["active"]["quality"]["c1"]["externalWorkOrder"]["displayNumber"] == "1234"
    assert doc["active"]["maintenance"]["c2"] == {"tickets": []}
    (ticket,) = doc["active"]["maintenance"]["c1"]["tickets"]
    assert ticket["ticketId"] == "mnt_migrated"
    assert ticket["createdAt"] == T0 - 100
    assert ticket["issue"] == "Belt slipping"
    assert ticket["priority"] == "High"
    assert ticket["externalWorkOrder"]["externalId"] == 77
    assert ticket["externalWorkOrder"]["externalUrl"] == "https://ui.example"
    assert doc["webhooks"] == {"maintenance": "https://hooks.example/m"}


def test_version_one_ticket_lists_keep_their_tickets(catalog: Catalog) -> None:
    raw = {
        "active": {
            "maintenance": {
                "c1": {
                    "tickets": [
                        {"ticketId": "t1", "createdAt": T0, "fiix": {"workOrderId": 3}},
                    ]
                }
            }
        }
    }

    restored = StateStore.from_snapshot(catalog, raw)

    (ticket,) = restored.tickets("c1")
    assert ticket.external_work_order.external_id == 3


def test_newer_snapshot_versions_are_refused(catalog: Catalog) -> None:
    with pytest.raises(ValueError, match="newer than supported"):
        normalize_snapshot({"version": SNAPSHOT_VERSION + 1}, catalog)


def test_non_mapping_snapshot_gives_empty_state(catalog: Catalog) -> None:
    doc = normalize_snapshot(None, catalog)
    assert doc["active"]["quality"]["c1"]["status"] == "READY"


def test_persister_skips_stale_revisions(store: SqliteStore, state: StateStore) -> None:
    persister = SnapshotPersister(store)
    state.touch()
    old_revision, old_encoded = persister.capture(state)
    state.slot("quality", "c1").open("call_new", T0)
    state.touch()
    new_revision, new_encoded = persister.capture(state)

    assert persister.write(new_revision, new_encoded) is True
    assert persister.write(old_revision, old_encoded) is False
    assert persister.written_revision == new_revision
    assert store.kv_get("state")["active"]["quality"]["c1"]["callId"] == "call_new"


def test_persister_load_round_trip(store: SqliteStore, catalog: Catalog) -> None:
    persister = SnapshotPersister(store)
    state = persister.load(catalog)
    state.slot("mfg-eng", "c2").open("call_m", T0)
    state.touch()
    assert persister.save_now(state) is True

    reloaded = SnapshotPersister(store).load(catalog)

    assert reloaded.slot("mfg-eng", "c2").call_id == "call_m"


def test_normalize_names() -> None:
    assert normalize_names(["  bob ", "Alice", "BOB", "", None, "carol   ann"]) == [
        "Alice",
        "bob",
        "carol ann",
    ]
    assert normalize_names("bob") == []


def test_responder_registry(store: SqliteStore, catalog: Catalog) -> None:
    registry = ResponderRegistry(store, catalog)

    assert registry.list("quality") == []
    registry.add("quality", "  Zed ")
    assert registry.add("quality", "amy") == ["amy", "Zed"]
    assert registry.add("quality", "ZED") == ["amy", "Zed"]
    assert registry.remove("quality", "zed") == ["amy"]
    assert registry.list("mfg-eng") == []

    with pytest.raises(ValidationError, match="Name required"):
        registry.add("quality", "   ")
    with pytest.raises(NotFoundError):
        registry.list("paint")
