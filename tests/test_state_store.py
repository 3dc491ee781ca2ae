import os
import sys
from datetime import datetime
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from recon_models import AssignmentAttempt, Order, PaymentRecord, Provider
from state_store import SqliteRecordStore


@pytest.fixture
def store(tmp_path, monkeypatch):
    monkeypatch.setenv("RECON_STATE_DB", str(tmp_path / "state.db"))
    s = SqliteRecordStore()
    s.init_db()
    return s


def test_record_roundtrip_and_update(store):
    store.create_record(PaymentRecord(id="R1", owner_id="u1", amount=Decimal("15000.50")))
    rec = store.get_record("R1")
    assert rec.amount == Decimal("15000.50")
    assert rec.status == "pending"
    assert rec.extracted_fields == {}
    assert rec.created_at

    store.update_record("R1", {
        "status": "processed",
        "extracted_fields": {"tax_ids": ["30123456781"], "counterparty": None},
        "assignment_confidence": 0.5,
    })
    rec = store.get_record("R1")
    assert rec.status == "processed"
    assert rec.extracted_fields["tax_ids"] == ["30123456781"]
    assert rec.assignment_confidence == 0.5


def test_update_rejects_unknown_fields_and_missing_records(store):
    store.create_record(PaymentRecord(id="R1", owner_id="u1"))
    with pytest.raises(ValueError):
        store.update_record("R1", {"owner_id": "u2"})
    with pytest.raises(LookupError):
        store.update_record("missing", {"status": "processed"})
    assert store.get_record("missing") is None


def test_registry_queries(store):
    store.add_provider(Provider("P1", "u1", "ACME SRL", tax_id="30123456781"))
    store.add_provider(Provider("P2", "u2", "OTRO SA"))
    store.add_order(Order("O1", "u1", "P1", Decimal("15000"), "awaiting_payment",
                          created_at=datetime(2024, 3, 1, 9, 0)))
    store.add_order(Order("O2", "u1", "P1", Decimal("800"), "paid"))
    store.add_order(Order("O3", "u1", "P3", Decimal("100"), "sent"))

    assert [p.id for p in store.list_providers("u1")] == ["P1"]

    orders = store.list_open_orders("u1")
    assert [o.id for o in orders] == ["O1", "O3"]
    assert orders[0].amount == Decimal("15000")
    assert orders[0].created_at == datetime(2024, 3, 1, 9, 0)

    assert [o.id for o in store.list_open_orders("u1", ["P1"])] == ["O1"]
    assert store.list_open_orders("u1", []) == []
    assert [o.id for o in store.list_open_orders("u1", None, ["paid"])] == ["O2"]


def test_assignment_attempts_are_append_only(store):
    row = AssignmentAttempt("R1", "P1", "provider", "tax_id_match", 1.0, {"tax_id": "30123456781"}, True)
    store.insert_assignment_attempts([row])
    store.insert_assignment_attempts([])
    store.insert_assignment_attempts([row])

    attempts = store.list_assignment_attempts("R1")
    assert len(attempts) == 2
    assert attempts[0].details == {"tax_id": "30123456781"}
    assert attempts[0].success is True


def test_explicit_db_path(tmp_path):
    s = SqliteRecordStore(str(tmp_path / "explicit.db"))
    s.init_db()
    s.create_record(PaymentRecord(id="R1", owner_id="u1"))
    assert s.get_record("R1").owner_id == "u1"
