import os
import sys
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from config_loader import merge_config
from recon_models import MatchCandidate, Order
from resolver import (
    AssignmentDecision,
    InvalidTransitionError,
    check_transition,
    passes_reliability_gate,
    resolve_assignment,
)

CFG = merge_config({})
ORDERS = {
    "O1": Order("O1", "u1", "P1", Decimal("15000"), "awaiting_payment"),
}


def _order_candidate(confidence=1.0, provider_id="P1"):
    return MatchCandidate("O1", confidence, "exact_amount_and_provider_match", {"provider_id": provider_id})


@pytest.mark.parametrize("confidence,expected", [(0.949, False), (0.95, True), (1.0, True)])
def test_tax_id_gate_boundary(confidence, expected):
    cand = MatchCandidate("P1", confidence, "tax_id_match")
    assert passes_reliability_gate(cand, None, CFG) is expected


def test_tax_id_gate_ignores_margin():
    cand = MatchCandidate("P1", 1.0, "tax_id_match")
    alt = MatchCandidate("P2", 0.99, "tax_id_match")
    assert passes_reliability_gate(cand, alt, CFG)


def test_non_tax_id_gate_needs_confidence_and_margin():
    cand = MatchCandidate("P1", 0.92, "amount_match")
    assert passes_reliability_gate(cand, None, CFG)
    assert not passes_reliability_gate(MatchCandidate("P1", 0.919, "amount_match"), None, CFG)
    assert passes_reliability_gate(cand, MatchCandidate("P2", 0.72, "provider_match"), CFG)
    assert not passes_reliability_gate(cand, MatchCandidate("P2", 0.73, "provider_match"), CFG)


def test_assigns_when_tax_id_and_order_match():
    decision = resolve_assignment(
        [MatchCandidate("P1", 1.0, "tax_id_match")], [_order_candidate()], ORDERS, CFG
    )
    assert decision.status == "assigned"
    assert decision.provider_id == "P1"
    assert decision.order_id == "O1"
    assert decision.confidence == 1.0
    assert decision.method == "tax_id_match"
    assert decision.reason == "gate_passed"


def test_assigned_confidence_is_min_of_provider_and_order():
    decision = resolve_assignment(
        [MatchCandidate("P1", 1.0, "tax_id_match")], [_order_candidate(0.97)], ORDERS, CFG
    )
    assert decision.confidence == 0.97


def test_gate_failure_leaves_record_processed():
    decision = resolve_assignment(
        [MatchCandidate("P1", 0.949, "tax_id_match")], [_order_candidate()], ORDERS, CFG
    )
    assert decision.status == "processed"
    assert decision.provider_id is None
    assert decision.order_id is None
    assert decision.confidence == 0.949
    assert decision.method == "tax_id_match"
    assert decision.reason == "gate_failed"


def test_amount_match_provider_is_committed_from_its_order():
    decision = resolve_assignment(
        [MatchCandidate("P1", 0.9, "amount_match"), MatchCandidate("P2", 0.85, "amount_match")],
        [_order_candidate(0.8998)],
        ORDERS,
        CFG,
    )
    assert decision.status == "assigned"
    assert decision.provider_id == "P1"
    assert decision.order_id == "O1"
    assert decision.method == "amount_match"
    assert decision.confidence == 0.8998
    assert decision.reason == "order_owner_provider"


def test_weak_text_evidence_with_order_stays_processed():
    decision = resolve_assignment(
        [MatchCandidate("P1", 0.5, "provider_match")], [_order_candidate(0.9)], ORDERS, CFG
    )
    assert decision.status == "processed"
    assert decision.provider_id is None
    assert decision.order_id is None
    assert decision.confidence == 0.5
    assert decision.reason == "gate_failed"


def test_order_owner_provider_is_used_when_not_a_candidate():
    decision = resolve_assignment(
        [MatchCandidate("P2", 0.6, "provider_match")], [_order_candidate(0.9)], ORDERS, CFG
    )
    assert decision.status == "assigned"
    assert decision.provider_id == "P1"
    assert decision.order_id == "O1"
    assert decision.method == "amount_match"
    assert decision.confidence == 0.9


def test_provider_only_keeps_provider_when_gate_passes():
    decision = resolve_assignment([MatchCandidate("P1", 1.0, "tax_id_match")], [], ORDERS, CFG)
    assert decision.status == "processed"
    assert decision.provider_id == "P1"
    assert decision.order_id is None
    assert decision.reason == "provider_only"


def test_no_candidates():
    decision = resolve_assignment([], [], ORDERS, CFG)
    assert decision == AssignmentDecision(status="processed", reason="no_match")
    assert decision.to_fields() == {
        "status": "processed",
        "assigned_provider_id": None,
        "assigned_order_id": None,
        "assignment_confidence": None,
        "assignment_method": None,
    }


def test_transitions():
    check_transition("pending", "processed")
    check_transition("processed", "assigned")
    check_transition("assigned", "sent")
    check_transition("sent", "error")
    with pytest.raises(InvalidTransitionError):
        check_transition("pending", "assigned")
    with pytest.raises(InvalidTransitionError):
        check_transition("sent", "assigned")
    with pytest.raises(InvalidTransitionError):
        check_transition("unknown", "processed")
