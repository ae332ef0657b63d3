# backend/tests/test_transition_tables.py
from __future__ import annotations

import pytest

from repairflow.domain.enums import WorkflowStatus
from repairflow.domain.errors import IllegalTransitionError
from repairflow.domain.transitions import (
    allowed_request_targets,
    assert_dispute_transition,
    assert_request_transition,
)


def test_request_edges_by_producer():
    assert_request_transition("submitted", "approved", via="approval")
    assert_request_transition("approved", "bidding", via="marketplace", is_emergency=False)
    assert_request_transition("approved", "assigned", via="dispatch", is_emergency=True)
    assert_request_transition("bidding", "assigned", via="selection")
    assert_request_transition("in_progress", "completed", via="completion")


def test_wrong_producer_is_rejected():
    with pytest.raises(IllegalTransitionError) as ei:
        assert_request_transition("bidding", "assigned", via="dispatch")
    assert "selection" in str(ei.value)


def test_skipping_states_is_rejected():
    with pytest.raises(IllegalTransitionError):
        assert_request_transition("submitted", "assigned", via="dispatch", is_emergency=True)
    with pytest.raises(IllegalTransitionError):
        assert_request_transition("assigned", "completed", via="completion")


def test_emergencies_are_dispatched_not_bid():
    with pytest.raises(IllegalTransitionError):
        assert_request_transition("approved", "bidding", via="marketplace", is_emergency=True)
    with pytest.raises(IllegalTransitionError):
        assert_request_transition("approved", "assigned", via="dispatch", is_emergency=False)


def test_terminal_states_are_final():
    for terminal in ("completed", "cancelled", "denied"):
        assert allowed_request_targets(terminal) == set()
        with pytest.raises(IllegalTransitionError):
            assert_request_transition(terminal, "cancelled", via="cancel")


def test_every_live_state_can_cancel():
    for s in ("submitted", "approved", "bidding", "assigned", "in_progress"):
        assert WorkflowStatus.CANCELLED in allowed_request_targets(s)


def test_dispute_edges():
    assert_dispute_transition("open", "in_review")
    assert_dispute_transition("in_review", "resolved")
    assert_dispute_transition("mediation", "resolved")
    assert_dispute_transition("resolved", "closed")
    assert_dispute_transition("open", "closed")

    with pytest.raises(IllegalTransitionError):
        assert_dispute_transition("open", "resolved")
    with pytest.raises(IllegalTransitionError):
        assert_dispute_transition("closed", "open")
