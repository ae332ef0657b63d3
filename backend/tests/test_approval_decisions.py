# backend/tests/test_approval_decisions.py
from __future__ import annotations

from repairflow.domain.approval import PolicySnapshot, decide_approval, resolve_payment_responsibility
from repairflow.domain.enums import ApprovalMode, ApprovalStatus, PaymentResponsibility


def _policy(**over) -> PolicySnapshot:
    base = dict(
        property_id=1,
        payment_responsibility=PaymentResponsibility.LANDLORD,
        split_ceiling=0.0,
        approval_mode=ApprovalMode.OVER_AMOUNT,
        auto_approval_limit=500.0,
        require_photos=False,
        require_completion_photos=False,
        emergency_auto_approve=True,
        bid_window_hours=72,
    )
    base.update(over)
    return PolicySnapshot(**base)


def test_cost_under_limit_is_auto_approved():
    d = decide_approval(is_emergency=False, policy=_policy(), estimated_cost=300)
    assert d.status == ApprovalStatus.APPROVED
    assert d.auto is True
    assert d.approved


def test_cost_over_limit_waits_for_landlord():
    d = decide_approval(is_emergency=False, policy=_policy(), estimated_cost=900)
    assert d.status == ApprovalStatus.PENDING
    assert not d.approved


def test_limit_is_inclusive():
    d = decide_approval(is_emergency=False, policy=_policy(), estimated_cost=500)
    assert d.status == ApprovalStatus.APPROVED


def test_unknown_cost_is_pending_under_over_amount():
    d = decide_approval(is_emergency=False, policy=_policy(), estimated_cost=None)
    assert d.status == ApprovalStatus.PENDING
    assert "unknown" in d.reason


def test_mode_none_and_all():
    none = decide_approval(is_emergency=False, policy=_policy(approval_mode=ApprovalMode.NONE), estimated_cost=10_000)
    assert none.status == ApprovalStatus.NOT_REQUIRED
    assert none.approved

    every = decide_approval(is_emergency=False, policy=_policy(approval_mode=ApprovalMode.ALL), estimated_cost=1)
    assert every.status == ApprovalStatus.PENDING


def test_emergency_auto_approves_regardless_of_limit():
    d = decide_approval(is_emergency=True, policy=_policy(auto_approval_limit=50.0), estimated_cost=2_000)
    assert d.status == ApprovalStatus.APPROVED
    assert d.reason == "emergency_auto_approve"


def test_emergency_ceiling_below_cost_parks_request():
    d = decide_approval(is_emergency=True, policy=_policy(), estimated_cost=800, emergency_ceiling=300)
    assert d.status == ApprovalStatus.PENDING

    raised = decide_approval(is_emergency=True, policy=_policy(), estimated_cost=800, emergency_ceiling=1_000)
    assert raised.status == ApprovalStatus.APPROVED


def test_emergency_without_auto_approve_follows_mode():
    d = decide_approval(
        is_emergency=True,
        policy=_policy(emergency_auto_approve=False, approval_mode=ApprovalMode.ALL),
        estimated_cost=100,
    )
    assert d.status == ApprovalStatus.PENDING


def test_split_responsibility():
    split = _policy(payment_responsibility=PaymentResponsibility.SPLIT, split_ceiling=150.0)
    assert resolve_payment_responsibility(split, 100) == PaymentResponsibility.TENANT
    assert resolve_payment_responsibility(split, 400) == PaymentResponsibility.SPLIT
    assert resolve_payment_responsibility(split, None) == PaymentResponsibility.SPLIT
    assert resolve_payment_responsibility(_policy(), 100) == PaymentResponsibility.LANDLORD
