# backend/tests/test_dispute_resolution.py
from __future__ import annotations

import pytest

from repairflow.domain.errors import IllegalTransitionError, PermissionDeniedError, ValidationError
from repairflow.services import bidding_service, dispute_service, reliability_service, request_service


def _assigned_request(db, w):
    req = request_service.submit_request(
        db,
        p=w.tenant,
        property_id=w.property_id,
        title="Cabinet hinge",
        description="Kitchen cabinet door hangs loose",
        category="general",
        estimated_cost=120,
    )
    bid = bidding_service.submit_bid(db, p=w.provider, request_id=req.id, amount=110, estimated_hours=1)
    return bidding_service.select_bid(db, p=w.landlord, bid_id=bid.id)


def _quality_dispute(db, w, req):
    return dispute_service.open_dispute(
        db,
        p=w.tenant,
        request_id=req.id,
        title="Door still loose",
        dispute_type="quality",
        description="Hinge fell off again after two days",
        evidence=["s3://hinge-1.jpg"],
    )


def test_quality_dispute_resolved_against_provider(db, world):
    req = _assigned_request(db, world)
    d = _quality_dispute(db, world, req)
    assert d.status == "open"
    assert d.respondent_user_id == world.provider.user_id

    d = dispute_service.advance_dispute(db, p=world.landlord, dispute_id=d.id, target="in_review")
    d = dispute_service.resolve_dispute(
        db,
        p=world.landlord,
        dispute_id=d.id,
        resolution="Provider to refund half",
        compensation_amount=55,
        compensation_paid_to=world.tenant.user_id,
    )
    assert d.status == "resolved"
    assert d.compensation_amount == 55.0
    assert d.penalty_id is not None

    pens = reliability_service.list_penalties(db, org_id=world.org_id, provider_user_id=world.provider.user_id)
    assert [(p.penalty_type, p.dispute_id) for p in pens] == [("poor_quality", d.id)]
    view = reliability_service.reliability_view(db, org_id=world.org_id, provider_user_id=world.provider.user_id)
    assert view["reliability_score"] == 85.0

    d = dispute_service.close_dispute(db, p=world.landlord, dispute_id=d.id)
    assert d.status == "closed"
    assert d.closed_at is not None

    events = [e["event"] for e in dispute_service.dispute_view(db, d)["timeline"]]
    assert events == [
        "opened",
        "status:open->in_review",
        "status:in_review->resolved",
        "penalty_issued",
        "status:resolved->closed",
    ]


def test_no_fault_resolution_issues_no_penalty(db, world):
    req = _assigned_request(db, world)
    d = _quality_dispute(db, world, req)
    dispute_service.advance_dispute(db, p=world.landlord, dispute_id=d.id, target="in_review")
    d = dispute_service.resolve_dispute(
        db, p=world.landlord, dispute_id=d.id, resolution="Tenant misuse", provider_fault=False
    )
    assert d.penalty_id is None
    assert reliability_service.list_penalties(db, org_id=world.org_id, provider_user_id=world.provider.user_id) == []


def test_cannot_resolve_without_review(db, world):
    req = _assigned_request(db, world)
    d = _quality_dispute(db, world, req)
    with pytest.raises(IllegalTransitionError):
        dispute_service.resolve_dispute(db, p=world.landlord, dispute_id=d.id, resolution="done")
    with pytest.raises(ValidationError):
        dispute_service.advance_dispute(db, p=world.landlord, dispute_id=d.id, target="resolved")


def test_mediation_needs_a_mediator(db, world):
    req = _assigned_request(db, world)
    d = _quality_dispute(db, world, req)
    dispute_service.advance_dispute(db, p=world.landlord, dispute_id=d.id, target="in_review")
    with pytest.raises(ValidationError):
        dispute_service.advance_dispute(db, p=world.landlord, dispute_id=d.id, target="mediation")


def test_escalation_with_mediator_moves_to_mediation(db, world, make_world):
    req = _assigned_request(db, world)
    d = _quality_dispute(db, world, req)

    d = dispute_service.escalate_dispute(db, p=world.tenant, dispute_id=d.id, notes="no answer")
    assert d.escalation_level == 1
    assert d.status == "open"

    with pytest.raises(PermissionDeniedError):
        dispute_service.escalate_dispute(db, p=world.tenant, dispute_id=d.id, mediator_user_id=world.landlord.user_id)

    d = dispute_service.escalate_dispute(db, p=world.landlord, dispute_id=d.id, mediator_user_id=world.landlord.user_id)
    assert d.escalation_level == 2
    assert d.status == "mediation"

    d = dispute_service.resolve_dispute(db, p=world.landlord, dispute_id=d.id, resolution="split the cost")
    assert d.status == "resolved"


def test_evidence_closes_with_resolution(db, world):
    req = _assigned_request(db, world)
    d = _quality_dispute(db, world, req)
    d = dispute_service.add_evidence(db, p=world.provider, dispute_id=d.id, item="s3://invoice.pdf")
    assert dispute_service.dispute_view(db, d)["evidence"] == ["s3://hinge-1.jpg", "s3://invoice.pdf"]

    dispute_service.advance_dispute(db, p=world.landlord, dispute_id=d.id, target="in_review")
    dispute_service.resolve_dispute(db, p=world.landlord, dispute_id=d.id, resolution="ok", provider_fault=False)
    with pytest.raises(IllegalTransitionError):
        dispute_service.add_evidence(db, p=world.tenant, dispute_id=d.id, item="late.jpg")


def test_initiator_can_withdraw_open_dispute(db, world):
    req = _assigned_request(db, world)
    d = _quality_dispute(db, world, req)
    d = dispute_service.close_dispute(db, p=world.tenant, dispute_id=d.id)
    assert d.status == "closed"
    assert dispute_service.timeline(db, dispute_id=d.id)[-1].notes == "withdrawn"


def test_outsiders_cannot_open_or_read(db, world):
    req = _assigned_request(db, world)
    with pytest.raises(PermissionDeniedError):
        dispute_service.open_dispute(db, p=world.provider2, request_id=req.id, title="not mine")

    d = _quality_dispute(db, world, req)
    with pytest.raises(PermissionDeniedError):
        dispute_service.get_dispute(db, p=world.provider2, dispute_id=d.id)
    assert [x.id for x in dispute_service.list_disputes(db, p=world.provider)] == [d.id]
    assert dispute_service.list_disputes(db, p=world.provider2) == []
