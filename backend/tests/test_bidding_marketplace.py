# backend/tests/test_bidding_marketplace.py
from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from repairflow.domain.errors import (
    ConcurrencyConflictError,
    IllegalTransitionError,
    PermissionDeniedError,
    PolicyViolationError,
    ValidationError,
)
from repairflow.db import SessionLocal
from repairflow.models import Bid, MaintenanceRequest
from repairflow.services import bidding_service, reliability_service, request_service


def _approved(db, w, *, cost=200):
    req = request_service.submit_request(
        db,
        p=w.tenant,
        property_id=w.property_id,
        title="Dryer making noise",
        description="Loud rattle during spin",
        category="appliance",
        estimated_cost=cost,
    )
    assert req.workflow_status == "approved"
    return req


def test_lowest_bid_selected_and_rest_rejected(db, world):
    req = _approved(db, world)
    b400 = bidding_service.submit_bid(db, p=world.provider, request_id=req.id, amount=400, estimated_hours=3)
    b450 = bidding_service.submit_bid(
        db, p=world.provider2, request_id=req.id, amount=450, estimated_hours=2, available_dates=["2026-06-02"]
    )

    db.refresh(req)
    assert req.workflow_status == "bidding"

    req = bidding_service.select_bid(db, p=world.landlord, bid_id=b400.id)
    assert req.workflow_status == "assigned"
    assert req.assigned_provider_id == world.provider.user_id
    assert req.selected_bid_id == b400.id
    assert req.estimated_cost == 400.0

    db.refresh(b400)
    db.refresh(b450)
    assert b400.status == "accepted"
    assert b450.status == "rejected"

    with pytest.raises(IllegalTransitionError):
        bidding_service.select_bid(db, p=world.landlord, bid_id=b450.id)

    accepted = db.scalars(select(Bid).where(Bid.request_id == req.id, Bid.status == "accepted")).all()
    assert len(accepted) == 1


def test_resubmitting_replaces_pending_bid(db, world):
    req = _approved(db, world)
    first = bidding_service.submit_bid(db, p=world.provider, request_id=req.id, amount=400, estimated_hours=3)
    second = bidding_service.submit_bid(db, p=world.provider, request_id=req.id, amount=380, estimated_hours=3)

    assert first.id == second.id
    assert second.amount == 380.0
    rows = bidding_service.list_bids(db, p=world.landlord, request_id=req.id)
    assert len(rows) == 1


def test_expired_bid_cannot_be_selected(db, world):
    req = _approved(db, world)
    long_ago = datetime.utcnow() - timedelta(hours=73)
    bid = bidding_service.submit_bid(
        db, p=world.provider, request_id=req.id, amount=300, estimated_hours=1, now=long_ago
    )

    with pytest.raises(PolicyViolationError):
        bidding_service.select_bid(db, p=world.landlord, bid_id=bid.id)

    assert bidding_service.expire_stale_bids(db) == 1
    db.refresh(bid)
    assert bid.status == "expired"


def test_bid_validation_and_roles(db, world):
    req = _approved(db, world)
    with pytest.raises(PermissionDeniedError):
        bidding_service.submit_bid(db, p=world.tenant, request_id=req.id, amount=100, estimated_hours=1)
    with pytest.raises(ValidationError):
        bidding_service.submit_bid(db, p=world.provider, request_id=req.id, amount=0, estimated_hours=1)

    bid = bidding_service.submit_bid(db, p=world.provider, request_id=req.id, amount=100, estimated_hours=1)
    with pytest.raises(PermissionDeniedError):
        bidding_service.select_bid(db, p=world.tenant, bid_id=bid.id)


def test_provider_only_sees_own_bids(db, world):
    req = _approved(db, world)
    bidding_service.submit_bid(db, p=world.provider, request_id=req.id, amount=100, estimated_hours=1)
    bidding_service.submit_bid(db, p=world.provider2, request_id=req.id, amount=120, estimated_hours=1)

    mine = bidding_service.list_bids(db, p=world.provider2, request_id=req.id)
    assert [b.provider_user_id for b in mine] == [world.provider2.user_id]
    assert len(bidding_service.list_bids(db, p=world.landlord, request_id=req.id)) == 2


def test_withdrawn_bid_cannot_be_selected(db, world):
    req = _approved(db, world)
    bid = bidding_service.submit_bid(db, p=world.provider, request_id=req.id, amount=100, estimated_hours=1)
    bid = bidding_service.withdraw_bid(db, p=world.provider, bid_id=bid.id)
    assert bid.status == "withdrawn"

    with pytest.raises(ConcurrencyConflictError):
        bidding_service.select_bid(db, p=world.landlord, bid_id=bid.id)


def test_emergency_requests_take_no_bids(db, world):
    req = request_service.submit_request(
        db,
        p=world.tenant,
        property_id=world.property_id,
        title="Front door broken",
        description="Someone tried a break-in last night",
        category="security",
    )
    assert req.is_emergency is True
    assert req.workflow_status == "approved"

    with pytest.raises(IllegalTransitionError):
        bidding_service.submit_bid(db, p=world.provider, request_id=req.id, amount=100, estimated_hours=1)


def test_suspended_provider_cannot_bid(db, world):
    reliability_service.issue_penalty(
        db, p=world.landlord, provider_user_id=world.provider.user_id, penalty_type="other", points=65, reason="x"
    )
    req = _approved(db, world)
    with pytest.raises(PolicyViolationError):
        bidding_service.submit_bid(db, p=world.provider, request_id=req.id, amount=100, estimated_hours=1)


def test_database_rejects_second_accepted_bid(db, world):
    req = _approved(db, world)
    now = datetime.utcnow()
    for provider in (world.provider, world.provider2):
        db.add(
            Bid(
                org_id=world.org_id,
                request_id=req.id,
                provider_user_id=provider.user_id,
                amount=100,
                estimated_hours=1,
                status="accepted",
                expires_at=now + timedelta(hours=1),
                created_at=now,
                updated_at=now,
            )
        )
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_bid_stats(db, world):
    req = _approved(db, world)
    b = bidding_service.submit_bid(db, p=world.provider, request_id=req.id, amount=100, estimated_hours=1)
    bidding_service.submit_bid(db, p=world.provider2, request_id=req.id, amount=300, estimated_hours=1)
    bidding_service.select_bid(db, p=world.landlord, bid_id=b.id)

    stats = bidding_service.provider_bid_stats(db, org_id=world.org_id, provider_user_id=world.provider.user_id)
    assert stats["total_bids"] == 1
    assert stats["accepted_bids"] == 1
    assert stats["acceptance_rate"] == 1.0


def _commit_first_on_load(monkeypatch, competitor):
    """
    The next select_bid runs `competitor` (in its own session) right after it
    has read the request, so the competitor commits in between read and write.
    """
    real = bidding_service.must_get_request
    fired = {"done": False}

    def hooked(db, **kw):
        row = real(db, **kw)
        if not fired["done"]:
            fired["done"] = True
            competitor()
        return row

    monkeypatch.setattr(bidding_service, "must_get_request", hooked)


def test_racing_selections_accept_exactly_one_bid(db, world, monkeypatch):
    req = _approved(db, world)
    b1 = bidding_service.submit_bid(db, p=world.provider, request_id=req.id, amount=150, estimated_hours=2)
    b2 = bidding_service.submit_bid(db, p=world.provider2, request_id=req.id, amount=120, estimated_hours=2)

    a = SessionLocal()
    b = SessionLocal()
    try:
        _commit_first_on_load(monkeypatch, lambda: bidding_service.select_bid(a, p=world.landlord, bid_id=b1.id))
        with pytest.raises(ConcurrencyConflictError):
            bidding_service.select_bid(b, p=world.landlord, bid_id=b2.id)
    finally:
        a.close()
        b.close()

    db.expire_all()
    accepted = db.scalars(select(Bid).where(Bid.request_id == req.id, Bid.status == "accepted")).all()
    assert [x.id for x in accepted] == [b1.id]
    fresh = db.get(MaintenanceRequest, req.id)
    assert fresh.workflow_status == "assigned"
    assert fresh.assigned_provider_id == world.provider.user_id


def test_selection_racing_a_cancel_loses(db, world, monkeypatch):
    req = _approved(db, world)
    bid = bidding_service.submit_bid(db, p=world.provider, request_id=req.id, amount=150, estimated_hours=2)

    a = SessionLocal()
    b = SessionLocal()
    try:
        _commit_first_on_load(
            monkeypatch,
            lambda: request_service.cancel_request(a, p=world.tenant, request_id=req.id, reason="fixed it myself"),
        )
        with pytest.raises(ConcurrencyConflictError):
            bidding_service.select_bid(b, p=world.landlord, bid_id=bid.id)
    finally:
        a.close()
        b.close()

    db.expire_all()
    fresh = db.get(MaintenanceRequest, req.id)
    assert fresh.workflow_status == "cancelled"
    assert fresh.assigned_provider_id is None
    assert db.scalars(select(Bid).where(Bid.request_id == req.id, Bid.status == "accepted")).all() == []
