# backend/tests/test_request_lifecycle.py
from __future__ import annotations

from datetime import datetime

import pytest
from sqlalchemy import select

from repairflow.auth import Principal
from repairflow.db import SessionLocal
from repairflow.domain.errors import (
    ConcurrencyConflictError,
    IllegalTransitionError,
    NotFoundError,
    PermissionDeniedError,
    PolicyViolationError,
    ValidationError,
)
from repairflow.models import AppUser, MaintenanceRequest, NotificationOutbox, OrgMembership, ProviderPenalty, WorkflowEvent
from repairflow.services import bidding_service, photo_service, reliability_service, request_service
from repairflow.services.conflicts import retry_on_conflict
from repairflow.services.policy_service import upsert_policy


def _policy(db, w, **changes):
    return upsert_policy(
        db, org_id=w.org_id, property_id=w.property_id, actor_user_id=w.landlord.user_id, changes=changes
    )


def _submit(db, w, *, cost, title="Dishwasher not draining", description="Stops mid cycle", category="appliance"):
    return request_service.submit_request(
        db,
        p=w.tenant,
        property_id=w.property_id,
        title=title,
        description=description,
        category=category,
        estimated_cost=cost,
    )


def _assigned(db, w, *, cost=200):
    req = _submit(db, w, cost=cost)
    bid = bidding_service.submit_bid(db, p=w.provider, request_id=req.id, amount=180, estimated_hours=2)
    return bidding_service.select_bid(db, p=w.landlord, bid_id=bid.id)


def test_cost_within_limit_is_approved_on_submit(db, world):
    _policy(db, world, approval_mode="over_amount", auto_approval_limit=500)

    req = _submit(db, world, cost=300)

    assert req.workflow_status == "approved"
    assert req.approval_status == "approved"
    assert req.approval_date is not None
    assert req.tenant_user_id == world.tenant.user_id

    events = db.scalars(select(WorkflowEvent.event_type).where(WorkflowEvent.request_id == req.id)).all()
    assert "request_submitted" in events
    assert "request_approved" in events


def test_cost_over_limit_waits_for_manual_approval(db, world):
    _policy(db, world, approval_mode="over_amount", auto_approval_limit=500)

    req = _submit(db, world, cost=900)
    assert req.workflow_status == "submitted"
    assert req.approval_status == "pending"

    outbox = db.scalars(
        select(NotificationOutbox).where(NotificationOutbox.event_type == "approval_required")
    ).all()
    assert [o.recipient_user_id for o in outbox] == [world.landlord.user_id]

    req = request_service.approve_request(db, p=world.landlord, request_id=req.id, notes="ok")
    assert req.workflow_status == "approved"
    assert req.approval_status == "approved"
    assert req.approved_by_user_id == world.landlord.user_id


def test_tenant_cannot_approve(db, world):
    req = _submit(db, world, cost=900)
    with pytest.raises(PermissionDeniedError):
        request_service.approve_request(db, p=world.tenant, request_id=req.id)


def test_provider_cannot_submit(db, world):
    with pytest.raises(PermissionDeniedError):
        request_service.submit_request(
            db, p=world.provider, property_id=world.property_id, title="Squeaky door", description="Hinge"
        )


def test_deny_requires_reason_and_is_final(db, world):
    req = _submit(db, world, cost=900)
    with pytest.raises(ValidationError):
        request_service.deny_request(db, p=world.landlord, request_id=req.id, reason="   ")

    req = request_service.deny_request(db, p=world.landlord, request_id=req.id, reason="tenant damage")
    assert req.workflow_status == "denied"
    assert req.denial_reason == "tenant damage"

    with pytest.raises(IllegalTransitionError):
        request_service.approve_request(db, p=world.landlord, request_id=req.id)


def test_split_policy_sets_payment_responsibility(db, world):
    _policy(db, world, payment_responsibility="split", split_ceiling=100)
    small = _submit(db, world, cost=80)
    large = _submit(db, world, cost=200)
    assert small.payment_responsibility == "tenant"
    assert large.payment_responsibility == "split"


def test_full_marketplace_flow_updates_ledger(db, world):
    req = _assigned(db, world)
    assert req.workflow_status == "assigned"
    assert req.assigned_provider_id == world.provider.user_id

    req = request_service.start_work(db, p=world.provider, request_id=req.id)
    assert req.workflow_status == "in_progress"
    assert req.started_at is not None

    req = request_service.complete_request(db, p=world.tenant, request_id=req.id, rating=5, review="great")
    assert req.workflow_status == "completed"
    assert req.tenant_rating == 5

    view = reliability_service.reliability_view(db, org_id=world.org_id, provider_user_id=world.provider.user_id)
    assert view["total_jobs"] == 1
    assert view["completed_jobs"] == 1
    assert view["rating_count"] == 1
    assert view["reliability_score"] == 100.0
    assert view["status"] == "active"


def test_only_assigned_provider_starts_work(db, world):
    req = _assigned(db, world)
    with pytest.raises(PermissionDeniedError):
        request_service.start_work(db, p=world.provider2, request_id=req.id)


def test_only_tenant_rates(db, world):
    req = _assigned(db, world)
    request_service.start_work(db, p=world.provider, request_id=req.id)
    with pytest.raises(PermissionDeniedError):
        request_service.complete_request(db, p=world.landlord, request_id=req.id, rating=4)

    req = request_service.complete_request(db, p=world.landlord, request_id=req.id)
    req = request_service.rate_request(db, p=world.tenant, request_id=req.id, rating=4)
    assert req.tenant_rating == 4
    with pytest.raises(PolicyViolationError):
        request_service.rate_request(db, p=world.tenant, request_id=req.id, rating=5)


def test_completion_actors(db, world):
    req = _assigned(db, world)
    request_service.start_work(db, p=world.provider, request_id=req.id)

    neighbour = AppUser(email="neighbour@org-a.local", display_name="neighbour", created_at=datetime.utcnow())
    db.add(neighbour)
    db.commit()
    db.add(OrgMembership(org_id=world.org_id, user_id=neighbour.id, role="tenant", created_at=datetime.utcnow()))
    db.commit()
    other_tenant = Principal(
        org_id=world.org_id, org_slug=world.org_slug, user_id=int(neighbour.id), email=neighbour.email, role="tenant"
    )

    for outsider in (other_tenant, world.provider2):
        with pytest.raises(PermissionDeniedError):
            request_service.complete_request(db, p=outsider, request_id=req.id)

    req = request_service.complete_request(db, p=world.tenant, request_id=req.id)
    assert req.workflow_status == "completed"
    assert req.tenant_rating is None


def test_completion_requires_verified_after_photo(db, world):
    _policy(db, world, require_completion_photos=True)
    req = _assigned(db, world)
    request_service.start_work(db, p=world.provider, request_id=req.id)

    with pytest.raises(PolicyViolationError):
        request_service.complete_request(db, p=world.provider, request_id=req.id)

    before = photo_service.upload_photo(db, p=world.provider, request_id=req.id, kind="before", url="s3://b.jpg")
    photo_service.verify_photo(db, p=world.landlord, photo_id=before.id, status="verified")
    after = photo_service.upload_photo(db, p=world.provider, request_id=req.id, kind="after", url="s3://a.jpg")

    # a verified "before" photo and an unreviewed "after" photo are not enough
    with pytest.raises(PolicyViolationError):
        request_service.complete_request(db, p=world.provider, request_id=req.id)

    photo_service.verify_photo(db, p=world.landlord, photo_id=after.id, status="verified", notes="looks fixed")
    req = request_service.complete_request(db, p=world.provider, request_id=req.id)
    assert req.workflow_status == "completed"


def test_provider_cancellation_is_penalised(db, world):
    req = _assigned(db, world)
    req = request_service.cancel_request(db, p=world.provider, request_id=req.id, reason="double booked")
    assert req.workflow_status == "cancelled"

    pens = db.scalars(select(ProviderPenalty).where(ProviderPenalty.provider_user_id == world.provider.user_id)).all()
    assert [p.penalty_type for p in pens] == ["cancellation"]
    view = reliability_service.reliability_view(db, org_id=world.org_id, provider_user_id=world.provider.user_id)
    assert view["cancelled_jobs"] == 1
    assert view["reliability_score"] == 90.0


def test_manager_cancel_with_no_show(db, world):
    req = _assigned(db, world)
    with pytest.raises(PermissionDeniedError):
        request_service.cancel_request(db, p=world.tenant, request_id=req.id, reason="never came", provider_no_show=True)

    req = request_service.cancel_request(
        db, p=world.landlord, request_id=req.id, reason="never came", provider_no_show=True
    )
    assert req.workflow_status == "cancelled"
    view = reliability_service.reliability_view(db, org_id=world.org_id, provider_user_id=world.provider.user_id)
    assert view["no_show_jobs"] == 1
    # 20 penalty points plus a 100% no-show rate
    assert view["reliability_score"] == 40.0


def test_report_no_show_keeps_request_assigned(db, world):
    req = _assigned(db, world)
    req = request_service.report_no_show(db, p=world.landlord, request_id=req.id, reason="missed window")
    assert req.workflow_status == "assigned"
    pens = reliability_service.list_penalties(db, org_id=world.org_id, provider_user_id=world.provider.user_id)
    assert [p.penalty_type for p in pens] == ["no_show"]


def test_terminal_request_cannot_be_cancelled(db, world):
    req = _submit(db, world, cost=900)
    request_service.deny_request(db, p=world.landlord, request_id=req.id, reason="no")
    with pytest.raises(IllegalTransitionError):
        request_service.cancel_request(db, p=world.landlord, request_id=req.id, reason="again")


def test_stale_write_is_a_conflict(db, world):
    req = _submit(db, world, cost=900)

    other = SessionLocal()
    try:
        stale = other.get(MaintenanceRequest, req.id)
        assert stale.version == 1

        request_service.approve_request(db, p=world.landlord, request_id=req.id)

        with pytest.raises(ConcurrencyConflictError) as ei:
            request_service.deny_request(other, p=world.landlord, request_id=req.id, reason="too expensive")
        assert ei.value.retryable is True

        # a fresh attempt sees the committed state
        with pytest.raises(IllegalTransitionError):
            retry_on_conflict(
                other,
                lambda: request_service.deny_request(other, p=world.landlord, request_id=req.id, reason="again"),
            )
    finally:
        other.close()

    db.expire_all()
    assert db.get(MaintenanceRequest, req.id).workflow_status == "approved"


def test_cross_org_request_is_not_found(db, world, make_world):
    other = make_world("org-b")
    req = _submit(db, world, cost=100)
    with pytest.raises(NotFoundError):
        request_service.get_request(db, p=other.landlord, request_id=req.id)
