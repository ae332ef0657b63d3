# backend/repairflow/services/bidding_service.py
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..auth import Principal, assert_manager, assert_provider
from ..domain.enums import BidStatus, WorkflowStatus
from ..domain.errors import (
    ConcurrencyConflictError,
    IllegalTransitionError,
    PermissionDeniedError,
    PolicyViolationError,
    ValidationError,
)
from ..domain.events import emit_workflow_event
from ..domain.transitions import assert_request_transition
from ..models import Bid, MaintenanceRequest
from . import notifications, reliability_service
from .conflicts import stale_as_conflict
from .ownership import must_get_bid, must_get_request
from .policy_service import get_policy_snapshot
from .runtime_metrics import METRICS

log = logging.getLogger("repairflow.bidding")


def _dumps(v: Any) -> str:
    try:
        return json.dumps(v, default=str)
    except (TypeError, ValueError):
        return "[]"


def _open_marketplace(db: Session, *, req: MaintenanceRequest, actor_user_id: Optional[int], now: datetime) -> None:
    assert_request_transition(req.workflow_status, WorkflowStatus.BIDDING, via="marketplace", is_emergency=bool(req.is_emergency))
    req.workflow_status = WorkflowStatus.BIDDING.value
    req.updated_at = now
    db.add(req)
    emit_workflow_event(
        db,
        org_id=req.org_id,
        actor_user_id=actor_user_id,
        event_type="bidding_opened",
        property_id=req.property_id,
        request_id=req.id,
    )


@stale_as_conflict
def open_bidding(db: Session, *, p: Principal, request_id: int, now: Optional[datetime] = None) -> MaintenanceRequest:
    now = now or datetime.utcnow()
    assert_manager(p, "open bidding")
    req = must_get_request(db, org_id=p.org_id, request_id=request_id)
    _open_marketplace(db, req=req, actor_user_id=p.user_id, now=now)
    db.commit()
    db.refresh(req)
    return req


@stale_as_conflict
def submit_bid(
    db: Session,
    *,
    p: Principal,
    request_id: int,
    amount: float,
    estimated_hours: float,
    available_dates: Optional[list[str]] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Bid:
    """
    A provider holds at most one pending bid per request: re-submitting
    replaces the amount/hours/dates of the existing pending bid. The first bid
    on an approved request opens the marketplace implicitly.
    """
    now = now or datetime.utcnow()
    assert_provider(p, "submit bid")
    if amount is None or float(amount) <= 0:
        raise ValidationError("bid amount must be positive", amount=amount)
    if estimated_hours is None or float(estimated_hours) <= 0:
        raise ValidationError("estimated_hours must be positive", estimated_hours=estimated_hours)

    req = must_get_request(db, org_id=p.org_id, request_id=request_id)
    reliability_service.assert_provider_eligible(db, org_id=p.org_id, provider_user_id=p.user_id, action="bid")

    status = WorkflowStatus.parse(req.workflow_status)
    if status == WorkflowStatus.APPROVED:
        _open_marketplace(db, req=req, actor_user_id=p.user_id, now=now)
    elif status != WorkflowStatus.BIDDING:
        raise IllegalTransitionError(
            "maintenance_request", status.value, "bid", reason="bids are only accepted while bidding is open"
        )

    policy = get_policy_snapshot(db, org_id=req.org_id, property_id=req.property_id)
    expires_at = now + timedelta(hours=int(policy.bid_window_hours))

    existing = db.scalar(
        select(Bid).where(
            Bid.org_id == p.org_id,
            Bid.request_id == req.id,
            Bid.provider_user_id == p.user_id,
            Bid.status == BidStatus.PENDING.value,
        )
    )
    if existing is not None:
        bid = existing
        event = "bid_replaced"
    else:
        bid = Bid(
            org_id=p.org_id,
            request_id=int(req.id),
            provider_user_id=p.user_id,
            status=BidStatus.PENDING.value,
            created_at=now,
        )
        event = "bid_submitted"

    bid.amount = float(amount)
    bid.estimated_hours = float(estimated_hours)
    bid.available_dates_json = _dumps(list(available_dates or []))
    bid.notes = notes
    bid.expires_at = expires_at
    bid.updated_at = now
    db.add(bid)
    db.flush()

    emit_workflow_event(
        db,
        principal=p,
        event_type=event,
        property_id=req.property_id,
        request_id=req.id,
        payload={"bid_id": bid.id, "amount": bid.amount, "expires_at": expires_at},
    )
    try:
        db.commit()
    except (StaleDataError, IntegrityError):
        db.rollback()
        raise ConcurrencyConflictError("request changed while bidding; retry", request_id=request_id)
    db.refresh(bid)
    METRICS.inc("bids_submitted")
    return bid


def withdraw_bid(db: Session, *, p: Principal, bid_id: int, now: Optional[datetime] = None) -> Bid:
    now = now or datetime.utcnow()
    assert_provider(p, "withdraw bid")
    bid = must_get_bid(db, org_id=p.org_id, bid_id=bid_id)
    if int(bid.provider_user_id) != int(p.user_id):
        raise PermissionDeniedError("providers may only withdraw their own bids", bid_id=bid_id)

    res = db.execute(
        update(Bid)
        .where(Bid.id == bid.id, Bid.status == BidStatus.PENDING.value)
        .values(status=BidStatus.WITHDRAWN.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if int(res.rowcount or 0) != 1:
        db.rollback()
        db.refresh(bid)
        raise IllegalTransitionError("bid", bid.status, BidStatus.WITHDRAWN.value)

    emit_workflow_event(
        db,
        principal=p,
        event_type="bid_withdrawn",
        request_id=bid.request_id,
        payload={"bid_id": bid.id},
    )
    db.commit()
    db.refresh(bid)
    return bid


def reject_bid(
    db: Session,
    *,
    p: Principal,
    bid_id: int,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Bid:
    now = now or datetime.utcnow()
    assert_manager(p, "reject bid")
    bid = must_get_bid(db, org_id=p.org_id, bid_id=bid_id)

    res = db.execute(
        update(Bid)
        .where(Bid.id == bid.id, Bid.status == BidStatus.PENDING.value)
        .values(status=BidStatus.REJECTED.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if int(res.rowcount or 0) != 1:
        db.rollback()
        db.refresh(bid)
        raise IllegalTransitionError("bid", bid.status, BidStatus.REJECTED.value)

    notifications.enqueue(
        db,
        org_id=p.org_id,
        event_type="bid_rejected",
        recipient_user_ids=[bid.provider_user_id],
        payload={"bid_id": bid.id, "request_id": bid.request_id, "reason": reason},
    )
    emit_workflow_event(
        db,
        principal=p,
        event_type="bid_rejected",
        request_id=bid.request_id,
        payload={"bid_id": bid.id, "reason": reason},
    )
    db.commit()
    db.refresh(bid)
    return bid


@stale_as_conflict
def select_bid(db: Session, *, p: Principal, bid_id: int, now: Optional[datetime] = None) -> MaintenanceRequest:
    """
    Compare-and-swap on (id, status=pending, expires_at > now). Exactly one
    concurrent selection for a request can win; losers see
    ConcurrencyConflictError, an expired bid gives PolicyViolationError.
    """
    now = now or datetime.utcnow()
    assert_manager(p, "select bid")
    bid = must_get_bid(db, org_id=p.org_id, bid_id=bid_id)
    req = must_get_request(db, org_id=p.org_id, request_id=bid.request_id)

    assert_request_transition(req.workflow_status, WorkflowStatus.ASSIGNED, via="selection")
    reliability_service.assert_provider_eligible(
        db, org_id=p.org_id, provider_user_id=bid.provider_user_id, action="be selected"
    )

    try:
        res = db.execute(
            update(Bid)
            .where(
                Bid.id == bid.id,
                Bid.status == BidStatus.PENDING.value,
                Bid.expires_at > now,
            )
            .values(status=BidStatus.ACCEPTED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
    except IntegrityError:
        # partial unique index: another bid for this request was accepted first
        db.rollback()
        METRICS.inc("bid_select_conflicts")
        raise ConcurrencyConflictError("bid no longer available", bid_id=bid_id)

    if int(res.rowcount or 0) != 1:
        db.rollback()
        db.refresh(bid)
        if BidStatus.parse(bid.status) == BidStatus.EXPIRED or (
            BidStatus.parse(bid.status) == BidStatus.PENDING and bid.expires_at <= now
        ):
            raise PolicyViolationError("bid has expired", bid_id=bid_id, expires_at=bid.expires_at)
        METRICS.inc("bid_select_conflicts")
        raise ConcurrencyConflictError("bid no longer available", bid_id=bid_id, status=bid.status)

    db.execute(
        update(Bid)
        .where(
            Bid.request_id == bid.request_id,
            Bid.id != bid.id,
            Bid.status == BidStatus.PENDING.value,
        )
        .values(status=BidStatus.REJECTED.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )

    req.workflow_status = WorkflowStatus.ASSIGNED.value
    req.selected_bid_id = int(bid.id)
    req.assigned_provider_id = int(bid.provider_user_id)
    req.assigned_at = now
    req.estimated_cost = float(bid.amount)
    req.updated_at = now
    db.add(req)

    reliability_service.record_job_assigned(db, org_id=p.org_id, provider_user_id=bid.provider_user_id)
    notifications.enqueue(
        db,
        org_id=p.org_id,
        event_type="bid_accepted",
        recipient_user_ids=[bid.provider_user_id, req.tenant_user_id],
        payload={"bid_id": bid.id, "request_id": req.id, "amount": bid.amount},
    )
    emit_workflow_event(
        db,
        principal=p,
        event_type="bid_selected",
        property_id=req.property_id,
        request_id=req.id,
        payload={"bid_id": bid.id, "provider_user_id": bid.provider_user_id, "amount": bid.amount},
    )

    try:
        db.commit()
    except (StaleDataError, IntegrityError):
        db.rollback()
        METRICS.inc("bid_select_conflicts")
        raise ConcurrencyConflictError("bid no longer available", bid_id=bid_id)

    db.refresh(req)
    METRICS.inc("bids_selected")
    log.info(
        "bid_selected",
        extra={"org_id": p.org_id, "maintenance_request_id": req.id, "bid_id": bid.id, "provider_id": bid.provider_user_id},
    )
    return req


def list_bids(
    db: Session,
    *,
    p: Principal,
    request_id: int,
    status: Optional[str] = None,
) -> list[Bid]:
    """Managers see all bids; a provider sees only their own."""
    req = must_get_request(db, org_id=p.org_id, request_id=request_id)
    q = select(Bid).where(Bid.org_id == p.org_id, Bid.request_id == req.id).order_by(Bid.amount.asc(), Bid.id.asc())
    if status:
        q = q.where(Bid.status == BidStatus.parse(status).value)
    if p.is_provider:
        q = q.where(Bid.provider_user_id == p.user_id)
    elif not p.is_manager and int(req.tenant_user_id) != int(p.user_id):
        raise PermissionDeniedError("not allowed to view bids for this request", request_id=request_id)
    return list(db.scalars(q).all())


def expire_stale_bids(db: Session, *, now: Optional[datetime] = None) -> int:
    now = now or datetime.utcnow()
    res = db.execute(
        update(Bid)
        .where(Bid.status == BidStatus.PENDING.value, Bid.expires_at <= now)
        .values(status=BidStatus.EXPIRED.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    n = int(res.rowcount or 0)
    db.commit()
    if n:
        METRICS.inc("bids_expired", n)
        log.info("bids_expired", extra={"event": f"expired={n}"})
    return n


def provider_bid_stats(db: Session, *, org_id: int, provider_user_id: int) -> dict[str, Any]:
    total, avg_amount = db.execute(
        select(func.count(Bid.id), func.avg(Bid.amount)).where(
            Bid.org_id == org_id, Bid.provider_user_id == provider_user_id
        )
    ).one()
    rows = db.execute(
        select(Bid.status, func.count(Bid.id))
        .where(Bid.org_id == org_id, Bid.provider_user_id == provider_user_id)
        .group_by(Bid.status)
    ).all()
    by_status = {str(s): int(n) for s, n in rows}
    total = int(total or 0)
    accepted = int(by_status.get(BidStatus.ACCEPTED.value, 0))
    return {
        "provider_user_id": int(provider_user_id),
        "total_bids": total,
        "accepted_bids": accepted,
        "acceptance_rate": round(accepted / total, 4) if total else 0.0,
        "average_amount": round(float(avg_amount), 2) if avg_amount is not None else None,
        "by_status": by_status,
    }
