# backend/repairflow/services/request_service.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import desc, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..auth import Principal, assert_manager, assert_provider
from ..config import settings
from ..domain.approval import decide_approval, resolve_payment_responsibility
from ..domain.classifier import classify_request
from ..domain.enums import (
    ApprovalStatus,
    BidStatus,
    TERMINAL_WORKFLOW,
    WorkflowStatus,
)
from ..domain.errors import (
    ConcurrencyConflictError,
    IllegalTransitionError,
    PermissionDeniedError,
    PolicyViolationError,
    ValidationError,
)
from ..domain.events import emit_workflow_event
from ..domain.transitions import assert_request_transition
from ..models import Bid, MaintenanceRequest, Property
from . import escalation_service, notifications, photo_service, reliability_service
from .conflicts import stale_as_conflict
from .ownership import must_get_property, must_get_request
from .policy_service import get_policy_snapshot
from .runtime_metrics import METRICS

log = logging.getLogger("repairflow.requests")


def _commit(db: Session, req: MaintenanceRequest) -> MaintenanceRequest:
    """Commit one command. A stale version (another writer won) becomes a retryable conflict."""
    rid = req.id
    try:
        db.commit()
    except (StaleDataError, IntegrityError) as e:
        db.rollback()
        METRICS.inc("request_conflicts")
        log.warning("request_conflict", extra={"maintenance_request_id": rid, "event": type(e).__name__})
        raise ConcurrencyConflictError("maintenance request was modified concurrently; retry", request_id=rid)
    db.refresh(req)
    return req


def _landlord_id(db: Session, req: MaintenanceRequest) -> Optional[int]:
    prop = db.get(Property, int(req.property_id))
    return int(prop.landlord_user_id) if prop is not None and prop.landlord_user_id is not None else None


def _move(
    db: Session,
    req: MaintenanceRequest,
    target: WorkflowStatus,
    *,
    via: str,
    now: datetime,
    p: Optional[Principal] = None,
    payload: Optional[dict[str, Any]] = None,
) -> None:
    src = req.workflow_status
    assert_request_transition(src, target, via=via, is_emergency=bool(req.is_emergency))
    req.workflow_status = target.value
    req.updated_at = now
    db.add(req)

    body = {"from": src, "to": target.value}
    body.update(payload or {})
    emit_workflow_event(
        db,
        principal=p,
        org_id=req.org_id if p is None else None,
        event_type=f"request_{target.value}",
        property_id=req.property_id,
        request_id=req.id,
        payload=body,
    )
    log.info(
        "request_transition",
        extra={"org_id": req.org_id, "maintenance_request_id": req.id, "event": f"{src}->{target.value}"},
    )


# -----------------------------------------------------------------------------
# Submission + approval
# -----------------------------------------------------------------------------
@stale_as_conflict
def submit_request(
    db: Session,
    *,
    p: Principal,
    property_id: int,
    title: str,
    description: str,
    category: Optional[str] = None,
    declared_urgency: Optional[str] = None,
    estimated_cost: Optional[float] = None,
    tenant_user_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> MaintenanceRequest:
    now = now or datetime.utcnow()
    if p.is_provider:
        raise PermissionDeniedError("providers cannot submit maintenance requests")
    if not (title or "").strip():
        raise ValidationError("title is required")
    if not (description or "").strip():
        raise ValidationError("description is required")
    if estimated_cost is not None and float(estimated_cost) < 0:
        raise ValidationError("estimated_cost must be >= 0", estimated_cost=estimated_cost)

    prop = must_get_property(db, org_id=p.org_id, property_id=property_id)
    if p.is_tenant:
        tenant_id = int(p.user_id)
    else:
        tenant_id = int(tenant_user_id) if tenant_user_id is not None else int(p.user_id)

    cls = classify_request(
        category=category,
        title=title,
        description=description,
        declared_urgency=declared_urgency,
    )
    policy = get_policy_snapshot(db, org_id=p.org_id, property_id=prop.id)

    ceiling = None
    if cls.is_emergency:
        ceiling = escalation_service.initial_ceiling(
            db, org_id=p.org_id, property_id=prop.id, emergency_type=cls.emergency_type.value
        )
    decision = decide_approval(
        is_emergency=cls.is_emergency,
        policy=policy,
        estimated_cost=estimated_cost,
        emergency_ceiling=ceiling,
    )

    req = MaintenanceRequest(
        org_id=p.org_id,
        property_id=int(prop.id),
        tenant_user_id=tenant_id,
        title=title.strip(),
        description=description.strip(),
        category=cls.category,
        declared_urgency=(declared_urgency or None),
        priority=cls.priority.value,
        is_emergency=cls.is_emergency,
        emergency_type=cls.emergency_type.value if cls.emergency_type else None,
        workflow_status=WorkflowStatus.SUBMITTED.value,
        payment_responsibility=resolve_payment_responsibility(policy, estimated_cost).value,
        approval_status=ApprovalStatus.PENDING.value,
        estimated_cost=float(estimated_cost) if estimated_cost is not None else None,
        created_at=now,
        updated_at=now,
    )
    db.add(req)
    db.flush()

    emit_workflow_event(
        db,
        principal=p,
        event_type="request_submitted",
        property_id=req.property_id,
        request_id=req.id,
        payload={"classification": cls.as_dict(), "policy": policy.as_dict(), "decision": decision.reason},
    )

    if decision.approved:
        req.approval_status = decision.status.value
        req.approval_reason = decision.reason
        req.approval_date = now
        _move(db, req, WorkflowStatus.APPROVED, via="approval", now=now, p=p, payload={"auto": True})
    else:
        req.approval_reason = decision.reason
        notifications.enqueue(
            db,
            org_id=p.org_id,
            event_type="approval_required",
            recipient_user_ids=[prop.landlord_user_id],
            payload={"request_id": req.id, "title": req.title, "reason": decision.reason},
        )

    if cls.is_emergency:
        escalation_service.start_tracking(db, req=req, now=now)

    METRICS.inc("requests_submitted")
    if cls.is_emergency:
        METRICS.inc("emergency_requests_submitted")
    return _commit(db, req)


def _assert_pending_approval(req: MaintenanceRequest, attempted: str) -> None:
    if WorkflowStatus.parse(req.workflow_status) != WorkflowStatus.SUBMITTED:
        raise IllegalTransitionError("maintenance_request", req.workflow_status, attempted)
    if ApprovalStatus.parse(req.approval_status) != ApprovalStatus.PENDING:
        raise IllegalTransitionError(
            "maintenance_request", req.workflow_status, attempted, reason=f"approval already {req.approval_status}"
        )


@stale_as_conflict
def approve_request(
    db: Session,
    *,
    p: Principal,
    request_id: int,
    estimated_cost: Optional[float] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> MaintenanceRequest:
    now = now or datetime.utcnow()
    assert_manager(p, "approve request")
    req = must_get_request(db, org_id=p.org_id, request_id=request_id)
    _assert_pending_approval(req, WorkflowStatus.APPROVED.value)

    if estimated_cost is not None:
        if float(estimated_cost) < 0:
            raise ValidationError("estimated_cost must be >= 0")
        req.estimated_cost = float(estimated_cost)
        policy = get_policy_snapshot(db, org_id=req.org_id, property_id=req.property_id)
        req.payment_responsibility = resolve_payment_responsibility(policy, req.estimated_cost).value

    req.approval_status = ApprovalStatus.APPROVED.value
    req.approved_by_user_id = p.user_id
    req.approval_date = now
    req.approval_reason = notes or "manual approval"
    _move(db, req, WorkflowStatus.APPROVED, via="approval", now=now, p=p, payload={"auto": False})

    notifications.enqueue(
        db,
        org_id=p.org_id,
        event_type="request_approved",
        recipient_user_ids=[req.tenant_user_id],
        payload={"request_id": req.id},
    )
    return _commit(db, req)


@stale_as_conflict
def deny_request(
    db: Session,
    *,
    p: Principal,
    request_id: int,
    reason: str,
    now: Optional[datetime] = None,
) -> MaintenanceRequest:
    now = now or datetime.utcnow()
    assert_manager(p, "deny request")
    if not (reason or "").strip():
        raise ValidationError("a denial reason is required")
    req = must_get_request(db, org_id=p.org_id, request_id=request_id)
    _assert_pending_approval(req, WorkflowStatus.DENIED.value)

    req.approval_status = ApprovalStatus.DENIED.value
    req.approved_by_user_id = p.user_id
    req.approval_date = now
    req.denial_reason = reason.strip()
    _move(db, req, WorkflowStatus.DENIED, via="approval", now=now, p=p, payload={"reason": req.denial_reason})
    escalation_service.close_for_request(db, req=req, reason="denied", now=now)

    notifications.enqueue(
        db,
        org_id=p.org_id,
        event_type="request_denied",
        recipient_user_ids=[req.tenant_user_id],
        payload={"request_id": req.id, "reason": req.denial_reason},
    )
    return _commit(db, req)


@stale_as_conflict
def request_info(db: Session, *, p: Principal, request_id: int, message: str) -> MaintenanceRequest:
    """Ask the tenant for more detail while approval is pending. No state change."""
    assert_manager(p, "request more information")
    if not (message or "").strip():
        raise ValidationError("message is required")
    req = must_get_request(db, org_id=p.org_id, request_id=request_id)
    _assert_pending_approval(req, "info_requested")

    notifications.enqueue(
        db,
        org_id=p.org_id,
        event_type="request_info_needed",
        recipient_user_ids=[req.tenant_user_id],
        payload={"request_id": req.id, "message": message.strip()},
    )
    emit_workflow_event(
        db,
        principal=p,
        event_type="request_info_requested",
        property_id=req.property_id,
        request_id=req.id,
        payload={"message": message.strip()},
    )
    db.commit()
    db.refresh(req)
    return req


# -----------------------------------------------------------------------------
# Emergency dispatch
# -----------------------------------------------------------------------------
def _dispatch(
    db: Session,
    *,
    req: MaintenanceRequest,
    provider_user_id: int,
    now: datetime,
    p: Optional[Principal],
) -> None:
    assert_request_transition(req.workflow_status, WorkflowStatus.ASSIGNED, via="dispatch", is_emergency=bool(req.is_emergency))
    reliability_service.assert_provider_eligible(
        db, org_id=req.org_id, provider_user_id=provider_user_id, action="be dispatched"
    )
    req.assigned_provider_id = int(provider_user_id)
    req.assigned_at = now
    _move(
        db,
        req,
        WorkflowStatus.ASSIGNED,
        via="dispatch",
        now=now,
        p=p,
        payload={"provider_user_id": int(provider_user_id)},
    )
    reliability_service.record_job_assigned(db, org_id=req.org_id, provider_user_id=provider_user_id)

    t = escalation_service.get_tracking(db, org_id=req.org_id, request_id=req.id)
    if t is not None and escalation_service.is_open(t):
        escalation_service.arm_arrival_deadline(db, t=t, now=now)

    notifications.enqueue(
        db,
        org_id=req.org_id,
        event_type="provider_dispatched",
        recipient_user_ids=[provider_user_id, req.tenant_user_id],
        payload={"request_id": req.id, "title": req.title, "emergency_type": req.emergency_type},
    )


@stale_as_conflict
def dispatch_provider(
    db: Session,
    *,
    p: Principal,
    request_id: int,
    provider_user_id: int,
    now: Optional[datetime] = None,
) -> MaintenanceRequest:
    now = now or datetime.utcnow()
    assert_manager(p, "dispatch provider")
    req = must_get_request(db, org_id=p.org_id, request_id=request_id)
    if not req.is_emergency:
        raise IllegalTransitionError(
            "maintenance_request", req.workflow_status, WorkflowStatus.ASSIGNED.value,
            reason="direct dispatch is reserved for emergencies",
        )
    _dispatch(db, req=req, provider_user_id=provider_user_id, now=now, p=p)
    METRICS.inc("emergency_dispatches")
    return _commit(db, req)


@stale_as_conflict
def respond_to_emergency(
    db: Session,
    *,
    p: Principal,
    request_id: int,
    eta_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> MaintenanceRequest:
    """
    First provider acknowledgement freezes escalation. With
    escalation_auto_dispatch_first_responder on, an approved request is
    dispatched to that provider straight away.
    """
    now = now or datetime.utcnow()
    assert_provider(p, "respond to emergency")
    req = must_get_request(db, org_id=p.org_id, request_id=request_id)
    if not req.is_emergency:
        raise ValidationError("request is not an emergency", request_id=request_id)
    if WorkflowStatus.parse(req.workflow_status) in TERMINAL_WORKFLOW:
        raise IllegalTransitionError("maintenance_request", req.workflow_status, "respond")

    reliability_service.assert_provider_eligible(db, org_id=p.org_id, provider_user_id=p.user_id, action="respond")
    t = escalation_service.must_get_tracking(db, org_id=p.org_id, request_id=req.id)
    first = escalation_service.record_first_response(db, t=t, provider_user_id=p.user_id, now=now)

    if first:
        minutes = (now - t.created_at).total_seconds() / 60.0
        reliability_service.record_response(db, org_id=p.org_id, provider_user_id=p.user_id, minutes=minutes)
        emit_workflow_event(
            db,
            principal=p,
            event_type="emergency_response",
            property_id=req.property_id,
            request_id=req.id,
            payload={"eta_minutes": eta_minutes, "level": t.escalation_level, "minutes": round(minutes, 2)},
        )
        notifications.enqueue(
            db,
            org_id=p.org_id,
            event_type="emergency_response",
            recipient_user_ids=[_landlord_id(db, req), req.tenant_user_id],
            payload={"request_id": req.id, "provider_user_id": p.user_id, "eta_minutes": eta_minutes},
        )

        if (
            settings.escalation_auto_dispatch_first_responder
            and WorkflowStatus.parse(req.workflow_status) == WorkflowStatus.APPROVED
        ):
            _dispatch(db, req=req, provider_user_id=p.user_id, now=now, p=None)

    return _commit(db, req)


# -----------------------------------------------------------------------------
# Execution
# -----------------------------------------------------------------------------
@stale_as_conflict
def start_work(db: Session, *, p: Principal, request_id: int, now: Optional[datetime] = None) -> MaintenanceRequest:
    now = now or datetime.utcnow()
    assert_provider(p, "start work")
    req = must_get_request(db, org_id=p.org_id, request_id=request_id)
    if req.assigned_provider_id is None or int(req.assigned_provider_id) != int(p.user_id):
        raise PermissionDeniedError("only the assigned provider can start work", request_id=request_id)

    req.started_at = now
    _move(db, req, WorkflowStatus.IN_PROGRESS, via="start_work", now=now, p=p)

    t = escalation_service.get_tracking(db, org_id=req.org_id, request_id=req.id)
    if t is not None:
        escalation_service.disarm(db, t=t, now=now)
    return _commit(db, req)


@stale_as_conflict
def complete_request(
    db: Session,
    *,
    p: Principal,
    request_id: int,
    rating: Optional[int] = None,
    review: Optional[str] = None,
    now: Optional[datetime] = None,
) -> MaintenanceRequest:
    now = now or datetime.utcnow()
    req = must_get_request(db, org_id=p.org_id, request_id=request_id)

    is_assigned = req.assigned_provider_id is not None and int(req.assigned_provider_id) == int(p.user_id)
    is_own_tenant = p.is_tenant and int(req.tenant_user_id) == int(p.user_id)
    if not (p.is_manager or is_own_tenant or (p.is_provider and is_assigned)):
        raise PermissionDeniedError("not allowed to complete this request", request_id=request_id)
    if rating is not None and not is_own_tenant:
        raise PermissionDeniedError("only the tenant can rate the work")
    if rating is not None and (int(rating) < 1 or int(rating) > 5):
        raise ValidationError("rating must be between 1 and 5", rating=rating)

    assert_request_transition(req.workflow_status, WorkflowStatus.COMPLETED, via="completion")
    policy = get_policy_snapshot(db, org_id=req.org_id, property_id=req.property_id)
    photo_service.assert_completion_evidence(db, req=req, policy=policy)

    req.completion_date = now
    if rating is not None:
        req.tenant_rating = int(rating)
        req.tenant_review = review
    _move(db, req, WorkflowStatus.COMPLETED, via="completion", now=now, p=p, payload={"rating": rating})
    escalation_service.close_for_request(db, req=req, reason="completed", now=now)

    if req.assigned_provider_id is not None:
        hours = None
        if req.started_at is not None:
            hours = (now - req.started_at).total_seconds() / 3600.0
        reliability_service.record_completion(
            db, org_id=req.org_id, provider_user_id=req.assigned_provider_id, hours=hours
        )
        if rating is not None:
            reliability_service.record_rating(
                db, org_id=req.org_id, provider_user_id=req.assigned_provider_id, rating=int(rating)
            )

    notifications.enqueue(
        db,
        org_id=req.org_id,
        event_type="request_completed",
        recipient_user_ids=[req.tenant_user_id, _landlord_id(db, req), req.assigned_provider_id],
        payload={"request_id": req.id, "rating": rating},
    )
    METRICS.inc("requests_completed")
    return _commit(db, req)


@stale_as_conflict
def rate_request(
    db: Session,
    *,
    p: Principal,
    request_id: int,
    rating: int,
    review: Optional[str] = None,
) -> MaintenanceRequest:
    req = must_get_request(db, org_id=p.org_id, request_id=request_id)
    if not (p.is_tenant and int(req.tenant_user_id) == int(p.user_id)):
        raise PermissionDeniedError("only the tenant can rate the work")
    if WorkflowStatus.parse(req.workflow_status) != WorkflowStatus.COMPLETED:
        raise IllegalTransitionError("maintenance_request", req.workflow_status, "rated")
    if req.tenant_rating is not None:
        raise PolicyViolationError("request already rated", request_id=request_id)
    if int(rating) < 1 or int(rating) > 5:
        raise ValidationError("rating must be between 1 and 5", rating=rating)

    req.tenant_rating = int(rating)
    req.tenant_review = review
    req.updated_at = datetime.utcnow()
    db.add(req)
    if req.assigned_provider_id is not None:
        reliability_service.record_rating(
            db, org_id=req.org_id, provider_user_id=req.assigned_provider_id, rating=int(rating)
        )
    emit_workflow_event(
        db,
        principal=p,
        event_type="request_rated",
        property_id=req.property_id,
        request_id=req.id,
        payload={"rating": int(rating)},
    )
    return _commit(db, req)


# -----------------------------------------------------------------------------
# Cancellation + no-show
# -----------------------------------------------------------------------------
@stale_as_conflict
def cancel_request(
    db: Session,
    *,
    p: Principal,
    request_id: int,
    reason: str,
    provider_no_show: bool = False,
    now: Optional[datetime] = None,
) -> MaintenanceRequest:
    now = now or datetime.utcnow()
    if not (reason or "").strip():
        raise ValidationError("a cancellation reason is required")
    req = must_get_request(db, org_id=p.org_id, request_id=request_id)
    status = WorkflowStatus.parse(req.workflow_status)
    assigned = req.assigned_provider_id

    is_assigned_provider = p.is_provider and assigned is not None and int(assigned) == int(p.user_id)
    is_own_tenant = p.is_tenant and int(req.tenant_user_id) == int(p.user_id)
    if not (p.is_manager or is_own_tenant or is_assigned_provider):
        raise PermissionDeniedError("not allowed to cancel this request", request_id=request_id)
    if provider_no_show and not p.is_manager:
        raise PermissionDeniedError("only landlord/agency can report a provider no-show")
    if provider_no_show and (assigned is None or status not in (WorkflowStatus.ASSIGNED, WorkflowStatus.IN_PROGRESS)):
        raise ValidationError("no-show applies only to an assigned request")

    req.cancelled_by_user_id = p.user_id
    req.cancellation_reason = reason.strip()
    _move(
        db,
        req,
        WorkflowStatus.CANCELLED,
        via="cancel",
        now=now,
        p=p,
        payload={"reason": req.cancellation_reason, "by_role": p.role, "provider_no_show": provider_no_show},
    )

    db.execute(
        update(Bid)
        .where(Bid.request_id == req.id, Bid.status == BidStatus.PENDING.value)
        .values(status=BidStatus.REJECTED.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    escalation_service.close_for_request(db, req=req, reason="cancelled", now=now)

    if is_assigned_provider:
        reliability_service.record_cancellation(
            db,
            org_id=req.org_id,
            provider_user_id=p.user_id,
            request_id=req.id,
            reason=req.cancellation_reason,
            actor_user_id=p.user_id,
        )
    elif provider_no_show and assigned is not None:
        reliability_service.record_no_show(
            db,
            org_id=req.org_id,
            provider_user_id=int(assigned),
            request_id=req.id,
            reason=req.cancellation_reason,
            actor_user_id=p.user_id,
        )

    notifications.enqueue(
        db,
        org_id=req.org_id,
        event_type="request_cancelled",
        recipient_user_ids=[req.tenant_user_id, _landlord_id(db, req), assigned],
        payload={"request_id": req.id, "reason": req.cancellation_reason},
    )
    METRICS.inc("requests_cancelled")
    return _commit(db, req)


@stale_as_conflict
def report_no_show(
    db: Session,
    *,
    p: Principal,
    request_id: int,
    reason: Optional[str] = None,
) -> MaintenanceRequest:
    """Records a no-show against the assigned provider without touching the request state."""
    assert_manager(p, "report no-show")
    req = must_get_request(db, org_id=p.org_id, request_id=request_id)
    if req.assigned_provider_id is None or WorkflowStatus.parse(req.workflow_status) != WorkflowStatus.ASSIGNED:
        raise ValidationError("no-show applies only to an assigned request that has not started")

    reliability_service.record_no_show(
        db,
        org_id=req.org_id,
        provider_user_id=int(req.assigned_provider_id),
        request_id=req.id,
        reason=reason,
        actor_user_id=p.user_id,
    )
    db.commit()
    db.refresh(req)
    return req


# -----------------------------------------------------------------------------
# Reads
# -----------------------------------------------------------------------------
def get_request(db: Session, *, p: Principal, request_id: int) -> MaintenanceRequest:
    req = must_get_request(db, org_id=p.org_id, request_id=request_id)
    if p.is_tenant and int(req.tenant_user_id) != int(p.user_id):
        raise PermissionDeniedError("not your request", request_id=request_id)
    if p.is_provider:
        mine = req.assigned_provider_id is not None and int(req.assigned_provider_id) == int(p.user_id)
        open_market = WorkflowStatus.parse(req.workflow_status) in (WorkflowStatus.APPROVED, WorkflowStatus.BIDDING)
        if not (mine or open_market or req.is_emergency):
            raise PermissionDeniedError("not visible to this provider", request_id=request_id)
    return req


def list_requests(
    db: Session,
    *,
    p: Principal,
    status: Optional[str] = None,
    property_id: Optional[int] = None,
    emergency_only: bool = False,
    limit: int = 100,
) -> list[MaintenanceRequest]:
    q = select(MaintenanceRequest).where(MaintenanceRequest.org_id == p.org_id)
    if status:
        q = q.where(MaintenanceRequest.workflow_status == WorkflowStatus.parse(status).value)
    if property_id is not None:
        q = q.where(MaintenanceRequest.property_id == int(property_id))
    if emergency_only:
        q = q.where(MaintenanceRequest.is_emergency.is_(True))

    if p.is_tenant:
        q = q.where(MaintenanceRequest.tenant_user_id == p.user_id)
    elif p.is_provider:
        q = q.where(
            or_(
                MaintenanceRequest.assigned_provider_id == p.user_id,
                MaintenanceRequest.workflow_status.in_([WorkflowStatus.APPROVED.value, WorkflowStatus.BIDDING.value]),
            )
        )

    q = q.order_by(desc(MaintenanceRequest.id)).limit(int(limit))
    return list(db.scalars(q).all())
