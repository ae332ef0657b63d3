# backend/repairflow/services/dispute_service.py
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import desc, func, select
from sqlalchemy.orm import Session

from ..auth import Principal, assert_manager
from ..domain.enums import DisputePriority, DisputeStatus, DisputeType, PenaltyType
from ..domain.errors import IllegalTransitionError, PermissionDeniedError, ValidationError
from ..domain.events import emit_workflow_event
from ..domain.transitions import assert_dispute_transition
from ..models import Dispute, DisputeTimelineEvent, MaintenanceRequest
from . import notifications, reliability_service
from .ownership import must_get_dispute, must_get_request
from .runtime_metrics import METRICS

log = logging.getLogger("repairflow.disputes")

# dispute types that imply provider fault on resolution, and the penalty they carry
PROVIDER_FAULT_PENALTY: dict[DisputeType, PenaltyType] = {
    DisputeType.QUALITY: PenaltyType.POOR_QUALITY,
    DisputeType.NO_SHOW: PenaltyType.NO_SHOW,
}

CLOSED_FOR_EVIDENCE = frozenset({DisputeStatus.RESOLVED, DisputeStatus.CLOSED})


def _loads(s: Optional[str], default: Any) -> Any:
    if not s:
        return default
    try:
        return json.loads(s)
    except (TypeError, ValueError):
        return default


def _dumps(v: Any) -> str:
    try:
        return json.dumps(v, default=str)
    except (TypeError, ValueError):
        return "[]"


def _append_timeline(
    db: Session,
    d: Dispute,
    *,
    event: str,
    actor_user_id: Optional[int],
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> DisputeTimelineEvent:
    seq = db.scalar(select(func.max(DisputeTimelineEvent.seq)).where(DisputeTimelineEvent.dispute_id == d.id))
    row = DisputeTimelineEvent(
        dispute_id=int(d.id),
        seq=int(seq or 0) + 1,
        event=event,
        actor_user_id=actor_user_id,
        notes=notes,
        created_at=now or datetime.utcnow(),
    )
    db.add(row)
    db.flush()
    return row


def _is_party(p: Principal, d: Dispute) -> bool:
    return int(p.user_id) in {int(d.initiator_user_id), int(d.respondent_user_id or 0)}


def _transition(
    db: Session,
    d: Dispute,
    target: DisputeStatus,
    *,
    p: Principal,
    notes: Optional[str],
    now: datetime,
) -> None:
    src = d.status
    assert_dispute_transition(src, target)
    d.status = target.value
    db.add(d)
    _append_timeline(db, d, event=f"status:{src}->{target.value}", actor_user_id=p.user_id, notes=notes, now=now)
    emit_workflow_event(
        db,
        principal=p,
        event_type=f"dispute_{target.value}",
        request_id=d.request_id,
        payload={"dispute_id": d.id, "from": src, "to": target.value},
    )
    log.info("dispute_transition", extra={"org_id": d.org_id, "dispute_id": d.id, "event": f"{src}->{target.value}"})


def dispute_view(db: Session, d: Dispute) -> dict[str, Any]:
    return {
        "id": d.id,
        "request_id": d.request_id,
        "dispute_type": d.dispute_type,
        "title": d.title,
        "description": d.description,
        "initiator_user_id": d.initiator_user_id,
        "respondent_user_id": d.respondent_user_id,
        "status": d.status,
        "priority": d.priority,
        "evidence": _loads(d.evidence_json, []),
        "mediator_user_id": d.mediator_user_id,
        "escalation_level": d.escalation_level,
        "resolution": d.resolution,
        "compensation_amount": d.compensation_amount,
        "compensation_paid_to": d.compensation_paid_to,
        "penalty_id": d.penalty_id,
        "created_at": d.created_at,
        "resolved_at": d.resolved_at,
        "closed_at": d.closed_at,
        "timeline": [
            {
                "seq": e.seq,
                "event": e.event,
                "actor_user_id": e.actor_user_id,
                "notes": e.notes,
                "created_at": e.created_at,
            }
            for e in timeline(db, dispute_id=d.id)
        ],
    }


def timeline(db: Session, *, dispute_id: int) -> list[DisputeTimelineEvent]:
    return list(
        db.scalars(
            select(DisputeTimelineEvent)
            .where(DisputeTimelineEvent.dispute_id == dispute_id)
            .order_by(DisputeTimelineEvent.seq.asc())
        ).all()
    )


def _default_respondent(p: Principal, req: MaintenanceRequest) -> Optional[int]:
    if p.is_provider:
        return int(req.tenant_user_id)
    return int(req.assigned_provider_id) if req.assigned_provider_id is not None else None


def open_dispute(
    db: Session,
    *,
    p: Principal,
    request_id: int,
    title: str,
    dispute_type: str = "other",
    description: Optional[str] = None,
    respondent_user_id: Optional[int] = None,
    priority: Optional[str] = None,
    evidence: Optional[list[str]] = None,
    now: Optional[datetime] = None,
) -> Dispute:
    now = now or datetime.utcnow()
    req = must_get_request(db, org_id=p.org_id, request_id=request_id)

    is_own_tenant = p.is_tenant and int(req.tenant_user_id) == int(p.user_id)
    is_assigned = p.is_provider and req.assigned_provider_id is not None and int(req.assigned_provider_id) == int(p.user_id)
    if not (p.is_manager or is_own_tenant or is_assigned):
        raise PermissionDeniedError("not a party to this request", request_id=request_id)
    if not (title or "").strip():
        raise ValidationError("dispute title is required")
    try:
        dtype = DisputeType.parse(dispute_type or "other")
        prio = DisputePriority.parse(priority or "medium")
    except ValueError as e:
        raise ValidationError(str(e))

    d = Dispute(
        org_id=p.org_id,
        request_id=int(req.id),
        dispute_type=dtype.value,
        title=title.strip(),
        description=description,
        initiator_user_id=p.user_id,
        respondent_user_id=respondent_user_id if respondent_user_id is not None else _default_respondent(p, req),
        status=DisputeStatus.OPEN.value,
        priority=prio.value,
        evidence_json=_dumps([str(x) for x in (evidence or [])]),
        escalation_level=0,
        created_at=now,
    )
    db.add(d)
    db.flush()
    _append_timeline(db, d, event="opened", actor_user_id=p.user_id, notes=description, now=now)

    notifications.enqueue(
        db,
        org_id=p.org_id,
        event_type="dispute_opened",
        recipient_user_ids=[d.respondent_user_id],
        payload={"dispute_id": d.id, "request_id": req.id, "type": dtype.value},
    )
    emit_workflow_event(
        db,
        principal=p,
        event_type="dispute_opened",
        property_id=req.property_id,
        request_id=req.id,
        payload={"dispute_id": d.id, "type": dtype.value},
    )
    db.commit()
    db.refresh(d)
    METRICS.inc("disputes_opened")
    return d


def add_evidence(
    db: Session,
    *,
    p: Principal,
    dispute_id: int,
    item: str,
    notes: Optional[str] = None,
) -> Dispute:
    d = must_get_dispute(db, org_id=p.org_id, dispute_id=dispute_id)
    if not (p.is_manager or _is_party(p, d)):
        raise PermissionDeniedError("not a party to this dispute", dispute_id=dispute_id)
    if DisputeStatus.parse(d.status) in CLOSED_FOR_EVIDENCE:
        raise IllegalTransitionError("dispute", d.status, "evidence_added", reason="evidence is closed")
    if not (item or "").strip():
        raise ValidationError("evidence item is required")

    items = _loads(d.evidence_json, [])
    items.append(item.strip())
    d.evidence_json = _dumps(items)
    db.add(d)
    _append_timeline(db, d, event="evidence_added", actor_user_id=p.user_id, notes=notes or item.strip())
    db.commit()
    db.refresh(d)
    return d


def advance_dispute(
    db: Session,
    *,
    p: Principal,
    dispute_id: int,
    target: str,
    notes: Optional[str] = None,
    mediator_user_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dispute:
    """Review-side moves: open->in_review, in_review->mediation. Resolution and closing have their own commands."""
    now = now or datetime.utcnow()
    assert_manager(p, "advance dispute")
    d = must_get_dispute(db, org_id=p.org_id, dispute_id=dispute_id)
    try:
        dst = DisputeStatus.parse(target)
    except ValueError:
        raise ValidationError(f"invalid dispute status: {target!r}")
    if dst in (DisputeStatus.RESOLVED, DisputeStatus.CLOSED):
        raise ValidationError(f"use the {dst.value} command for this transition")

    if mediator_user_id is not None:
        d.mediator_user_id = int(mediator_user_id)
    if dst == DisputeStatus.MEDIATION and d.mediator_user_id is None:
        raise ValidationError("mediation requires a mediator")

    _transition(db, d, dst, p=p, notes=notes, now=now)
    db.commit()
    db.refresh(d)
    return d


def escalate_dispute(
    db: Session,
    *,
    p: Principal,
    dispute_id: int,
    mediator_user_id: Optional[int] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dispute:
    now = now or datetime.utcnow()
    d = must_get_dispute(db, org_id=p.org_id, dispute_id=dispute_id)
    if not (p.is_manager or _is_party(p, d)):
        raise PermissionDeniedError("not a party to this dispute", dispute_id=dispute_id)
    status = DisputeStatus.parse(d.status)
    if status in CLOSED_FOR_EVIDENCE:
        raise IllegalTransitionError("dispute", d.status, "escalated")

    if mediator_user_id is not None:
        if not p.is_manager:
            raise PermissionDeniedError("only landlord/agency can assign a mediator")
        d.mediator_user_id = int(mediator_user_id)

    d.escalation_level = int(d.escalation_level or 0) + 1
    db.add(d)
    _append_timeline(db, d, event=f"escalated:level={d.escalation_level}", actor_user_id=p.user_id, notes=notes, now=now)

    if d.mediator_user_id is not None:
        if status == DisputeStatus.OPEN:
            _transition(db, d, DisputeStatus.IN_REVIEW, p=p, notes="escalated", now=now)
            status = DisputeStatus.IN_REVIEW
        if status == DisputeStatus.IN_REVIEW:
            _transition(db, d, DisputeStatus.MEDIATION, p=p, notes="escalated", now=now)

    notifications.enqueue(
        db,
        org_id=p.org_id,
        event_type="dispute_escalated",
        recipient_user_ids=[d.mediator_user_id, d.initiator_user_id, d.respondent_user_id],
        payload={"dispute_id": d.id, "level": d.escalation_level},
    )
    db.commit()
    db.refresh(d)
    return d


def resolve_dispute(
    db: Session,
    *,
    p: Principal,
    dispute_id: int,
    resolution: str,
    compensation_amount: Optional[float] = None,
    compensation_paid_to: Optional[int] = None,
    provider_fault: Optional[bool] = None,
    now: Optional[datetime] = None,
) -> Dispute:
    """
    Provider fault (explicit, or implied by a quality/no_show dispute unless
    provider_fault=False) writes a penalty against the request's provider.
    """
    now = now or datetime.utcnow()
    assert_manager(p, "resolve dispute")
    d = must_get_dispute(db, org_id=p.org_id, dispute_id=dispute_id)
    if not (resolution or "").strip():
        raise ValidationError("resolution text is required")
    if compensation_amount is not None and float(compensation_amount) < 0:
        raise ValidationError("compensation_amount must be >= 0")

    dtype = DisputeType.parse(d.dispute_type)
    fault = provider_fault if provider_fault is not None else dtype in PROVIDER_FAULT_PENALTY
    provider_id = None
    if fault:
        req = db.get(MaintenanceRequest, int(d.request_id))
        provider_id = req.assigned_provider_id if req is not None else None
        if provider_id is None and provider_fault:
            raise ValidationError("provider fault asserted but the request has no assigned provider")

    _transition(db, d, DisputeStatus.RESOLVED, p=p, notes=resolution.strip(), now=now)
    d.resolution = resolution.strip()
    d.compensation_amount = float(compensation_amount) if compensation_amount is not None else None
    d.compensation_paid_to = compensation_paid_to
    d.resolved_at = now

    if provider_id is not None:
        penalty = reliability_service.issue_penalty_internal(
            db,
            org_id=d.org_id,
            provider_user_id=int(provider_id),
            penalty_type=PROVIDER_FAULT_PENALTY.get(dtype, PenaltyType.POOR_QUALITY),
            reason=f"dispute {d.id}: {d.resolution}",
            request_id=d.request_id,
            dispute_id=d.id,
            issued_by_user_id=p.user_id,
        )
        d.penalty_id = int(penalty.id)
        _append_timeline(db, d, event="penalty_issued", actor_user_id=p.user_id, notes=f"penalty {penalty.id}", now=now)

    db.add(d)
    notifications.enqueue(
        db,
        org_id=p.org_id,
        event_type="dispute_resolved",
        recipient_user_ids=[d.initiator_user_id, d.respondent_user_id],
        payload={"dispute_id": d.id, "compensation_amount": d.compensation_amount},
    )
    db.commit()
    db.refresh(d)
    METRICS.inc("disputes_resolved")
    return d


def close_dispute(
    db: Session,
    *,
    p: Principal,
    dispute_id: int,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dispute:
    """open -> closed is a withdrawal (initiator or manager); resolved -> closed archives it."""
    now = now or datetime.utcnow()
    d = must_get_dispute(db, org_id=p.org_id, dispute_id=dispute_id)
    if not (p.is_manager or int(d.initiator_user_id) == int(p.user_id)):
        raise PermissionDeniedError("only the initiator or landlord/agency can close a dispute")

    withdrawn = DisputeStatus.parse(d.status) == DisputeStatus.OPEN
    _transition(db, d, DisputeStatus.CLOSED, p=p, notes=notes or ("withdrawn" if withdrawn else None), now=now)
    d.closed_at = now
    db.add(d)
    db.commit()
    db.refresh(d)
    return d


def list_disputes(
    db: Session,
    *,
    p: Principal,
    request_id: Optional[int] = None,
    status: Optional[str] = None,
) -> list[Dispute]:
    q = select(Dispute).where(Dispute.org_id == p.org_id)
    if request_id is not None:
        q = q.where(Dispute.request_id == int(request_id))
    if status:
        q = q.where(Dispute.status == DisputeStatus.parse(status).value)
    if not p.is_manager:
        q = q.where((Dispute.initiator_user_id == p.user_id) | (Dispute.respondent_user_id == p.user_id))
    return list(db.scalars(q.order_by(desc(Dispute.id))).all())


def get_dispute(db: Session, *, p: Principal, dispute_id: int) -> Dispute:
    d = must_get_dispute(db, org_id=p.org_id, dispute_id=dispute_id)
    if not (p.is_manager or _is_party(p, d) or (d.mediator_user_id is not None and int(d.mediator_user_id) == int(p.user_id))):
        raise PermissionDeniedError("not a party to this dispute", dispute_id=dispute_id)
    return d
