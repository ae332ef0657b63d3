# backend/repairflow/services/escalation_service.py
from __future__ import annotations

import json
import logging
import os
import socket
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..auth import Principal, assert_manager
from ..config import settings
from ..domain.approval import decide_approval
from ..domain.enums import (
    ApprovalStatus,
    DeadlineKind,
    EmergencyType,
    WorkflowStatus,
)
from ..domain.errors import (
    ConcurrencyConflictError,
    ConfigurationError,
    IllegalTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from ..domain.events import emit_workflow_event
from ..domain.transitions import assert_request_transition
from ..models import (
    EmergencyContact,
    EscalationNotification,
    EscalationRule,
    EscalationTracking,
    MaintenanceRequest,
    Property,
)
from . import notifications
from .conflicts import stale_as_conflict
from .locks_service import held_lock
from .ownership import must_get_property
from .policy_service import get_policy_snapshot
from .runtime_metrics import METRICS

log = logging.getLogger("repairflow.escalation")

SWEEP_LOCK_KEY = "escalation_sweep"
ANY_TRIGGER = "any"


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


def _owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _log_extra(t: EscalationTracking, **more: Any) -> dict[str, Any]:
    out = {
        "org_id": t.org_id,
        "maintenance_request_id": t.request_id,
        "tracking_id": t.id,
        "escalation_level": t.escalation_level,
    }
    out.update(more)
    return out


# -----------------------------------------------------------------------------
# Rules + contacts
# -----------------------------------------------------------------------------
def rules_by_level(
    db: Session,
    *,
    org_id: int,
    property_id: int,
    emergency_type: str,
) -> dict[int, EscalationRule]:
    """Active rules keyed by level; a rule for the exact emergency type beats 'any'."""
    rows = db.scalars(
        select(EscalationRule)
        .where(
            EscalationRule.org_id == org_id,
            EscalationRule.property_id == property_id,
            EscalationRule.is_active.is_(True),
            EscalationRule.trigger_condition.in_([str(emergency_type), ANY_TRIGGER]),
        )
        .order_by(EscalationRule.level.asc())
    ).all()

    out: dict[int, EscalationRule] = {}
    for r in rows:
        cur = out.get(int(r.level))
        if cur is None or (cur.trigger_condition == ANY_TRIGGER and r.trigger_condition != ANY_TRIGGER):
            out[int(r.level)] = r
    return out


def initial_ceiling(db: Session, *, org_id: int, property_id: int, emergency_type: str) -> Optional[float]:
    rule = rules_by_level(db, org_id=org_id, property_id=property_id, emergency_type=emergency_type).get(1)
    if rule is None or rule.max_cost_authorization is None:
        return None
    return float(rule.max_cost_authorization)


def _deadline_minutes(rule: Optional[EscalationRule], emergency_type: str) -> int:
    if rule is not None and rule.response_minutes:
        return int(rule.response_minutes)
    return settings.sla_minutes(emergency_type)


def upsert_rule(
    db: Session,
    *,
    p: Principal,
    property_id: int,
    level: int,
    trigger_condition: str = ANY_TRIGGER,
    response_minutes: Optional[int] = None,
    max_cost_authorization: Optional[float] = None,
    notify_user_ids: Optional[list[int]] = None,
    is_active: bool = True,
) -> EscalationRule:
    assert_manager(p, "configure escalation rules")
    must_get_property(db, org_id=p.org_id, property_id=property_id)

    trig = (trigger_condition or ANY_TRIGGER).strip().lower()
    if trig != ANY_TRIGGER and trig not in EmergencyType.values():
        raise ValidationError(f"invalid trigger_condition: {trigger_condition!r}")
    if int(level) < 1:
        raise ValidationError("level must be >= 1", level=level)
    if response_minutes is not None and int(response_minutes) <= 0:
        raise ValidationError("response_minutes must be positive")
    if max_cost_authorization is not None and float(max_cost_authorization) < 0:
        raise ValidationError("max_cost_authorization must be >= 0")

    row = db.scalar(
        select(EscalationRule).where(
            EscalationRule.org_id == p.org_id,
            EscalationRule.property_id == property_id,
            EscalationRule.trigger_condition == trig,
            EscalationRule.level == int(level),
        )
    )
    if row is None:
        row = EscalationRule(
            org_id=p.org_id,
            property_id=int(property_id),
            trigger_condition=trig,
            level=int(level),
            created_at=datetime.utcnow(),
        )
    row.response_minutes = int(response_minutes) if response_minutes is not None else None
    row.max_cost_authorization = float(max_cost_authorization) if max_cost_authorization is not None else None
    row.notify_user_ids_json = _dumps([int(x) for x in (notify_user_ids or [])])
    row.is_active = bool(is_active)
    db.add(row)
    db.flush()

    emit_workflow_event(
        db,
        principal=p,
        event_type="escalation_rule_saved",
        property_id=property_id,
        payload={"rule_id": row.id, "level": row.level, "trigger": trig},
    )
    db.commit()
    db.refresh(row)
    return row


def list_rules(db: Session, *, org_id: int, property_id: int) -> list[EscalationRule]:
    return list(
        db.scalars(
            select(EscalationRule)
            .where(EscalationRule.org_id == org_id, EscalationRule.property_id == property_id)
            .order_by(EscalationRule.level.asc(), EscalationRule.trigger_condition.asc())
        ).all()
    )


def delete_rule(db: Session, *, p: Principal, rule_id: int) -> None:
    assert_manager(p, "configure escalation rules")
    row = db.scalar(select(EscalationRule).where(EscalationRule.id == rule_id, EscalationRule.org_id == p.org_id))
    if row is None:
        raise NotFoundError("escalation rule not found", rule_id=rule_id)
    db.delete(row)
    db.commit()


def add_contact(
    db: Session,
    *,
    p: Principal,
    property_id: int,
    name: str,
    tier: int = 1,
    user_id: Optional[int] = None,
    phone: Optional[str] = None,
    email: Optional[str] = None,
) -> EmergencyContact:
    assert_manager(p, "configure emergency contacts")
    must_get_property(db, org_id=p.org_id, property_id=property_id)
    if not (name or "").strip():
        raise ValidationError("contact name is required")
    if int(tier) < 1:
        raise ValidationError("tier must be >= 1")
    if user_id is None and not phone and not email:
        raise ValidationError("contact needs a user_id, phone or email")

    row = EmergencyContact(
        org_id=p.org_id,
        property_id=int(property_id),
        user_id=user_id,
        name=name.strip(),
        phone=phone,
        email=email,
        tier=int(tier),
        created_at=datetime.utcnow(),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def list_contacts(db: Session, *, org_id: int, property_id: int) -> list[EmergencyContact]:
    return list(
        db.scalars(
            select(EmergencyContact)
            .where(EmergencyContact.org_id == org_id, EmergencyContact.property_id == property_id)
            .order_by(EmergencyContact.tier.asc(), EmergencyContact.id.asc())
        ).all()
    )


def delete_contact(db: Session, *, p: Principal, contact_id: int) -> None:
    assert_manager(p, "configure emergency contacts")
    row = db.scalar(
        select(EmergencyContact).where(EmergencyContact.id == contact_id, EmergencyContact.org_id == p.org_id)
    )
    if row is None:
        raise NotFoundError("emergency contact not found", contact_id=contact_id)
    db.delete(row)
    db.commit()


# -----------------------------------------------------------------------------
# Tracking lifecycle
# -----------------------------------------------------------------------------
def get_tracking(db: Session, *, org_id: int, request_id: int) -> Optional[EscalationTracking]:
    return db.scalar(
        select(EscalationTracking).where(
            EscalationTracking.org_id == org_id,
            EscalationTracking.request_id == request_id,
        )
    )


def must_get_tracking(db: Session, *, org_id: int, request_id: int) -> EscalationTracking:
    t = get_tracking(db, org_id=org_id, request_id=request_id)
    if t is None:
        raise NotFoundError("no escalation tracking for this request", request_id=request_id)
    return t


def is_open(t: EscalationTracking) -> bool:
    return not t.emergency_resolved and t.closed_reason is None


def _assert_open(t: EscalationTracking, attempted: str) -> None:
    if t.emergency_resolved:
        raise IllegalTransitionError("escalation", "resolved", attempted)
    if t.closed_reason is not None:
        raise IllegalTransitionError("escalation", f"closed:{t.closed_reason}", attempted)


def _notify_level(
    db: Session,
    *,
    t: EscalationTracking,
    req: MaintenanceRequest,
    level: int,
    rule: Optional[EscalationRule],
    now: datetime,
) -> list[str]:
    """Notifies one tier and records the batch. Returns the recipient keys."""
    user_ids: list[int] = []
    addresses: list[str] = []
    if rule is not None:
        user_ids.extend(int(x) for x in _loads(rule.notify_user_ids_json, []))

    for c in db.scalars(
        select(EmergencyContact).where(
            EmergencyContact.org_id == t.org_id,
            EmergencyContact.property_id == t.property_id,
            EmergencyContact.tier == level,
        )
    ).all():
        if c.user_id is not None:
            user_ids.append(int(c.user_id))
        elif c.email:
            addresses.append(str(c.email))
        elif c.phone:
            addresses.append(str(c.phone))

    if level == 1 and not user_ids and not addresses:
        prop = db.get(Property, int(t.property_id))
        if prop is not None and prop.landlord_user_id is not None:
            user_ids.append(int(prop.landlord_user_id))

    recipients = [f"user:{u}" for u in dict.fromkeys(user_ids)] + [f"addr:{a}" for a in dict.fromkeys(addresses)]

    notifications.enqueue(
        db,
        org_id=t.org_id,
        event_type="emergency_escalation",
        recipient_user_ids=user_ids,
        recipient_addresses=addresses,
        payload={
            "request_id": req.id,
            "property_id": req.property_id,
            "title": req.title,
            "emergency_type": t.emergency_type,
            "level": level,
            "deadline": t.response_deadline,
        },
    )
    db.add(
        EscalationNotification(
            org_id=t.org_id,
            tracking_id=int(t.id),
            level=int(level),
            recipients_json=_dumps(recipients),
            created_at=now,
        )
    )

    notified = _loads(t.notified_parties_json, [])
    for r in recipients:
        if r not in notified:
            notified.append(r)
    t.notified_parties_json = _dumps(notified)
    return recipients


def _record_config_error(
    db: Session,
    *,
    t: EscalationTracking,
    req: MaintenanceRequest,
    err: ConfigurationError,
    now: datetime,
) -> None:
    """Halts escalation at the current level and tells the operator. Never dropped silently."""
    log.error("escalation_config_error", extra=_log_extra(t, event=err.message))
    METRICS.inc("escalation_config_errors")

    t.config_error = err.message
    t.response_deadline = None
    t.deadline_kind = None
    t.updated_at = now
    db.add(t)

    prop = db.get(Property, int(t.property_id))
    notifications.enqueue(
        db,
        org_id=t.org_id,
        event_type="escalation_config_error",
        recipient_user_ids=[prop.landlord_user_id if prop is not None else None],
        payload={"request_id": req.id, "tracking_id": t.id, "level": t.escalation_level, "error": err.message},
    )
    emit_workflow_event(
        db,
        org_id=t.org_id,
        event_type="escalation_halted",
        property_id=t.property_id,
        request_id=t.request_id,
        payload={"level": t.escalation_level, "error": err.message},
    )


def start_tracking(db: Session, *, req: MaintenanceRequest, now: Optional[datetime] = None) -> EscalationTracking:
    """Level 1: deadline armed from the level-1 rule or the type's default SLA. Flush only."""
    now = now or datetime.utcnow()
    existing = get_tracking(db, org_id=req.org_id, request_id=req.id)
    if existing is not None:
        return existing

    etype = str(req.emergency_type or EmergencyType.SAFETY.value)
    rules = rules_by_level(db, org_id=req.org_id, property_id=req.property_id, emergency_type=etype)
    rule = rules.get(1)

    t = EscalationTracking(
        org_id=req.org_id,
        request_id=int(req.id),
        property_id=int(req.property_id),
        emergency_type=etype,
        escalation_level=1,
        response_deadline=now + timedelta(minutes=_deadline_minutes(rule, etype)),
        deadline_kind=DeadlineKind.RESPONSE.value,
        notified_parties_json=_dumps([]),
        max_cost_authorization=float(rule.max_cost_authorization) if rule and rule.max_cost_authorization is not None else None,
        emergency_resolved=False,
        created_at=now,
        updated_at=now,
    )
    db.add(t)
    db.flush()

    if rule is None and settings.escalation_require_level1_rule:
        _record_config_error(
            db,
            t=t,
            req=req,
            err=ConfigurationError(f"no escalation rule for level 1 ({etype})", property_id=req.property_id),
            now=now,
        )
        return t

    _notify_level(db, t=t, req=req, level=1, rule=rule, now=now)
    emit_workflow_event(
        db,
        org_id=req.org_id,
        event_type="escalation_started",
        property_id=req.property_id,
        request_id=req.id,
        payload={"level": 1, "deadline": t.response_deadline, "emergency_type": etype},
    )
    METRICS.inc("escalations_started")
    log.info("escalation_started", extra=_log_extra(t))
    return t


def _maybe_retro_approve(db: Session, *, t: EscalationTracking, req: MaintenanceRequest, now: datetime) -> bool:
    """A raised ceiling can approve an emergency that was parked pending on cost."""
    if WorkflowStatus.parse(req.workflow_status) != WorkflowStatus.SUBMITTED:
        return False
    if ApprovalStatus.parse(req.approval_status) != ApprovalStatus.PENDING:
        return False

    policy = get_policy_snapshot(db, org_id=req.org_id, property_id=req.property_id)
    decision = decide_approval(
        is_emergency=True,
        policy=policy,
        estimated_cost=req.estimated_cost,
        emergency_ceiling=t.max_cost_authorization,
    )
    if not decision.approved:
        return False

    assert_request_transition(req.workflow_status, WorkflowStatus.APPROVED, via="approval", is_emergency=True)
    req.workflow_status = WorkflowStatus.APPROVED.value
    req.approval_status = decision.status.value
    req.approval_reason = f"retroactive: {decision.reason} at level {t.escalation_level}"
    req.approval_date = now
    req.updated_at = now
    db.add(req)
    emit_workflow_event(
        db,
        org_id=req.org_id,
        event_type="request_auto_approved",
        property_id=req.property_id,
        request_id=req.id,
        payload={"level": t.escalation_level, "ceiling": t.max_cost_authorization, "retroactive": True},
    )
    return True


@stale_as_conflict
def advance(db: Session, *, t: EscalationTracking, now: Optional[datetime] = None) -> bool:
    """
    One escalation step. Returns True if the level moved.
    A missing rule for the next level stores a config error and disarms the deadline.
    The row is versioned: if a response or resolution committed after it was
    loaded, the write raises ConcurrencyConflictError and nothing moves.
    """
    now = now or datetime.utcnow()
    if not is_open(t):
        return False

    req = db.get(MaintenanceRequest, int(t.request_id))
    if req is None:
        return False

    nxt = int(t.escalation_level) + 1
    rules = rules_by_level(db, org_id=t.org_id, property_id=t.property_id, emergency_type=t.emergency_type)
    rule = rules.get(nxt)
    if rule is None:
        _record_config_error(
            db,
            t=t,
            req=req,
            err=ConfigurationError(
                f"no escalation rule for level {nxt} ({t.emergency_type})",
                property_id=t.property_id,
                level=nxt,
            ),
            now=now,
        )
        return False

    t.escalation_level = nxt
    if rule.max_cost_authorization is not None:
        t.max_cost_authorization = max(float(t.max_cost_authorization or 0.0), float(rule.max_cost_authorization))
    t.response_deadline = now + timedelta(minutes=_deadline_minutes(rule, t.emergency_type))
    t.updated_at = now
    db.add(t)
    db.flush()

    _notify_level(db, t=t, req=req, level=nxt, rule=rule, now=now)
    _maybe_retro_approve(db, t=t, req=req, now=now)
    emit_workflow_event(
        db,
        org_id=t.org_id,
        event_type="escalation_advanced",
        property_id=t.property_id,
        request_id=t.request_id,
        payload={
            "level": nxt,
            "deadline_kind": t.deadline_kind,
            "deadline": t.response_deadline,
            "max_cost_authorization": t.max_cost_authorization,
        },
    )
    METRICS.inc("escalations_advanced")
    log.warning("escalation_advanced", extra=_log_extra(t))
    return True


def sweep_due(db: Session, *, now: Optional[datetime] = None, owner: Optional[str] = None) -> dict[str, Any]:
    """
    Periodic tick. Advances every open tracking row whose armed deadline has
    passed. Guarded by an EngineLock so concurrent schedulers do not
    double-advance; each row commits on its own.
    """
    now = now or datetime.utcnow()
    owner = owner or _owner()
    out: dict[str, Any] = {"locked": False, "due": 0, "advanced": 0, "halted": 0, "skipped": 0, "errors": 0}

    with held_lock(
        db, lock_key=SWEEP_LOCK_KEY, owner=owner, ttl_seconds=int(settings.escalation_lock_ttl_seconds)
    ) as got:
        if not got:
            out["locked"] = True
            METRICS.inc("escalation_sweeps_skipped_locked")
            return out

        ids = list(
            db.scalars(
                select(EscalationTracking.id)
                .where(
                    EscalationTracking.emergency_resolved.is_(False),
                    EscalationTracking.closed_reason.is_(None),
                    EscalationTracking.response_deadline.is_not(None),
                    EscalationTracking.response_deadline <= now,
                )
                .order_by(EscalationTracking.response_deadline.asc())
            ).all()
        )
        out["due"] = len(ids)

        for tid in ids:
            try:
                t = db.get(EscalationTracking, int(tid))
                # re-check: a response or resolution may have landed since the select
                if t is None or not is_open(t) or t.response_deadline is None or t.response_deadline > now:
                    continue
                if advance(db, t=t, now=now):
                    out["advanced"] += 1
                else:
                    out["halted"] += 1
                db.commit()
            except (ConcurrencyConflictError, StaleDataError):
                # changed under us; the next tick sees the committed state
                db.rollback()
                out["skipped"] += 1
                METRICS.inc("escalation_sweep_stale_rows")
                log.info("escalation_sweep_row_stale", extra={"tracking_id": tid})
            except Exception:
                db.rollback()
                out["errors"] += 1
                METRICS.inc("escalation_sweep_errors")
                log.exception("escalation_sweep_row_failed", extra={"tracking_id": tid})

    METRICS.inc("escalation_sweeps")
    return out


def record_first_response(
    db: Session,
    *,
    t: EscalationTracking,
    provider_user_id: int,
    now: Optional[datetime] = None,
) -> bool:
    """Freezes advancement. Returns False when a response was already on record. Flush only."""
    now = now or datetime.utcnow()
    _assert_open(t, "respond")
    if t.first_response_at is not None:
        return False

    t.first_response_at = now
    t.first_responder_id = int(provider_user_id)
    if t.deadline_kind == DeadlineKind.RESPONSE.value:
        t.response_deadline = None
        t.deadline_kind = None
    t.updated_at = now
    db.add(t)
    db.flush()
    log.info("escalation_first_response", extra=_log_extra(t, provider_id=provider_user_id))
    return True


def arm_arrival_deadline(db: Session, *, t: EscalationTracking, now: Optional[datetime] = None) -> None:
    """Direct dispatch: the dispatched provider now has one SLA window to start work."""
    now = now or datetime.utcnow()
    _assert_open(t, "dispatch")
    if t.config_error:
        # halted rows stay halted until an operator fixes the rules
        return
    rule = rules_by_level(db, org_id=t.org_id, property_id=t.property_id, emergency_type=t.emergency_type).get(
        int(t.escalation_level)
    )
    t.response_deadline = now + timedelta(minutes=_deadline_minutes(rule, t.emergency_type))
    t.deadline_kind = DeadlineKind.ARRIVAL.value
    t.updated_at = now
    db.add(t)


def disarm(db: Session, *, t: EscalationTracking, now: Optional[datetime] = None) -> None:
    if not is_open(t):
        return
    t.response_deadline = None
    t.deadline_kind = None
    t.updated_at = now or datetime.utcnow()
    db.add(t)


def _mark_resolved(t: EscalationTracking, *, now: datetime, reason: str) -> None:
    t.emergency_resolved = True
    t.resolved_at = now
    t.resolution_time_minutes = max(0, int((now - t.created_at).total_seconds() // 60))
    t.closed_reason = reason
    t.response_deadline = None
    t.deadline_kind = None
    t.updated_at = now


def resolve_emergency(
    db: Session,
    *,
    p: Principal,
    request_id: int,
    now: Optional[datetime] = None,
) -> EscalationTracking:
    now = now or datetime.utcnow()
    t = must_get_tracking(db, org_id=p.org_id, request_id=request_id)
    req = db.get(MaintenanceRequest, int(t.request_id))

    is_assigned_provider = (
        p.is_provider and req is not None and req.assigned_provider_id is not None
        and int(req.assigned_provider_id) == int(p.user_id)
    )
    if not (p.is_manager or is_assigned_provider):
        raise PermissionDeniedError("only landlord/agency or the assigned provider can resolve an emergency")

    _assert_open(t, "resolved")
    _mark_resolved(t, now=now, reason="resolved")
    db.add(t)
    emit_workflow_event(
        db,
        principal=p,
        event_type="emergency_resolved",
        property_id=t.property_id,
        request_id=t.request_id,
        payload={"level": t.escalation_level, "resolution_time_minutes": t.resolution_time_minutes},
    )
    METRICS.inc("escalations_resolved")
    db.commit()
    db.refresh(t)
    return t


def close_for_request(db: Session, *, req: MaintenanceRequest, reason: str, now: Optional[datetime] = None) -> None:
    """Idempotent: called when the request completes or is cancelled. Flush only."""
    now = now or datetime.utcnow()
    t = get_tracking(db, org_id=req.org_id, request_id=req.id)
    if t is None or not is_open(t):
        return
    if reason == "completed":
        _mark_resolved(t, now=now, reason=reason)
    else:
        t.closed_reason = reason
        t.response_deadline = None
        t.deadline_kind = None
        t.updated_at = now
    db.add(t)


def list_notifications(db: Session, *, org_id: int, tracking_id: int) -> list[EscalationNotification]:
    return list(
        db.scalars(
            select(EscalationNotification)
            .where(EscalationNotification.org_id == org_id, EscalationNotification.tracking_id == tracking_id)
            .order_by(EscalationNotification.level.asc(), EscalationNotification.id.asc())
        ).all()
    )


def tracking_view(db: Session, t: EscalationTracking) -> dict[str, Any]:
    return {
        "id": t.id,
        "request_id": t.request_id,
        "property_id": t.property_id,
        "emergency_type": t.emergency_type,
        "escalation_level": t.escalation_level,
        "response_deadline": t.response_deadline,
        "deadline_kind": t.deadline_kind,
        "notified_parties": _loads(t.notified_parties_json, []),
        "max_cost_authorization": t.max_cost_authorization,
        "first_response_at": t.first_response_at,
        "first_responder_id": t.first_responder_id,
        "emergency_resolved": bool(t.emergency_resolved),
        "resolved_at": t.resolved_at,
        "resolution_time_minutes": t.resolution_time_minutes,
        "closed_reason": t.closed_reason,
        "config_error": t.config_error,
        "notifications": [
            {"level": n.level, "recipients": _loads(n.recipients_json, []), "created_at": n.created_at}
            for n in list_notifications(db, org_id=t.org_id, tracking_id=t.id)
        ],
    }
