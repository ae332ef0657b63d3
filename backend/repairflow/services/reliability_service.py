# backend/repairflow/services/reliability_service.py
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..auth import Principal, assert_manager, assert_provider
from ..config import settings
from ..domain.audit import audit_write
from ..domain.enums import (
    ActorRole,
    BLOCKED_PROVIDER_STATUSES,
    PenaltySeverity,
    PenaltyStatus,
    PenaltyType,
)
from ..domain.errors import (
    IllegalTransitionError,
    PermissionDeniedError,
    PolicyViolationError,
    ValidationError,
)
from ..domain.events import emit_workflow_event
from ..domain.reliability import (
    DEFAULT_PENALTY_POINTS,
    DEFAULT_PENALTY_SEVERITY,
    LedgerCounters,
    PenaltyView,
    ReliabilitySnapshot,
    compute_reliability,
)
from ..models import OrgMembership, ProviderPenalty, ProviderReliability
from .ownership import must_get_penalty
from .runtime_metrics import METRICS

log = logging.getLogger("repairflow.reliability")

# from-status -> allowed to-statuses
PENALTY_EDGES: dict[PenaltyStatus, frozenset[PenaltyStatus]] = {
    PenaltyStatus.ACTIVE: frozenset({PenaltyStatus.APPEALED, PenaltyStatus.OVERTURNED, PenaltyStatus.EXPIRED}),
    PenaltyStatus.APPEALED: frozenset({PenaltyStatus.ACTIVE, PenaltyStatus.OVERTURNED, PenaltyStatus.EXPIRED}),
    PenaltyStatus.OVERTURNED: frozenset(),
    PenaltyStatus.EXPIRED: frozenset(),
}


def _dumps(v: Any) -> str:
    try:
        return json.dumps(v, default=str)
    except (TypeError, ValueError):
        return "{}"


def _penalty_dict(row: ProviderPenalty) -> dict[str, Any]:
    return {
        "id": row.id,
        "provider_user_id": row.provider_user_id,
        "penalty_type": row.penalty_type,
        "severity": row.severity,
        "points": row.points,
        "status": row.status,
        "expires_at": row.expires_at,
    }


# -----------------------------------------------------------------------------
# Ledger rows
# -----------------------------------------------------------------------------
def get_or_create_ledger(db: Session, *, org_id: int, provider_user_id: int) -> ProviderReliability:
    row = db.scalar(
        select(ProviderReliability).where(
            ProviderReliability.org_id == org_id,
            ProviderReliability.provider_user_id == provider_user_id,
        )
    )
    if row is None:
        row = ProviderReliability(
            org_id=int(org_id),
            provider_user_id=int(provider_user_id),
            total_jobs=0,
            completed_jobs=0,
            cancelled_jobs=0,
            no_show_jobs=0,
            rating_count=0,
            rating_sum=0.0,
            response_count=0,
            reliability_score=100.0,
            penalty_points=0.0,
            updated_at=datetime.utcnow(),
        )
        db.add(row)
        db.flush()
    return row


def _counters(row: ProviderReliability) -> LedgerCounters:
    return LedgerCounters(
        total_jobs=int(row.total_jobs or 0),
        completed_jobs=int(row.completed_jobs or 0),
        cancelled_jobs=int(row.cancelled_jobs or 0),
        no_show_jobs=int(row.no_show_jobs or 0),
        rating_count=int(row.rating_count or 0),
        rating_sum=float(row.rating_sum or 0.0),
    )


def _penalty_views(db: Session, *, org_id: int, provider_user_id: int) -> list[PenaltyView]:
    rows = db.scalars(
        select(ProviderPenalty).where(
            ProviderPenalty.org_id == org_id,
            ProviderPenalty.provider_user_id == provider_user_id,
        )
    ).all()
    return [
        PenaltyView(
            points=float(r.points),
            severity=PenaltySeverity.parse(r.severity),
            status=PenaltyStatus.parse(r.status),
            expires_at=r.expires_at,
        )
        for r in rows
    ]


def recompute(
    db: Session,
    *,
    org_id: int,
    provider_user_id: int,
    now: Optional[datetime] = None,
) -> ReliabilitySnapshot:
    """Recompute from counters + penalties and cache the score on the row (flush only)."""
    now = now or datetime.utcnow()
    row = get_or_create_ledger(db, org_id=org_id, provider_user_id=provider_user_id)
    db.flush()

    snap = compute_reliability(
        _counters(row),
        _penalty_views(db, org_id=org_id, provider_user_id=provider_user_id),
        now=now,
        no_show_weight=float(settings.reliability_no_show_weight),
        rating_weight=float(settings.reliability_rating_weight),
    )

    prev_score = float(row.reliability_score if row.reliability_score is not None else 100.0)
    row.reliability_score = snap.score
    row.penalty_points = snap.penalty_points
    row.average_rating = snap.average_rating
    row.components_json = _dumps(snap.components())
    row.updated_at = now
    db.add(row)
    db.flush()

    if snap.score != prev_score:
        log.info(
            "reliability_recomputed",
            extra={"org_id": org_id, "provider_id": provider_user_id, "event": snap.status.value},
        )
    return snap


def reliability_view(db: Session, *, org_id: int, provider_user_id: int) -> dict[str, Any]:
    """Read model; recomputes lazily so expired penalties drop out without a sweep."""
    snap = recompute(db, org_id=org_id, provider_user_id=provider_user_id)
    row = get_or_create_ledger(db, org_id=org_id, provider_user_id=provider_user_id)
    db.commit()
    return {
        "provider_user_id": int(provider_user_id),
        "total_jobs": row.total_jobs,
        "completed_jobs": row.completed_jobs,
        "cancelled_jobs": row.cancelled_jobs,
        "no_show_jobs": row.no_show_jobs,
        "rating_count": row.rating_count,
        "average_rating": snap.average_rating,
        "average_response_minutes": row.average_response_minutes,
        "average_completion_hours": row.average_completion_hours,
        "reliability_score": snap.score,
        "penalty_points": snap.penalty_points,
        "status": snap.status.value,
        "warning_level": snap.warning_level,
        "components": snap.components(),
        "updated_at": row.updated_at,
    }


def assert_provider_eligible(db: Session, *, org_id: int, provider_user_id: int, action: str) -> None:
    """
    The user must hold the provider role in this org and must not be
    suspended or banned. Score is recomputed first so the check never
    trusts a stale cached value.
    """
    mem = db.scalar(
        select(OrgMembership).where(OrgMembership.org_id == org_id, OrgMembership.user_id == provider_user_id)
    )
    if mem is None or str(mem.role) != ActorRole.PROVIDER.value:
        raise ValidationError(f"user {provider_user_id} is not a provider in this org", provider_user_id=provider_user_id)

    snap = recompute(db, org_id=org_id, provider_user_id=provider_user_id)
    if snap.status in BLOCKED_PROVIDER_STATUSES:
        raise PolicyViolationError(
            f"provider is {snap.status.value}; cannot {action}",
            provider_user_id=provider_user_id,
            score=snap.score,
        )


# -----------------------------------------------------------------------------
# Counter updates (called from the request tracker; flush only)
# -----------------------------------------------------------------------------
def record_job_assigned(db: Session, *, org_id: int, provider_user_id: int) -> ReliabilitySnapshot:
    row = get_or_create_ledger(db, org_id=org_id, provider_user_id=provider_user_id)
    row.total_jobs = int(row.total_jobs or 0) + 1
    return recompute(db, org_id=org_id, provider_user_id=provider_user_id)


def record_completion(
    db: Session,
    *,
    org_id: int,
    provider_user_id: int,
    hours: Optional[float] = None,
) -> ReliabilitySnapshot:
    row = get_or_create_ledger(db, org_id=org_id, provider_user_id=provider_user_id)
    done = int(row.completed_jobs or 0)
    if hours is not None and hours >= 0:
        prev = float(row.average_completion_hours or 0.0)
        row.average_completion_hours = round((prev * done + float(hours)) / (done + 1), 2)
    row.completed_jobs = done + 1
    return recompute(db, org_id=org_id, provider_user_id=provider_user_id)


def record_response(db: Session, *, org_id: int, provider_user_id: int, minutes: float) -> ReliabilitySnapshot:
    row = get_or_create_ledger(db, org_id=org_id, provider_user_id=provider_user_id)
    n = int(row.response_count or 0)
    prev = float(row.average_response_minutes or 0.0)
    row.average_response_minutes = round((prev * n + max(0.0, float(minutes))) / (n + 1), 2)
    row.response_count = n + 1
    return recompute(db, org_id=org_id, provider_user_id=provider_user_id)


def record_rating(db: Session, *, org_id: int, provider_user_id: int, rating: int) -> ReliabilitySnapshot:
    if int(rating) < 1 or int(rating) > 5:
        raise ValidationError("rating must be between 1 and 5", rating=rating)
    row = get_or_create_ledger(db, org_id=org_id, provider_user_id=provider_user_id)
    row.rating_count = int(row.rating_count or 0) + 1
    row.rating_sum = float(row.rating_sum or 0.0) + float(rating)
    return recompute(db, org_id=org_id, provider_user_id=provider_user_id)


def record_cancellation(
    db: Session,
    *,
    org_id: int,
    provider_user_id: int,
    request_id: Optional[int],
    reason: Optional[str],
    actor_user_id: Optional[int],
) -> ProviderPenalty:
    row = get_or_create_ledger(db, org_id=org_id, provider_user_id=provider_user_id)
    row.cancelled_jobs = int(row.cancelled_jobs or 0) + 1
    return issue_penalty_internal(
        db,
        org_id=org_id,
        provider_user_id=provider_user_id,
        penalty_type=PenaltyType.CANCELLATION,
        reason=reason or "provider cancelled an assigned job",
        request_id=request_id,
        issued_by_user_id=actor_user_id,
    )


def record_no_show(
    db: Session,
    *,
    org_id: int,
    provider_user_id: int,
    request_id: Optional[int],
    reason: Optional[str],
    actor_user_id: Optional[int],
) -> ProviderPenalty:
    row = get_or_create_ledger(db, org_id=org_id, provider_user_id=provider_user_id)
    row.no_show_jobs = int(row.no_show_jobs or 0) + 1
    return issue_penalty_internal(
        db,
        org_id=org_id,
        provider_user_id=provider_user_id,
        penalty_type=PenaltyType.NO_SHOW,
        reason=reason or "provider did not show up",
        request_id=request_id,
        issued_by_user_id=actor_user_id,
    )


# -----------------------------------------------------------------------------
# Penalties
# -----------------------------------------------------------------------------
def issue_penalty_internal(
    db: Session,
    *,
    org_id: int,
    provider_user_id: int,
    penalty_type: PenaltyType | str,
    severity: PenaltySeverity | str | None = None,
    points: Optional[float] = None,
    reason: Optional[str] = None,
    request_id: Optional[int] = None,
    dispute_id: Optional[int] = None,
    issued_by_user_id: Optional[int] = None,
    expires_at: Optional[datetime] = None,
) -> ProviderPenalty:
    try:
        ptype = PenaltyType.parse(penalty_type)
        sev = PenaltySeverity.parse(severity) if severity else DEFAULT_PENALTY_SEVERITY[ptype]
    except ValueError as e:
        raise ValidationError(str(e))

    pts = float(points) if points is not None else float(DEFAULT_PENALTY_POINTS[ptype])
    if pts < 0:
        raise ValidationError("penalty points must be >= 0", points=points)

    now = datetime.utcnow()
    row = ProviderPenalty(
        org_id=int(org_id),
        provider_user_id=int(provider_user_id),
        request_id=request_id,
        dispute_id=dispute_id,
        penalty_type=ptype.value,
        severity=sev.value,
        points=pts,
        status=PenaltyStatus.ACTIVE.value,
        reason=reason,
        issued_by_user_id=issued_by_user_id,
        expires_at=expires_at,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    db.flush()

    audit_write(
        db,
        org_id=org_id,
        actor_user_id=issued_by_user_id,
        action="penalty.issue",
        entity_type="provider_penalty",
        entity_id=row.id,
        after=_penalty_dict(row),
    )
    emit_workflow_event(
        db,
        org_id=org_id,
        actor_user_id=issued_by_user_id,
        event_type="penalty_issued",
        request_id=request_id,
        payload={"penalty_id": row.id, "provider_user_id": provider_user_id, "type": ptype.value, "points": pts},
    )
    METRICS.inc("penalties_issued")
    recompute(db, org_id=org_id, provider_user_id=provider_user_id, now=now)
    return row


def _move_penalty(
    db: Session,
    row: ProviderPenalty,
    target: PenaltyStatus,
    *,
    actor_user_id: Optional[int],
    notes: Optional[str] = None,
) -> ProviderPenalty:
    cur = PenaltyStatus.parse(row.status)
    if target not in PENALTY_EDGES[cur]:
        raise IllegalTransitionError("penalty", cur.value, target.value)

    before = _penalty_dict(row)
    row.status = target.value
    if target == PenaltyStatus.APPEALED:
        row.appeal_notes = notes
    else:
        row.reviewed_by_user_id = actor_user_id
    row.updated_at = datetime.utcnow()
    db.add(row)
    db.flush()

    audit_write(
        db,
        org_id=row.org_id,
        actor_user_id=actor_user_id,
        action=f"penalty.{target.value}",
        entity_type="provider_penalty",
        entity_id=row.id,
        before=before,
        after=_penalty_dict(row),
    )
    emit_workflow_event(
        db,
        org_id=row.org_id,
        actor_user_id=actor_user_id,
        event_type=f"penalty_{target.value}",
        request_id=row.request_id,
        payload={"penalty_id": row.id, "provider_user_id": row.provider_user_id, "notes": notes},
    )
    recompute(db, org_id=row.org_id, provider_user_id=row.provider_user_id)
    return row


def issue_penalty(
    db: Session,
    *,
    p: Principal,
    provider_user_id: int,
    penalty_type: str,
    severity: Optional[str] = None,
    points: Optional[float] = None,
    reason: Optional[str] = None,
    request_id: Optional[int] = None,
    expires_at: Optional[datetime] = None,
) -> ProviderPenalty:
    assert_manager(p, "issue penalty")
    row = issue_penalty_internal(
        db,
        org_id=p.org_id,
        provider_user_id=provider_user_id,
        penalty_type=penalty_type,
        severity=severity,
        points=points,
        reason=reason,
        request_id=request_id,
        issued_by_user_id=p.user_id,
        expires_at=expires_at,
    )
    db.commit()
    db.refresh(row)
    return row


def appeal_penalty(db: Session, *, p: Principal, penalty_id: int, notes: str) -> ProviderPenalty:
    assert_provider(p, "appeal penalty")
    row = must_get_penalty(db, org_id=p.org_id, penalty_id=penalty_id)
    if int(row.provider_user_id) != int(p.user_id):
        raise PermissionDeniedError("providers may only appeal their own penalties", penalty_id=penalty_id)
    if not (notes or "").strip():
        raise ValidationError("appeal notes are required")
    _move_penalty(db, row, PenaltyStatus.APPEALED, actor_user_id=p.user_id, notes=notes.strip())
    db.commit()
    db.refresh(row)
    return row


def uphold_penalty(db: Session, *, p: Principal, penalty_id: int, notes: Optional[str] = None) -> ProviderPenalty:
    assert_manager(p, "uphold penalty")
    row = must_get_penalty(db, org_id=p.org_id, penalty_id=penalty_id)
    if PenaltyStatus.parse(row.status) != PenaltyStatus.APPEALED:
        raise IllegalTransitionError("penalty", row.status, PenaltyStatus.ACTIVE.value, reason="only appealed penalties can be upheld")
    _move_penalty(db, row, PenaltyStatus.ACTIVE, actor_user_id=p.user_id, notes=notes)
    db.commit()
    db.refresh(row)
    return row


def overturn_penalty(db: Session, *, p: Principal, penalty_id: int, notes: Optional[str] = None) -> ProviderPenalty:
    assert_manager(p, "overturn penalty")
    row = must_get_penalty(db, org_id=p.org_id, penalty_id=penalty_id)
    _move_penalty(db, row, PenaltyStatus.OVERTURNED, actor_user_id=p.user_id, notes=notes)
    db.commit()
    db.refresh(row)
    return row


def expire_penalty(db: Session, *, p: Principal, penalty_id: int) -> ProviderPenalty:
    assert_manager(p, "expire penalty")
    row = must_get_penalty(db, org_id=p.org_id, penalty_id=penalty_id)
    _move_penalty(db, row, PenaltyStatus.EXPIRED, actor_user_id=p.user_id)
    db.commit()
    db.refresh(row)
    return row


def list_penalties(
    db: Session,
    *,
    org_id: int,
    provider_user_id: int,
    status: Optional[str] = None,
) -> list[ProviderPenalty]:
    q = (
        select(ProviderPenalty)
        .where(ProviderPenalty.org_id == org_id, ProviderPenalty.provider_user_id == provider_user_id)
        .order_by(ProviderPenalty.id.asc())
    )
    if status:
        q = q.where(ProviderPenalty.status == PenaltyStatus.parse(status).value)
    return list(db.scalars(q).all())


def expire_due_penalties(db: Session, *, now: Optional[datetime] = None) -> int:
    """Sweep: active penalties whose expires_at has passed become expired."""
    now = now or datetime.utcnow()
    rows = db.scalars(
        select(ProviderPenalty).where(
            ProviderPenalty.status == PenaltyStatus.ACTIVE.value,
            ProviderPenalty.expires_at.is_not(None),
            ProviderPenalty.expires_at <= now,
        )
    ).all()

    touched: set[tuple[int, int]] = set()
    for row in rows:
        row.status = PenaltyStatus.EXPIRED.value
        row.updated_at = now
        db.add(row)
        touched.add((int(row.org_id), int(row.provider_user_id)))
        audit_write(
            db,
            org_id=row.org_id,
            actor_user_id=None,
            action="penalty.expired",
            entity_type="provider_penalty",
            entity_id=row.id,
            after=_penalty_dict(row),
        )

    for org_id, provider_user_id in sorted(touched):
        recompute(db, org_id=org_id, provider_user_id=provider_user_id, now=now)

    db.commit()
    if rows:
        METRICS.inc("penalties_expired", len(rows))
    return len(rows)
