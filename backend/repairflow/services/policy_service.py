# backend/repairflow/services/policy_service.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings
from ..domain.approval import PolicySnapshot
from ..domain.audit import audit_write
from ..domain.enums import ApprovalMode, PaymentResponsibility
from ..domain.errors import ValidationError
from ..domain.events import emit_workflow_event
from ..models import PropertyPolicy
from .ownership import must_get_property

POLICY_FIELDS = (
    "payment_responsibility",
    "split_ceiling",
    "approval_mode",
    "auto_approval_limit",
    "require_photos",
    "require_completion_photos",
    "emergency_auto_approve",
    "bid_window_hours",
)


def default_snapshot(property_id: int) -> PolicySnapshot:
    return PolicySnapshot(
        property_id=int(property_id),
        payment_responsibility=PaymentResponsibility.parse(settings.default_payment_responsibility),
        split_ceiling=float(settings.default_split_ceiling),
        approval_mode=ApprovalMode.parse(settings.default_approval_mode),
        auto_approval_limit=float(settings.default_auto_approval_limit),
        require_photos=False,
        require_completion_photos=False,
        emergency_auto_approve=bool(settings.default_emergency_auto_approve),
        bid_window_hours=int(settings.default_bid_window_hours),
        is_default=True,
    )


def snapshot_from_row(row: PropertyPolicy) -> PolicySnapshot:
    return PolicySnapshot(
        property_id=int(row.property_id),
        payment_responsibility=PaymentResponsibility.parse(row.payment_responsibility),
        split_ceiling=float(row.split_ceiling or 0.0),
        approval_mode=ApprovalMode.parse(row.approval_mode),
        auto_approval_limit=float(row.auto_approval_limit) if row.auto_approval_limit is not None else None,
        require_photos=bool(row.require_photos),
        require_completion_photos=bool(row.require_completion_photos),
        emergency_auto_approve=bool(row.emergency_auto_approve),
        bid_window_hours=int(row.bid_window_hours),
        is_default=False,
    )


def _get_row(db: Session, *, org_id: int, property_id: int) -> Optional[PropertyPolicy]:
    return db.scalar(
        select(PropertyPolicy).where(PropertyPolicy.org_id == org_id, PropertyPolicy.property_id == property_id)
    )


def get_policy_snapshot(db: Session, *, org_id: int, property_id: int) -> PolicySnapshot:
    row = _get_row(db, org_id=org_id, property_id=property_id)
    if row is None:
        return default_snapshot(property_id)
    return snapshot_from_row(row)


def _validated(changes: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in changes.items():
        if k not in POLICY_FIELDS or (v is None and k != "auto_approval_limit"):
            continue
        try:
            if k == "payment_responsibility":
                v = PaymentResponsibility.parse(v).value
            elif k == "approval_mode":
                v = ApprovalMode.parse(v).value
        except ValueError:
            raise ValidationError(f"invalid {k}: {v!r}", field=k)

        if k in ("split_ceiling", "auto_approval_limit") and v is not None:
            if float(v) < 0:
                raise ValidationError(f"{k} must be >= 0", field=k)
            v = float(v)
        if k == "bid_window_hours":
            if int(v) <= 0:
                raise ValidationError("bid_window_hours must be positive", field=k)
            v = int(v)
        out[k] = v
    return out


def upsert_policy(
    db: Session,
    *,
    org_id: int,
    property_id: int,
    actor_user_id: Optional[int],
    changes: dict[str, Any],
    commit: bool = True,
) -> PolicySnapshot:
    """Partial update; fields not named keep their stored (or default) value."""
    must_get_property(db, org_id=org_id, property_id=property_id)
    clean = _validated(changes)

    row = _get_row(db, org_id=org_id, property_id=property_id)
    before = snapshot_from_row(row).as_dict() if row is not None else None
    now = datetime.utcnow()

    if row is None:
        base = default_snapshot(property_id).as_dict()
        row = PropertyPolicy(
            org_id=int(org_id),
            property_id=int(property_id),
            payment_responsibility=base["payment_responsibility"],
            split_ceiling=base["split_ceiling"],
            approval_mode=base["approval_mode"],
            auto_approval_limit=base["auto_approval_limit"],
            require_photos=base["require_photos"],
            require_completion_photos=base["require_completion_photos"],
            emergency_auto_approve=base["emergency_auto_approve"],
            bid_window_hours=base["bid_window_hours"],
            created_at=now,
        )

    for k, v in clean.items():
        setattr(row, k, v)
    row.updated_by_user_id = actor_user_id
    row.updated_at = now
    db.add(row)
    db.flush()

    snap = snapshot_from_row(row)
    audit_write(
        db,
        org_id=org_id,
        actor_user_id=actor_user_id,
        action="policy.upsert",
        entity_type="property_policy",
        entity_id=property_id,
        before=before,
        after=snap.as_dict(),
    )
    emit_workflow_event(
        db,
        org_id=org_id,
        actor_user_id=actor_user_id,
        event_type="policy_updated",
        property_id=property_id,
        payload={"changed": sorted(clean.keys())},
    )
    if commit:
        db.commit()
    return snap


def bulk_apply(
    db: Session,
    *,
    org_id: int,
    property_ids: Iterable[int],
    actor_user_id: Optional[int],
    changes: dict[str, Any],
) -> list[PolicySnapshot]:
    """Same change set on many properties, all-or-nothing."""
    ids = sorted({int(x) for x in property_ids})
    if not ids:
        raise ValidationError("property_ids must not be empty")
    try:
        out = [
            upsert_policy(db, org_id=org_id, property_id=pid, actor_user_id=actor_user_id, changes=changes, commit=False)
            for pid in ids
        ]
        db.commit()
    except Exception:
        db.rollback()
        raise
    return out
