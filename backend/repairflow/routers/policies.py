# backend/repairflow/routers/policies.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import Principal, get_principal, require_manager
from ..db import get_db
from ..schemas import PolicyBulkIn, PolicyIn, PolicyOut
from ..services import policy_service
from ..services.ownership import must_get_property

router = APIRouter(prefix="/policies", tags=["policies"])


@router.get("/{property_id}", response_model=PolicyOut)
def get_policy(property_id: int, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    must_get_property(db, org_id=p.org_id, property_id=property_id)
    return policy_service.get_policy_snapshot(db, org_id=p.org_id, property_id=property_id).as_dict()


@router.put("/{property_id}", response_model=PolicyOut)
def put_policy(property_id: int, payload: PolicyIn, db: Session = Depends(get_db), p: Principal = Depends(require_manager)):
    snap = policy_service.upsert_policy(
        db,
        org_id=p.org_id,
        property_id=property_id,
        actor_user_id=p.user_id,
        changes=payload.model_dump(exclude_unset=True),
    )
    return snap.as_dict()


@router.post("/bulk-apply", response_model=list[PolicyOut])
def bulk_apply(payload: PolicyBulkIn, db: Session = Depends(get_db), p: Principal = Depends(require_manager)):
    snaps = policy_service.bulk_apply(
        db,
        org_id=p.org_id,
        property_ids=payload.property_ids,
        actor_user_id=p.user_id,
        changes=payload.changes.model_dump(exclude_unset=True),
    )
    return [s.as_dict() for s in snaps]
