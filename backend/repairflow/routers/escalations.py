# backend/repairflow/routers/escalations.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import Principal, get_principal, require_manager
from ..db import get_db
from ..schemas import (
    EmergencyContactIn,
    EmergencyContactOut,
    EscalationRuleIn,
    EscalationRuleOut,
    EscalationTrackingOut,
)
from ..services import escalation_service, notifications, request_service

router = APIRouter(prefix="/escalations", tags=["escalations"])


@router.get("/requests/{request_id}", response_model=EscalationTrackingOut)
def get_tracking(request_id: int, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    req = request_service.get_request(db, p=p, request_id=request_id)
    t = escalation_service.must_get_tracking(db, org_id=p.org_id, request_id=req.id)
    return escalation_service.tracking_view(db, t)


@router.post("/requests/{request_id}/resolve", response_model=EscalationTrackingOut)
def resolve_emergency(request_id: int, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    t = escalation_service.resolve_emergency(db, p=p, request_id=request_id)
    return escalation_service.tracking_view(db, t)


@router.post("/sweep", response_model=dict)
def run_sweep(db: Session = Depends(get_db), p: Principal = Depends(require_manager)):
    out = escalation_service.sweep_due(db)
    out["notifications"] = notifications.deliver_pending(db)
    return out


@router.post("/rules", response_model=EscalationRuleOut)
def upsert_rule(payload: EscalationRuleIn, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return escalation_service.upsert_rule(db, p=p, **payload.model_dump())


@router.get("/rules", response_model=list[EscalationRuleOut])
def list_rules(
    property_id: int = Query(...),
    db: Session = Depends(get_db),
    p: Principal = Depends(require_manager),
):
    return escalation_service.list_rules(db, org_id=p.org_id, property_id=property_id)


@router.delete("/rules/{rule_id}", response_model=dict)
def delete_rule(rule_id: int, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    escalation_service.delete_rule(db, p=p, rule_id=rule_id)
    return {"ok": True, "deleted": rule_id}


@router.post("/contacts", response_model=EmergencyContactOut)
def add_contact(payload: EmergencyContactIn, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return escalation_service.add_contact(db, p=p, **payload.model_dump())


@router.get("/contacts", response_model=list[EmergencyContactOut])
def list_contacts(
    property_id: int = Query(...),
    db: Session = Depends(get_db),
    p: Principal = Depends(require_manager),
):
    return escalation_service.list_contacts(db, org_id=p.org_id, property_id=property_id)


@router.delete("/contacts/{contact_id}", response_model=dict)
def delete_contact(contact_id: int, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    escalation_service.delete_contact(db, p=p, contact_id=contact_id)
    return {"ok": True, "deleted": contact_id}
