# backend/repairflow/routers/disputes.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import Principal, get_principal
from ..db import get_db
from ..schemas import (
    DisputeAdvanceIn,
    DisputeCloseIn,
    DisputeCreate,
    DisputeEscalateIn,
    DisputeEvidenceIn,
    DisputeOut,
    DisputeResolveIn,
)
from ..services import dispute_service

router = APIRouter(prefix="/disputes", tags=["disputes"])


@router.post("", response_model=DisputeOut, status_code=201)
def open_dispute(payload: DisputeCreate, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    d = dispute_service.open_dispute(db, p=p, **payload.model_dump())
    return dispute_service.dispute_view(db, d)


@router.get("", response_model=list[DisputeOut])
def list_disputes(
    request_id: Optional[int] = Query(default=None),
    status: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    p: Principal = Depends(get_principal),
):
    rows = dispute_service.list_disputes(db, p=p, request_id=request_id, status=status)
    return [dispute_service.dispute_view(db, d) for d in rows]


@router.get("/{dispute_id}", response_model=DisputeOut)
def get_dispute(dispute_id: int, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return dispute_service.dispute_view(db, dispute_service.get_dispute(db, p=p, dispute_id=dispute_id))


@router.post("/{dispute_id}/evidence", response_model=DisputeOut)
def add_evidence(dispute_id: int, payload: DisputeEvidenceIn, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    d = dispute_service.add_evidence(db, p=p, dispute_id=dispute_id, item=payload.item, notes=payload.notes)
    return dispute_service.dispute_view(db, d)


@router.post("/{dispute_id}/advance", response_model=DisputeOut)
def advance_dispute(dispute_id: int, payload: DisputeAdvanceIn, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    d = dispute_service.advance_dispute(
        db,
        p=p,
        dispute_id=dispute_id,
        target=payload.target,
        notes=payload.notes,
        mediator_user_id=payload.mediator_user_id,
    )
    return dispute_service.dispute_view(db, d)


@router.post("/{dispute_id}/escalate", response_model=DisputeOut)
def escalate_dispute(dispute_id: int, payload: DisputeEscalateIn, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    d = dispute_service.escalate_dispute(
        db, p=p, dispute_id=dispute_id, mediator_user_id=payload.mediator_user_id, notes=payload.notes
    )
    return dispute_service.dispute_view(db, d)


@router.post("/{dispute_id}/resolve", response_model=DisputeOut)
def resolve_dispute(dispute_id: int, payload: DisputeResolveIn, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    d = dispute_service.resolve_dispute(db, p=p, dispute_id=dispute_id, **payload.model_dump())
    return dispute_service.dispute_view(db, d)


@router.post("/{dispute_id}/close", response_model=DisputeOut)
def close_dispute(dispute_id: int, payload: DisputeCloseIn, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    d = dispute_service.close_dispute(db, p=p, dispute_id=dispute_id, notes=payload.notes)
    return dispute_service.dispute_view(db, d)
