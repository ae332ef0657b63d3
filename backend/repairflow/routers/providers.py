# backend/repairflow/routers/providers.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import Principal, get_principal
from ..db import get_db
from ..domain.errors import PermissionDeniedError
from ..schemas import (
    PenaltyAppealIn,
    PenaltyCreate,
    PenaltyNotesIn,
    PenaltyOut,
    ProviderBidStatsOut,
    ReliabilityOut,
)
from ..services import bidding_service, reliability_service

router = APIRouter(prefix="/providers", tags=["providers"])


def _assert_can_view(p: Principal, provider_user_id: int) -> None:
    if p.is_provider and int(p.user_id) != int(provider_user_id):
        raise PermissionDeniedError("providers can only view their own ledger")


@router.get("/{provider_user_id}/reliability", response_model=ReliabilityOut)
def get_reliability(provider_user_id: int, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    _assert_can_view(p, provider_user_id)
    return reliability_service.reliability_view(db, org_id=p.org_id, provider_user_id=provider_user_id)


@router.get("/{provider_user_id}/penalties", response_model=list[PenaltyOut])
def list_penalties(
    provider_user_id: int,
    status: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    p: Principal = Depends(get_principal),
):
    _assert_can_view(p, provider_user_id)
    return reliability_service.list_penalties(db, org_id=p.org_id, provider_user_id=provider_user_id, status=status)


@router.get("/{provider_user_id}/bid-stats", response_model=ProviderBidStatsOut)
def bid_stats(provider_user_id: int, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    _assert_can_view(p, provider_user_id)
    return bidding_service.provider_bid_stats(db, org_id=p.org_id, provider_user_id=provider_user_id)


@router.post("/penalties", response_model=PenaltyOut, status_code=201)
def issue_penalty(payload: PenaltyCreate, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return reliability_service.issue_penalty(db, p=p, **payload.model_dump())


@router.post("/penalties/{penalty_id}/appeal", response_model=PenaltyOut)
def appeal_penalty(
    penalty_id: int,
    payload: PenaltyAppealIn,
    db: Session = Depends(get_db),
    p: Principal = Depends(get_principal),
):
    return reliability_service.appeal_penalty(db, p=p, penalty_id=penalty_id, notes=payload.notes)


@router.post("/penalties/{penalty_id}/uphold", response_model=PenaltyOut)
def uphold_penalty(
    penalty_id: int,
    payload: PenaltyNotesIn,
    db: Session = Depends(get_db),
    p: Principal = Depends(get_principal),
):
    return reliability_service.uphold_penalty(db, p=p, penalty_id=penalty_id, notes=payload.notes)


@router.post("/penalties/{penalty_id}/overturn", response_model=PenaltyOut)
def overturn_penalty(
    penalty_id: int,
    payload: PenaltyNotesIn,
    db: Session = Depends(get_db),
    p: Principal = Depends(get_principal),
):
    return reliability_service.overturn_penalty(db, p=p, penalty_id=penalty_id, notes=payload.notes)


@router.post("/penalties/{penalty_id}/expire", response_model=PenaltyOut)
def expire_penalty(penalty_id: int, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return reliability_service.expire_penalty(db, p=p, penalty_id=penalty_id)
