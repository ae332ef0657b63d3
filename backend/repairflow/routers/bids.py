# backend/repairflow/routers/bids.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import Principal, get_principal
from ..db import get_db
from ..schemas import BidCreate, BidOut, BidRejectIn, MaintenanceRequestOut
from ..services import bidding_service
from ..services.conflicts import retry_on_conflict

router = APIRouter(prefix="/maintenance", tags=["bids"])


@router.post("/requests/{request_id}/bids", response_model=BidOut, status_code=201)
def submit_bid(request_id: int, payload: BidCreate, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return retry_on_conflict(
        db,
        lambda: bidding_service.submit_bid(
            db,
            p=p,
            request_id=request_id,
            amount=payload.amount,
            estimated_hours=payload.estimated_hours,
            available_dates=payload.available_dates,
            notes=payload.notes,
        ),
    )


@router.get("/requests/{request_id}/bids", response_model=list[BidOut])
def list_bids(
    request_id: int,
    status: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    p: Principal = Depends(get_principal),
):
    return bidding_service.list_bids(db, p=p, request_id=request_id, status=status)


@router.post("/bids/{bid_id}/withdraw", response_model=BidOut)
def withdraw_bid(bid_id: int, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return bidding_service.withdraw_bid(db, p=p, bid_id=bid_id)


@router.post("/bids/{bid_id}/reject", response_model=BidOut)
def reject_bid(bid_id: int, payload: BidRejectIn, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return bidding_service.reject_bid(db, p=p, bid_id=bid_id, reason=payload.reason)


@router.post("/bids/{bid_id}/select", response_model=MaintenanceRequestOut)
def select_bid(bid_id: int, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return retry_on_conflict(db, lambda: bidding_service.select_bid(db, p=p, bid_id=bid_id))
