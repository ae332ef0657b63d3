# backend/repairflow/routers/maintenance.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from ..auth import Principal, get_principal
from ..db import get_db
from ..models import WorkflowEvent
from ..schemas import (
    ApproveIn,
    CancelIn,
    CompleteIn,
    DenyIn,
    DispatchIn,
    MaintenanceRequestCreate,
    MaintenanceRequestOut,
    NoShowIn,
    RateIn,
    RequestInfoIn,
    RespondIn,
    WorkflowEventOut,
)
from ..services import bidding_service, request_service
from ..services.conflicts import retry_on_conflict

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


@router.post("/requests", response_model=MaintenanceRequestOut, status_code=201)
def submit_request(payload: MaintenanceRequestCreate, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return request_service.submit_request(db, p=p, **payload.model_dump())


@router.get("/requests", response_model=list[MaintenanceRequestOut])
def list_requests(
    status: Optional[str] = Query(default=None),
    property_id: Optional[int] = Query(default=None),
    emergency_only: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    p: Principal = Depends(get_principal),
):
    return request_service.list_requests(
        db, p=p, status=status, property_id=property_id, emergency_only=emergency_only, limit=limit
    )


@router.get("/requests/{request_id}", response_model=MaintenanceRequestOut)
def get_request(request_id: int, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return request_service.get_request(db, p=p, request_id=request_id)


@router.post("/requests/{request_id}/approve", response_model=MaintenanceRequestOut)
def approve_request(
    request_id: int,
    payload: ApproveIn,
    db: Session = Depends(get_db),
    p: Principal = Depends(get_principal),
):
    return retry_on_conflict(
        db,
        lambda: request_service.approve_request(
            db, p=p, request_id=request_id, estimated_cost=payload.estimated_cost, notes=payload.notes
        ),
    )


@router.post("/requests/{request_id}/deny", response_model=MaintenanceRequestOut)
def deny_request(request_id: int, payload: DenyIn, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return retry_on_conflict(db, lambda: request_service.deny_request(db, p=p, request_id=request_id, reason=payload.reason))


@router.post("/requests/{request_id}/request-info", response_model=MaintenanceRequestOut)
def request_info(
    request_id: int,
    payload: RequestInfoIn,
    db: Session = Depends(get_db),
    p: Principal = Depends(get_principal),
):
    return request_service.request_info(db, p=p, request_id=request_id, message=payload.message)


@router.post("/requests/{request_id}/open-bidding", response_model=MaintenanceRequestOut)
def open_bidding(request_id: int, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return retry_on_conflict(db, lambda: bidding_service.open_bidding(db, p=p, request_id=request_id))


@router.post("/requests/{request_id}/dispatch", response_model=MaintenanceRequestOut)
def dispatch_provider(
    request_id: int,
    payload: DispatchIn,
    db: Session = Depends(get_db),
    p: Principal = Depends(get_principal),
):
    return retry_on_conflict(
        db,
        lambda: request_service.dispatch_provider(
            db, p=p, request_id=request_id, provider_user_id=payload.provider_user_id
        ),
    )


@router.post("/requests/{request_id}/respond", response_model=MaintenanceRequestOut)
def respond_to_emergency(
    request_id: int,
    payload: RespondIn,
    db: Session = Depends(get_db),
    p: Principal = Depends(get_principal),
):
    return retry_on_conflict(
        db,
        lambda: request_service.respond_to_emergency(db, p=p, request_id=request_id, eta_minutes=payload.eta_minutes),
    )


@router.post("/requests/{request_id}/start", response_model=MaintenanceRequestOut)
def start_work(request_id: int, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return retry_on_conflict(db, lambda: request_service.start_work(db, p=p, request_id=request_id))


@router.post("/requests/{request_id}/complete", response_model=MaintenanceRequestOut)
def complete_request(
    request_id: int,
    payload: CompleteIn,
    db: Session = Depends(get_db),
    p: Principal = Depends(get_principal),
):
    return retry_on_conflict(
        db,
        lambda: request_service.complete_request(
            db, p=p, request_id=request_id, rating=payload.rating, review=payload.review
        ),
    )


@router.post("/requests/{request_id}/rate", response_model=MaintenanceRequestOut)
def rate_request(request_id: int, payload: RateIn, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return retry_on_conflict(
        db,
        lambda: request_service.rate_request(db, p=p, request_id=request_id, rating=payload.rating, review=payload.review),
    )


@router.post("/requests/{request_id}/cancel", response_model=MaintenanceRequestOut)
def cancel_request(
    request_id: int,
    payload: CancelIn,
    db: Session = Depends(get_db),
    p: Principal = Depends(get_principal),
):
    return retry_on_conflict(
        db,
        lambda: request_service.cancel_request(
            db, p=p, request_id=request_id, reason=payload.reason, provider_no_show=payload.provider_no_show
        ),
    )


@router.post("/requests/{request_id}/no-show", response_model=MaintenanceRequestOut)
def report_no_show(
    request_id: int,
    payload: NoShowIn,
    db: Session = Depends(get_db),
    p: Principal = Depends(get_principal),
):
    return request_service.report_no_show(db, p=p, request_id=request_id, reason=payload.reason)


@router.get("/requests/{request_id}/events", response_model=list[WorkflowEventOut])
def list_request_events(
    request_id: int,
    limit: int = Query(default=200, ge=1, le=500),
    db: Session = Depends(get_db),
    p: Principal = Depends(get_principal),
):
    req = request_service.get_request(db, p=p, request_id=request_id)
    q = (
        select(WorkflowEvent)
        .where(WorkflowEvent.org_id == p.org_id, WorkflowEvent.request_id == req.id)
        .order_by(desc(WorkflowEvent.id))
        .limit(limit)
    )
    return list(db.scalars(q).all())
