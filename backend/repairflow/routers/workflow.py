# backend/repairflow/routers/workflow.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from ..auth import Principal, require_manager
from ..db import get_db
from ..models import WorkflowEvent
from ..schemas import WorkflowEventOut

router = APIRouter(prefix="/workflow", tags=["workflow"])


@router.get("/events", response_model=list[WorkflowEventOut])
def list_events(
    property_id: Optional[int] = Query(default=None),
    request_id: Optional[int] = Query(default=None),
    event_type: Optional[str] = Query(default=None),
    limit: int = Query(default=200, ge=1, le=500),
    db: Session = Depends(get_db),
    p: Principal = Depends(require_manager),
):
    q = select(WorkflowEvent).where(WorkflowEvent.org_id == p.org_id).order_by(desc(WorkflowEvent.id))
    if property_id is not None:
        q = q.where(WorkflowEvent.property_id == property_id)
    if request_id is not None:
        q = q.where(WorkflowEvent.request_id == request_id)
    if event_type:
        q = q.where(WorkflowEvent.event_type == event_type)
    return list(db.scalars(q.limit(limit)).all())
