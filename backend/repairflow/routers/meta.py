# backend/repairflow/routers/meta.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..domain.enums import EmergencyType
from ..services.runtime_metrics import METRICS

router = APIRouter(prefix="/meta", tags=["meta"])


@router.get("/health", response_model=dict)
def health(db: Session = Depends(get_db)):
    db.execute(text("select 1"))
    return {"ok": True, "env": settings.app_env, "version": settings.app_version}


@router.get("/metrics", response_class=PlainTextResponse)
def metrics():
    # Prometheus text-ish format
    lines = [f"{k} {v}" for k, v in METRICS.snapshot().items()]
    return "\n".join(lines) + "\n"


@router.get("/slas", response_model=dict)
def slas():
    return {t.value: settings.sla_minutes(t.value) for t in EmergencyType}
