# backend/repairflow/workers/escalation_tasks.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from ..db import SessionLocal
from ..middleware.request_id import bind_request_id, request_id_ctx
from ..services import notifications
from ..services.bidding_service import expire_stale_bids
from ..services.escalation_service import sweep_due
from ..services.reliability_service import expire_due_penalties
from .celery_app import celery_app

log = logging.getLogger("repairflow.workers")


def run_once(now: Optional[datetime] = None) -> dict[str, Any]:
    """
    One scheduler tick: escalations, then housekeeping, then the outbox.
    Shared by celery beat and the plain scheduler loop.
    """
    now = now or datetime.utcnow()
    token = bind_request_id(None)
    db = SessionLocal()
    try:
        sweep = sweep_due(db, now=now)
        expired_bids = expire_stale_bids(db, now=now)
        expired_penalties = expire_due_penalties(db, now=now)
        delivered = notifications.deliver_pending(db)
        out = {
            "sweep": sweep,
            "expired_bids": expired_bids,
            "expired_penalties": expired_penalties,
            "notifications": delivered,
        }
        log.info("scheduler_tick", extra={"event": "scheduler_tick"})
        return out
    finally:
        db.close()
        request_id_ctx.reset(token)


@celery_app.task(name="repairflow.workers.escalation_tasks.sweep_escalations")
def sweep_escalations() -> dict:
    token = bind_request_id(None)
    db = SessionLocal()
    try:
        return {"ok": True, "sweep": sweep_due(db)}
    finally:
        db.close()
        request_id_ctx.reset(token)


@celery_app.task(name="repairflow.workers.escalation_tasks.deliver_notifications")
def deliver_notifications() -> dict:
    token = bind_request_id(None)
    db = SessionLocal()
    try:
        return {"ok": True, "notifications": notifications.deliver_pending(db)}
    finally:
        db.close()
        request_id_ctx.reset(token)


@celery_app.task(name="repairflow.workers.escalation_tasks.expire_bids_and_penalties")
def expire_bids_and_penalties() -> dict:
    token = bind_request_id(None)
    db = SessionLocal()
    try:
        bids = expire_stale_bids(db)
        penalties = expire_due_penalties(db)
        return {"ok": True, "expired_bids": bids, "expired_penalties": penalties}
    finally:
        db.close()
        request_id_ctx.reset(token)
