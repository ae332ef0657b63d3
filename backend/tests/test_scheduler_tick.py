# backend/tests/test_scheduler_tick.py
from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import select

from repairflow.cli.seed_demo import seed_demo
from repairflow.models import EscalationRule, NotificationOutbox
from repairflow.services import escalation_service, request_service
from repairflow.workers.escalation_tasks import run_once


def test_tick_sweeps_and_drains_outbox(db, world):
    escalation_service.upsert_rule(db, p=world.landlord, property_id=world.property_id, level=2)
    t0 = datetime.utcnow()
    req = request_service.submit_request(
        db,
        p=world.tenant,
        property_id=world.property_id,
        title="No power",
        description="Whole unit has no power and exposed wires in the hall",
        category="electrical",
        now=t0,
    )
    assert req.emergency_type == "electrical"

    out = run_once(now=t0 + timedelta(minutes=21))
    assert out["sweep"]["advanced"] == 1
    assert out["notifications"]["sent"] >= 1

    db.expire_all()
    pending = db.scalars(select(NotificationOutbox).where(NotificationOutbox.status == "pending")).all()
    assert pending == []


def test_tick_with_nothing_to_do():
    out = run_once()
    assert out["sweep"]["due"] == 0
    assert out["expired_bids"] == 0
    assert out["expired_penalties"] == 0
    assert out["notifications"] == {"sent": 0, "failed": 0, "retrying": 0}


def test_seed_demo_is_idempotent(db):
    first = seed_demo(org_slug="demo")
    second = seed_demo(org_slug="demo")
    assert first.property_id == second.property_id
    assert first.rule_levels == [1, 2, 3]

    levels = db.scalars(
        select(EscalationRule.level).where(EscalationRule.property_id == first.property_id).order_by(EscalationRule.level)
    ).all()
    assert list(levels) == [1, 2, 3]
