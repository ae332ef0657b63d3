# backend/tests/test_emergency_escalation.py
from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from repairflow.config import settings
from repairflow.db import SessionLocal
from repairflow.domain.errors import ConcurrencyConflictError, IllegalTransitionError, ValidationError
from repairflow.models import EscalationTracking, NotificationOutbox, WorkflowEvent
from repairflow.services import escalation_service, reliability_service, request_service
from repairflow.services.locks_service import acquire_lock

T0 = datetime(2026, 3, 1, 12, 0, 0)


def _mins(n: int) -> datetime:
    return T0 + timedelta(minutes=n)


def _burst_pipe(db, w, *, cost=None):
    return request_service.submit_request(
        db,
        p=w.tenant,
        property_id=w.property_id,
        title="Pipe burst",
        description="Water everywhere in the basement",
        category="plumbing",
        estimated_cost=cost,
        now=T0,
    )


def _rule(db, w, level, **kw):
    return escalation_service.upsert_rule(db, p=w.landlord, property_id=w.property_id, level=level, **kw)


def _tracking(db, w, req):
    t = escalation_service.must_get_tracking(db, org_id=w.org_id, request_id=req.id)
    db.refresh(t)
    return t


def _event_types(db, req) -> list[str]:
    return list(db.scalars(select(WorkflowEvent.event_type).where(WorkflowEvent.request_id == req.id)).all())


def test_unanswered_water_emergency_escalates_to_level_two(db, world):
    _rule(db, world, 1, notify_user_ids=[world.landlord.user_id])
    _rule(db, world, 2, notify_user_ids=[world.provider2.user_id])

    req = _burst_pipe(db, world)
    assert req.is_emergency is True
    assert req.emergency_type == "water"
    assert req.workflow_status == "approved"

    t = _tracking(db, world, req)
    assert t.escalation_level == 1
    assert t.deadline_kind == "response"
    assert t.response_deadline == _mins(15)

    out = escalation_service.sweep_due(db, now=_mins(16))
    assert out["locked"] is False
    assert out["advanced"] == 1

    t = _tracking(db, world, req)
    assert t.escalation_level == 2
    assert t.response_deadline == _mins(31)

    batches = escalation_service.list_notifications(db, org_id=world.org_id, tracking_id=t.id)
    assert [b.level for b in batches] == [1, 2]

    recipients = db.scalars(
        select(NotificationOutbox.recipient_user_id)
        .where(NotificationOutbox.event_type == "emergency_escalation")
        .order_by(NotificationOutbox.id.asc())
    ).all()
    assert list(recipients) == [world.landlord.user_id, world.provider2.user_id]
    assert "escalation_advanced" in _event_types(db, req)


def test_nothing_is_due_before_the_deadline(db, world):
    _rule(db, world, 2)
    req = _burst_pipe(db, world)

    out = escalation_service.sweep_due(db, now=_mins(10))
    assert out["due"] == 0
    assert _tracking(db, world, req).escalation_level == 1


def test_missing_next_rule_halts_and_reports(db, world):
    req = _burst_pipe(db, world)

    out = escalation_service.sweep_due(db, now=_mins(16))
    assert out["halted"] == 1
    assert out["advanced"] == 0

    t = _tracking(db, world, req)
    assert t.escalation_level == 1
    assert "level 2" in (t.config_error or "")
    assert t.response_deadline is None

    alerts = db.scalars(
        select(NotificationOutbox).where(NotificationOutbox.event_type == "escalation_config_error")
    ).all()
    assert [a.recipient_user_id for a in alerts] == [world.landlord.user_id]
    assert "escalation_halted" in _event_types(db, req)

    # halted rows are not picked up again
    assert escalation_service.sweep_due(db, now=_mins(60))["due"] == 0


def test_required_level_one_rule(db, world, monkeypatch):
    monkeypatch.setattr(settings, "escalation_require_level1_rule", True)
    req = _burst_pipe(db, world)

    t = _tracking(db, world, req)
    assert "level 1" in (t.config_error or "")
    assert t.response_deadline is None


def test_first_response_freezes_escalation(db, world):
    _rule(db, world, 2)
    req = _burst_pipe(db, world)

    request_service.respond_to_emergency(db, p=world.provider, request_id=req.id, eta_minutes=20, now=_mins(5))
    t = _tracking(db, world, req)
    assert t.first_responder_id == world.provider.user_id
    assert t.response_deadline is None

    assert escalation_service.sweep_due(db, now=_mins(30))["due"] == 0
    assert _tracking(db, world, req).escalation_level == 1

    view = reliability_service.reliability_view(db, org_id=world.org_id, provider_user_id=world.provider.user_id)
    assert view["average_response_minutes"] == 5.0


def test_first_responder_auto_dispatch(db, world, monkeypatch):
    monkeypatch.setattr(settings, "escalation_auto_dispatch_first_responder", True)
    req = _burst_pipe(db, world)

    req = request_service.respond_to_emergency(db, p=world.provider, request_id=req.id, now=_mins(5))
    assert req.workflow_status == "assigned"
    assert req.assigned_provider_id == world.provider.user_id

    t = _tracking(db, world, req)
    assert t.deadline_kind == "arrival"
    assert t.response_deadline == _mins(20)


def test_dispatch_arms_arrival_and_start_disarms(db, world):
    _rule(db, world, 2)
    req = _burst_pipe(db, world)

    req = request_service.dispatch_provider(
        db, p=world.landlord, request_id=req.id, provider_user_id=world.provider.user_id, now=_mins(2)
    )
    assert req.workflow_status == "assigned"
    t = _tracking(db, world, req)
    assert t.deadline_kind == "arrival"
    assert t.response_deadline == _mins(17)

    request_service.start_work(db, p=world.provider, request_id=req.id, now=_mins(10))
    t = _tracking(db, world, req)
    assert t.response_deadline is None
    assert escalation_service.sweep_due(db, now=_mins(30))["due"] == 0


def test_resolved_emergency_is_never_advanced(db, world):
    _rule(db, world, 2)
    req = _burst_pipe(db, world)

    t = escalation_service.resolve_emergency(db, p=world.landlord, request_id=req.id, now=_mins(5))
    assert t.emergency_resolved is True
    assert t.resolution_time_minutes == 5

    assert escalation_service.sweep_due(db, now=_mins(60))["due"] == 0
    with pytest.raises(IllegalTransitionError):
        escalation_service.resolve_emergency(db, p=world.landlord, request_id=req.id, now=_mins(6))


def test_higher_level_ceiling_approves_parked_emergency(db, world):
    _rule(db, world, 1, max_cost_authorization=100)
    _rule(db, world, 2, max_cost_authorization=1000)

    req = _burst_pipe(db, world, cost=500)
    assert req.workflow_status == "submitted"
    assert req.approval_status == "pending"

    escalation_service.sweep_due(db, now=_mins(16))
    db.refresh(req)
    assert req.workflow_status == "approved"
    assert req.approval_reason.startswith("retroactive")
    assert _tracking(db, world, req).max_cost_authorization == 1000.0


def test_sweep_skips_while_another_scheduler_holds_the_lock(db, world):
    _rule(db, world, 2)
    _burst_pipe(db, world)
    assert acquire_lock(db, lock_key=escalation_service.SWEEP_LOCK_KEY, owner="other-host:1", ttl_seconds=60)

    out = escalation_service.sweep_due(db, now=_mins(16))
    assert out["locked"] is True
    assert out["advanced"] == 0


def test_type_specific_rule_and_contact_tier(db, world):
    _rule(db, world, 2, trigger_condition="water")
    escalation_service.add_contact(
        db, p=world.landlord, property_id=world.property_id, name="On-call plumber", tier=2, email="oncall@plumb.local"
    )
    req = _burst_pipe(db, world)

    escalation_service.sweep_due(db, now=_mins(16))
    t = _tracking(db, world, req)
    view = escalation_service.tracking_view(db, t)
    assert view["escalation_level"] == 2
    assert f"user:{world.landlord.user_id}" in view["notified_parties"]
    assert "addr:oncall@plumb.local" in view["notified_parties"]


def test_rule_validation(db, world):
    with pytest.raises(ValidationError):
        _rule(db, world, 1, trigger_condition="volcano")
    with pytest.raises(ValidationError):
        _rule(db, world, 0)


def test_response_committed_after_load_stops_advance(db, world):
    _rule(db, world, 1, notify_user_ids=[world.landlord.user_id])
    _rule(db, world, 2, notify_user_ids=[world.provider2.user_id])
    req = _burst_pipe(db, world)
    tid = _tracking(db, world, req).id

    a = SessionLocal()
    b = SessionLocal()
    try:
        loaded = b.get(EscalationTracking, tid)
        assert loaded.first_response_at is None

        request_service.respond_to_emergency(a, p=world.provider, request_id=req.id, now=_mins(5))

        with pytest.raises(ConcurrencyConflictError):
            escalation_service.advance(b, t=loaded, now=_mins(16))
    finally:
        a.close()
        b.close()

    db.expire_all()
    t = _tracking(db, world, req)
    assert t.escalation_level == 1
    assert t.first_response_at == _mins(5)
    assert t.response_deadline is None
    assert "escalation_advanced" not in _event_types(db, req)


def test_sweep_skips_row_that_changes_mid_advance(db, world, monkeypatch):
    _rule(db, world, 1, notify_user_ids=[world.landlord.user_id])
    _rule(db, world, 2, notify_user_ids=[world.provider2.user_id])
    req = _burst_pipe(db, world)

    real = escalation_service.rules_by_level
    fired = {"done": False}

    def respond_then_load_rules(*args, **kw):
        if not fired["done"]:
            fired["done"] = True
            other = SessionLocal()
            try:
                request_service.respond_to_emergency(other, p=world.provider, request_id=req.id, now=_mins(15))
            finally:
                other.close()
        return real(*args, **kw)

    monkeypatch.setattr(escalation_service, "rules_by_level", respond_then_load_rules)

    out = escalation_service.sweep_due(db, now=_mins(16))
    assert out["due"] == 1
    assert out["advanced"] == 0
    assert out["skipped"] == 1
    assert out["errors"] == 0

    db.expire_all()
    t = _tracking(db, world, req)
    assert t.escalation_level == 1
    assert t.first_response_at == _mins(15)
    assert t.response_deadline is None
    assert escalation_service.sweep_due(db, now=_mins(40))["due"] == 0
