# backend/tests/test_notification_outbox.py
from __future__ import annotations

import json

import httpx
from sqlalchemy import select

from repairflow.config import settings
from repairflow.models import NotificationOutbox
from repairflow.services import notifications


def _rows(db):
    return list(db.scalars(select(NotificationOutbox).order_by(NotificationOutbox.id.asc())).all())


def test_enqueue_dedupes_and_skips_missing_recipients(db, world):
    uid = world.landlord.user_id
    notifications.enqueue(
        db,
        org_id=world.org_id,
        event_type="approval_required",
        recipient_user_ids=[uid, None, uid],
        recipient_addresses=["ops@example.test", "ops@example.test", None],
        payload={"request_id": 1},
    )
    db.commit()
    rows = _rows(db)
    assert [(r.recipient_user_id, r.recipient_address) for r in rows] == [(uid, None), (None, "ops@example.test")]
    assert all(r.status == "pending" for r in rows)


def test_operator_notification_without_recipient_still_recorded(db, world):
    notifications.enqueue(db, org_id=world.org_id, event_type="escalation_config_error", recipient_user_ids=[None])
    db.commit()
    rows = _rows(db)
    assert len(rows) == 1
    assert rows[0].recipient_user_id is None


def test_rolled_back_command_notifies_nobody(db, world):
    notifications.enqueue(db, org_id=world.org_id, event_type="request_approved", recipient_user_ids=[1])
    db.rollback()
    assert _rows(db) == []


def test_log_channel_delivery(db, world):
    notifications.enqueue(db, org_id=world.org_id, event_type="request_approved", recipient_user_ids=[world.tenant.user_id])
    db.commit()

    out = notifications.deliver_pending(db)
    assert out == {"sent": 1, "failed": 0, "retrying": 0}
    row = _rows(db)[0]
    assert row.channel == "log"
    assert row.status == "sent"
    assert row.sent_at is not None


def test_webhook_delivery(db, world, monkeypatch):
    monkeypatch.setattr(settings, "notification_webhook_url", "https://hooks.example.test/notify")
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(204)

    notifications.enqueue(
        db,
        org_id=world.org_id,
        event_type="bid_accepted",
        recipient_user_ids=[world.provider.user_id],
        payload={"bid_id": 7},
    )
    db.commit()

    out = notifications.deliver_pending(db, transport=httpx.MockTransport(handler))
    assert out["sent"] == 1
    assert len(seen) == 1
    assert seen[0]["event_type"] == "bid_accepted"
    assert seen[0]["recipient_email"] == world.provider.email
    assert seen[0]["payload"] == {"bid_id": 7}
    assert _rows(db)[0].channel == "webhook"


def test_webhook_failures_retry_then_park(db, world, monkeypatch):
    monkeypatch.setattr(settings, "notification_webhook_url", "https://hooks.example.test/notify")
    monkeypatch.setattr(settings, "notification_max_attempts", 2)
    transport = httpx.MockTransport(lambda request: httpx.Response(503))

    notifications.enqueue(db, org_id=world.org_id, event_type="bid_rejected", recipient_user_ids=[world.provider.user_id])
    db.commit()

    assert notifications.deliver_pending(db, transport=transport) == {"sent": 0, "failed": 0, "retrying": 1}
    assert notifications.deliver_pending(db, transport=transport) == {"sent": 0, "failed": 1, "retrying": 0}

    row = _rows(db)[0]
    assert row.status == "failed"
    assert row.attempts == 2
    assert "HTTPStatusError" in (row.last_error or "")

    # parked rows are not retried
    assert notifications.deliver_pending(db, transport=transport) == {"sent": 0, "failed": 0, "retrying": 0}
