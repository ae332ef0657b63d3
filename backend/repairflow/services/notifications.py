# backend/repairflow/services/notifications.py
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Iterable, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings
from ..domain.enums import NotificationStatus
from ..models import AppUser, NotificationOutbox
from .runtime_metrics import METRICS

log = logging.getLogger("repairflow.notifications")


def _dumps(v: Any) -> str:
    try:
        return json.dumps(v, default=str)
    except (TypeError, ValueError):
        return "{}"


def _loads(s: Optional[str], default: Any) -> Any:
    if not s:
        return default
    try:
        return json.loads(s)
    except (TypeError, ValueError):
        return default


def enqueue(
    db: Session,
    *,
    org_id: int,
    event_type: str,
    recipient_user_ids: Iterable[Optional[int]] = (),
    recipient_addresses: Iterable[Optional[str]] = (),
    payload: Optional[dict[str, Any]] = None,
) -> list[NotificationOutbox]:
    """
    Writes one outbox row per recipient inside the caller's transaction.
    Delivery happens later in deliver_pending(); a rolled-back command
    therefore never notifies anyone.
    """
    channel = "webhook" if settings.notification_webhook_url else "log"
    now = datetime.utcnow()
    rows: list[NotificationOutbox] = []

    seen: set[str] = set()
    targets: list[tuple[Optional[int], Optional[str]]] = []
    for uid in recipient_user_ids:
        if uid is None or f"u:{uid}" in seen:
            continue
        seen.add(f"u:{uid}")
        targets.append((int(uid), None))
    for addr in recipient_addresses:
        if not addr or f"a:{addr}" in seen:
            continue
        seen.add(f"a:{addr}")
        targets.append((None, str(addr)))

    # operator notifications with no explicit recipient still get one row
    if not targets:
        targets.append((None, None))

    for uid, addr in targets:
        row = NotificationOutbox(
            org_id=int(org_id),
            channel=channel,
            recipient_user_id=uid,
            recipient_address=addr,
            event_type=str(event_type),
            payload_json=_dumps(payload or {}),
            status=NotificationStatus.PENDING.value,
            attempts=0,
            created_at=now,
        )
        db.add(row)
        rows.append(row)

    METRICS.inc("notifications_enqueued", len(rows))
    return rows


def _message_for(db: Session, row: NotificationOutbox) -> dict[str, Any]:
    email = None
    if row.recipient_user_id is not None:
        user = db.get(AppUser, int(row.recipient_user_id))
        email = user.email if user is not None else None
    return {
        "id": int(row.id),
        "org_id": int(row.org_id),
        "event_type": row.event_type,
        "recipient_user_id": row.recipient_user_id,
        "recipient_email": email,
        "recipient_address": row.recipient_address,
        "payload": _loads(row.payload_json, {}),
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


def deliver_pending(
    db: Session,
    *,
    limit: Optional[int] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> dict[str, int]:
    """
    Drains pending outbox rows. Webhook rows are POSTed to
    settings.notification_webhook_url; log rows are written to the log.
    A row that keeps failing is parked as failed after
    settings.notification_max_attempts tries.
    """
    batch = int(limit or settings.notification_batch_size)
    rows = list(
        db.scalars(
            select(NotificationOutbox)
            .where(NotificationOutbox.status == NotificationStatus.PENDING.value)
            .order_by(NotificationOutbox.id.asc())
            .limit(batch)
        ).all()
    )
    out = {"sent": 0, "failed": 0, "retrying": 0}
    if not rows:
        return out

    url = settings.notification_webhook_url
    client: Optional[httpx.Client] = None
    if url:
        client = httpx.Client(timeout=float(settings.notification_timeout_seconds), transport=transport)

    try:
        for row in rows:
            msg = _message_for(db, row)
            row.attempts = int(row.attempts or 0) + 1
            try:
                if row.channel == "webhook" and client is not None and url:
                    r = client.post(url, json=msg)
                    r.raise_for_status()
                else:
                    log.info(
                        "notification",
                        extra={
                            "org_id": row.org_id,
                            "event": row.event_type,
                            "user_id": row.recipient_user_id,
                        },
                    )
                row.status = NotificationStatus.SENT.value
                row.sent_at = datetime.utcnow()
                row.last_error = None
                out["sent"] += 1
            except httpx.HTTPError as e:
                row.last_error = f"{type(e).__name__}: {e}"
                if row.attempts >= int(settings.notification_max_attempts):
                    row.status = NotificationStatus.FAILED.value
                    out["failed"] += 1
                    log.error(
                        "notification_failed",
                        extra={"org_id": row.org_id, "event": row.event_type, "user_id": row.recipient_user_id},
                    )
                else:
                    out["retrying"] += 1
                    log.warning(
                        "notification_retry",
                        extra={"org_id": row.org_id, "event": row.event_type, "user_id": row.recipient_user_id},
                    )
            db.add(row)
        db.commit()
    finally:
        if client is not None:
            client.close()

    METRICS.inc("notifications_sent", out["sent"])
    METRICS.inc("notifications_failed", out["failed"])
    return out
