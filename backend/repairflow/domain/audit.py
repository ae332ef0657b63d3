# backend/repairflow/domain/audit.py
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from ..models import AuditEvent


def _dumps(v: Optional[dict[str, Any]]) -> Optional[str]:
    if v is None:
        return None
    return json.dumps(v, sort_keys=True, default=str)


def audit_write(
    db: Session,
    *,
    org_id: int,
    actor_user_id: Optional[int],
    action: str,
    entity_type: str,
    entity_id: Any,
    before: Optional[dict[str, Any]] = None,
    after: Optional[dict[str, Any]] = None,
) -> AuditEvent:
    """Adds the row; never commits (commands commit once at the end)."""
    row = AuditEvent(
        org_id=int(org_id),
        actor_user_id=int(actor_user_id) if actor_user_id is not None else None,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        before_json=_dumps(before),
        after_json=_dumps(after),
        created_at=datetime.utcnow(),
    )
    db.add(row)
    return row
