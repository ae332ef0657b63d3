# backend/repairflow/domain/events.py
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from ..auth import Principal
from ..models import WorkflowEvent


def emit_workflow_event(
    db: Session,
    *,
    principal: Optional[Principal] = None,
    org_id: Optional[int] = None,
    actor_user_id: Optional[int] = None,
    event_type: str,
    property_id: Optional[int] = None,
    request_id: Optional[int] = None,
    payload: Optional[dict[str, Any]] = None,
) -> WorkflowEvent:
    """
    Append one row to the workflow event log.

    Commands pass ``principal=``; the scheduler has no principal and passes
    ``org_id=`` (actor_user_id stays None for system events).

    NOTE: adds + flushes only. The caller's command commits.
    """
    if principal is not None:
        eff_org_id = int(principal.org_id)
        eff_actor_user_id: Optional[int] = int(principal.user_id)
    else:
        if org_id is None:
            raise TypeError("emit_workflow_event requires principal=... OR org_id=...")
        eff_org_id = int(org_id)
        eff_actor_user_id = int(actor_user_id) if actor_user_id is not None else None

    ev = WorkflowEvent(
        org_id=eff_org_id,
        property_id=int(property_id) if property_id is not None else None,
        request_id=int(request_id) if request_id is not None else None,
        actor_user_id=eff_actor_user_id,
        event_type=str(event_type),
        payload_json=json.dumps(payload or {}, ensure_ascii=False, default=str),
        created_at=datetime.utcnow(),
    )
    db.add(ev)
    db.flush()
    return ev
