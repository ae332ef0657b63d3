# backend/repairflow/services/photo_service.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..auth import Principal, assert_manager
from ..domain.approval import PolicySnapshot
from ..domain.enums import COMPLETION_EVIDENCE_KINDS, PhotoKind, PhotoStatus, TERMINAL_WORKFLOW, WorkflowStatus
from ..domain.errors import PermissionDeniedError, PolicyViolationError, ValidationError
from ..domain.events import emit_workflow_event
from ..models import MaintenanceRequest, PhotoRecord
from .ownership import must_get_photo, must_get_request

log = logging.getLogger("repairflow.photos")

REVIEW_OUTCOMES = frozenset({PhotoStatus.VERIFIED, PhotoStatus.REJECTED, PhotoStatus.FLAGGED})


def _can_upload(p: Principal, req: MaintenanceRequest) -> bool:
    if p.is_manager:
        return True
    if p.is_tenant:
        return int(req.tenant_user_id) == int(p.user_id)
    if p.is_provider:
        return req.assigned_provider_id is not None and int(req.assigned_provider_id) == int(p.user_id)
    return False


def upload_photo(
    db: Session,
    *,
    p: Principal,
    request_id: int,
    kind: str,
    url: str,
    caption: Optional[str] = None,
) -> PhotoRecord:
    req = must_get_request(db, org_id=p.org_id, request_id=request_id)
    if not _can_upload(p, req):
        raise PermissionDeniedError("not allowed to upload photos for this request", request_id=request_id)

    try:
        pk = PhotoKind.parse(kind)
    except ValueError:
        raise ValidationError(f"invalid photo kind: {kind!r}", kind=kind)
    if not (url or "").strip():
        raise ValidationError("photo url is required")
    if WorkflowStatus.parse(req.workflow_status) in TERMINAL_WORKFLOW and pk != PhotoKind.ISSUE:
        raise PolicyViolationError(
            "request is closed; only issue photos may be added", workflow_status=req.workflow_status
        )

    row = PhotoRecord(
        org_id=p.org_id,
        request_id=int(req.id),
        kind=pk.value,
        url=url.strip(),
        caption=caption,
        uploaded_by_user_id=p.user_id,
        verification_status=PhotoStatus.PENDING.value,
        created_at=datetime.utcnow(),
    )
    db.add(row)
    db.flush()
    emit_workflow_event(
        db,
        principal=p,
        event_type="photo_uploaded",
        property_id=req.property_id,
        request_id=req.id,
        payload={"photo_id": row.id, "kind": pk.value},
    )
    db.commit()
    db.refresh(row)
    return row


def verify_photo(
    db: Session,
    *,
    p: Principal,
    photo_id: int,
    status: str,
    notes: Optional[str] = None,
) -> PhotoRecord:
    assert_manager(p, "verify photo")
    row = must_get_photo(db, org_id=p.org_id, photo_id=photo_id)
    try:
        outcome = PhotoStatus.parse(status)
    except ValueError:
        raise ValidationError(f"invalid verification status: {status!r}")
    if outcome not in REVIEW_OUTCOMES:
        raise ValidationError("verification status must be verified, rejected or flagged", status=status)

    prev = row.verification_status
    row.verification_status = outcome.value
    row.verified_by_user_id = p.user_id
    row.verification_notes = notes
    row.verified_at = datetime.utcnow()
    db.add(row)
    emit_workflow_event(
        db,
        principal=p,
        event_type="photo_reviewed",
        request_id=row.request_id,
        payload={"photo_id": row.id, "from": prev, "to": outcome.value},
    )
    db.commit()
    db.refresh(row)
    return row


def list_photos(db: Session, *, org_id: int, request_id: int) -> list[PhotoRecord]:
    return list(
        db.scalars(
            select(PhotoRecord)
            .where(PhotoRecord.org_id == org_id, PhotoRecord.request_id == request_id)
            .order_by(PhotoRecord.id.asc())
        ).all()
    )


def verified_completion_evidence_count(db: Session, *, org_id: int, request_id: int) -> int:
    return int(
        db.scalar(
            select(func.count(PhotoRecord.id)).where(
                PhotoRecord.org_id == org_id,
                PhotoRecord.request_id == request_id,
                PhotoRecord.kind.in_([k.value for k in COMPLETION_EVIDENCE_KINDS]),
                PhotoRecord.verification_status == PhotoStatus.VERIFIED.value,
            )
        )
        or 0
    )


def assert_completion_evidence(db: Session, *, req: MaintenanceRequest, policy: PolicySnapshot) -> None:
    """Completion veto: raises PolicyViolationError when photos are required but none are verified."""
    if not policy.photos_required_for_completion:
        return
    n = verified_completion_evidence_count(db, org_id=req.org_id, request_id=req.id)
    if n < 1:
        log.info(
            "completion_blocked_missing_photos",
            extra={"org_id": req.org_id, "maintenance_request_id": req.id},
        )
        raise PolicyViolationError(
            "completion requires at least one verified after/completion photo",
            request_id=req.id,
        )
