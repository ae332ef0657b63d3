# backend/repairflow/services/ownership.py
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..domain.errors import NotFoundError
from ..models import Bid, Dispute, MaintenanceRequest, PhotoRecord, Property, ProviderPenalty


def must_get_property(db: Session, *, org_id: int, property_id: int) -> Property:
    row = db.scalar(select(Property).where(Property.id == property_id, Property.org_id == org_id))
    if not row:
        raise NotFoundError("property not found", property_id=property_id)
    return row


def must_get_request(db: Session, *, org_id: int, request_id: int) -> MaintenanceRequest:
    row = db.scalar(
        select(MaintenanceRequest).where(MaintenanceRequest.id == request_id, MaintenanceRequest.org_id == org_id)
    )
    if not row:
        raise NotFoundError("maintenance request not found", request_id=request_id)
    return row


def must_get_bid(db: Session, *, org_id: int, bid_id: int) -> Bid:
    row = db.scalar(select(Bid).where(Bid.id == bid_id, Bid.org_id == org_id))
    if not row:
        raise NotFoundError("bid not found", bid_id=bid_id)
    return row


def must_get_photo(db: Session, *, org_id: int, photo_id: int) -> PhotoRecord:
    row = db.scalar(select(PhotoRecord).where(PhotoRecord.id == photo_id, PhotoRecord.org_id == org_id))
    if not row:
        raise NotFoundError("photo not found", photo_id=photo_id)
    return row


def must_get_penalty(db: Session, *, org_id: int, penalty_id: int) -> ProviderPenalty:
    row = db.scalar(select(ProviderPenalty).where(ProviderPenalty.id == penalty_id, ProviderPenalty.org_id == org_id))
    if not row:
        raise NotFoundError("penalty not found", penalty_id=penalty_id)
    return row


def must_get_dispute(db: Session, *, org_id: int, dispute_id: int) -> Dispute:
    row = db.scalar(select(Dispute).where(Dispute.id == dispute_id, Dispute.org_id == org_id))
    if not row:
        raise NotFoundError("dispute not found", dispute_id=dispute_id)
    return row
