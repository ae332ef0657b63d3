# backend/repairflow/models.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Index,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


# -----------------------------
# Identity (owned by the surrounding app; mirrored here for scoping)
# -----------------------------
class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    slug: Mapped[str] = mapped_column(String(80), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class AppUser(Base):
    __tablename__ = "app_users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(200), nullable=False, unique=True, index=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class OrgMembership(Base):
    __tablename__ = "org_memberships"
    __table_args__ = (UniqueConstraint("org_id", "user_id", name="uq_org_memberships_org_user"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"), index=True, nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("app_users.id"), index=True, nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="tenant")  # tenant|landlord|provider|agency
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    actor_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    action: Mapped[str] = mapped_column(String(80), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(80), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(80), nullable=False)

    before_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    after_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class WorkflowEvent(Base):
    __tablename__ = "workflow_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)

    property_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    request_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    actor_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    event_type: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    payload_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class EngineLock(Base):
    """Advisory lock rows (scheduler sweeps). Expired rows may be stolen."""

    __tablename__ = "engine_locks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lock_key: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    owner: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


# -----------------------------
# Properties + policy store
# -----------------------------
class Property(Base):
    __tablename__ = "properties"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    landlord_user_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("app_users.id"), nullable=True, index=True)

    name: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)
    address: Mapped[str] = mapped_column(String(255), nullable=False)
    city: Mapped[str] = mapped_column(String(120), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class PropertyPolicy(Base):
    __tablename__ = "property_policies"
    __table_args__ = (UniqueConstraint("org_id", "property_id", name="uq_property_policies_org_property"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    property_id: Mapped[int] = mapped_column(Integer, ForeignKey("properties.id", ondelete="CASCADE"), nullable=False)

    payment_responsibility: Mapped[str] = mapped_column(String(20), nullable=False, default="landlord")
    split_ceiling: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    approval_mode: Mapped[str] = mapped_column(String(20), nullable=False, default="over_amount")
    auto_approval_limit: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    require_photos: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    require_completion_photos: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    emergency_auto_approve: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    bid_window_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=72)

    updated_by_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


# -----------------------------
# Maintenance requests + bidding
# -----------------------------
class MaintenanceRequest(Base):
    __tablename__ = "maintenance_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    property_id: Mapped[int] = mapped_column(Integer, ForeignKey("properties.id"), nullable=False, index=True)
    tenant_user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(40), nullable=False, default="general")
    declared_urgency: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="medium")
    is_emergency: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    emergency_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    workflow_status: Mapped[str] = mapped_column(String(20), nullable=False, default="submitted", index=True)
    payment_responsibility: Mapped[str] = mapped_column(String(20), nullable=False, default="landlord")

    approval_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    approval_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    approved_by_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    approval_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    denial_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    estimated_cost: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    selected_bid_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    assigned_provider_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    cancelled_by_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    completion_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    tenant_rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    tenant_review: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    # optimistic lock: every UPDATE is "... WHERE id=? AND version=?"
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class Bid(Base):
    __tablename__ = "bids"
    __table_args__ = (
        # at most one accepted bid per request, enforced by the database as well
        Index(
            "uq_bids_one_accepted_per_request",
            "request_id",
            unique=True,
            postgresql_where=text("status = 'accepted'"),
            sqlite_where=text("status = 'accepted'"),
        ),
        Index("ix_bids_request_status", "request_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    request_id: Mapped[int] = mapped_column(Integer, ForeignKey("maintenance_requests.id", ondelete="CASCADE"), nullable=False)
    provider_user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    amount: Mapped[float] = mapped_column(Float, nullable=False)
    estimated_hours: Mapped[float] = mapped_column(Float, nullable=False)
    available_dates_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


# -----------------------------
# Emergency escalation
# -----------------------------
class EscalationRule(Base):
    __tablename__ = "escalation_rules"
    __table_args__ = (
        UniqueConstraint("org_id", "property_id", "trigger_condition", "level", name="uq_escalation_rules_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    property_id: Mapped[int] = mapped_column(Integer, ForeignKey("properties.id", ondelete="CASCADE"), nullable=False, index=True)

    trigger_condition: Mapped[str] = mapped_column(String(20), nullable=False, default="any")  # emergency type | any
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    response_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_cost_authorization: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    notify_user_ids_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class EmergencyContact(Base):
    __tablename__ = "emergency_contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    property_id: Mapped[int] = mapped_column(Integer, ForeignKey("properties.id", ondelete="CASCADE"), nullable=False, index=True)

    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    tier: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class EscalationTracking(Base):
    __tablename__ = "escalation_tracking"
    __table_args__ = (
        Index("ix_escalation_tracking_due", "emergency_resolved", "response_deadline"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    request_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("maintenance_requests.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    property_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    emergency_type: Mapped[str] = mapped_column(String(20), nullable=False)

    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    response_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    deadline_kind: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    notified_parties_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    max_cost_authorization: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    first_response_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    first_responder_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    emergency_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    resolution_time_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    closed_reason: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    config_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    # the sweep and a responding provider race on this row
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class EscalationNotification(Base):
    """One row per notification batch (one per level reached)."""

    __tablename__ = "escalation_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    tracking_id: Mapped[int] = mapped_column(Integer, ForeignKey("escalation_tracking.id", ondelete="CASCADE"), nullable=False, index=True)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    recipients_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


# -----------------------------
# Photo evidence
# -----------------------------
class PhotoRecord(Base):
    __tablename__ = "photo_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    request_id: Mapped[int] = mapped_column(Integer, ForeignKey("maintenance_requests.id", ondelete="CASCADE"), nullable=False, index=True)

    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    url: Mapped[str] = mapped_column(String(500), nullable=False)
    caption: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    uploaded_by_user_id: Mapped[int] = mapped_column(Integer, nullable=False)

    verification_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    verified_by_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    verification_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


# -----------------------------
# Provider reliability ledger
# -----------------------------
class ProviderReliability(Base):
    """
    Counters + cached score. Status is never stored: it is derived from the
    score whenever the row is read (see services/reliability_service.py).
    """

    __tablename__ = "provider_reliability"
    __table_args__ = (UniqueConstraint("org_id", "provider_user_id", name="uq_provider_reliability_org_provider"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    provider_user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    total_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cancelled_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    no_show_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    rating_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rating_sum: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    average_rating: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    response_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    average_response_minutes: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    average_completion_hours: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    reliability_score: Mapped[float] = mapped_column(Float, nullable=False, default=100.0)
    penalty_points: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    components_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class ProviderPenalty(Base):
    __tablename__ = "provider_penalties"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    provider_user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    request_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    dispute_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    penalty_type: Mapped[str] = mapped_column(String(30), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="moderate")
    points: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    appeal_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    issued_by_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reviewed_by_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


# -----------------------------
# Disputes
# -----------------------------
class Dispute(Base):
    __tablename__ = "disputes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    request_id: Mapped[int] = mapped_column(Integer, ForeignKey("maintenance_requests.id", ondelete="CASCADE"), nullable=False, index=True)

    dispute_type: Mapped[str] = mapped_column(String(20), nullable=False, default="other")
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    initiator_user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    respondent_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="medium")
    evidence_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    mediator_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    resolution: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    compensation_amount: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    compensation_paid_to: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    penalty_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class DisputeTimelineEvent(Base):
    __tablename__ = "dispute_timeline_events"
    __table_args__ = (UniqueConstraint("dispute_id", "seq", name="uq_dispute_timeline_seq"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    dispute_id: Mapped[int] = mapped_column(Integer, ForeignKey("disputes.id", ondelete="CASCADE"), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    event: Mapped[str] = mapped_column(String(60), nullable=False)
    actor_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


# -----------------------------
# Notification outbox
# -----------------------------
class NotificationOutbox(Base):
    __tablename__ = "notification_outbox"
    __table_args__ = (Index("ix_notification_outbox_status", "status", "id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    org_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    channel: Mapped[str] = mapped_column(String(20), nullable=False, default="webhook")  # webhook|log
    recipient_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    recipient_address: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    event_type: Mapped[str] = mapped_column(String(80), nullable=False)
    payload_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
