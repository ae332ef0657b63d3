# backend/repairflow/schemas.py
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# -------------------- Maintenance requests --------------------

class MaintenanceRequestCreate(BaseModel):
    property_id: int
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1)
    category: Optional[str] = None
    declared_urgency: Optional[str] = None
    estimated_cost: Optional[float] = Field(default=None, ge=0)
    # landlord/agency submitting on a tenant's behalf
    tenant_user_id: Optional[int] = None


class MaintenanceRequestOut(BaseModel):
    id: int
    property_id: int
    tenant_user_id: int
    title: str
    description: str
    category: str
    declared_urgency: Optional[str] = None
    priority: str
    is_emergency: bool
    emergency_type: Optional[str] = None
    workflow_status: str
    payment_responsibility: str
    approval_status: str
    approval_reason: Optional[str] = None
    approved_by_user_id: Optional[int] = None
    approval_date: Optional[datetime] = None
    denial_reason: Optional[str] = None
    estimated_cost: Optional[float] = None
    selected_bid_id: Optional[int] = None
    assigned_provider_id: Optional[int] = None
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    cancelled_by_user_id: Optional[int] = None
    cancellation_reason: Optional[str] = None
    completion_date: Optional[datetime] = None
    tenant_rating: Optional[int] = None
    tenant_review: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    version: int

    model_config = ConfigDict(from_attributes=True)


class ApproveIn(BaseModel):
    estimated_cost: Optional[float] = Field(default=None, ge=0)
    notes: Optional[str] = None


class DenyIn(BaseModel):
    reason: str = Field(min_length=1)


class RequestInfoIn(BaseModel):
    message: str = Field(min_length=1)


class DispatchIn(BaseModel):
    provider_user_id: int


class RespondIn(BaseModel):
    eta_minutes: Optional[int] = Field(default=None, ge=0)


class CompleteIn(BaseModel):
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    review: Optional[str] = None


class RateIn(BaseModel):
    rating: int = Field(ge=1, le=5)
    review: Optional[str] = None


class CancelIn(BaseModel):
    reason: str = Field(min_length=1)
    provider_no_show: bool = False


class NoShowIn(BaseModel):
    reason: Optional[str] = None


# -------------------- Bids --------------------

class BidCreate(BaseModel):
    amount: float = Field(gt=0)
    estimated_hours: float = Field(gt=0)
    available_dates: list[str] = Field(default_factory=list)
    notes: Optional[str] = None


class BidRejectIn(BaseModel):
    reason: Optional[str] = None


class BidOut(BaseModel):
    id: int
    request_id: int
    provider_user_id: int
    amount: float
    estimated_hours: float
    available_dates: list[str] = Field(default_factory=list)
    notes: Optional[str] = None
    status: str
    expires_at: datetime
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @model_validator(mode="before")
    @classmethod
    def _unpack_dates(cls, data: Any) -> Any:
        raw = getattr(data, "available_dates_json", None)
        if raw is None:
            return data
        try:
            dates = json.loads(raw)
        except (TypeError, ValueError):
            dates = []
        return {
            "id": data.id,
            "request_id": data.request_id,
            "provider_user_id": data.provider_user_id,
            "amount": data.amount,
            "estimated_hours": data.estimated_hours,
            "available_dates": dates if isinstance(dates, list) else [],
            "notes": data.notes,
            "status": data.status,
            "expires_at": data.expires_at,
            "created_at": data.created_at,
            "updated_at": data.updated_at,
        }


class ProviderBidStatsOut(BaseModel):
    provider_user_id: int
    total_bids: int
    accepted_bids: int
    acceptance_rate: float
    average_amount: Optional[float] = None
    by_status: dict[str, int]


# -------------------- Photos --------------------

class PhotoCreate(BaseModel):
    kind: str
    url: str = Field(min_length=1, max_length=500)
    caption: Optional[str] = None


class PhotoVerifyIn(BaseModel):
    status: str
    notes: Optional[str] = None


class PhotoOut(BaseModel):
    id: int
    request_id: int
    kind: str
    url: str
    caption: Optional[str] = None
    uploaded_by_user_id: int
    verification_status: str
    verified_by_user_id: Optional[int] = None
    verification_notes: Optional[str] = None
    verified_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# -------------------- Policies --------------------

class PolicyIn(BaseModel):
    payment_responsibility: Optional[str] = None
    split_ceiling: Optional[float] = Field(default=None, ge=0)
    approval_mode: Optional[str] = None
    auto_approval_limit: Optional[float] = Field(default=None, ge=0)
    require_photos: Optional[bool] = None
    require_completion_photos: Optional[bool] = None
    emergency_auto_approve: Optional[bool] = None
    bid_window_hours: Optional[int] = Field(default=None, gt=0)


class PolicyBulkIn(BaseModel):
    property_ids: list[int] = Field(min_length=1)
    changes: PolicyIn


class PolicyOut(BaseModel):
    property_id: int
    payment_responsibility: str
    split_ceiling: float
    approval_mode: str
    auto_approval_limit: Optional[float] = None
    require_photos: bool
    require_completion_photos: bool
    emergency_auto_approve: bool
    bid_window_hours: int
    is_default: bool


# -------------------- Escalation --------------------

class EscalationRuleIn(BaseModel):
    property_id: int
    level: int = Field(ge=1)
    trigger_condition: str = "any"
    response_minutes: Optional[int] = Field(default=None, gt=0)
    max_cost_authorization: Optional[float] = Field(default=None, ge=0)
    notify_user_ids: list[int] = Field(default_factory=list)
    is_active: bool = True


class EscalationRuleOut(BaseModel):
    id: int
    property_id: int
    trigger_condition: str
    level: int
    response_minutes: Optional[int] = None
    max_cost_authorization: Optional[float] = None
    notify_user_ids: list[int] = Field(default_factory=list)
    is_active: bool

    model_config = ConfigDict(from_attributes=True)

    @model_validator(mode="before")
    @classmethod
    def _unpack_notify(cls, data: Any) -> Any:
        if not hasattr(data, "notify_user_ids_json"):
            return data
        try:
            ids = json.loads(data.notify_user_ids_json or "[]")
        except (TypeError, ValueError):
            ids = []
        return {
            "id": data.id,
            "property_id": data.property_id,
            "trigger_condition": data.trigger_condition,
            "level": data.level,
            "response_minutes": data.response_minutes,
            "max_cost_authorization": data.max_cost_authorization,
            "notify_user_ids": ids,
            "is_active": data.is_active,
        }


class EmergencyContactIn(BaseModel):
    property_id: int
    name: str = Field(min_length=1)
    tier: int = Field(default=1, ge=1)
    user_id: Optional[int] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class EmergencyContactOut(BaseModel):
    id: int
    property_id: int
    user_id: Optional[int] = None
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    tier: int

    model_config = ConfigDict(from_attributes=True)


class EscalationNotificationOut(BaseModel):
    level: int
    recipients: list[str]
    created_at: datetime


class EscalationTrackingOut(BaseModel):
    id: int
    request_id: int
    property_id: int
    emergency_type: str
    escalation_level: int
    response_deadline: Optional[datetime] = None
    deadline_kind: Optional[str] = None
    notified_parties: list[str]
    max_cost_authorization: Optional[float] = None
    first_response_at: Optional[datetime] = None
    first_responder_id: Optional[int] = None
    emergency_resolved: bool
    resolved_at: Optional[datetime] = None
    resolution_time_minutes: Optional[int] = None
    closed_reason: Optional[str] = None
    config_error: Optional[str] = None
    notifications: list[EscalationNotificationOut] = Field(default_factory=list)


# -------------------- Providers / reliability --------------------

class ReliabilityOut(BaseModel):
    provider_user_id: int
    total_jobs: int
    completed_jobs: int
    cancelled_jobs: int
    no_show_jobs: int
    rating_count: int
    average_rating: Optional[float] = None
    average_response_minutes: Optional[float] = None
    average_completion_hours: Optional[float] = None
    reliability_score: float
    penalty_points: float
    status: str
    warning_level: int
    components: dict[str, Any]
    updated_at: Optional[datetime] = None


class PenaltyCreate(BaseModel):
    provider_user_id: int
    penalty_type: str
    severity: Optional[str] = None
    points: Optional[float] = Field(default=None, ge=0)
    reason: Optional[str] = None
    request_id: Optional[int] = None
    expires_at: Optional[datetime] = None


class PenaltyNotesIn(BaseModel):
    notes: Optional[str] = None


class PenaltyAppealIn(BaseModel):
    notes: str = Field(min_length=1)


class PenaltyOut(BaseModel):
    id: int
    provider_user_id: int
    request_id: Optional[int] = None
    dispute_id: Optional[int] = None
    penalty_type: str
    severity: str
    points: float
    status: str
    reason: Optional[str] = None
    appeal_notes: Optional[str] = None
    issued_by_user_id: Optional[int] = None
    reviewed_by_user_id: Optional[int] = None
    expires_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# -------------------- Disputes --------------------

class DisputeCreate(BaseModel):
    request_id: int
    title: str = Field(min_length=1, max_length=200)
    dispute_type: str = "other"
    description: Optional[str] = None
    respondent_user_id: Optional[int] = None
    priority: Optional[str] = None
    evidence: list[str] = Field(default_factory=list)


class DisputeEvidenceIn(BaseModel):
    item: str = Field(min_length=1)
    notes: Optional[str] = None


class DisputeAdvanceIn(BaseModel):
    target: str
    notes: Optional[str] = None
    mediator_user_id: Optional[int] = None


class DisputeEscalateIn(BaseModel):
    mediator_user_id: Optional[int] = None
    notes: Optional[str] = None


class DisputeResolveIn(BaseModel):
    resolution: str = Field(min_length=1)
    compensation_amount: Optional[float] = Field(default=None, ge=0)
    compensation_paid_to: Optional[int] = None
    provider_fault: Optional[bool] = None


class DisputeCloseIn(BaseModel):
    notes: Optional[str] = None


class DisputeTimelineOut(BaseModel):
    seq: int
    event: str
    actor_user_id: Optional[int] = None
    notes: Optional[str] = None
    created_at: datetime


class DisputeOut(BaseModel):
    id: int
    request_id: int
    dispute_type: str
    title: str
    description: Optional[str] = None
    initiator_user_id: int
    respondent_user_id: Optional[int] = None
    status: str
    priority: str
    evidence: list[str]
    mediator_user_id: Optional[int] = None
    escalation_level: int
    resolution: Optional[str] = None
    compensation_amount: Optional[float] = None
    compensation_paid_to: Optional[int] = None
    penalty_id: Optional[int] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    timeline: list[DisputeTimelineOut]


# -------------------- Workflow events --------------------

class WorkflowEventOut(BaseModel):
    id: int
    property_id: Optional[int] = None
    request_id: Optional[int] = None
    actor_user_id: Optional[int] = None
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @model_validator(mode="before")
    @classmethod
    def _unpack_payload(cls, data: Any) -> Any:
        if not hasattr(data, "payload_json"):
            return data
        try:
            payload = json.loads(data.payload_json or "{}")
        except (TypeError, ValueError):
            payload = {}
        return {
            "id": data.id,
            "property_id": data.property_id,
            "request_id": data.request_id,
            "actor_user_id": data.actor_user_id,
            "event_type": data.event_type,
            "payload": payload if isinstance(payload, dict) else {},
            "created_at": data.created_at,
        }
