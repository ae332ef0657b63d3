# backend/repairflow/domain/enums.py
"""
Closed value sets for every status-like column.

Values are persisted as plain strings (String columns), so each enum subclasses
``str``; comparisons against raw column values work both ways.
"""
from __future__ import annotations

import enum


class _StrEnum(str, enum.Enum):
    def __str__(self) -> str:
        return str(self.value)

    @classmethod
    def values(cls) -> list[str]:
        return [m.value for m in cls]

    @classmethod
    def parse(cls, raw: object):
        """Case/space tolerant lookup; raises ValueError on unknown values."""
        if isinstance(raw, cls):
            return raw
        s = str(raw or "").strip().lower().replace(" ", "_").replace("-", "_")
        return cls(s)


class ActorRole(_StrEnum):
    TENANT = "tenant"
    LANDLORD = "landlord"
    PROVIDER = "provider"
    AGENCY = "agency"


MANAGER_ROLES = frozenset({ActorRole.LANDLORD, ActorRole.AGENCY})


class WorkflowStatus(_StrEnum):
    SUBMITTED = "submitted"
    APPROVED = "approved"
    BIDDING = "bidding"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DENIED = "denied"


TERMINAL_WORKFLOW = frozenset({WorkflowStatus.COMPLETED, WorkflowStatus.CANCELLED, WorkflowStatus.DENIED})


class ApprovalStatus(_StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    NOT_REQUIRED = "not_required"


class Priority(_StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.LOW: 0, Priority.MEDIUM: 1, Priority.HIGH: 2, Priority.URGENT: 3}


class EmergencyType(_StrEnum):
    SAFETY = "safety"
    SECURITY = "security"
    WATER = "water"
    ELECTRICAL = "electrical"
    HVAC = "hvac"
    STRUCTURAL = "structural"


class PaymentResponsibility(_StrEnum):
    LANDLORD = "landlord"
    TENANT = "tenant"
    SPLIT = "split"


class ApprovalMode(_StrEnum):
    ALL = "all"
    OVER_AMOUNT = "over_amount"
    NONE = "none"


class BidStatus(_StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"


class DeadlineKind(_StrEnum):
    RESPONSE = "response"  # waiting for any provider to acknowledge
    ARRIVAL = "arrival"  # dispatched provider must start work


class PhotoKind(_StrEnum):
    BEFORE = "before"
    DURING = "during"
    AFTER = "after"
    COMPLETION = "completion"
    ISSUE = "issue"


COMPLETION_EVIDENCE_KINDS = frozenset({PhotoKind.AFTER, PhotoKind.COMPLETION})


class PhotoStatus(_StrEnum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"
    FLAGGED = "flagged"


class ProviderStatus(_StrEnum):
    ACTIVE = "active"
    WARNING = "warning"
    SUSPENDED = "suspended"
    BANNED = "banned"


BLOCKED_PROVIDER_STATUSES = frozenset({ProviderStatus.SUSPENDED, ProviderStatus.BANNED})


class PenaltyType(_StrEnum):
    NO_SHOW = "no_show"
    LATE_ARRIVAL = "late_arrival"
    POOR_QUALITY = "poor_quality"
    CANCELLATION = "cancellation"
    SAFETY_VIOLATION = "safety_violation"
    UNPROFESSIONAL = "unprofessional"
    OTHER = "other"


class PenaltySeverity(_StrEnum):
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"
    CRITICAL = "critical"


class PenaltyStatus(_StrEnum):
    ACTIVE = "active"
    APPEALED = "appealed"
    OVERTURNED = "overturned"
    EXPIRED = "expired"


class DisputeStatus(_StrEnum):
    OPEN = "open"
    IN_REVIEW = "in_review"
    MEDIATION = "mediation"
    RESOLVED = "resolved"
    CLOSED = "closed"


class DisputeType(_StrEnum):
    QUALITY = "quality"
    NO_SHOW = "no_show"
    PAYMENT = "payment"
    DAMAGE = "damage"
    SCHEDULING = "scheduling"
    CONDUCT = "conduct"
    OTHER = "other"


class DisputePriority(_StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class NotificationStatus(_StrEnum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
