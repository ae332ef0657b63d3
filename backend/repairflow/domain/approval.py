# backend/repairflow/domain/approval.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .enums import ApprovalMode, ApprovalStatus, PaymentResponsibility


@dataclass(frozen=True)
class PolicySnapshot:
    """
    Immutable view of a PropertyPolicy row (or the configured defaults when a
    property has none). Passed explicitly into the router and the scheduler.
    """

    property_id: int
    payment_responsibility: PaymentResponsibility
    split_ceiling: float
    approval_mode: ApprovalMode
    auto_approval_limit: Optional[float]
    require_photos: bool
    require_completion_photos: bool
    emergency_auto_approve: bool
    bid_window_hours: int
    is_default: bool = False

    @property
    def photos_required_for_completion(self) -> bool:
        return bool(self.require_photos or self.require_completion_photos)

    def as_dict(self) -> dict:
        return {
            "property_id": self.property_id,
            "payment_responsibility": self.payment_responsibility.value,
            "split_ceiling": self.split_ceiling,
            "approval_mode": self.approval_mode.value,
            "auto_approval_limit": self.auto_approval_limit,
            "require_photos": self.require_photos,
            "require_completion_photos": self.require_completion_photos,
            "emergency_auto_approve": self.emergency_auto_approve,
            "bid_window_hours": self.bid_window_hours,
            "is_default": self.is_default,
        }


@dataclass(frozen=True)
class ApprovalDecision:
    status: ApprovalStatus
    auto: bool
    reason: str

    @property
    def approved(self) -> bool:
        return self.status in (ApprovalStatus.APPROVED, ApprovalStatus.NOT_REQUIRED)


def decide_approval(
    *,
    is_emergency: bool,
    policy: PolicySnapshot,
    estimated_cost: Optional[float],
    emergency_ceiling: Optional[float] = None,
) -> ApprovalDecision:
    """
    Decision table:
      emergency + emergency_auto_approve -> approved now, unless a known
          escalation ceiling is below a known cost (then pending until a
          higher level raises the ceiling)
      mode none        -> not_required
      mode all         -> pending
      mode over_amount -> approved iff cost <= limit; unknown cost -> pending
    """
    if is_emergency and policy.emergency_auto_approve:
        if emergency_ceiling is not None and estimated_cost is not None and float(estimated_cost) > float(emergency_ceiling):
            return ApprovalDecision(
                ApprovalStatus.PENDING,
                auto=False,
                reason=f"emergency cost {estimated_cost:.2f} exceeds escalation ceiling {emergency_ceiling:.2f}",
            )
        return ApprovalDecision(ApprovalStatus.APPROVED, auto=True, reason="emergency_auto_approve")

    mode = policy.approval_mode
    if mode == ApprovalMode.NONE:
        return ApprovalDecision(ApprovalStatus.NOT_REQUIRED, auto=True, reason="approval_mode=none")

    if mode == ApprovalMode.ALL:
        return ApprovalDecision(ApprovalStatus.PENDING, auto=False, reason="approval_mode=all")

    # over_amount
    if estimated_cost is None:
        return ApprovalDecision(ApprovalStatus.PENDING, auto=False, reason="estimated cost unknown")
    if policy.auto_approval_limit is None:
        return ApprovalDecision(ApprovalStatus.PENDING, auto=False, reason="no auto-approval limit configured")
    if float(estimated_cost) <= float(policy.auto_approval_limit):
        return ApprovalDecision(
            ApprovalStatus.APPROVED,
            auto=True,
            reason=f"cost {float(estimated_cost):.2f} <= limit {float(policy.auto_approval_limit):.2f}",
        )
    return ApprovalDecision(
        ApprovalStatus.PENDING,
        auto=False,
        reason=f"cost {float(estimated_cost):.2f} > limit {float(policy.auto_approval_limit):.2f}",
    )


def resolve_payment_responsibility(policy: PolicySnapshot, estimated_cost: Optional[float]) -> PaymentResponsibility:
    """
    split: the tenant covers jobs up to split_ceiling outright; above that (or
    when the cost is unknown) the job stays split.
    """
    if policy.payment_responsibility != PaymentResponsibility.SPLIT:
        return policy.payment_responsibility
    if estimated_cost is not None and policy.split_ceiling > 0 and float(estimated_cost) <= float(policy.split_ceiling):
        return PaymentResponsibility.TENANT
    return PaymentResponsibility.SPLIT
