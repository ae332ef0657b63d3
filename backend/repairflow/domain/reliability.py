# backend/repairflow/domain/reliability.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional

from .enums import PenaltySeverity, PenaltyStatus, PenaltyType, ProviderStatus

BASELINE = 100.0

SEVERITY_WEIGHTS: dict[PenaltySeverity, float] = {
    PenaltySeverity.MINOR: 1.0,
    PenaltySeverity.MODERATE: 1.0,
    PenaltySeverity.MAJOR: 1.5,
    PenaltySeverity.CRITICAL: 2.0,
}

DEFAULT_PENALTY_POINTS: dict[PenaltyType, int] = {
    PenaltyType.NO_SHOW: 20,
    PenaltyType.LATE_ARRIVAL: 5,
    PenaltyType.POOR_QUALITY: 15,
    PenaltyType.CANCELLATION: 10,
    PenaltyType.SAFETY_VIOLATION: 30,
    PenaltyType.UNPROFESSIONAL: 10,
    PenaltyType.OTHER: 5,
}

DEFAULT_PENALTY_SEVERITY: dict[PenaltyType, PenaltySeverity] = {
    PenaltyType.NO_SHOW: PenaltySeverity.MODERATE,
    PenaltyType.LATE_ARRIVAL: PenaltySeverity.MINOR,
    PenaltyType.POOR_QUALITY: PenaltySeverity.MODERATE,
    PenaltyType.CANCELLATION: PenaltySeverity.MINOR,
    PenaltyType.SAFETY_VIOLATION: PenaltySeverity.CRITICAL,
    PenaltyType.UNPROFESSIONAL: PenaltySeverity.MODERATE,
    PenaltyType.OTHER: PenaltySeverity.MINOR,
}

# (lower bound inclusive, status, warning_level); checked top-down
STATUS_THRESHOLDS: tuple[tuple[float, ProviderStatus, int], ...] = (
    (70.0, ProviderStatus.ACTIVE, 0),
    (40.0, ProviderStatus.WARNING, 1),
    (15.0, ProviderStatus.SUSPENDED, 2),
    (float("-inf"), ProviderStatus.BANNED, 3),
)


@dataclass(frozen=True)
class LedgerCounters:
    total_jobs: int = 0
    completed_jobs: int = 0
    cancelled_jobs: int = 0
    no_show_jobs: int = 0
    rating_count: int = 0
    rating_sum: float = 0.0

    @property
    def average_rating(self) -> Optional[float]:
        if self.rating_count <= 0:
            return None
        return float(self.rating_sum) / float(self.rating_count)

    @property
    def no_show_rate(self) -> float:
        if self.total_jobs <= 0:
            return 0.0
        return min(1.0, float(self.no_show_jobs) / float(self.total_jobs))


@dataclass(frozen=True)
class PenaltyView:
    points: float
    severity: PenaltySeverity
    status: PenaltyStatus
    expires_at: Optional[datetime] = None

    def counts_at(self, now: datetime) -> bool:
        if self.status != PenaltyStatus.ACTIVE:
            return False
        return self.expires_at is None or self.expires_at > now


@dataclass(frozen=True)
class ReliabilitySnapshot:
    score: float
    status: ProviderStatus
    warning_level: int
    penalty_points: float
    weighted_penalty: float
    no_show_deduction: float
    rating_deduction: float
    average_rating: Optional[float]

    def components(self) -> dict[str, Any]:
        return {
            "baseline": BASELINE,
            "penalty_points": self.penalty_points,
            "weighted_penalty": self.weighted_penalty,
            "no_show_deduction": self.no_show_deduction,
            "rating_deduction": self.rating_deduction,
        }


def _clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def status_for_score(score: float) -> tuple[ProviderStatus, int]:
    for lower, status, level in STATUS_THRESHOLDS:
        if score >= lower:
            return status, level
    return ProviderStatus.BANNED, 3


def compute_reliability(
    counters: LedgerCounters,
    penalties: Iterable[PenaltyView],
    *,
    now: datetime,
    no_show_weight: float = 40.0,
    rating_weight: float = 5.0,
) -> ReliabilitySnapshot:
    """
    score = clamp(0, 100,
        100
        - sum(active points * severity weight)
        - no_show_rate * no_show_weight
        - (5 - avg_rating) * rating_weight      # only once rated
    )
    Pure: the same counters + penalties always give the same snapshot.
    """
    raw_points = 0.0
    weighted = 0.0
    for p in penalties:
        if not p.counts_at(now):
            continue
        raw_points += float(p.points)
        weighted += float(p.points) * SEVERITY_WEIGHTS.get(p.severity, 1.0)

    no_show_deduction = counters.no_show_rate * float(no_show_weight)

    avg = counters.average_rating
    rating_deduction = 0.0
    if avg is not None:
        rating_deduction = (5.0 - _clamp(avg, 1.0, 5.0)) * float(rating_weight)

    score = round(_clamp(BASELINE - weighted - no_show_deduction - rating_deduction, 0.0, 100.0), 2)
    status, level = status_for_score(score)

    return ReliabilitySnapshot(
        score=score,
        status=status,
        warning_level=level,
        penalty_points=raw_points,
        weighted_penalty=weighted,
        no_show_deduction=round(no_show_deduction, 4),
        rating_deduction=round(rating_deduction, 4),
        average_rating=avg,
    )
