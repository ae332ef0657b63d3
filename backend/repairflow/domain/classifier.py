# backend/repairflow/domain/classifier.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional

from .enums import EmergencyType, Priority

# -----------------------------------------------------------------------------
# Request Classifier
# -----------------------------------------------------------------------------
# Deterministic rule match over category + free text + tenant-declared urgency.
# Every matching rule proposes (priority, emergency_type); the most urgent
# proposal wins, and among equally urgent ones the emergency type with the
# tightest response SLA wins. No I/O.
# -----------------------------------------------------------------------------

# Conservative order: earlier = shorter SLA = preferred on ties.
EMERGENCY_PRECEDENCE: tuple[EmergencyType, ...] = (
    EmergencyType.SAFETY,
    EmergencyType.SECURITY,
    EmergencyType.WATER,
    EmergencyType.ELECTRICAL,
    EmergencyType.STRUCTURAL,
    EmergencyType.HVAC,
)

CATEGORY_ALIASES = {
    "plumbing": "plumbing",
    "plumber": "plumbing",
    "water": "plumbing",
    "electrical": "electrical",
    "electric": "electrical",
    "hvac": "hvac",
    "heating": "hvac",
    "cooling": "hvac",
    "air_conditioning": "hvac",
    "appliance": "appliance",
    "appliances": "appliance",
    "structural": "structural",
    "roof": "structural",
    "pest": "pest",
    "pest_control": "pest",
    "landscaping": "landscaping",
    "security": "security",
    "locks": "security",
    "safety": "safety",
    "emergency": "emergency",
    "general": "general",
    "other": "general",
}

CATEGORY_BASE_PRIORITY = {
    "general": Priority.LOW,
    "landscaping": Priority.LOW,
    "pest": Priority.MEDIUM,
    "appliance": Priority.MEDIUM,
    "plumbing": Priority.MEDIUM,
    "electrical": Priority.MEDIUM,
    "hvac": Priority.MEDIUM,
    "structural": Priority.HIGH,
    "security": Priority.HIGH,
    "safety": Priority.HIGH,
    "emergency": Priority.URGENT,
}

# Categories that *are* an emergency type when the tenant declares an emergency.
CATEGORY_EMERGENCY_TYPE = {
    "plumbing": EmergencyType.WATER,
    "electrical": EmergencyType.ELECTRICAL,
    "hvac": EmergencyType.HVAC,
    "structural": EmergencyType.STRUCTURAL,
    "security": EmergencyType.SECURITY,
    "safety": EmergencyType.SAFETY,
    "emergency": EmergencyType.SAFETY,
}

DECLARED_URGENCY = {
    "low": Priority.LOW,
    "normal": Priority.MEDIUM,
    "medium": Priority.MEDIUM,
    "high": Priority.HIGH,
    "urgent": Priority.URGENT,
    "emergency": Priority.URGENT,
}


@dataclass(frozen=True)
class KeywordRule:
    name: str
    patterns: tuple[str, ...]
    priority: Priority
    emergency_type: Optional[EmergencyType] = None


KEYWORD_RULES: tuple[KeywordRule, ...] = (
    KeywordRule(
        "gas_or_fire",
        (r"\bgas leak\b", r"\bsmell(s|ing)? (of )?gas\b", r"\bcarbon monoxide\b", r"\bco alarm\b", r"\bfire\b", r"\bsmoke\b"),
        Priority.URGENT,
        EmergencyType.SAFETY,
    ),
    KeywordRule(
        "break_in",
        (r"\bbreak[- ]?in\b", r"\bbroken into\b", r"\bintruder\b", r"\bburglar", r"\b(door|lock)s? (won'?t|will not|doesn'?t) lock\b", r"\bfront door broken\b"),
        Priority.URGENT,
        EmergencyType.SECURITY,
    ),
    KeywordRule(
        "flooding",
        (r"\bflood", r"\bburst\b", r"\bsewage\b", r"\bwater everywhere\b", r"\boverflow", r"\bno water\b"),
        Priority.URGENT,
        EmergencyType.WATER,
    ),
    KeywordRule(
        "electrical_hazard",
        (r"\bsparks?\b", r"\bsparking\b", r"\bexposed wir", r"\bburning smell\b", r"\bno power\b", r"\bpower outage\b", r"\belectric(al)? shock\b"),
        Priority.URGENT,
        EmergencyType.ELECTRICAL,
    ),
    KeywordRule(
        "structural_failure",
        (r"\bcollaps", r"\bcaving in\b", r"\bcaved in\b", r"\bceiling (fell|falling)\b", r"\bfoundation crack", r"\bsinkhole\b"),
        Priority.URGENT,
        EmergencyType.STRUCTURAL,
    ),
    KeywordRule(
        "no_heat",
        (r"\bno heat\b", r"\bheat(ing|er)? (is )?(not working|broken|out)\b", r"\bfurnace (is )?(out|broken|not working)\b", r"\bfreezing\b"),
        Priority.URGENT,
        EmergencyType.HVAC,
    ),
    KeywordRule("leak", (r"\bleak", r"\bdrip", r"\bclog", r"\bbackup\b", r"\bbacked up\b"), Priority.HIGH),
    KeywordRule("cooling", (r"\bno (ac|a/c|air conditioning)\b", r"\b(ac|a/c) (is )?(not working|broken)\b"), Priority.HIGH),
    KeywordRule("mold", (r"\bmou?ld\b", r"\bmildew\b"), Priority.HIGH),
    KeywordRule("pests", (r"\brats?\b", r"\bmice\b", r"\bcockroach", r"\bbed ?bugs?\b", r"\bwasps?\b"), Priority.MEDIUM),
    KeywordRule("cosmetic", (r"\bpaint", r"\bscuff", r"\bcosmetic\b"), Priority.LOW),
)

_COMPILED = tuple((rule, tuple(re.compile(p, re.IGNORECASE) for p in rule.patterns)) for rule in KEYWORD_RULES)


@dataclass(frozen=True)
class Classification:
    category: str
    priority: Priority
    is_emergency: bool
    emergency_type: Optional[EmergencyType]
    matched_rules: tuple[str, ...] = field(default_factory=tuple)

    def as_dict(self) -> dict:
        return {
            "category": self.category,
            "priority": self.priority.value,
            "is_emergency": self.is_emergency,
            "emergency_type": self.emergency_type.value if self.emergency_type else None,
            "matched_rules": list(self.matched_rules),
        }


def normalize_category(raw: Optional[str]) -> str:
    key = (raw or "").strip().lower().replace(" ", "_").replace("-", "_")
    return CATEGORY_ALIASES.get(key, "general")


def _emergency_rank(t: Optional[EmergencyType]) -> int:
    if t is None:
        return len(EMERGENCY_PRECEDENCE)
    return EMERGENCY_PRECEDENCE.index(t)


def _more_conservative(
    a: tuple[Priority, Optional[EmergencyType]],
    b: tuple[Priority, Optional[EmergencyType]],
) -> tuple[Priority, Optional[EmergencyType]]:
    if a[0].rank != b[0].rank:
        return a if a[0].rank > b[0].rank else b
    return a if _emergency_rank(a[1]) <= _emergency_rank(b[1]) else b


def classify_request(
    *,
    category: Optional[str],
    title: Optional[str] = None,
    description: Optional[str] = None,
    declared_urgency: Optional[str] = None,
) -> Classification:
    cat = normalize_category(category)
    text = f"{title or ''}\n{description or ''}"

    best: tuple[Priority, Optional[EmergencyType]] = (CATEGORY_BASE_PRIORITY.get(cat, Priority.LOW), None)
    matched: list[str] = []
    for rule, patterns in _COMPILED:
        if any(p.search(text) for p in patterns):
            matched.append(rule.name)
            best = _more_conservative(best, (rule.priority, rule.emergency_type))

    declared_raw = (declared_urgency or "").strip().lower()
    declared = DECLARED_URGENCY.get(declared_raw)
    if declared is not None and declared.rank > best[0].rank:
        best = (declared, best[1])

    priority, etype = best
    if etype is None and (cat == "emergency" or declared_raw in ("urgent", "emergency")):
        # urgency declared but the text gave no hint: trust the category, if it maps
        etype = CATEGORY_EMERGENCY_TYPE.get(cat)

    return Classification(
        category=cat,
        priority=priority,
        is_emergency=etype is not None,
        emergency_type=etype,
        matched_rules=tuple(matched),
    )
