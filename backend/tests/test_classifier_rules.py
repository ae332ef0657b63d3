# backend/tests/test_classifier_rules.py
from __future__ import annotations

from repairflow.domain.classifier import classify_request, normalize_category
from repairflow.domain.enums import EmergencyType, Priority


def test_burst_pipe_is_urgent_water_emergency():
    c = classify_request(category="plumbing", title="Pipe burst", description="Water everywhere in the basement")
    assert c.priority == Priority.URGENT
    assert c.is_emergency is True
    assert c.emergency_type == EmergencyType.WATER
    assert "flooding" in c.matched_rules


def test_gas_leak_beats_plain_leak():
    c = classify_request(category="plumbing", title="Gas leak in the kitchen", description="Smells bad")
    assert c.priority == Priority.URGENT
    assert c.emergency_type == EmergencyType.SAFETY
    assert set(c.matched_rules) >= {"gas_or_fire", "leak"}


def test_equal_urgency_prefers_tighter_sla():
    c = classify_request(category="electrical", title="Sparks", description="Sparks near the flooded basement")
    assert c.priority == Priority.URGENT
    assert c.emergency_type == EmergencyType.WATER


def test_leak_alone_is_high_but_not_emergency():
    c = classify_request(category="plumbing", title="Leaky faucet", description="Kitchen tap drips all night")
    assert c.priority == Priority.HIGH
    assert c.is_emergency is False
    assert c.emergency_type is None


def test_cosmetic_work_stays_low():
    c = classify_request(category="general", title="Paint scuff", description="Hallway wall needs touch up")
    assert c.priority == Priority.LOW
    assert c.is_emergency is False


def test_declared_emergency_uses_category_type():
    c = classify_request(
        category="plumbing",
        title="Sink problem",
        description="The kitchen sink is slow",
        declared_urgency="emergency",
    )
    assert c.priority == Priority.URGENT
    assert c.is_emergency is True
    assert c.emergency_type == EmergencyType.WATER


def test_declared_low_cannot_downgrade_text_match():
    c = classify_request(
        category="electrical",
        title="Outlet",
        description="Smoke coming from the outlet",
        declared_urgency="low",
    )
    assert c.priority == Priority.URGENT
    assert c.emergency_type == EmergencyType.SAFETY


def test_category_normalization():
    assert normalize_category("Air Conditioning") == "hvac"
    assert normalize_category("pest-control") == "pest"
    assert normalize_category("spaceship") == "general"
    assert normalize_category(None) == "general"


def test_classification_is_deterministic():
    a = classify_request(category="hvac", title="No heat", description="Furnace is out, freezing")
    b = classify_request(category="hvac", title="No heat", description="Furnace is out, freezing")
    assert a == b
    assert a.emergency_type == EmergencyType.HVAC


def test_declared_urgent_uses_category_type():
    c = classify_request(category="plumbing", description="kitchen sink draining slowly", declared_urgency="urgent")
    assert c.priority == Priority.URGENT
    assert c.is_emergency is True
    assert c.emergency_type == EmergencyType.WATER


def test_declared_urgent_without_emergency_category_stays_routine():
    c = classify_request(category="appliance", description="fridge is warm", declared_urgency="urgent")
    assert c.priority == Priority.URGENT
    assert c.is_emergency is False
