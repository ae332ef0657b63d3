# backend/tests/test_policy_store.py
from __future__ import annotations

import pytest
from sqlalchemy import select

from repairflow.domain.errors import NotFoundError, ValidationError
from repairflow.models import AuditEvent
from repairflow.services.policy_service import bulk_apply, get_policy_snapshot, upsert_policy


def test_defaults_apply_without_a_row(db, world):
    snap = get_policy_snapshot(db, org_id=world.org_id, property_id=world.property_id)
    assert snap.is_default is True
    assert snap.approval_mode.value == "over_amount"
    assert snap.auto_approval_limit == 250.0
    assert snap.emergency_auto_approve is True
    assert snap.bid_window_hours == 72


def test_partial_update_keeps_other_fields(db, world):
    upsert_policy(
        db,
        org_id=world.org_id,
        property_id=world.property_id,
        actor_user_id=world.landlord.user_id,
        changes={"auto_approval_limit": 400},
    )
    snap = upsert_policy(
        db,
        org_id=world.org_id,
        property_id=world.property_id,
        actor_user_id=world.landlord.user_id,
        changes={"require_photos": True, "unknown_field": 1},
    )
    assert snap.is_default is False
    assert snap.auto_approval_limit == 400.0
    assert snap.require_photos is True
    assert snap.photos_required_for_completion is True

    actions = db.scalars(select(AuditEvent.action).where(AuditEvent.entity_type == "property_policy")).all()
    assert list(actions) == ["policy.upsert", "policy.upsert"]


def test_invalid_values_rejected(db, world):
    for bad in ({"approval_mode": "sometimes"}, {"split_ceiling": -1}, {"bid_window_hours": 0}):
        with pytest.raises(ValidationError):
            upsert_policy(
                db, org_id=world.org_id, property_id=world.property_id, actor_user_id=None, changes=bad
            )


def test_bulk_apply_is_all_or_nothing(db, world, make_world):
    other = make_world("org-b")
    with pytest.raises(NotFoundError):
        bulk_apply(
            db,
            org_id=world.org_id,
            property_ids=[world.property_id, other.property_id],
            actor_user_id=world.landlord.user_id,
            changes={"approval_mode": "all"},
        )
    assert get_policy_snapshot(db, org_id=world.org_id, property_id=world.property_id).is_default is True

    snaps = bulk_apply(
        db,
        org_id=world.org_id,
        property_ids=[world.property_id],
        actor_user_id=world.landlord.user_id,
        changes={"approval_mode": "all"},
    )
    assert [s.approval_mode.value for s in snaps] == ["all"]
