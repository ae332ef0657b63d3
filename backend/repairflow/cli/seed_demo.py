# backend/repairflow/cli/seed_demo.py
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db import SessionLocal
from ..models import AppUser, EmergencyContact, EscalationRule, Organization, OrgMembership, Property
from ..services.policy_service import upsert_policy


@dataclass(frozen=True)
class SeedResult:
    org_slug: str
    property_id: int
    users: dict[str, str] = field(default_factory=dict)
    rule_levels: list[int] = field(default_factory=list)


def _get_or_create_org(db: Session, slug: str, name: str) -> Organization:
    row = db.scalar(select(Organization).where(Organization.slug == slug))
    if row:
        return row
    row = Organization(slug=slug, name=name)
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def _get_or_create_user(db: Session, email: str, display_name: str, phone: Optional[str] = None) -> AppUser:
    row = db.scalar(select(AppUser).where(AppUser.email == email))
    if row:
        return row
    row = AppUser(email=email, display_name=display_name, phone=phone)
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def _ensure_membership(db: Session, org_id: int, user_id: int, role: str) -> None:
    existing = db.scalar(
        select(OrgMembership).where(OrgMembership.org_id == int(org_id), OrgMembership.user_id == int(user_id))
    )
    if existing:
        return
    db.add(OrgMembership(org_id=int(org_id), user_id=int(user_id), role=str(role)))
    db.commit()


def _ensure_rule(
    db: Session,
    *,
    org_id: int,
    property_id: int,
    level: int,
    response_minutes: int,
    max_cost_authorization: float,
    notify_user_ids: list[int],
) -> None:
    existing = db.scalar(
        select(EscalationRule).where(
            EscalationRule.org_id == org_id,
            EscalationRule.property_id == property_id,
            EscalationRule.trigger_condition == "any",
            EscalationRule.level == level,
        )
    )
    if existing:
        return
    db.add(
        EscalationRule(
            org_id=org_id,
            property_id=property_id,
            trigger_condition="any",
            level=level,
            response_minutes=response_minutes,
            max_cost_authorization=max_cost_authorization,
            notify_user_ids_json=json.dumps(notify_user_ids),
        )
    )
    db.commit()


def seed_demo(*, org_slug: str = "demo", org_name: str = "Demo Property Co") -> SeedResult:
    """
    Landlord, tenant, two providers, one property with a default policy and
    a three-level escalation ladder. Idempotent.
    """
    db = SessionLocal()
    try:
        org = _get_or_create_org(db, org_slug, org_name)

        people = {
            "landlord": _get_or_create_user(db, "landlord@demo.local", "Lee Landlord", "+15550000001"),
            "tenant": _get_or_create_user(db, "tenant@demo.local", "Tay Tenant"),
            "provider": _get_or_create_user(db, "plumber@demo.local", "Pat Plumbing", "+15550000002"),
            "provider2": _get_or_create_user(db, "electric@demo.local", "Sam Sparks", "+15550000003"),
        }
        for key, user in people.items():
            role = "provider" if key.startswith("provider") else key
            _ensure_membership(db, org.id, user.id, role=role)

        prop = db.scalar(select(Property).where(Property.org_id == org.id, Property.address == "12 Demo St"))
        if prop is None:
            prop = Property(
                org_id=org.id,
                landlord_user_id=people["landlord"].id,
                name="Demo Duplex",
                address="12 Demo St",
                city="Detroit",
            )
            db.add(prop)
            db.commit()
            db.refresh(prop)

        upsert_policy(
            db,
            org_id=org.id,
            property_id=prop.id,
            actor_user_id=people["landlord"].id,
            changes={"approval_mode": "over_amount", "auto_approval_limit": 250.0},
        )

        ladder = [
            (1, 15, 500.0, [people["provider"].id, people["provider2"].id]),
            (2, 15, 1000.0, [people["landlord"].id]),
            (3, 30, 2500.0, [people["landlord"].id]),
        ]
        for level, minutes, ceiling, notify in ladder:
            _ensure_rule(
                db,
                org_id=org.id,
                property_id=prop.id,
                level=level,
                response_minutes=minutes,
                max_cost_authorization=ceiling,
                notify_user_ids=notify,
            )

        has_contact = db.scalar(
            select(EmergencyContact).where(EmergencyContact.org_id == org.id, EmergencyContact.property_id == prop.id)
        )
        if has_contact is None:
            db.add(
                EmergencyContact(
                    org_id=org.id,
                    property_id=prop.id,
                    name="After-hours line",
                    phone="+15550000099",
                    tier=1,
                )
            )
            db.commit()

        return SeedResult(
            org_slug=org.slug,
            property_id=int(prop.id),
            users={k: v.email for k, v in people.items()},
            rule_levels=[lvl for lvl, _, _, _ in ladder],
        )
    finally:
        db.close()
