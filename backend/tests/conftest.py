# backend/tests/conftest.py
from __future__ import annotations

import os
import tempfile

# must be set before repairflow.config builds its settings object
_TMP_DIR = tempfile.mkdtemp(prefix="repairflow-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'repairflow_test.db')}"
os.environ["APP_ENV"] = "test"
os.environ["AUTH_MODE"] = "dev"

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import pytest

from repairflow.auth import Principal
from repairflow.db import Base, SessionLocal, engine
from repairflow.models import AppUser, OrgMembership, Organization, Property


@dataclass(frozen=True)
class World:
    org_id: int
    org_slug: str
    property_id: int
    landlord: Principal
    tenant: Principal
    provider: Principal
    provider2: Principal


def _mk_principal(db, org: Organization, email: str, role: str) -> Principal:
    user = AppUser(email=email, display_name=email.split("@")[0], created_at=datetime.utcnow())
    db.add(user)
    db.commit()
    db.refresh(user)
    db.add(OrgMembership(org_id=org.id, user_id=user.id, role=role, created_at=datetime.utcnow()))
    db.commit()
    return Principal(org_id=int(org.id), org_slug=org.slug, user_id=int(user.id), email=email, role=role)


def mk_world(db, slug: str = "org-a") -> World:
    org = Organization(slug=slug, name=slug.upper(), created_at=datetime.utcnow())
    db.add(org)
    db.commit()
    db.refresh(org)

    landlord = _mk_principal(db, org, f"landlord@{slug}.local", "landlord")
    tenant = _mk_principal(db, org, f"tenant@{slug}.local", "tenant")
    provider = _mk_principal(db, org, f"fixit@{slug}.local", "provider")
    provider2 = _mk_principal(db, org, f"handy@{slug}.local", "provider")

    prop = Property(
        org_id=org.id,
        landlord_user_id=landlord.user_id,
        name="Maple Court",
        address="12 Maple Ct",
        city="Detroit",
        created_at=datetime.utcnow(),
    )
    db.add(prop)
    db.commit()
    db.refresh(prop)

    return World(
        org_id=int(org.id),
        org_slug=org.slug,
        property_id=int(prop.id),
        landlord=landlord,
        tenant=tenant,
        provider=provider,
        provider2=provider2,
    )


@pytest.fixture(autouse=True)
def _fresh_schema():
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield


@pytest.fixture
def db():
    s = SessionLocal()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def world(db) -> World:
    return mk_world(db)


@pytest.fixture
def make_world(db) -> Callable[[str], World]:
    return lambda slug: mk_world(db, slug)
