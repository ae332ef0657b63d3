# backend/repairflow/auth.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .db import get_db
from .domain.enums import ActorRole, MANAGER_ROLES
from .domain.errors import PermissionDeniedError
from .models import AppUser, OrgMembership, Organization


@dataclass(frozen=True)
class Principal:
    org_id: int
    org_slug: str
    user_id: int
    email: str
    role: str  # tenant | landlord | provider | agency

    @property
    def actor_role(self) -> ActorRole:
        return ActorRole.parse(self.role)

    @property
    def is_manager(self) -> bool:
        return self.actor_role in MANAGER_ROLES

    @property
    def is_provider(self) -> bool:
        return self.actor_role == ActorRole.PROVIDER

    @property
    def is_tenant(self) -> bool:
        return self.actor_role == ActorRole.TENANT


# -------------------------
# JWT helpers
# -------------------------
def jwt_sign(payload: dict[str, Any], *, ttl_seconds: int = 3600) -> str:
    body = dict(payload)
    body.setdefault("exp", datetime.now(timezone.utc) + timedelta(seconds=int(ttl_seconds)))
    return jwt.encode(body, settings.jwt_secret, algorithm="HS256")


def jwt_verify(token: str) -> dict[str, Any]:
    try:
        return dict(jwt.decode(token, settings.jwt_secret, algorithms=["HS256"]))
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


# -------------------------
# Org + membership helpers
# -------------------------
def _resolve_org(db: Session, org_slug: str) -> Organization:
    org = db.scalar(select(Organization).where(Organization.slug == org_slug))
    if org:
        return org
    raise HTTPException(status_code=401, detail="Unknown org")


def _get_membership(db: Session, org_id: int, user_id: int) -> OrgMembership | None:
    return db.scalar(select(OrgMembership).where(OrgMembership.org_id == org_id, OrgMembership.user_id == user_id))


def _principal_from_user(db: Session, *, org_slug: str, user: AppUser) -> Principal:
    org = _resolve_org(db, org_slug=org_slug)
    mem = _get_membership(db, org_id=int(org.id), user_id=int(user.id))
    if mem is None:
        raise HTTPException(status_code=403, detail="Not a member of this org")
    return Principal(
        org_id=int(org.id),
        org_slug=str(org.slug),
        user_id=int(user.id),
        email=str(user.email),
        role=str(mem.role),
    )


def _dev_principal(db: Session, *, org_slug: str, email: str, role_hint: str) -> Principal:
    auto = bool(settings.dev_auto_provision)

    org = db.scalar(select(Organization).where(Organization.slug == org_slug))
    if org is None and auto:
        org = Organization(slug=org_slug, name=org_slug, created_at=datetime.utcnow())
        db.add(org)
        db.commit()
        db.refresh(org)

    user = db.scalar(select(AppUser).where(AppUser.email == email))
    if user is None and auto:
        user = AppUser(email=email, display_name=email.split("@")[0], created_at=datetime.utcnow())
        db.add(user)
        db.commit()
        db.refresh(user)

    if org is None or user is None:
        raise HTTPException(status_code=401, detail="Dev auth could not provision user/org")

    mem = _get_membership(db, org_id=int(org.id), user_id=int(user.id))
    if mem is None and auto:
        role = role_hint if role_hint in ActorRole.values() else ActorRole.TENANT.value
        mem = OrgMembership(org_id=int(org.id), user_id=int(user.id), role=role, created_at=datetime.utcnow())
        db.add(mem)
        db.commit()
    if mem is None:
        raise HTTPException(status_code=403, detail="Not a member of this org")

    return Principal(org_id=int(org.id), org_slug=str(org.slug), user_id=int(user.id), email=str(user.email), role=str(mem.role))


# -------------------------
# get_principal
# -------------------------
def get_principal(
    request: Request,
    db: Session = Depends(get_db),
    x_org_slug: Optional[str] = Header(default=None, alias="X-Org-Slug"),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> Principal:
    """
    Auth modes (in priority order):
      1) Authorization: Bearer <jwt>   (sub = app_users.id)
      2) dev header spoofing           (ONLY if settings.auth_mode == "dev")

    The role always comes from the org membership row, never from the token.
    """
    org_slug = str(x_org_slug or "").strip()
    if not org_slug:
        raise HTTPException(status_code=401, detail="Missing X-Org-Slug (active org context).")

    token = None
    if authorization and str(authorization).lower().startswith("bearer "):
        token = str(authorization).split(" ", 1)[1].strip()

    if token:
        claims = jwt_verify(token)
        sub = str(claims.get("sub") or "")
        if not sub.isdigit():
            raise HTTPException(status_code=401, detail="Token missing sub")
        user = db.scalar(select(AppUser).where(AppUser.id == int(sub)))
        if user is None:
            raise HTTPException(status_code=401, detail="Unknown user")
        return _principal_from_user(db, org_slug=org_slug, user=user)

    if settings.auth_mode == "dev":
        email = (request.headers.get("X-User-Email") or "").strip().lower()
        role_hint = (request.headers.get("X-User-Role") or "tenant").strip().lower()
        if not email:
            raise HTTPException(status_code=401, detail="Missing X-User-Email for dev auth")
        return _dev_principal(db, org_slug=org_slug, email=email, role_hint=role_hint)

    raise HTTPException(status_code=401, detail="Not authenticated")


# -------------------------
# Role guards
# -------------------------
def assert_manager(p: Principal, action: str) -> None:
    if not p.is_manager:
        raise PermissionDeniedError(f"{action} requires landlord or agency role", role=p.role)


def assert_provider(p: Principal, action: str) -> None:
    if not p.is_provider:
        raise PermissionDeniedError(f"{action} requires provider role", role=p.role)


def require_manager(p: Principal = Depends(get_principal)) -> Principal:
    assert_manager(p, "this endpoint")
    return p
