# backend/repairflow/services/locks_service.py
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import EngineLock


def _now() -> datetime:
    return datetime.utcnow()


def acquire_lock(db: Session, *, lock_key: str, owner: str, ttl_seconds: int) -> bool:
    """
    Advisory lock row, committed immediately so other sweepers see it.
    - True  if acquired, renewed, or stolen after expiry
    - False if someone else holds an unexpired lease
    """
    expires = _now() + timedelta(seconds=int(ttl_seconds))

    row = db.scalar(select(EngineLock).where(EngineLock.lock_key == lock_key))
    if row is None:
        db.add(EngineLock(lock_key=lock_key, owner=owner, expires_at=expires, created_at=_now()))
        try:
            db.commit()
        except IntegrityError:
            # another sweeper inserted the row first
            db.rollback()
            return False
        return True

    if row.expires_at <= _now() or (row.owner or "") == owner:
        row.owner = owner
        row.expires_at = expires
        db.add(row)
        db.commit()
        return True

    return False


def release_lock(db: Session, *, lock_key: str, owner: str) -> bool:
    row = db.scalar(select(EngineLock).where(EngineLock.lock_key == lock_key))
    if row is None:
        return True
    if (row.owner or "") != owner:
        # don't release someone else's lease
        return False
    row.expires_at = _now() - timedelta(seconds=1)
    db.add(row)
    db.commit()
    return True


@contextmanager
def held_lock(db: Session, *, lock_key: str, owner: str, ttl_seconds: int) -> Iterator[bool]:
    """Yields whether the lock was obtained; releases on exit only if it was."""
    got = acquire_lock(db, lock_key=lock_key, owner=owner, ttl_seconds=ttl_seconds)
    try:
        yield got
    finally:
        if got:
            try:
                release_lock(db, lock_key=lock_key, owner=owner)
            except Exception:
                db.rollback()
                raise
