# backend/tests/test_engine_locks.py
from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import select

from repairflow.models import EngineLock
from repairflow.services.locks_service import acquire_lock, held_lock, release_lock


def test_lock_lease_lifecycle(db):
    assert acquire_lock(db, lock_key="escalation_sweep", owner="a", ttl_seconds=60) is True
    assert acquire_lock(db, lock_key="escalation_sweep", owner="b", ttl_seconds=60) is False
    # renewal by the holder
    assert acquire_lock(db, lock_key="escalation_sweep", owner="a", ttl_seconds=60) is True

    assert release_lock(db, lock_key="escalation_sweep", owner="b") is False
    assert release_lock(db, lock_key="escalation_sweep", owner="a") is True
    assert acquire_lock(db, lock_key="escalation_sweep", owner="b", ttl_seconds=60) is True


def test_expired_lease_can_be_taken_over(db):
    assert acquire_lock(db, lock_key="k", owner="a", ttl_seconds=60)
    row = db.scalar(select(EngineLock).where(EngineLock.lock_key == "k"))
    row.expires_at = datetime.utcnow() - timedelta(seconds=5)
    db.commit()

    assert acquire_lock(db, lock_key="k", owner="b", ttl_seconds=60) is True
    db.refresh(row)
    assert row.owner == "b"


def test_held_lock_releases_on_exit(db):
    with held_lock(db, lock_key="k", owner="a", ttl_seconds=60) as got:
        assert got is True
        with held_lock(db, lock_key="k", owner="b", ttl_seconds=60) as other:
            assert other is False
    assert acquire_lock(db, lock_key="k", owner="b", ttl_seconds=60) is True


def test_release_of_unknown_lock_is_noop(db):
    assert release_lock(db, lock_key="never-taken", owner="a") is True
