# backend/repairflow/services/conflicts.py
from __future__ import annotations

import functools
import logging
from typing import Callable, TypeVar

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..domain.errors import ConcurrencyConflictError
from .runtime_metrics import METRICS

log = logging.getLogger("repairflow.conflicts")

T = TypeVar("T")


def stale_as_conflict(fn: Callable[..., T]) -> Callable[..., T]:
    """
    Versioned rows raise StaleDataError on whichever flush first writes them,
    which may be well before the command commits. Commands wrapped here
    surface that as a retryable ConcurrencyConflictError.
    """

    @functools.wraps(fn)
    def wrapper(db: Session, *args, **kwargs) -> T:
        try:
            return fn(db, *args, **kwargs)
        except StaleDataError as e:
            db.rollback()
            METRICS.inc("request_conflicts")
            log.warning("stale_write", extra={"event": f"{fn.__name__}:{type(e).__name__}"})
            raise ConcurrencyConflictError("record was modified concurrently; retry")

    return wrapper


def retry_on_conflict(db: Session, fn: Callable[[], T], *, attempts: int = 2) -> T:
    """
    Runs a command, re-running it once after a ConcurrencyConflictError.
    The command re-reads its rows on the second attempt; a second conflict
    is surfaced to the caller as-is.
    """
    for i in range(max(1, int(attempts))):
        try:
            return fn()
        except ConcurrencyConflictError:
            db.rollback()
            # stale identity-map state would make the retry conflict again
            db.expire_all()
            if i + 1 >= attempts:
                raise
            METRICS.inc("conflict_retries")
            log.info("conflict_retry", extra={"event": f"attempt={i + 2}"})
    raise RuntimeError("unreachable")
