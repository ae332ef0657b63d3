# backend/repairflow/workers/scheduler_loop.py
from __future__ import annotations

import logging
import time

from ..config import settings
from ..logging_config import configure_logging
from .escalation_tasks import run_once

log = logging.getLogger("repairflow.scheduler")


def main(max_ticks: int | None = None) -> None:
    """
    Scheduler without celery (dev, single-box deployments).
    Safe to run next to beat: the escalation sweep holds an EngineLock.
    """
    configure_logging()
    interval = int(settings.escalation_sweep_seconds)
    ticks = 0
    while max_ticks is None or ticks < max_ticks:
        try:
            out = run_once()
            print(f"[scheduler] sweep={out['sweep']} notifications={out['notifications']}")
        except Exception:
            log.exception("scheduler_tick_failed")
        ticks += 1
        if max_ticks is None or ticks < max_ticks:
            time.sleep(interval)


if __name__ == "__main__":
    main()
