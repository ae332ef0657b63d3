# backend/repairflow/workers/celery_app.py
from __future__ import annotations

import os

from celery import Celery
from celery.signals import setup_logging

from ..config import settings
from ..logging_config import configure_logging

BROKER = settings.celery_broker_url or os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
BACKEND = settings.celery_result_backend or os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")

celery_app = Celery(
    "repairflow",
    broker=BROKER,
    backend=BACKEND,
    include=["repairflow.workers.escalation_tasks"],
)

celery_app.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    timezone="UTC",
)

# Sweeps are cheap and lock-guarded, so overlapping beats are harmless.
celery_app.conf.beat_schedule = {
    "sweep-escalations": {
        "task": "repairflow.workers.escalation_tasks.sweep_escalations",
        "schedule": float(settings.escalation_sweep_seconds),
    },
    "deliver-notifications": {
        "task": "repairflow.workers.escalation_tasks.deliver_notifications",
        "schedule": 15.0,
    },
    "expire-bids-and-penalties": {
        "task": "repairflow.workers.escalation_tasks.expire_bids_and_penalties",
        "schedule": 300.0,
    },
}

celery_app.conf.task_routes = {
    "repairflow.workers.escalation_tasks.*": {"queue": "scheduler"},
}


@setup_logging.connect
def _worker_logging(**_kwargs) -> None:
    # connected receiver stops celery from installing its own handlers
    configure_logging()
