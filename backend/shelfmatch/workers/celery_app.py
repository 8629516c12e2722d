"""
Celery Application — background batch runs for the resolution pipeline.
Long project batches run here so HTTP workers are not held for minutes.

Beat schedule:
  nightly_forced_correction — daily 02:00 UTC — contextual correction in force mode
"""
import os
from celery import Celery
from celery.schedules import crontab

BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")

celery_app = Celery(
    "shelfmatch",
    broker=BROKER_URL,
    backend=RESULT_BACKEND,
    include=["shelfmatch.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_soft_time_limit=3300,  # 55 minutes soft limit
    task_time_limit=3600,       # 1 hour hard limit
    result_expires=86400,
    # ── Beat schedule ────────────────────────────────────────────────────────
    beat_schedule={
        "forced-contextual-correction-nightly": {
            "task": "tasks.nightly_forced_correction",
            "schedule": crontab(hour=2, minute=0),
            "options": {"expires": 3600},
        },
    },
)
