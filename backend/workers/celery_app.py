"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "stockpulse",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.audit.*": {"queue": "audit"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        "audit-ledger-integrity-nightly": {
            "task": "workers.audit.audit_ledger_integrity",
            "schedule": crontab(hour=2, minute=15),
            "options": {"queue": "audit"},
        },
        "expire-reservations-5m": {
            "task": "workers.audit.expire_reservations",
            "schedule": crontab(minute="*/5"),
            "options": {"queue": "audit"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"], related_name="audit")
