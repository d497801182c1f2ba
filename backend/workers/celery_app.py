"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings
from core.cron import parse_cron

settings = get_settings()

celery_app = Celery(
    "stockledger",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

beat_schedule = {
    # ── Replenishment housekeeping ─────────────────────────────────
    "maintain-reorder-queue-daily": {
        "task": "workers.replenishment.maintain_reorder_queue",
        "schedule": crontab(hour=1, minute=15),
        "options": {"queue": "maintenance"},
    },
}

if settings.alert_scan_enabled:
    # ── Alerts ─────────────────────────────────────────────────────
    beat_schedule["alert-scan"] = {
        "task": "workers.alerts.run_alert_scan",
        "schedule": parse_cron(settings.alert_scan_schedule),
        "options": {"queue": "alerts"},
    }

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.scheduler_timezone,
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.alerts.*": {"queue": "alerts"},
        "workers.replenishment.*": {"queue": "maintenance"},
    },
    beat_schedule=beat_schedule,
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
