"""
tasks/celery_app.py
Celery application instance shared by all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from config.settings import settings

celery_app = Celery(
    "rahaseva",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["tasks.dispatch_tasks"],
)

# ── Configuration ─────────────────────────────────────────────

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Asia/Kolkata",
    enable_utc=True,

    # Acknowledge after execution so a dying worker does not lose the task
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,
    task_max_retries=3,

    task_routes={
        "tasks.dispatch_tasks.redispatch_*": {"queue": "dispatch"},
        "tasks.dispatch_tasks.mark_missed_consultations": {"queue": "default"},
    },

    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────

celery_app.conf.beat_schedule = {
    # Emergencies nobody picked up get another matching pass
    "redispatch-stale-emergencies": {
        "task": "tasks.dispatch_tasks.redispatch_stale_emergencies",
        "schedule": 120,
    },

    "redispatch-stale-help-requests": {
        "task": "tasks.dispatch_tasks.redispatch_stale_help_requests",
        "schedule": 600,
    },

    "mark-missed-consultations": {
        "task": "tasks.dispatch_tasks.mark_missed_consultations",
        "schedule": crontab(minute="*/15"),
    },
}
