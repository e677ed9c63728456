"""
tasks/celery_app.py
Celery application instance, shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery

from config.settings import settings

celery_app = Celery(
    "scrap_pickup",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.notification_tasks",
        "tasks.dispatch_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Asia/Kolkata",
    enable_utc=True,

    # Acknowledge after execution so a dying worker doesn't lose the task
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,
    task_max_retries=3,

    task_annotations={
        "tasks.notification_tasks.send_push_notification": {"rate_limit": "30/s"},
    },

    task_routes={
        "tasks.notification_tasks.*": {"queue": "notifications"},
        "tasks.dispatch_tasks.*": {"queue": "dispatch"},
    },

    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Re-run auto-assignment for confirmed bookings still waiting on a partner
    "retry-unassigned-bookings": {
        "task": "tasks.dispatch_tasks.retry_unassigned_bookings",
        "schedule": settings.DISPATCH_RETRY_INTERVAL_SECONDS,
    },
}
