"""
tasks/celery_app.py
Celery application instance shared by all task modules.

Workers are started with:
    celery -A tasks.celery_app worker -Q notifications --loglevel=info --concurrency=4
"""

from celery import Celery

from config.settings import settings

celery_app = Celery(
    "inspection_booking",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.notification_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.INSPECTION_TIMEZONE,
    enable_utc=True,

    # Reliability: acknowledge task AFTER execution, not before
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Result expiry: keep task results for 1 hour
    result_expires=3600,

    task_max_retries=3,

    # Rate limits (per worker per second)
    task_annotations={
        "tasks.notification_tasks.send_email": {"rate_limit": "20/s"},
    },

    task_routes={
        "tasks.notification_tasks.*": {"queue": "notifications"},
    },

    worker_prefetch_multiplier=1,
)
