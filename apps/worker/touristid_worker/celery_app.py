"""Celery application configuration."""

from celery import Celery

from touristid_worker.settings import get_settings

settings = get_settings()

celery_app = Celery(
    "touristid_worker",
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
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    beat_schedule={
        "run-auto-expiration": {
            "task": "touristid_worker.tasks.run_auto_expiration",
            "schedule": float(settings.auto_expire_interval_seconds),
        },
        "sweep-pending-writes": {
            "task": "touristid_worker.tasks.sweep_pending_writes",
            "schedule": float(settings.outbox_sweep_interval_seconds),
        },
    },
)

# Import tasks to register them with Celery
# This must be done after celery_app is created
from touristid_worker import tasks  # noqa: F401, E402
