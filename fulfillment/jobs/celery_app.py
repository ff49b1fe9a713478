"""Celery application configuration"""

from celery import Celery
from fulfillment.config import settings

# Create Celery app
celery_app = Celery(
    "fulfillment",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "fulfillment.jobs.tasks",
    ],
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Beat schedule for periodic tasks
    beat_schedule={
        "reconcile-dispatches": {
            "task": "reconcile_dispatches",
            "schedule": 300.0,  # Every 5 minutes
        },
        "flag-overdue-orders": {
            "task": "flag_overdue_orders",
            "schedule": 900.0,  # Every 15 minutes
        },
    },
)
