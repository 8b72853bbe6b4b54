"""
Celery configuration for background tasks
"""
from celery import Celery
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

# Create Celery instance
celery_app = Celery(
    "ledger",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "app.modules.notifications.tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=10 * 60,  # 10 minutes
    task_soft_time_limit=8 * 60,  # 8 minutes
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # Rate limiting
    task_default_rate_limit="100/m",

    # Result backend settings
    result_expires=3600,  # 1 hour

    # Publishing
    broker_connection_timeout=2,
    task_publish_retry_policy={"max_retries": 1, "interval_start": 0, "interval_step": 0.2},

    # Task routes for different queues
    task_routes={
        "app.modules.notifications.tasks.send_notification_task": {"queue": "notifications"},
        "app.modules.notifications.tasks.mark_overdue_bills_task": {"queue": "ledger"},
    },

    # Beat schedule for periodic tasks
    beat_schedule={
        "mark-overdue-bills": {
            "task": "app.modules.notifications.tasks.mark_overdue_bills_task",
            "schedule": 3600.0,  # Run every hour
        },
    }
)

if __name__ == "__main__":
    celery_app.start()
