"""
Celery Application Configuration
"""
from celery import Celery

from notifier.core.config import settings

celery_app = Celery(
    "compliance_notifier",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["notifier.workers.tasks"]
)

# Celery configuration
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
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "retry-webhook-deliveries": {
        "task": "notifier.workers.tasks.retry_webhook_deliveries",
        "schedule": settings.WEBHOOK_RETRY_SWEEP_SECONDS,
    },
    "cleanup-old-webhook-deliveries": {
        "task": "notifier.workers.tasks.cleanup_old_deliveries",
        "schedule": 86400.0,  # 24 hours
    },
}
