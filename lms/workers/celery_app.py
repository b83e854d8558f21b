"""
Celery Application Configuration
"""
from celery import Celery

from lms.core.config import settings

celery_app = Celery(
    "lms_payments",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["lms.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Asia/Colombo",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # payments whose poll and webhook both went missing
    "reconcile-stale-transactions-every-5-minutes": {
        "task": "lms.workers.tasks.reconcile_stale_transactions",
        "schedule": 300.0,
    },
    "cleanup-old-webhook-events-daily": {
        "task": "lms.workers.tasks.cleanup_old_webhook_events",
        "schedule": 86400.0,  # 24 hours
    },
}
