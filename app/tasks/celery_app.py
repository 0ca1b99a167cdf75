"""
Celery application configuration.

Defines the Celery app with Redis broker, the settlement task modules,
and the periodic beat schedule for the polling sweep and webhook replay.
"""

from celery import Celery

from app.config import settings
from app.settlement.config import REPLAY_INTERVAL_SECONDS

celery_app = Celery(
    "minisend",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.tasks.polling_tasks", "app.tasks.webhook_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    # A poll loop never outlives its own deadline; leave headroom for one attempt.
    task_soft_time_limit=int(settings.POLL_TIMEOUT_SECONDS + settings.POLL_ATTEMPT_TIMEOUT_SECONDS),
    task_time_limit=int(settings.POLL_TIMEOUT_SECONDS + 2 * settings.POLL_ATTEMPT_TIMEOUT_SECONDS),
)

# Beat schedule — periodic tasks
celery_app.conf.beat_schedule = {
    "sweep-open-orders": {
        "task": "app.tasks.polling_tasks.sweep_open_orders",
        "schedule": settings.POLL_SWEEP_STALE_MINUTES * 60,
    },
    "replay-failed-webhooks": {
        "task": "app.tasks.webhook_tasks.replay_failed_webhooks",
        "schedule": REPLAY_INTERVAL_SECONDS,
    },
}
