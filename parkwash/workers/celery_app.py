"""
Celery Application Configuration
"""
from celery import Celery

from parkwash.core.config import settings

celery_app = Celery(
    "parkwash",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["parkwash.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.TIMEZONE,
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # The sweep is idempotent; overlapping ticks are only wasted work
    "run-scheduler-sweep": {
        "task": "parkwash.workers.tasks.run_scheduler_sweep",
        "schedule": settings.SCHEDULER_SWEEP_SECONDS,
    },
    "process-outbox-every-10-seconds": {
        "task": "parkwash.workers.tasks.process_outbox_messages",
        "schedule": 10.0,
    },
    "cleanup-old-messages-daily": {
        "task": "parkwash.workers.tasks.cleanup_old_messages",
        "schedule": 86400.0,  # 24 hours
    },
}
