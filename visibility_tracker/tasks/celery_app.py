from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init

from visibility_tracker.core.config import settings

celery_app = Celery(
    "visibility_tracker",
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
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
)

# The sweep enqueues one score_brand task per brand with claimable rows.
celery_app.conf.beat_schedule = {
    "scoring-sweep": {
        "task": "scoring_sweep",
        "schedule": float(settings.scoring_worker_poll_seconds),
    },
    "reset-stale-scoring-claims": {
        "task": "reset_stale_claims",
        "schedule": crontab(minute="*/10"),
    },
    "refresh-reporting-view": {
        "task": "refresh_reporting_view",
        "schedule": crontab(minute=15),  # hourly, in case no scoring run refreshed it
    },
}

celery_app.autodiscover_tasks(["visibility_tracker.tasks"])

# Explicit include as fallback for autodiscover (needed for CLI worker startup)
celery_app.conf.include = [
    "visibility_tracker.tasks.collection_tasks",
    "visibility_tracker.tasks.scoring_tasks",
    "visibility_tracker.tasks.maintenance_tasks",
]


@worker_process_init.connect
def _init_worker_process(**kwargs):
    from visibility_tracker.core.logging import setup_logging
    from visibility_tracker.core.sentry import init_sentry

    setup_logging()
    init_sentry()
