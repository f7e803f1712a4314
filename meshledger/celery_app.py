"""Celery application configuration."""

from celery import Celery
from kombu import Queue

from meshledger.config import settings

celery_app = Celery(
    "meshledger-worker",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Timeouts from settings
    task_time_limit=settings.CELERY_TASK_HARD_TIME_LIMIT,
    task_soft_time_limit=settings.CELERY_TASK_SOFT_TIME_LIMIT,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    # Results
    result_expires=3600,
    # Queue
    task_default_queue=settings.CELERY_QUEUE_NAME,
    task_queues=(Queue(settings.CELERY_QUEUE_NAME, routing_key="meshledger.#"),),
    # Worker configuration
    worker_max_tasks_per_child=1000,
    worker_disable_rate_limits=True,
    imports=("meshledger.worker.tasks",),
    # Out-of-process monitor: probe cycle plus a slower conflict sweep
    beat_schedule={
        "probe-all-equipment": {
            "task": "meshledger.worker.tasks.probe_all_equipment",
            "schedule": settings.MONITOR_INTERVAL_SECONDS,
            "options": {"expires": settings.MONITOR_INTERVAL_SECONDS},
        },
        "scan-conflicts": {
            "task": "meshledger.worker.tasks.scan_conflicts",
            "schedule": settings.MONITOR_INTERVAL_SECONDS * 10,
        },
    },
    beat_schedule_filename="/tmp/celerybeat-schedule",
)
