#!/usr/bin/env python
"""Celery worker entry point for probe and conflict-sweep tasks."""

from meshledger.celery_app import celery_app
from meshledger.config import settings
from meshledger.utils.logger import setup_logging

setup_logging()


if __name__ == "__main__":
    # Each task runs its own event loop, so a prefork pool is enough
    celery_app.worker_main(
        [
            "worker",
            "--loglevel=info",
            "--pool=prefork",
            "--concurrency=2",
            "--max-tasks-per-child=1000",
            f"--queues={settings.CELERY_QUEUE_NAME}",
        ]
    )
