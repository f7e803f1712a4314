#!/usr/bin/env python
"""Celery beat entry point for the out-of-process liveness monitor."""

from meshledger.celery_app import celery_app
from meshledger.config import settings
from meshledger.utils.logger import get_logger, setup_logging

setup_logging()
logger = get_logger("meshledger.beat")


if __name__ == "__main__":
    logger.info(
        "Starting beat",
        extra={
            "probe_interval_seconds": settings.MONITOR_INTERVAL_SECONDS,
            "schedule": sorted(celery_app.conf.beat_schedule),
        },
    )
    celery_app.start(["beat", "--loglevel=info"])
