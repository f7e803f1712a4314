"""Background tasks for out-of-process liveness probing and conflict sweeps."""

import asyncio
from typing import Optional

from celery.exceptions import SoftTimeLimitExceeded
from sqlalchemy.ext.asyncio import async_sessionmaker

from meshledger.celery_app import celery_app
from meshledger.database import async_engine, async_session_maker
from meshledger.services.conflict_service import ConflictService
from meshledger.services.probe_service import ProbeService, summarize
from meshledger.utils.context import set_context
from meshledger.utils.logger import get_logger, log_timer
from meshledger.utils.telemetry import get_tracer, add_span_attributes
from meshledger.config import settings

logger = get_logger(__name__)
tracer = get_tracer()


def _run_async(coro):
    """
    Run an async coroutine from a Celery worker.

    When a loop is already running (e.g. called from async tests) the loop
    is patched with nest_asyncio so asyncio.run can nest.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    import nest_asyncio

    nest_asyncio.apply()
    return asyncio.run(coro)


async def _probe_all_equipment_async(
    self, session_factory: Optional[async_sessionmaker] = None
) -> dict:
    """
    Run one probe cycle.

    Args:
        self: Celery task instance
        session_factory: Session factory (application factory by default)

    Returns:
        dict with per-outcome counts
    """
    with tracer.start_as_current_span("background.probe_all"):
        add_span_attributes(**{"celery.task_id": self.request.id})
        set_context(request_id=self.request.id, actor_id=settings.SYSTEM_ACTOR_ID)

        factory = session_factory or async_session_maker
        try:
            with log_timer("probe_all_equipment", logger):
                async with factory() as session:
                    results = await ProbeService().probe_all(session)
        finally:
            if session_factory is None:
                # Pooled connections are bound to this task's event loop
                await async_engine.dispose()

        summary = summarize(results)
        logger.info("Probe task completed", extra=summary)
        return summary


async def _scan_conflicts_async(
    self, session_factory: Optional[async_sessionmaker] = None
) -> dict:
    """
    Scan for conflicts and make sure each conflicting IP has a pending alert.

    Returns:
        dict with report summary, health score and status
    """
    with tracer.start_as_current_span("background.scan_conflicts"):
        add_span_attributes(**{"celery.task_id": self.request.id})
        set_context(request_id=self.request.id, actor_id=settings.SYSTEM_ACTOR_ID)

        factory = session_factory or async_session_maker
        service = ConflictService()
        try:
            async with factory() as session:
                report = await service.scan(session)
                if report.conflicts:
                    await service.raise_conflict_alerts(session)
        finally:
            if session_factory is None:
                await async_engine.dispose()

        result = {
            **report.summary,
            "health_score": report.health_score,
            "status": report.status,
        }
        logger.info("Conflict sweep completed", extra=result)
        return result


@celery_app.task(name="meshledger.worker.tasks.probe_all_equipment", bind=True)
def probe_all_equipment_task(self) -> dict:
    """Celery task: one probe cycle over all assigned equipment."""
    try:
        return _run_async(_probe_all_equipment_async(self))
    except SoftTimeLimitExceeded:
        logger.error("Probe task exceeded soft time limit")
        raise


@celery_app.task(
    name="meshledger.worker.tasks.scan_conflicts", bind=True, max_retries=3
)
def scan_conflicts_task(self) -> dict:
    """Celery task: conflict sweep with alerting."""
    try:
        return _run_async(_scan_conflicts_async(self))
    except SoftTimeLimitExceeded:
        logger.error("Conflict sweep exceeded soft time limit")
        raise
    except Exception as exc:
        logger.error("Conflict sweep failed", extra={"error": str(exc)})
        raise self.retry(exc=exc, countdown=30)
