"""In-process liveness monitor running probe cycles on a fixed interval."""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from meshledger.config import settings
from meshledger.events.publisher import EventPublisher
from meshledger.services.alert_service import AlertService
from meshledger.services.probe_service import ProbeResult, ProbeService, summarize
from meshledger.utils.context import operation_context
from meshledger.utils.logger import get_logger
from meshledger.utils.timeutils import utc_now

logger = get_logger(__name__)

Ticker = Callable[[], Awaitable[None]]


class MonitorScheduler:
    """Periodic probe loop with explicit start/stop.

    The first cycle runs right after ``start``; each following cycle waits
    on ``ticker``, which defaults to sleeping ``interval`` seconds. Tests
    inject their own ticker to drive cycles deterministically.

    Stopping cancels the wait between cycles but not a cycle in progress:
    in-flight probes run to their own timeout and the loop exits afterwards.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        interval: Optional[float] = None,
        ticker: Optional[Ticker] = None,
        pinger: Optional[Any] = None,
        batch_size: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.interval = interval or settings.MONITOR_INTERVAL_SECONDS
        self.ticker = ticker or self._sleep
        self.service = ProbeService(pinger=pinger, batch_size=batch_size)
        self.alerts = AlertService()

        self.cycles = 0
        self.last_run_at = None
        self.last_summary: Optional[Dict[str, int]] = None
        self.last_error: Optional[str] = None

        self._task: Optional[asyncio.Task] = None
        self._stop_requested = False
        self._waiting = False

    async def _sleep(self) -> None:
        await asyncio.sleep(self.interval)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the loop. Returns False if it was already running."""
        if self.is_running:
            logger.debug("Monitor already running")
            return False

        self._stop_requested = False
        self._task = asyncio.create_task(self._loop(), name="meshledger-monitor")
        logger.info("Monitor started", extra={"interval_seconds": self.interval})
        return True

    async def stop(self) -> bool:
        """Stop the loop. Returns False if it was not running."""
        if not self.is_running:
            return False

        self._stop_requested = True
        if self._waiting:
            self._task.cancel()

        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

        logger.info("Monitor stopped", extra={"cycles": self.cycles})
        return True

    async def _loop(self) -> None:
        while not self._stop_requested:
            await self.run_cycle()
            if self._stop_requested:
                break

            self._waiting = True
            try:
                await self.ticker()
            finally:
                self._waiting = False

    async def run_cycle(self) -> List[ProbeResult]:
        """Run one probe cycle. Errors are logged, never raised.

        The first failure after a good cycle also raises a SYSTEM_ERROR alert.
        """
        with operation_context("monitor.cycle", actor_id=settings.SYSTEM_ACTOR_ID):
            previous_error = self.last_error
            try:
                async with self.session_factory() as session:
                    results = await self.service.probe_all(session)
            except Exception as e:
                self.last_error = f"{type(e).__name__}: {e}"
                logger.error(
                    "Probe cycle failed",
                    extra={"error": str(e), "error_type": type(e).__name__},
                )
                results = []
                if previous_error is None:
                    await self._alert_failure(e)
            else:
                self.last_error = None

        self.cycles += 1
        self.last_run_at = utc_now()
        self.last_summary = summarize(results)
        return results

    async def _alert_failure(self, error: Exception) -> None:
        try:
            async with self.session_factory() as session:
                await self.alerts.alert_system_error(
                    session,
                    "Monitor cycle failed",
                    f"Liveness monitoring stopped working: {error}",
                    details={"error_type": type(error).__name__, "cycle": self.cycles + 1},
                )
                await session.commit()
                await EventPublisher.publish_deferred(session)
        except Exception as e:
            logger.warning(
                "Monitor failure alert dropped",
                extra={"error": str(e), "error_type": type(e).__name__},
            )

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "interval_seconds": self.interval,
            "cycles": self.cycles,
            "last_run_at": self.last_run_at,
            "last_summary": self.last_summary,
            "last_error": self.last_error,
        }
