"""Liveness monitor control endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends

from meshledger.api.deps import get_monitor
from meshledger.monitor.scheduler import MonitorScheduler
from meshledger.schemas.probe import (
    MonitorControlResponse,
    MonitorStatusResponse,
    ProbeCycleResponse,
    ProbeResultResponse,
)
from meshledger.services.probe_service import summarize

router = APIRouter()

Monitor = Annotated[MonitorScheduler, Depends(get_monitor)]


@router.get("", response_model=MonitorStatusResponse, summary="Monitor status")
async def monitor_status(monitor: Monitor):
    return monitor.status()


@router.post("/start", response_model=MonitorControlResponse)
async def start_monitor(monitor: Monitor):
    """Start periodic probing. Starting a running monitor changes nothing."""
    changed = monitor.start()
    return MonitorControlResponse(changed=changed, status=monitor.status())


@router.post("/stop", response_model=MonitorControlResponse)
async def stop_monitor(monitor: Monitor):
    """Stop periodic probing. Stopping a stopped monitor changes nothing."""
    changed = await monitor.stop()
    return MonitorControlResponse(changed=changed, status=monitor.status())


@router.post(
    "/run",
    response_model=ProbeCycleResponse,
    summary="Run one probe cycle now",
)
async def run_cycle(monitor: Monitor):
    results = await monitor.run_cycle()
    return ProbeCycleResponse(
        summary=summarize(results),
        results=[ProbeResultResponse.model_validate(r) for r in results],
    )
