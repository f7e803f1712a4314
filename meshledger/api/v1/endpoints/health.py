"""Health check endpoint."""

from fastapi import APIRouter, Request
from sqlalchemy import text

from meshledger import __version__
from meshledger.api.deps import DbSession
from meshledger.schemas import HealthCheckResponse

router = APIRouter()


@router.get("", response_model=HealthCheckResponse)
async def health_check(request: Request, db: DbSession) -> HealthCheckResponse:
    """
    Health check endpoint.

    Returns the status of the API, the database connection and the
    liveness monitor.
    """
    try:
        await db.execute(text("SELECT 1"))
        database_status = "connected"
    except Exception as e:
        database_status = f"error: {str(e)}"

    monitor = getattr(request.app.state, "monitor", None)
    running = monitor is not None and monitor.is_running
    monitor_status = "running" if running else "stopped"

    return HealthCheckResponse(
        status="healthy" if database_status == "connected" else "degraded",
        version=__version__,
        database=database_status,
        monitor=monitor_status,
    )
