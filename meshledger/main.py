"""Main FastAPI application."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from meshledger import __version__
from meshledger.config import settings
from meshledger.core.exceptions import LedgerError
from meshledger.database import async_engine, async_session_maker, create_db_and_tables
from meshledger.monitor.scheduler import MonitorScheduler
from meshledger.utils.logger import setup_logging, get_logger
from meshledger.utils.telemetry import (
    setup_telemetry,
    instrument_app,
    instrument_redis,
    instrument_sqlalchemy,
)
from meshledger.middleware.rate_limit import limiter
from meshledger.middleware.logging import LoggingMiddleware
from meshledger.api.v1.router import api_router

setup_logging()
setup_telemetry()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan events."""
    logger.info(
        f"Starting {settings.PROJECT_NAME}",
        extra={
            "version": __version__,
            "environment": settings.ENVIRONMENT,
            "debug": settings.DEBUG,
            "api_prefix": settings.API_V1_PREFIX,
            "monitor_enabled": settings.MONITOR_ENABLED,
        },
    )

    instrument_app(app)
    instrument_sqlalchemy(async_engine.sync_engine)
    if settings.ALERT_EVENTS_ENABLED:
        instrument_redis()

    await create_db_and_tables()

    app.state.monitor = MonitorScheduler(async_session_maker)
    if settings.MONITOR_ENABLED:
        app.state.monitor.start()

    yield

    await app.state.monitor.stop()
    logger.info(f"Shutting down {settings.PROJECT_NAME}")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=__version__,
    description="IP allocation ledger and liveness monitor for mesh-networked equipment",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
    debug=settings.DEBUG,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

# Added last so it wraps the limiter and logs rejected requests too
app.add_middleware(LoggingMiddleware)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    """Render domain errors as {"detail": ...} with their status code."""
    if exc.status_code >= 500:
        logger.error(
            "Request failed with ledger error",
            extra={"error": exc.detail, "error_type": type(exc).__name__},
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/", tags=["Root"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": settings.PROJECT_NAME,
        "version": __version__,
        "environment": settings.ENVIRONMENT,
        "docs_url": "/docs",
        "health_check": f"{settings.API_V1_PREFIX}/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "meshledger.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
