"""Main router for API v1."""

from fastapi import APIRouter

from meshledger.api.v1.endpoints import (
    alerts,
    assignments,
    audit,
    conflicts,
    equipment,
    health,
    monitoring,
)

api_router = APIRouter()

api_router.include_router(
    health.router,
    prefix="/health",
    tags=["Health"],
)

api_router.include_router(
    equipment.router,
    prefix="/equipment",
    tags=["Equipment"],
)

api_router.include_router(
    assignments.router,
    prefix="/assignments",
    tags=["Assignments"],
)

api_router.include_router(
    conflicts.router,
    prefix="/conflicts",
    tags=["Conflicts"],
)

api_router.include_router(
    monitoring.router,
    prefix="/monitoring",
    tags=["Monitoring"],
)

api_router.include_router(
    alerts.router,
    prefix="/alerts",
    tags=["Alerts"],
)

api_router.include_router(
    audit.router,
    prefix="/audit",
    tags=["Audit"],
)
