"""Dependencies for API endpoints."""

from typing import Annotated, AsyncGenerator, Optional

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from meshledger.config import settings
from meshledger.core.exceptions import DependencyError
from meshledger.database import get_async_session
from meshledger.monitor.scheduler import MonitorScheduler
from meshledger.services.alert_service import AlertService
from meshledger.services.audit_service import AuditService
from meshledger.services.conflict_service import ConflictService
from meshledger.services.equipment_service import EquipmentService
from meshledger.services.ledger_service import LedgerService
from meshledger.services.probe_service import ProbeService


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get database session."""
    async for session in get_async_session():
        yield session


async def get_actor_id(
    x_actor_id: Annotated[Optional[str], Header()] = None,
) -> str:
    """Acting user taken from the X-Actor-ID header."""
    if x_actor_id and x_actor_id.strip():
        return x_actor_id.strip()
    return settings.SYSTEM_ACTOR_ID


def get_monitor(request: Request) -> MonitorScheduler:
    """Get the liveness monitor attached to the application."""
    monitor = getattr(request.app.state, "monitor", None)
    if monitor is None:
        raise DependencyError("Liveness monitor is not configured")
    return monitor


def get_ledger_service() -> LedgerService:
    return LedgerService()


def get_conflict_service() -> ConflictService:
    return ConflictService()


def get_equipment_service() -> EquipmentService:
    return EquipmentService()


def get_probe_service() -> ProbeService:
    return ProbeService()


def get_alert_service() -> AlertService:
    return AlertService()


def get_audit_service() -> AuditService:
    return AuditService()


DbSession = Annotated[AsyncSession, Depends(get_db)]
ActorId = Annotated[str, Depends(get_actor_id)]
