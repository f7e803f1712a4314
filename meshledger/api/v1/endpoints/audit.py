"""Audit log endpoints."""

from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, Query, status

from meshledger.api.deps import ActorId, DbSession, get_audit_service
from meshledger.schemas.audit import AuditLogCreate, AuditLogResponse
from meshledger.services.audit_service import AuditService

router = APIRouter()

Audit = Annotated[AuditService, Depends(get_audit_service)]


@router.post(
    "",
    response_model=AuditLogResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Append an audit entry",
)
async def append_entry(
    data: AuditLogCreate, session: DbSession, actor_id: ActorId, audit: Audit
):
    entry = await audit.append(
        session,
        action=data.action,
        entity_type=data.entity_type,
        entity_id=data.entity_id,
        actor_id=actor_id,
        equipment_id=data.equipment_id,
        ip_address_id=data.ip_address_id,
        details=data.details,
    )
    await session.commit()
    return entry


@router.get("", response_model=List[AuditLogResponse], summary="List audit entries")
async def list_entries(
    session: DbSession,
    audit: Audit,
    entity_type: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    equipment_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    """Entries newest first."""
    return await audit.list_entries(
        session,
        entity_type=entity_type,
        action=action,
        equipment_id=equipment_id,
        limit=limit,
        offset=offset,
    )
