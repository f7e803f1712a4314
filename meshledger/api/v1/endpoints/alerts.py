"""Alert endpoints."""

import math
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, status

from meshledger.api.deps import ActorId, DbSession, get_alert_service
from meshledger.events.publisher import EventPublisher
from meshledger.models import AlertSeverity, AlertStatus, AlertType
from meshledger.schemas.alert import AlertCreate, AlertResponse, AlertStatsResponse
from meshledger.schemas.common import PaginatedResponse
from meshledger.services.alert_service import AlertService
from meshledger.utils.context import set_context

router = APIRouter()

Alerts = Annotated[AlertService, Depends(get_alert_service)]


@router.post(
    "",
    response_model=AlertResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Raise an alert",
)
async def create_alert(data: AlertCreate, session: DbSession, alerts: Alerts):
    set_context(action="alert.create")
    alert = await alerts.create_alert(
        session,
        data.type,
        severity=data.severity,
        title=data.title,
        message=data.message,
        equipment_id=data.equipment_id,
        ip_address_id=data.ip_address_id,
        entity_type=data.entity_type,
        entity_id=data.entity_id,
        details=data.details,
    )
    await session.commit()
    await EventPublisher.publish_deferred(session)
    return alert


@router.get("", response_model=PaginatedResponse[AlertResponse], summary="List alerts")
async def list_alerts(
    session: DbSession,
    alerts: Alerts,
    status_filter: Optional[AlertStatus] = Query(None, alias="status"),
    severity: Optional[AlertSeverity] = Query(None),
    type_filter: Optional[AlertType] = Query(None, alias="type"),
    equipment_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=500, description="Items per page"),
):
    offset = (page - 1) * page_size
    items, total = await alerts.list_alerts(
        session,
        status=status_filter,
        severity=severity,
        alert_type=type_filter,
        equipment_id=equipment_id,
        limit=page_size,
        offset=offset,
    )
    return PaginatedResponse[AlertResponse](
        items=[AlertResponse.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=math.ceil(total / page_size) if total > 0 else 0,
    )


@router.get("/stats", response_model=AlertStatsResponse, summary="Alert counters")
async def alert_stats(session: DbSession, alerts: Alerts):
    return await alerts.stats(session)


@router.get("/{alert_id}", response_model=AlertResponse)
async def get_alert(alert_id: int, session: DbSession, alerts: Alerts):
    return await alerts.get_alert(session, alert_id)


@router.post(
    "/{alert_id}/resolve",
    response_model=AlertResponse,
    summary="Resolve an alert",
)
async def resolve_alert(
    alert_id: int, session: DbSession, actor_id: ActorId, alerts: Alerts
):
    set_context(action="alert.resolve")
    return await alerts.resolve_alert(session, alert_id, resolved_by=actor_id)
