"""Equipment management endpoints."""

import math
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, status

from meshledger.api.deps import (
    ActorId,
    DbSession,
    get_equipment_service,
    get_probe_service,
)
from meshledger.models import EquipmentStatus, EquipmentType
from meshledger.schemas.common import PaginatedResponse
from meshledger.schemas.equipment import (
    DeletionResponse,
    EquipmentCreate,
    EquipmentResponse,
    EquipmentStatusUpdate,
    EquipmentUpdate,
    EquipmentUpdateResponse,
    StatusChangeResponse,
)
from meshledger.schemas.probe import (
    CommunicationStatusResponse,
    HeartbeatRequest,
    HeartbeatResponse,
    ProbeResultResponse,
)
from meshledger.services.equipment_service import EquipmentService
from meshledger.services.probe_service import ProbeService
from meshledger.utils.context import set_context
from meshledger.utils.logger import get_logger
from meshledger.utils.telemetry import get_tracer, add_span_attributes

logger = get_logger(__name__)
tracer = get_tracer()

router = APIRouter()

Equipments = Annotated[EquipmentService, Depends(get_equipment_service)]
Prober = Annotated[ProbeService, Depends(get_probe_service)]


@router.post(
    "",
    response_model=EquipmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register equipment",
    description="Register new equipment. It starts OFFLINE until it holds an IP.",
)
async def create_equipment(
    data: EquipmentCreate,
    session: DbSession,
    actor_id: ActorId,
    equipment: Equipments,
):
    with tracer.start_as_current_span("api.equipment.create"):
        set_context(action="equipment.create")
        add_span_attributes(
            **{"equipment.name": data.name, "equipment.type": data.type.value}
        )
        return await equipment.create(
            session,
            name=data.name,
            equipment_type=data.type,
            mac_address=data.mac_address,
            location=data.location,
            mesh_strength=data.mesh_strength,
            node_id=data.node_id,
            equipment_id=data.id,
            actor_id=actor_id,
        )


@router.get(
    "",
    response_model=PaginatedResponse[EquipmentResponse],
    summary="List equipment",
)
async def list_equipment(
    session: DbSession,
    equipment: Equipments,
    status_filter: Optional[EquipmentStatus] = Query(None, alias="status"),
    type_filter: Optional[EquipmentType] = Query(None, alias="type"),
    search: Optional[str] = Query(None, description="Name contains"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=500, description="Items per page"),
):
    offset = (page - 1) * page_size
    items, total = await equipment.list(
        session,
        status=status_filter,
        equipment_type=type_filter,
        search=search,
        limit=page_size,
        offset=offset,
    )
    return PaginatedResponse[EquipmentResponse](
        items=[EquipmentResponse.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=math.ceil(total / page_size) if total > 0 else 0,
    )


@router.get("/{equipment_id}", response_model=EquipmentResponse)
async def get_equipment(equipment_id: str, session: DbSession, equipment: Equipments):
    return await equipment.get(session, equipment_id)


@router.patch(
    "/{equipment_id}",
    response_model=EquipmentUpdateResponse,
    summary="Update equipment",
)
async def update_equipment(
    equipment_id: str,
    data: EquipmentUpdate,
    session: DbSession,
    actor_id: ActorId,
    equipment: Equipments,
):
    set_context(action="equipment.update", equipment_id=equipment_id)
    result = await equipment.update(
        session, equipment_id, data.model_dump(exclude_unset=True), actor_id=actor_id
    )
    return EquipmentUpdateResponse.model_validate(result)


@router.put(
    "/{equipment_id}/status",
    response_model=StatusChangeResponse,
    summary="Override equipment status",
    description="Administrative override such as MAINTENANCE. The next probe "
    "cycle re-derives ONLINE or OFFLINE.",
)
async def set_equipment_status(
    equipment_id: str,
    data: EquipmentStatusUpdate,
    session: DbSession,
    actor_id: ActorId,
    equipment: Equipments,
):
    set_context(action="equipment.status", equipment_id=equipment_id)
    result = await equipment.set_status(
        session, equipment_id, data.status, actor_id=actor_id, reason=data.reason
    )
    return StatusChangeResponse.model_validate(result)


@router.delete(
    "/{equipment_id}",
    response_model=DeletionResponse,
    summary="Delete equipment",
    description="Release every active assignment, detach alerts and remove "
    "the equipment.",
)
async def delete_equipment(
    equipment_id: str,
    session: DbSession,
    actor_id: ActorId,
    equipment: Equipments,
):
    with tracer.start_as_current_span("api.equipment.delete"):
        set_context(action="equipment.delete", equipment_id=equipment_id)
        result = await equipment.delete(session, equipment_id, actor_id=actor_id)
        return DeletionResponse.model_validate(result)


@router.post(
    "/{equipment_id}/probe",
    response_model=ProbeResultResponse,
    summary="Probe equipment now",
)
async def probe_equipment(
    equipment_id: str,
    session: DbSession,
    actor_id: ActorId,
    prober: Prober,
):
    set_context(action="equipment.probe", equipment_id=equipment_id)
    result = await prober.probe_one(session, equipment_id, actor_id=actor_id)
    return ProbeResultResponse.model_validate(result)


@router.post(
    "/{equipment_id}/heartbeat",
    response_model=HeartbeatResponse,
    summary="Record a heartbeat",
)
async def record_heartbeat(
    equipment_id: str,
    data: HeartbeatRequest,
    session: DbSession,
    prober: Prober,
):
    set_context(action="equipment.heartbeat", equipment_id=equipment_id)
    result = await prober.heartbeat(
        session,
        equipment_id,
        mesh_strength=data.mesh_strength,
        data_rate=data.data_rate,
        location=data.location,
        timestamp=data.timestamp,
    )
    return HeartbeatResponse.model_validate(result)


@router.get(
    "/{equipment_id}/communication",
    response_model=CommunicationStatusResponse,
    summary="Communication status",
)
async def communication_status(
    equipment_id: str, session: DbSession, prober: Prober
):
    result = await prober.communication_status(session, equipment_id)
    return CommunicationStatusResponse.model_validate(result)
