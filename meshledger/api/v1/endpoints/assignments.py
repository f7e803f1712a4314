"""IP assignment endpoints."""

import math
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, status

from meshledger.api.deps import ActorId, DbSession, get_ledger_service
from meshledger.schemas.assignment import (
    AssignmentCreate,
    AssignmentResponse,
    AssignmentResultResponse,
    AssignmentWithIPResponse,
    IPCheckResponse,
    ReleaseRequest,
    ReleaseResultResponse,
)
from meshledger.schemas.common import PaginatedResponse
from meshledger.services.ledger_service import AssignmentSelector, LedgerService
from meshledger.utils.context import set_context
from meshledger.utils.logger import get_logger
from meshledger.utils.telemetry import get_tracer, add_span_attributes

logger = get_logger(__name__)
tracer = get_tracer()

router = APIRouter()

Ledger = Annotated[LedgerService, Depends(get_ledger_service)]


@router.post(
    "",
    response_model=AssignmentResultResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Assign an IP address",
    description="Bind an IP address to equipment. Returns 409 with the current "
    "holder when the address is already in use.",
)
async def assign_ip(
    data: AssignmentCreate,
    session: DbSession,
    actor_id: ActorId,
    ledger: Ledger,
):
    with tracer.start_as_current_span("api.assignment.create"):
        set_context(action="ip.assign", equipment_id=data.equipment_id)
        add_span_attributes(
            **{"ip.address": data.ip_address, "equipment.id": data.equipment_id}
        )
        result = await ledger.assign(
            session,
            ip_address=data.ip_address,
            equipment_id=data.equipment_id,
            actor_id=actor_id,
            notes=data.notes,
        )
        return AssignmentResultResponse.model_validate(result)


@router.post(
    "/release",
    response_model=ReleaseResultResponse,
    summary="Release an assignment",
    description="Deactivate one assignment selected by id, by "
    "(ip_address_id, equipment_id) or by bare IP address.",
)
async def release_ip(
    data: ReleaseRequest,
    session: DbSession,
    actor_id: ActorId,
    ledger: Ledger,
):
    with tracer.start_as_current_span("api.assignment.release"):
        set_context(action="ip.release")
        selector = AssignmentSelector(
            assignment_id=data.assignment_id,
            ip_address_id=data.ip_address_id,
            equipment_id=data.equipment_id,
            ip=data.ip,
        )
        result = await ledger.release(session, selector, actor_id=actor_id)
        return ReleaseResultResponse.model_validate(result)


@router.get(
    "",
    response_model=PaginatedResponse[AssignmentWithIPResponse],
    summary="List assignments",
)
async def list_assignments(
    session: DbSession,
    ledger: Ledger,
    active_only: bool = Query(True, description="Only active assignments"),
    equipment_id: Optional[str] = Query(None),
    ip_address: Optional[str] = Query(None),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=500, description="Items per page"),
):
    offset = (page - 1) * page_size
    rows, total = await ledger.list_assignments(
        session,
        active_only=active_only,
        equipment_id=equipment_id,
        ip_address=ip_address,
        limit=page_size,
        offset=offset,
    )
    items = [
        AssignmentWithIPResponse(
            **AssignmentResponse.model_validate(assignment).model_dump(),
            ip_address=ip_row.address,
        )
        for assignment, ip_row in rows
    ]
    return PaginatedResponse[AssignmentWithIPResponse](
        items=items,
        total=total,
        page=page,
        page_size=page_size,
        total_pages=math.ceil(total / page_size) if total > 0 else 0,
    )


@router.get(
    "/check/{ip_address}",
    response_model=IPCheckResponse,
    summary="Check IP availability",
)
async def check_ip(ip_address: str, session: DbSession, ledger: Ledger):
    result = await ledger.check_ip(session, ip_address)
    return IPCheckResponse.model_validate(result)
