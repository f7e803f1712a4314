"""Conflict detection and repair endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends

from meshledger.api.deps import ActorId, DbSession, get_conflict_service
from meshledger.schemas.conflict import (
    ConflictAlertsResponse,
    ConflictReportResponse,
    FixOrphanRequest,
    FixOrphanResponse,
    ReconcileResponse,
    ResolveConflictRequest,
    ResolveResultResponse,
)
from meshledger.services.conflict_service import ConflictService
from meshledger.utils.context import set_context
from meshledger.utils.telemetry import get_tracer, add_span_attributes

tracer = get_tracer()

router = APIRouter()

Conflicts = Annotated[ConflictService, Depends(get_conflict_service)]


@router.get(
    "",
    response_model=ConflictReportResponse,
    summary="Scan for conflicts",
    description="Report IPs with several active holders, equipment holding "
    "several IPs, orphaned ASSIGNED addresses and the ledger health score.",
)
async def scan_conflicts(session: DbSession, conflicts: Conflicts):
    report = await conflicts.scan(session)
    return ConflictReportResponse.model_validate(report)


@router.post(
    "/resolve",
    response_model=ResolveResultResponse,
    summary="Resolve an IP conflict",
    description="Keep one active assignment and deactivate the others. Without "
    "keep_assignment_id the earliest assignment is kept.",
)
async def resolve_conflict(
    data: ResolveConflictRequest,
    session: DbSession,
    actor_id: ActorId,
    conflicts: Conflicts,
):
    with tracer.start_as_current_span("api.conflict.resolve"):
        set_context(action="conflict.resolve")
        add_span_attributes(
            **{"ip.address": data.ip_address, "keep.id": data.keep_assignment_id}
        )
        if data.keep_assignment_id is None:
            result = await conflicts.auto_resolve(
                session, data.ip_address, actor_id=actor_id
            )
        else:
            result = await conflicts.resolve_conflict(
                session, data.ip_address, data.keep_assignment_id, actor_id=actor_id
            )
        return ResolveResultResponse.model_validate(result)


@router.post(
    "/fix-orphaned",
    response_model=FixOrphanResponse,
    summary="Fix an orphaned IP",
)
async def fix_orphaned(
    data: FixOrphanRequest,
    session: DbSession,
    actor_id: ActorId,
    conflicts: Conflicts,
):
    set_context(action="conflict.fix_orphaned")
    result = await conflicts.fix_orphaned(session, data.ip_address, actor_id=actor_id)
    return FixOrphanResponse.model_validate(result)


@router.post(
    "/reconcile",
    response_model=ReconcileResponse,
    summary="Repair derived state",
    description="Force equipment without an active assignment OFFLINE and "
    "recompute stored IP statuses.",
)
async def reconcile(session: DbSession, actor_id: ActorId, conflicts: Conflicts):
    set_context(action="conflict.reconcile")
    result = await conflicts.reconcile(session, actor_id=actor_id)
    return ReconcileResponse.model_validate(result)


@router.post(
    "/alerts",
    response_model=ConflictAlertsResponse,
    summary="Raise alerts for current conflicts",
)
async def raise_conflict_alerts(session: DbSession, conflicts: Conflicts):
    count = await conflicts.raise_conflict_alerts(session)
    return ConflictAlertsResponse(conflicting_ips=count)
