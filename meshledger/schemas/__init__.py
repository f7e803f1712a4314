"""Schemas package for request/response validation."""

from meshledger.schemas.common import (
    ErrorResponse,
    PaginatedResponse,
    HealthCheckResponse,
)
from meshledger.schemas.assignment import (
    AssignmentCreate,
    ReleaseRequest,
    IPAddressResponse,
    AssignmentResponse,
    AssignmentWithIPResponse,
    AssignmentResultResponse,
    ReleaseResultResponse,
    IPCheckResponse,
)
from meshledger.schemas.conflict import (
    ConflictReportResponse,
    ResolveConflictRequest,
    ResolveResultResponse,
    FixOrphanRequest,
    FixOrphanResponse,
    ReconcileResponse,
    ConflictAlertsResponse,
)
from meshledger.schemas.equipment import (
    EquipmentCreate,
    EquipmentUpdate,
    EquipmentStatusUpdate,
    EquipmentResponse,
    EquipmentUpdateResponse,
    StatusChangeResponse,
    DeletionResponse,
)
from meshledger.schemas.probe import (
    ProbeResultResponse,
    ProbeCycleResponse,
    HeartbeatRequest,
    HeartbeatResponse,
    CommunicationStatusResponse,
    MonitorStatusResponse,
    MonitorControlResponse,
)
from meshledger.schemas.alert import AlertCreate, AlertResponse, AlertStatsResponse
from meshledger.schemas.audit import AuditLogCreate, AuditLogResponse

__all__ = [
    "ErrorResponse",
    "PaginatedResponse",
    "HealthCheckResponse",
    "AssignmentCreate",
    "ReleaseRequest",
    "IPAddressResponse",
    "AssignmentResponse",
    "AssignmentWithIPResponse",
    "AssignmentResultResponse",
    "ReleaseResultResponse",
    "IPCheckResponse",
    "ConflictReportResponse",
    "ResolveConflictRequest",
    "ResolveResultResponse",
    "FixOrphanRequest",
    "FixOrphanResponse",
    "ReconcileResponse",
    "ConflictAlertsResponse",
    "EquipmentCreate",
    "EquipmentUpdate",
    "EquipmentStatusUpdate",
    "EquipmentResponse",
    "EquipmentUpdateResponse",
    "StatusChangeResponse",
    "DeletionResponse",
    "ProbeResultResponse",
    "ProbeCycleResponse",
    "HeartbeatRequest",
    "HeartbeatResponse",
    "CommunicationStatusResponse",
    "MonitorStatusResponse",
    "MonitorControlResponse",
    "AlertCreate",
    "AlertResponse",
    "AlertStatsResponse",
    "AuditLogCreate",
    "AuditLogResponse",
]
