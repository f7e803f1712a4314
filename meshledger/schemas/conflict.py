"""Conflict detection and repair schemas."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from meshledger.models.ip_address import IPStatus


class HolderResponse(BaseModel):
    assignment_id: int
    equipment_id: Optional[str]
    equipment_name: Optional[str]
    location: Optional[str]
    assigned_at: datetime
    user_id: str


class IPConflictResponse(BaseModel):
    ip_address: str
    ip_address_id: int
    conflict_count: int
    holders: List[HolderResponse]

    model_config = {"from_attributes": True}


class DuplicateAddressResponse(BaseModel):
    ip_address: str
    assignment_id: int
    assigned_at: datetime


class DuplicateEquipmentResponse(BaseModel):
    equipment_id: str
    equipment_name: Optional[str]
    assignment_count: int
    ip_addresses: List[DuplicateAddressResponse]

    model_config = {"from_attributes": True}


class OrphanedIPResponse(BaseModel):
    ip_address: str
    ip_address_id: int
    subnet: str
    updated_at: datetime

    model_config = {"from_attributes": True}


class ConflictReportResponse(BaseModel):
    """Result of a conflict scan."""

    summary: Dict[str, int]
    conflicts: List[IPConflictResponse]
    duplicate_equipment: List[DuplicateEquipmentResponse]
    orphaned_ips: List[OrphanedIPResponse]
    health_score: int = Field(..., ge=0, le=100)
    status: str = Field(..., examples=["HEALTHY", "DEGRADED", "CRITICAL"])

    model_config = {"from_attributes": True}


class ResolveConflictRequest(BaseModel):
    """Keep one assignment; without keep_assignment_id the earliest is kept."""

    ip_address: str = Field(..., examples=["10.0.0.9"])
    keep_assignment_id: Optional[int] = None


class ResolveResultResponse(BaseModel):
    outcome: str
    ip_address: str
    kept_assignment_id: int
    deactivated_assignment_ids: List[int]
    ip_status: IPStatus

    model_config = {"from_attributes": True}


class FixOrphanRequest(BaseModel):
    ip_address: str = Field(..., examples=["10.0.0.7"])


class FixOrphanResponse(BaseModel):
    outcome: str
    ip_address: str
    previous_status: IPStatus
    new_status: IPStatus

    model_config = {"from_attributes": True}


class ReconcileResponse(BaseModel):
    outcome: str
    equipment_forced_offline: List[str]
    ip_status_fixed: List[str]
    alerts_resolved: int

    model_config = {"from_attributes": True}


class ConflictAlertsResponse(BaseModel):
    conflicting_ips: int
