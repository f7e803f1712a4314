"""IP address and assignment schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from meshledger.models.ip_address import IPStatus


class AssignmentCreate(BaseModel):
    """Schema for assigning an IP address to equipment."""

    ip_address: str = Field(
        ..., max_length=15, description="Dotted-quad IPv4", examples=["10.0.0.5"]
    )
    equipment_id: str = Field(..., min_length=1, max_length=50)
    notes: Optional[str] = Field(default=None, max_length=500)


class ReleaseRequest(BaseModel):
    """Selector for the assignment to release.

    Give exactly one of: assignment_id, (ip_address_id and equipment_id), or ip.
    """

    assignment_id: Optional[int] = None
    ip_address_id: Optional[int] = None
    equipment_id: Optional[str] = None
    ip: Optional[str] = Field(default=None, examples=["10.0.0.5"])


class IPAddressResponse(BaseModel):
    """Schema for IP address response."""

    id: int
    address: str
    subnet: str
    gateway: str
    dns: str
    status: IPStatus
    is_reserved: bool
    notes: Optional[str]
    updated_at: datetime

    model_config = {"from_attributes": True}


class AssignmentResponse(BaseModel):
    """Schema for assignment response."""

    id: int
    ip_address_id: int
    equipment_id: Optional[str]
    user_id: str
    is_active: bool
    assigned_at: datetime
    released_at: Optional[datetime]
    notes: Optional[str]

    model_config = {"from_attributes": True}


class AssignmentWithIPResponse(AssignmentResponse):
    ip_address: str


class AssignmentResultResponse(BaseModel):
    outcome: str
    assignment: AssignmentResponse
    ip_address: IPAddressResponse
    ip_created: bool
    equipment_status_changed: bool

    model_config = {"from_attributes": True}


class ReleaseResultResponse(BaseModel):
    outcome: str
    assignment: AssignmentResponse
    ip_address: IPAddressResponse
    remaining_active: int
    equipment_status_changed: bool

    model_config = {"from_attributes": True}


class IPCheckResponse(BaseModel):
    """Availability of one address."""

    address: str
    status: str = Field(
        ..., description="invalid, available, assigned, reserved or conflict"
    )
    available: bool
    holders: List[Dict[str, Any]] = []

    model_config = {"from_attributes": True}
