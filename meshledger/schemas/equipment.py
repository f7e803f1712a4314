"""Equipment schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from meshledger.models.equipment import EquipmentStatus, EquipmentType


class EquipmentBase(BaseModel):
    """Base equipment schema with common fields."""

    name: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Equipment name",
        examples=["Haul Truck 07"],
    )
    type: EquipmentType = Field(
        default=EquipmentType.OTHER, description="Equipment type"
    )
    mac_address: Optional[str] = Field(
        default=None, max_length=17, examples=["AA:BB:CC:DD:EE:01"]
    )
    location: Optional[str] = Field(default=None, max_length=200)
    node_id: Optional[str] = Field(default=None, max_length=100)


class EquipmentCreate(EquipmentBase):
    """Schema for registering equipment."""

    id: Optional[str] = Field(
        default=None,
        max_length=50,
        description="Identifier; generated when omitted",
        examples=["eq-truck-07"],
    )
    mesh_strength: int = Field(default=0, ge=0, le=100)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Name must not be blank")
        return v.strip()


class EquipmentUpdate(BaseModel):
    """Schema for updating equipment. Status is changed through /status."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[EquipmentType] = None
    mac_address: Optional[str] = Field(default=None, max_length=17)
    location: Optional[str] = Field(default=None, max_length=200)
    node_id: Optional[str] = Field(default=None, max_length=100)
    mesh_strength: Optional[int] = Field(default=None, ge=0, le=100)


class EquipmentStatusUpdate(BaseModel):
    status: EquipmentStatus
    reason: Optional[str] = Field(default=None, max_length=200)


class EquipmentResponse(EquipmentBase):
    """Schema for equipment response."""

    id: str
    status: EquipmentStatus
    mesh_strength: int
    last_seen: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class EquipmentUpdateResponse(BaseModel):
    outcome: str
    equipment: EquipmentResponse
    changes: Dict[str, Dict[str, Any]]

    model_config = {"from_attributes": True}


class StatusChangeResponse(BaseModel):
    outcome: str
    equipment: EquipmentResponse
    old_status: EquipmentStatus
    new_status: EquipmentStatus

    model_config = {"from_attributes": True}


class DeletionResponse(BaseModel):
    """Summary of an equipment deletion cascade."""

    outcome: str
    equipment_id: str
    name: str
    released_assignment_ids: List[int]
    released_ips: List[str]
    alerts_detached: int

    model_config = {"from_attributes": True}
