"""Audit log schemas."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class AuditLogCreate(BaseModel):
    """Schema for appending an audit entry."""

    action: str = Field(..., min_length=1, max_length=50, examples=["IP_ASSIGNED"])
    entity_type: str = Field(..., min_length=1, max_length=50)
    entity_id: Optional[str] = Field(default=None, max_length=100)
    equipment_id: Optional[str] = None
    ip_address_id: Optional[int] = None
    details: Optional[Dict[str, Any]] = None


class AuditLogResponse(BaseModel):
    id: int
    action: str
    entity_type: str
    entity_id: Optional[str]
    user_id: str
    equipment_id: Optional[str]
    ip_address_id: Optional[int]
    details: Optional[Dict[str, Any]]
    created_at: datetime

    model_config = {"from_attributes": True}
