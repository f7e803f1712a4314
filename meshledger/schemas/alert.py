"""Alert schemas."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from meshledger.models.alert import AlertSeverity, AlertStatus, AlertType


class AlertCreate(BaseModel):
    """Schema for raising an alert manually."""

    type: AlertType
    severity: Optional[AlertSeverity] = Field(
        default=None, description="Defaults to the type's severity"
    )
    title: Optional[str] = Field(default=None, max_length=200)
    message: Optional[str] = Field(default=None, max_length=1000)
    equipment_id: Optional[str] = None
    ip_address_id: Optional[int] = None
    entity_type: Optional[str] = Field(default=None, max_length=50)
    entity_id: Optional[str] = Field(default=None, max_length=100)
    details: Optional[Dict[str, Any]] = None


class AlertResponse(BaseModel):
    """Schema for alert response."""

    id: int
    type: AlertType
    severity: AlertSeverity
    status: AlertStatus
    title: str
    message: str
    equipment_id: Optional[str]
    ip_address_id: Optional[int]
    entity_type: Optional[str]
    entity_id: Optional[str]
    details: Optional[Dict[str, Any]]
    resolved_at: Optional[datetime]
    resolved_by: Optional[str]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class AlertStatsResponse(BaseModel):
    total: int
    pending: int
    resolved: int
    pending_by_severity: Dict[str, int]
    pending_by_type: Dict[str, int]
