"""Liveness probing, heartbeat and monitor schemas."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from meshledger.models.equipment import EquipmentStatus


class ProbeResultResponse(BaseModel):
    """Outcome of probing one equipment."""

    equipment_id: str
    ip_address: Optional[str]
    is_reachable: bool
    old_status: EquipmentStatus
    new_status: EquipmentStatus
    status_changed: bool
    latency_ms: Optional[float]
    mesh_strength: Optional[int]
    error: Optional[str]
    outcome: str

    model_config = {"from_attributes": True}


class ProbeCycleResponse(BaseModel):
    summary: Dict[str, int]
    results: List[ProbeResultResponse]


class HeartbeatRequest(BaseModel):
    """Self-reported liveness signal from equipment."""

    mesh_strength: int = Field(..., description="Signal strength 0-100")
    data_rate: Optional[float] = Field(default=None, ge=0)
    location: Optional[str] = Field(default=None, max_length=200)
    timestamp: Optional[datetime] = None


class HeartbeatResponse(BaseModel):
    equipment_id: str
    old_status: EquipmentStatus
    new_status: EquipmentStatus
    last_seen: datetime
    mesh_strength: int
    outcome: str

    model_config = {"from_attributes": True}


class CommunicationStatusResponse(BaseModel):
    equipment_id: str
    name: str
    status: EquipmentStatus
    is_online: bool
    ip_address: Optional[str]
    mesh_strength: int
    last_seen: Optional[datetime]
    last_seen_text: str
    uptime_percent: int

    model_config = {"from_attributes": True}


class MonitorStatusResponse(BaseModel):
    """State of the background liveness monitor."""

    running: bool
    interval_seconds: float
    cycles: int
    last_run_at: Optional[datetime]
    last_summary: Optional[Dict[str, int]]
    last_error: Optional[str]


class MonitorControlResponse(BaseModel):
    changed: bool
    status: MonitorStatusResponse

