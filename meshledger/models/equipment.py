"""Equipment model for mesh-connected machines and nodes."""

import secrets
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field

from meshledger.models.base import TimestampModel


class EquipmentStatus(str, Enum):
    """Equipment liveness status.

    MAINTENANCE is set by an administrator and lasts only until the next
    probe cycle re-derives ONLINE or OFFLINE.
    """

    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"
    MAINTENANCE = "MAINTENANCE"
    UNKNOWN = "UNKNOWN"


class EquipmentType(str, Enum):
    """Kinds of equipment found on a site mesh."""

    HAUL_TRUCK = "HAUL_TRUCK"
    EXCAVATOR = "EXCAVATOR"
    DOZER = "DOZER"
    LOADER = "LOADER"
    DRILL = "DRILL"
    GRADER = "GRADER"
    WATER_TRUCK = "WATER_TRUCK"
    LIGHT_VEHICLE = "LIGHT_VEHICLE"
    MESH_NODE = "MESH_NODE"
    ACCESS_POINT = "ACCESS_POINT"
    OTHER = "OTHER"


def generate_equipment_id() -> str:
    """Generate an equipment identifier such as ``eq-1a2b3c4d``."""
    return f"eq-{secrets.token_hex(4)}"


class Equipment(TimestampModel, table=True):
    """Equipment registered on the mesh."""

    __tablename__ = "equipment"

    id: str = Field(
        default_factory=generate_equipment_id,
        primary_key=True,
        max_length=50,
        description="Equipment identifier (e.g., eq-1a2b3c4d)",
    )
    name: str = Field(nullable=False, max_length=100)
    type: EquipmentType = Field(default=EquipmentType.OTHER)

    status: EquipmentStatus = Field(
        default=EquipmentStatus.OFFLINE,
        index=True,
        description="ONLINE, OFFLINE, MAINTENANCE or UNKNOWN",
    )

    mac_address: Optional[str] = Field(
        default=None,
        unique=True,
        max_length=17,
        description="Normalized MAC (AA:BB:CC:DD:EE:FF)",
    )
    location: Optional[str] = Field(default=None, max_length=200)
    mesh_strength: int = Field(
        default=0,
        ge=0,
        le=100,
        description="Signal quality heuristic derived from probe latency",
    )
    node_id: Optional[str] = Field(default=None, max_length=100)
    last_seen: Optional[datetime] = Field(default=None)

    def __repr__(self) -> str:
        return f"<Equipment(id='{self.id}', name='{self.name}', status='{self.status}')>"
