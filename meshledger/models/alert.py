"""Alert model and taxonomy."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, ForeignKey, Integer, String
from sqlmodel import Field

from meshledger.models.base import TimestampModel


class AlertType(str, Enum):
    """Alert taxonomy."""

    EQUIPMENT_ADDED = "EQUIPMENT_ADDED"
    EQUIPMENT_UPDATED = "EQUIPMENT_UPDATED"
    EQUIPMENT_DELETED = "EQUIPMENT_DELETED"
    EQUIPMENT_OFFLINE = "EQUIPMENT_OFFLINE"
    IP_ADDRESS_ADDED = "IP_ADDRESS_ADDED"
    IP_ADDRESS_UPDATED = "IP_ADDRESS_UPDATED"
    IP_ADDRESS_DELETED = "IP_ADDRESS_DELETED"
    IP_ASSIGNED = "IP_ASSIGNED"
    IP_UNASSIGNED = "IP_UNASSIGNED"
    IP_CONFLICT = "IP_CONFLICT"
    USER_CREATED = "USER_CREATED"
    USER_UPDATED = "USER_UPDATED"
    USER_DELETED = "USER_DELETED"
    CONFIG_CHANGED = "CONFIG_CHANGED"
    NETWORK_DISCONNECTION = "NETWORK_DISCONNECTION"
    MESH_WEAK_SIGNAL = "MESH_WEAK_SIGNAL"
    MAINTENANCE_REQUIRED = "MAINTENANCE_REQUIRED"
    SECURITY_BREACH = "SECURITY_BREACH"
    SYSTEM_ERROR = "SYSTEM_ERROR"


class AlertSeverity(str, Enum):
    """Alert severity, ordered from least to most severe."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AlertStatus(str, Enum):
    """Alert lifecycle status."""

    PENDING = "PENDING"
    RESOLVED = "RESOLVED"


ALERT_DEFAULT_SEVERITY: Dict[AlertType, AlertSeverity] = {
    AlertType.EQUIPMENT_ADDED: AlertSeverity.INFO,
    AlertType.EQUIPMENT_UPDATED: AlertSeverity.WARNING,
    AlertType.EQUIPMENT_DELETED: AlertSeverity.WARNING,
    AlertType.EQUIPMENT_OFFLINE: AlertSeverity.ERROR,
    AlertType.IP_ADDRESS_ADDED: AlertSeverity.INFO,
    AlertType.IP_ADDRESS_UPDATED: AlertSeverity.WARNING,
    AlertType.IP_ADDRESS_DELETED: AlertSeverity.WARNING,
    AlertType.IP_ASSIGNED: AlertSeverity.INFO,
    AlertType.IP_UNASSIGNED: AlertSeverity.INFO,
    AlertType.IP_CONFLICT: AlertSeverity.CRITICAL,
    AlertType.USER_CREATED: AlertSeverity.WARNING,
    AlertType.USER_UPDATED: AlertSeverity.WARNING,
    AlertType.USER_DELETED: AlertSeverity.WARNING,
    AlertType.CONFIG_CHANGED: AlertSeverity.WARNING,
    AlertType.NETWORK_DISCONNECTION: AlertSeverity.CRITICAL,
    AlertType.MESH_WEAK_SIGNAL: AlertSeverity.WARNING,
    AlertType.MAINTENANCE_REQUIRED: AlertSeverity.WARNING,
    AlertType.SECURITY_BREACH: AlertSeverity.CRITICAL,
    AlertType.SYSTEM_ERROR: AlertSeverity.ERROR,
}


class Alert(TimestampModel, table=True):
    """Notification raised by a ledger, registry or prober transition."""

    __tablename__ = "alerts"

    id: Optional[int] = Field(default=None, primary_key=True)

    type: AlertType = Field(index=True)
    severity: AlertSeverity
    status: AlertStatus = Field(default=AlertStatus.PENDING, index=True)

    title: str = Field(max_length=200)
    message: str = Field(max_length=1000)

    # Detached (set to NULL) when the referenced row is deleted
    equipment_id: Optional[str] = Field(
        default=None,
        sa_column=Column(
            String(50),
            ForeignKey("equipment.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    ip_address_id: Optional[int] = Field(
        default=None,
        sa_column=Column(
            Integer,
            ForeignKey("ip_addresses.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    entity_type: Optional[str] = Field(default=None, max_length=50)
    entity_id: Optional[str] = Field(default=None, max_length=100)

    details: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    resolved_at: Optional[datetime] = Field(default=None)
    resolved_by: Optional[str] = Field(default=None, max_length=100)

    def __repr__(self) -> str:
        return f"<Alert(id={self.id}, type='{self.type}', status='{self.status}')>"
