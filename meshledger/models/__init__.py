"""Database models package."""

from meshledger.models.base import TimestampModel
from meshledger.models.ip_address import IPAddress, IPStatus
from meshledger.models.ip_assignment import IPAssignment
from meshledger.models.equipment import (
    Equipment,
    EquipmentStatus,
    EquipmentType,
    generate_equipment_id,
)
from meshledger.models.alert import (
    Alert,
    AlertType,
    AlertSeverity,
    AlertStatus,
    ALERT_DEFAULT_SEVERITY,
)
from meshledger.models.audit_log import AuditLogEntry

__all__ = [
    "TimestampModel",
    "IPAddress",
    "IPStatus",
    "IPAssignment",
    "Equipment",
    "EquipmentStatus",
    "EquipmentType",
    "generate_equipment_id",
    "Alert",
    "AlertType",
    "AlertSeverity",
    "AlertStatus",
    "ALERT_DEFAULT_SEVERITY",
    "AuditLogEntry",
]
