"""Audit log service: append-only record of state-changing actions."""

from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from meshledger.models import AuditLogEntry
from meshledger.utils.logger import get_logger
from meshledger.utils.telemetry import get_tracer, add_span_attributes

logger = get_logger(__name__)
tracer = get_tracer()

# Audit actions
IP_ASSIGNED = "IP_ASSIGNED"
IP_UNASSIGNED = "IP_UNASSIGNED"
IP_CONFLICT_RESOLVED = "IP_CONFLICT_RESOLVED"
IP_ORPHANED_FIXED = "IP_ORPHANED_FIXED"
EQUIPMENT_CREATED = "EQUIPMENT_CREATED"
EQUIPMENT_UPDATED = "EQUIPMENT_UPDATED"
EQUIPMENT_STATUS_CHANGED = "EQUIPMENT_STATUS_CHANGED"
EQUIPMENT_HEARTBEAT = "EQUIPMENT_HEARTBEAT"
EQUIPMENT_DELETED = "EQUIPMENT_DELETED"
ALERT_CREATED = "ALERT_CREATED"
ALERT_RESOLVED = "ALERT_RESOLVED"

AUDIT_ACTIONS = (
    IP_ASSIGNED,
    IP_UNASSIGNED,
    IP_CONFLICT_RESOLVED,
    IP_ORPHANED_FIXED,
    EQUIPMENT_CREATED,
    EQUIPMENT_UPDATED,
    EQUIPMENT_STATUS_CHANGED,
    EQUIPMENT_HEARTBEAT,
    EQUIPMENT_DELETED,
    ALERT_CREATED,
    ALERT_RESOLVED,
)


class AuditService:
    """Service for writing and reading audit log entries.

    There is deliberately no update or delete operation.
    """

    async def append(
        self,
        session: AsyncSession,
        action: str,
        entity_type: str,
        entity_id: Optional[str] = None,
        actor_id: str = "system",
        equipment_id: Optional[str] = None,
        ip_address_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditLogEntry:
        """
        Append an audit entry to the current transaction.

        The entry is flushed, not committed: the caller owns the transaction,
        which lets the deletion cascade write its entry before the delete.

        Args:
            session: Database session
            action: Audit action (e.g., IP_ASSIGNED)
            entity_type: Kind of entity acted on (ip_assignment, equipment, ...)
            entity_id: Identifier of the entity acted on
            actor_id: Acting user, or "system" for the prober
            equipment_id: Optional equipment reference
            ip_address_id: Optional IP address reference
            details: Free-form payload

        Returns:
            The flushed AuditLogEntry
        """
        with tracer.start_as_current_span("service.audit.append"):
            add_span_attributes(
                **{
                    "audit.action": action,
                    "audit.entity_type": entity_type,
                    "equipment.id": equipment_id,
                }
            )

            entry = AuditLogEntry(
                action=action,
                entity_type=entity_type,
                entity_id=str(entity_id) if entity_id is not None else None,
                user_id=actor_id,
                equipment_id=equipment_id,
                ip_address_id=ip_address_id,
                details=details,
            )
            session.add(entry)
            await session.flush()

            logger.debug(
                "Audit entry appended",
                extra={
                    "audit_action": action,
                    "entity_type": entity_type,
                    "entity_id": entry.entity_id,
                },
            )
            return entry

    async def list_entries(
        self,
        session: AsyncSession,
        entity_type: Optional[str] = None,
        action: Optional[str] = None,
        equipment_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditLogEntry]:
        """List audit entries, newest first."""
        stmt = select(AuditLogEntry)
        if entity_type:
            stmt = stmt.where(AuditLogEntry.entity_type == entity_type)
        if action:
            stmt = stmt.where(AuditLogEntry.action == action)
        if equipment_id:
            stmt = stmt.where(AuditLogEntry.equipment_id == equipment_id)

        stmt = (
            stmt.order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())
