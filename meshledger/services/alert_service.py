"""Alert engine: creation, deduplication, resolution and queries."""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from meshledger.config import settings
from meshledger.core.exceptions import ConflictError, NotFoundError
from meshledger.events.publisher import EventPublisher
from meshledger.models import (
    Alert,
    AlertSeverity,
    AlertStatus,
    AlertType,
    ALERT_DEFAULT_SEVERITY,
)
from meshledger.services import audit_service
from meshledger.services.audit_service import AuditService
from meshledger.services.side_effects import SideEffects
from meshledger.utils.logger import get_logger
from meshledger.utils.telemetry import get_tracer, add_span_attributes
from meshledger.utils.timeutils import utc_now

logger = get_logger(__name__)
tracer = get_tracer()

SEVERITY_ORDER = [
    AlertSeverity.INFO,
    AlertSeverity.WARNING,
    AlertSeverity.ERROR,
    AlertSeverity.CRITICAL,
]

# Alert types that keep at most one PENDING alert per entity
DEDUPLICATED_TYPES = frozenset(
    {AlertType.EQUIPMENT_OFFLINE, AlertType.MESH_WEAK_SIGNAL, AlertType.IP_CONFLICT}
)

# Pending alerts cleared when equipment is seen again
CONNECTIVITY_ALERT_TYPES = (
    AlertType.EQUIPMENT_OFFLINE,
    AlertType.NETWORK_DISCONNECTION,
    AlertType.MESH_WEAK_SIGNAL,
)


def _title_for(alert_type: AlertType) -> str:
    return alert_type.value.replace("_", " ").title()


class AlertService:
    """Service for alert lifecycle operations.

    Alerts are a best-effort side channel: write helpers only flush, and
    callers either commit explicitly or run them through ``SideEffects``.
    An ``alert.created`` event is held on the session and published by
    ``EventPublisher.publish_deferred`` once that commit succeeds.
    """

    def __init__(self, audit: Optional[AuditService] = None):
        self.audit = audit or AuditService()

    async def create_alert(
        self,
        session: AsyncSession,
        alert_type: AlertType,
        severity: Optional[AlertSeverity] = None,
        title: Optional[str] = None,
        message: Optional[str] = None,
        equipment_id: Optional[str] = None,
        ip_address_id: Optional[int] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Alert:
        """
        Create a PENDING alert.

        Args:
            session: Database session
            alert_type: Alert type from the taxonomy
            severity: Severity; defaults to the type's default severity
            title: Short title; defaults to a title derived from the type
            message: Human-readable message; defaults to the title
            equipment_id: Optional equipment reference
            ip_address_id: Optional IP address reference
            entity_type: Kind of entity the alert is about
            entity_id: Identifier of that entity
            details: Free-form payload

        Returns:
            The flushed Alert
        """
        with tracer.start_as_current_span("service.alert.create"):
            alert_type = AlertType(alert_type)
            severity = AlertSeverity(severity or ALERT_DEFAULT_SEVERITY[alert_type])
            title = title or _title_for(alert_type)

            add_span_attributes(
                **{
                    "alert.type": alert_type.value,
                    "alert.severity": severity.value,
                    "equipment.id": equipment_id,
                }
            )

            alert = Alert(
                type=alert_type,
                severity=severity,
                status=AlertStatus.PENDING,
                title=title,
                message=message or title,
                equipment_id=equipment_id,
                ip_address_id=ip_address_id,
                entity_type=entity_type,
                entity_id=str(entity_id) if entity_id is not None else None,
                details=details,
            )
            session.add(alert)
            await session.flush()

            logger.info(
                "Alert created",
                extra={
                    "alert_id": alert.id,
                    "alert_type": alert_type.value,
                    "severity": severity.value,
                    "equipment_id": equipment_id,
                },
            )

            EventPublisher.defer_alert_event(
                session,
                alert.id,
                "alert.created",
                {
                    "type": alert_type.value,
                    "severity": severity.value,
                    "title": title,
                    "equipment_id": equipment_id,
                    "ip_address_id": ip_address_id,
                },
            )
            return alert

    async def find_pending(
        self,
        session: AsyncSession,
        alert_type: AlertType,
        equipment_id: Optional[str] = None,
        ip_address_id: Optional[int] = None,
    ) -> Optional[Alert]:
        """Return the oldest PENDING alert of a type for an entity, if any."""
        stmt = select(Alert).where(
            Alert.type == alert_type,
            Alert.status == AlertStatus.PENDING,
        )
        if equipment_id is None:
            stmt = stmt.where(Alert.equipment_id.is_(None))
        else:
            stmt = stmt.where(Alert.equipment_id == equipment_id)
        if ip_address_id is None:
            stmt = stmt.where(Alert.ip_address_id.is_(None))
        else:
            stmt = stmt.where(Alert.ip_address_id == ip_address_id)

        result = await session.execute(stmt.order_by(Alert.id).limit(1))
        return result.scalars().first()

    async def raise_once(
        self,
        session: AsyncSession,
        alert_type: AlertType,
        equipment_id: Optional[str] = None,
        ip_address_id: Optional[int] = None,
        **kwargs: Any,
    ) -> Alert:
        """
        Create an alert unless a PENDING one already exists for the entity.

        An existing alert is kept; its severity is raised if the new
        severity is higher.
        """
        existing = await self.find_pending(
            session, alert_type, equipment_id=equipment_id, ip_address_id=ip_address_id
        )
        if existing is None:
            return await self.create_alert(
                session,
                alert_type,
                equipment_id=equipment_id,
                ip_address_id=ip_address_id,
                **kwargs,
            )

        severity = kwargs.get("severity")
        if severity and (
            SEVERITY_ORDER.index(AlertSeverity(severity))
            > SEVERITY_ORDER.index(existing.severity)
        ):
            existing.severity = AlertSeverity(severity)
            session.add(existing)
            await session.flush()

        logger.debug(
            "Pending alert already exists",
            extra={"alert_id": existing.id, "alert_type": AlertType(alert_type).value},
        )
        return existing

    async def get_alert(self, session: AsyncSession, alert_id: int) -> Alert:
        alert = await session.get(Alert, alert_id)
        if alert is None:
            raise NotFoundError(f"Alert {alert_id} not found")
        return alert

    async def resolve_alert(
        self,
        session: AsyncSession,
        alert_id: int,
        resolved_by: str,
    ) -> Alert:
        """
        Explicitly resolve an alert.

        Args:
            session: Database session
            alert_id: Alert identifier
            resolved_by: Acting user

        Returns:
            The resolved Alert

        Raises:
            NotFoundError: If the alert does not exist
            ConflictError: If the alert is already resolved
        """
        with tracer.start_as_current_span("service.alert.resolve"):
            add_span_attributes(**{"alert.id": alert_id, "actor.id": resolved_by})

            alert = await self.get_alert(session, alert_id)
            if alert.status == AlertStatus.RESOLVED:
                raise ConflictError(f"Alert {alert_id} is already resolved")

            alert.status = AlertStatus.RESOLVED
            alert.resolved_at = utc_now()
            alert.resolved_by = resolved_by
            session.add(alert)
            await session.commit()

            logger.info(
                "Alert resolved",
                extra={"alert_id": alert_id, "resolved_by": resolved_by},
            )

            effects = SideEffects()
            effects.add(
                "audit.alert_resolved",
                self.audit.append,
                action=audit_service.ALERT_RESOLVED,
                entity_type="alert",
                entity_id=str(alert.id),
                actor_id=resolved_by,
                equipment_id=alert.equipment_id,
                ip_address_id=alert.ip_address_id,
                details={"type": alert.type.value, "title": alert.title},
            )
            await effects.flush(session)
            return alert

    async def auto_resolve(
        self,
        session: AsyncSession,
        types: Iterable[AlertType],
        equipment_id: Optional[str] = None,
        ip_address_id: Optional[int] = None,
        resolved_by: Optional[str] = None,
    ) -> int:
        """
        Resolve PENDING alerts of the given types for one entity.

        Returns:
            Number of alerts resolved
        """
        if equipment_id is None and ip_address_id is None:
            return 0

        stmt = select(Alert).where(
            Alert.status == AlertStatus.PENDING,
            Alert.type.in_(list(types)),
        )
        if equipment_id is not None:
            stmt = stmt.where(Alert.equipment_id == equipment_id)
        if ip_address_id is not None:
            stmt = stmt.where(Alert.ip_address_id == ip_address_id)

        result = await session.execute(stmt)
        alerts = list(result.scalars().all())

        now = utc_now()
        for alert in alerts:
            alert.status = AlertStatus.RESOLVED
            alert.resolved_at = now
            alert.resolved_by = resolved_by or settings.SYSTEM_ACTOR_ID
            session.add(alert)
        await session.flush()

        if alerts:
            logger.info(
                "Alerts auto-resolved",
                extra={
                    "count": len(alerts),
                    "equipment_id": equipment_id,
                    "ip_address_id": ip_address_id,
                },
            )
        return len(alerts)

    async def list_alerts(
        self,
        session: AsyncSession,
        status: Optional[AlertStatus] = None,
        severity: Optional[AlertSeverity] = None,
        alert_type: Optional[AlertType] = None,
        equipment_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Alert], int]:
        """List alerts newest first, returning the page and the total count."""
        filters = []
        if status:
            filters.append(Alert.status == status)
        if severity:
            filters.append(Alert.severity == severity)
        if alert_type:
            filters.append(Alert.type == alert_type)
        if equipment_id:
            filters.append(Alert.equipment_id == equipment_id)

        total = await session.scalar(select(func.count(Alert.id)).where(*filters))
        result = await session.execute(
            select(Alert)
            .where(*filters)
            .order_by(Alert.created_at.desc(), Alert.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all()), total or 0

    async def stats(self, session: AsyncSession) -> Dict[str, Any]:
        """Alert counts by status, plus pending counts by severity and type."""
        by_status = {s.value: 0 for s in AlertStatus}
        result = await session.execute(
            select(Alert.status, func.count(Alert.id)).group_by(Alert.status)
        )
        for status, count in result.all():
            by_status[AlertStatus(status).value] = count

        by_severity = {s.value: 0 for s in AlertSeverity}
        by_type: Dict[str, int] = {}
        result = await session.execute(
            select(Alert.severity, Alert.type, func.count(Alert.id))
            .where(Alert.status == AlertStatus.PENDING)
            .group_by(Alert.severity, Alert.type)
        )
        for severity, alert_type, count in result.all():
            by_severity[AlertSeverity(severity).value] += count
            key = AlertType(alert_type).value
            by_type[key] = by_type.get(key, 0) + count

        return {
            "total": sum(by_status.values()),
            "pending": by_status[AlertStatus.PENDING.value],
            "resolved": by_status[AlertStatus.RESOLVED.value],
            "pending_by_severity": by_severity,
            "pending_by_type": by_type,
        }

    # Typed helpers

    async def alert_equipment_added(
        self,
        session: AsyncSession,
        equipment_id: str,
        name: str,
        equipment_type: str,
        actor_id: str,
    ) -> Alert:
        return await self.create_alert(
            session,
            AlertType.EQUIPMENT_ADDED,
            title="New Equipment Added",
            message=f'Equipment "{name}" ({equipment_type}) has been added to the system.',
            equipment_id=equipment_id,
            entity_type="equipment",
            entity_id=equipment_id,
            details={"name": name, "type": equipment_type, "added_by": actor_id},
        )

    async def alert_equipment_updated(
        self,
        session: AsyncSession,
        equipment_id: str,
        name: str,
        changes: Dict[str, Any],
        actor_id: str,
    ) -> Alert:
        return await self.create_alert(
            session,
            AlertType.EQUIPMENT_UPDATED,
            title="Equipment Modified",
            message=f'Equipment "{name}" has been modified.',
            equipment_id=equipment_id,
            entity_type="equipment",
            entity_id=equipment_id,
            details={"name": name, "changes": changes, "modified_by": actor_id},
        )

    async def alert_equipment_deleted(
        self,
        session: AsyncSession,
        equipment_id: str,
        name: str,
        equipment_type: str,
        actor_id: str,
    ) -> Alert:
        # The row is gone, so only entity_id keeps the reference
        return await self.create_alert(
            session,
            AlertType.EQUIPMENT_DELETED,
            title="Equipment Deleted",
            message=(
                f'Equipment "{name}" ({equipment_type}) '
                "has been deleted from the system."
            ),
            entity_type="equipment",
            entity_id=equipment_id,
            details={"name": name, "type": equipment_type, "deleted_by": actor_id},
        )

    async def alert_equipment_offline(
        self,
        session: AsyncSession,
        equipment_id: str,
        name: str,
        last_seen: Optional[datetime] = None,
        ip_address: Optional[str] = None,
    ) -> Alert:
        since = f" since {last_seen.isoformat()}" if last_seen else ""
        return await self.raise_once(
            session,
            AlertType.EQUIPMENT_OFFLINE,
            equipment_id=equipment_id,
            title="Equipment Offline",
            message=(
                f'Equipment "{name}" has been offline{since}. '
                "Immediate attention required."
            ),
            entity_type="equipment",
            entity_id=equipment_id,
            details={
                "name": name,
                "last_seen": last_seen.isoformat() if last_seen else None,
                "ip_address": ip_address,
            },
        )

    async def alert_weak_mesh_signal(
        self,
        session: AsyncSession,
        equipment_id: str,
        name: str,
        signal_strength: int,
    ) -> Alert:
        severity = (
            AlertSeverity.ERROR
            if signal_strength < settings.CRITICAL_SIGNAL_THRESHOLD
            else AlertSeverity.WARNING
        )
        return await self.raise_once(
            session,
            AlertType.MESH_WEAK_SIGNAL,
            equipment_id=equipment_id,
            severity=severity,
            title="Weak Mesh Signal",
            message=(
                f'Equipment "{name}" has weak mesh signal '
                f"strength ({signal_strength}%)."
            ),
            entity_type="equipment",
            entity_id=equipment_id,
            details={"name": name, "signal_strength": signal_strength},
        )

    async def alert_ip_assigned(
        self,
        session: AsyncSession,
        ip_address_id: int,
        address: str,
        equipment_id: str,
        equipment_name: str,
        actor_id: str,
    ) -> Alert:
        return await self.create_alert(
            session,
            AlertType.IP_ASSIGNED,
            title="IP Address Assigned",
            message=(
                f"IP address {address} has been assigned to "
                f'equipment "{equipment_name}".'
            ),
            equipment_id=equipment_id,
            ip_address_id=ip_address_id,
            entity_type="ip_assignment",
            details={
                "address": address,
                "equipment_name": equipment_name,
                "assigned_by": actor_id,
            },
        )

    async def alert_ip_unassigned(
        self,
        session: AsyncSession,
        ip_address_id: int,
        address: str,
        equipment_id: Optional[str],
        equipment_name: Optional[str],
        actor_id: str,
    ) -> Alert:
        return await self.create_alert(
            session,
            AlertType.IP_UNASSIGNED,
            title="IP Address Unassigned",
            message=(
                f"IP address {address} has been unassigned from "
                f'equipment "{equipment_name}".'
            ),
            equipment_id=equipment_id,
            ip_address_id=ip_address_id,
            entity_type="ip_assignment",
            details={
                "address": address,
                "equipment_name": equipment_name,
                "unassigned_by": actor_id,
            },
        )

    async def alert_ip_conflict(
        self,
        session: AsyncSession,
        ip_address_id: int,
        address: str,
        equipment_ids: List[str],
    ) -> Alert:
        return await self.raise_once(
            session,
            AlertType.IP_CONFLICT,
            ip_address_id=ip_address_id,
            title="IP Address Conflict Detected",
            message=(
                f"IP address {address} is assigned to multiple equipment. "
                "Immediate resolution required."
            ),
            entity_type="ip_address",
            entity_id=str(ip_address_id),
            details={"address": address, "conflicting_equipment_ids": equipment_ids},
        )

    async def alert_system_error(
        self,
        session: AsyncSession,
        title: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Alert:
        return await self.create_alert(
            session,
            AlertType.SYSTEM_ERROR,
            title=title,
            message=message,
            entity_type="system",
            details=details,
        )
