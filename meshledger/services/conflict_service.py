"""Conflict detection and repair over the allocation ledger's state."""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from meshledger.config import settings
from meshledger.core.exceptions import ConflictError, NotFoundError, ValidationError
from meshledger.events.publisher import EventPublisher
from meshledger.models import (
    AlertType,
    Equipment,
    EquipmentStatus,
    IPAddress,
    IPAssignment,
    IPStatus,
)
from meshledger.services import audit_service
from meshledger.services.alert_service import AlertService, CONNECTIVITY_ALERT_TYPES
from meshledger.services.audit_service import AuditService
from meshledger.services.ledger_service import (
    active_assignments_for,
    count_active_for_equipment,
    describe_holder,
    get_ip_by_address,
    ip_locks,
    lock_equipment,
    recompute_ip_status,
)
from meshledger.services.side_effects import SideEffects
from meshledger.utils.context import operation_context
from meshledger.utils.logger import get_logger, log_duration
from meshledger.utils.network import ip_to_int, validate_ipv4
from meshledger.utils.telemetry import get_tracer, add_span_attributes
from meshledger.utils.timeutils import utc_now

logger = get_logger(__name__)
tracer = get_tracer()

HEALTHY = "HEALTHY"
DEGRADED = "DEGRADED"
CRITICAL = "CRITICAL"


@dataclass
class IPConflict:
    """An address with more than one active assignment."""

    ip_address: str
    ip_address_id: int
    holders: List[Dict[str, Any]]

    @property
    def conflict_count(self) -> int:
        return len(self.holders)


@dataclass
class DuplicateEquipment:
    """Equipment holding more than one active address. Flagged, not invalid."""

    equipment_id: str
    equipment_name: Optional[str]
    ip_addresses: List[Dict[str, Any]]

    @property
    def assignment_count(self) -> int:
        return len(self.ip_addresses)


@dataclass
class OrphanedIP:
    """An address marked ASSIGNED with zero active assignments."""

    ip_address: str
    ip_address_id: int
    subnet: str
    updated_at: datetime


@dataclass
class ConflictReport:
    conflicts: List[IPConflict] = field(default_factory=list)
    duplicate_equipment: List[DuplicateEquipment] = field(default_factory=list)
    orphaned_ips: List[OrphanedIP] = field(default_factory=list)
    health_score: int = 100
    status: str = HEALTHY

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "total_conflicts": len(self.conflicts),
            "total_duplicate_equipment": len(self.duplicate_equipment),
            "total_orphaned_ips": len(self.orphaned_ips),
            "total_issues": len(self.conflicts)
            + len(self.duplicate_equipment)
            + len(self.orphaned_ips),
        }


@dataclass
class ResolveResult:
    ip_address: str
    kept_assignment_id: int
    deactivated_assignment_ids: List[int]
    ip_status: IPStatus
    outcome: str = "resolved"


@dataclass
class FixOrphanResult:
    """``outcome`` is "fixed", or "not_orphaned" when the status was already correct."""

    ip_address: str
    previous_status: IPStatus
    new_status: IPStatus
    outcome: str = "fixed"


@dataclass
class ReconcileResult:
    equipment_forced_offline: List[str] = field(default_factory=list)
    ip_status_fixed: List[str] = field(default_factory=list)
    alerts_resolved: int = 0

    @property
    def outcome(self) -> str:
        if self.equipment_forced_offline or self.ip_status_fixed or self.alerts_resolved:
            return "repaired"
        return "consistent"


def calculate_health_score(conflicts: int, orphans: int) -> int:
    """Composite 0-100 score; conflicts weigh more than orphans."""
    score = 100 - settings.CONFLICT_PENALTY * conflicts - settings.ORPHAN_PENALTY * orphans
    return max(0, score)


def health_status(conflicts: int, orphans: int) -> str:
    if conflicts:
        return CRITICAL
    if orphans:
        return DEGRADED
    return HEALTHY


class ConflictService:
    """Service for detecting and repairing ledger drift.

    Conflicts (several active assignments for one IP) and orphans (ASSIGNED
    IPs without an active assignment) are expected reconciliation targets,
    not hot-path failures.
    """

    def __init__(
        self,
        audit: Optional[AuditService] = None,
        alerts: Optional[AlertService] = None,
    ):
        self.audit = audit or AuditService()
        self.alerts = alerts or AlertService(self.audit)

    @log_duration("conflict_scan")
    async def scan(self, session: AsyncSession) -> ConflictReport:
        """
        Scan all active assignments for conflicts, duplicates and orphans.

        Returns:
            ConflictReport with holders ordered by assigned_at ascending and a
            health score of max(0, 100 - 30*conflicts - 10*orphans)
        """
        with tracer.start_as_current_span("service.conflict.scan"):
            stmt = (
                select(IPAssignment, IPAddress, Equipment)
                .join(IPAddress, IPAssignment.ip_address_id == IPAddress.id)
                .outerjoin(Equipment, IPAssignment.equipment_id == Equipment.id)
                .where(IPAssignment.is_active)
                .order_by(IPAssignment.assigned_at, IPAssignment.id)
            )
            result = await session.execute(stmt)
            rows = result.all()

            by_ip: Dict[int, list] = defaultdict(list)
            by_equipment: Dict[str, list] = defaultdict(list)
            addresses: Dict[int, str] = {}
            for assignment, ip_row, equipment in rows:
                addresses[ip_row.id] = ip_row.address
                by_ip[ip_row.id].append((assignment, equipment))
                if assignment.equipment_id:
                    by_equipment[assignment.equipment_id].append(
                        (assignment, ip_row, equipment)
                    )

            conflicts = [
                IPConflict(
                    ip_address=addresses[ip_id],
                    ip_address_id=ip_id,
                    holders=[describe_holder(a, e) for a, e in holders],
                )
                for ip_id, holders in by_ip.items()
                if len(holders) > 1
            ]
            conflicts.sort(key=lambda c: ip_to_int(c.ip_address))

            duplicates = [
                DuplicateEquipment(
                    equipment_id=equipment_id,
                    equipment_name=held[0][2].name if held[0][2] else None,
                    ip_addresses=[
                        {
                            "ip_address": ip_row.address,
                            "assignment_id": a.id,
                            "assigned_at": a.assigned_at.isoformat(),
                        }
                        for a, ip_row, _ in held
                    ],
                )
                for equipment_id, held in by_equipment.items()
                if len(held) > 1
            ]

            assigned = await session.execute(
                select(IPAddress).where(IPAddress.status == IPStatus.ASSIGNED)
            )
            orphans = [
                OrphanedIP(
                    ip_address=ip_row.address,
                    ip_address_id=ip_row.id,
                    subnet=ip_row.subnet,
                    updated_at=ip_row.updated_at,
                )
                for ip_row in assigned.scalars().all()
                if ip_row.id not in by_ip
            ]
            orphans.sort(key=lambda o: ip_to_int(o.ip_address))

            report = ConflictReport(
                conflicts=conflicts,
                duplicate_equipment=duplicates,
                orphaned_ips=orphans,
                health_score=calculate_health_score(len(conflicts), len(orphans)),
                status=health_status(len(conflicts), len(orphans)),
            )

            add_span_attributes(
                **{
                    "conflicts.count": len(conflicts),
                    "orphans.count": len(orphans),
                    "health.score": report.health_score,
                }
            )
            if conflicts or orphans:
                logger.warning("Ledger drift detected", extra=report.summary)
            return report

    async def resolve_conflict(
        self,
        session: AsyncSession,
        ip_address: str,
        keep_assignment_id: int,
        actor_id: Optional[str] = None,
    ) -> ResolveResult:
        """
        Keep one active assignment of an address and deactivate the rest.

        Writes one IP_CONFLICT_RESOLVED audit entry per deactivated
        assignment and auto-resolves pending IP_CONFLICT alerts.

        Args:
            session: Database session
            ip_address: Conflicting address
            keep_assignment_id: Assignment that stays active
            actor_id: Acting user

        Raises:
            ValidationError: If the address is malformed
            NotFoundError: If the IP is unknown or keep_assignment_id is not
                one of its active assignments
            ConflictError: If the IP has at most one active assignment
        """
        actor_id = actor_id or settings.SYSTEM_ACTOR_ID
        if not validate_ipv4(ip_address):
            raise ValidationError(f"Invalid IPv4 address: {ip_address!r}")

        with tracer.start_as_current_span("service.conflict.resolve"), operation_context(
            "conflict.resolve", actor_id=actor_id, ip_address=ip_address
        ):
            add_span_attributes(
                **{"ip.address": ip_address, "assignment.keep_id": keep_assignment_id}
            )

            async with ip_locks.hold(ip_address):
                ip_row = await get_ip_by_address(session, ip_address, for_update=True)
                if ip_row is None:
                    raise NotFoundError(f"IP {ip_address} not found")

                holders = await active_assignments_for(session, ip_row.id)
                if len(holders) <= 1:
                    raise ConflictError(f"No conflict found for IP {ip_address}")

                kept = next(
                    ((a, e) for a, e in holders if a.id == keep_assignment_id), None
                )
                if kept is None:
                    raise NotFoundError(
                        f"Assignment {keep_assignment_id} is not an active "
                        f"assignment of IP {ip_address}"
                    )

                now = utc_now()
                deactivated = []
                for assignment, equipment in holders:
                    if assignment.id == keep_assignment_id:
                        continue
                    assignment.is_active = False
                    assignment.released_at = now
                    session.add(assignment)
                    deactivated.append((assignment, equipment))
                await session.flush()

                await recompute_ip_status(session, ip_row)
                await session.commit()

            logger.info(
                "IP conflict resolved",
                extra={
                    "kept_assignment_id": keep_assignment_id,
                    "deactivated_count": len(deactivated),
                },
            )

            kept_holder = describe_holder(*kept)
            effects = SideEffects()
            for assignment, equipment in deactivated:
                effects.add(
                    "audit.conflict_resolved",
                    self.audit.append,
                    action=audit_service.IP_CONFLICT_RESOLVED,
                    entity_type="ip_assignment",
                    entity_id=str(assignment.id),
                    actor_id=actor_id,
                    equipment_id=assignment.equipment_id,
                    ip_address_id=ip_row.id,
                    details={
                        "ip_address": ip_address,
                        "deactivated_assignment_id": assignment.id,
                        "deactivated_equipment_id": assignment.equipment_id,
                        "kept_assignment_id": keep_assignment_id,
                        "kept_equipment_id": kept_holder["equipment_id"],
                        "kept_equipment_name": kept_holder["equipment_name"],
                    },
                )
            effects.add(
                "alert.auto_resolve_conflict",
                self.alerts.auto_resolve,
                [AlertType.IP_CONFLICT],
                ip_address_id=ip_row.id,
                resolved_by=actor_id,
            )
            await effects.flush(session)

            return ResolveResult(
                ip_address=ip_address,
                kept_assignment_id=keep_assignment_id,
                deactivated_assignment_ids=[a.id for a, _ in deactivated],
                ip_status=ip_row.status,
            )

    async def auto_resolve(
        self,
        session: AsyncSession,
        ip_address: str,
        actor_id: Optional[str] = None,
    ) -> ResolveResult:
        """Resolve a conflict keeping the earliest-assigned holder."""
        if not validate_ipv4(ip_address):
            raise ValidationError(f"Invalid IPv4 address: {ip_address!r}")

        ip_row = await get_ip_by_address(session, ip_address)
        if ip_row is None:
            raise NotFoundError(f"IP {ip_address} not found")

        holders = await active_assignments_for(session, ip_row.id)
        if len(holders) <= 1:
            raise ConflictError(f"No conflict found for IP {ip_address}")

        earliest = holders[0][0]
        return await self.resolve_conflict(session, ip_address, earliest.id, actor_id)

    async def fix_orphaned(
        self,
        session: AsyncSession,
        ip_address: str,
        actor_id: Optional[str] = None,
    ) -> FixOrphanResult:
        """
        Reset an orphaned IP to AVAILABLE (RESERVED if it is reserved).

        Raises:
            ValidationError: If the address is malformed
            NotFoundError: If the IP is unknown
            ConflictError: If the IP still has active assignments
        """
        actor_id = actor_id or settings.SYSTEM_ACTOR_ID
        if not validate_ipv4(ip_address):
            raise ValidationError(f"Invalid IPv4 address: {ip_address!r}")

        with tracer.start_as_current_span("service.conflict.fix_orphaned"):
            add_span_attributes(**{"ip.address": ip_address})

            async with ip_locks.hold(ip_address):
                ip_row = await get_ip_by_address(session, ip_address, for_update=True)
                if ip_row is None:
                    raise NotFoundError(f"IP {ip_address} not found")

                if await active_assignments_for(session, ip_row.id):
                    raise ConflictError(f"IP {ip_address} has active assignments")

                previous = ip_row.status
                if previous != IPStatus.ASSIGNED:
                    return FixOrphanResult(
                        ip_address=ip_address,
                        previous_status=previous,
                        new_status=previous,
                        outcome="not_orphaned",
                    )

                await recompute_ip_status(session, ip_row)
                await session.commit()

            logger.info(
                "Orphaned IP fixed",
                extra={"ip_address": ip_address, "new_status": ip_row.status.value},
            )

            effects = SideEffects()
            effects.add(
                "audit.orphan_fixed",
                self.audit.append,
                action=audit_service.IP_ORPHANED_FIXED,
                entity_type="ip_address",
                entity_id=str(ip_row.id),
                actor_id=actor_id,
                ip_address_id=ip_row.id,
                details={
                    "ip_address": ip_address,
                    "previous_status": previous.value,
                    "new_status": ip_row.status.value,
                },
            )
            await effects.flush(session)

            return FixOrphanResult(
                ip_address=ip_address,
                previous_status=previous,
                new_status=ip_row.status,
            )

    async def raise_conflict_alerts(self, session: AsyncSession) -> int:
        """Make sure every conflicting IP has one PENDING IP_CONFLICT alert.

        Returns:
            Number of conflicting IPs
        """
        report = await self.scan(session)
        for conflict in report.conflicts:
            await self.alerts.alert_ip_conflict(
                session,
                conflict.ip_address_id,
                conflict.ip_address,
                [h["equipment_id"] for h in conflict.holders],
            )
        await session.commit()
        await EventPublisher.publish_deferred(session)
        return len(report.conflicts)

    async def reconcile(
        self, session: AsyncSession, actor_id: Optional[str] = None
    ) -> ReconcileResult:
        """
        Repair derived state drift.

        Forces OFFLINE on equipment without an active assignment, recomputes
        every IP status that disagrees with its active assignments, and
        resolves stale connectivity alerts of ONLINE equipment. Each repair
        is re-checked under the same locks assign and release take, and
        commits on its own.
        """
        actor_id = actor_id or settings.SYSTEM_ACTOR_ID
        result = ReconcileResult()
        effects = SideEffects()

        with tracer.start_as_current_span("service.conflict.reconcile"):
            active_equipment = select(IPAssignment.equipment_id).where(
                and_(IPAssignment.is_active, IPAssignment.equipment_id.is_not(None))
            )
            stray = await session.execute(
                select(Equipment.id).where(
                    Equipment.status != EquipmentStatus.OFFLINE,
                    Equipment.id.not_in(active_equipment),
                )
            )
            for equipment_id in stray.scalars().all():
                # Re-check under the row lock; an assign may have committed
                equipment = await lock_equipment(session, equipment_id)
                if (
                    equipment is None
                    or equipment.status == EquipmentStatus.OFFLINE
                    or await count_active_for_equipment(session, equipment_id)
                ):
                    continue
                old_status = equipment.status
                equipment.status = EquipmentStatus.OFFLINE
                session.add(equipment)
                result.equipment_forced_offline.append(equipment.id)
                effects.add(
                    "audit.status_changed",
                    self.audit.append,
                    action=audit_service.EQUIPMENT_STATUS_CHANGED,
                    entity_type="equipment",
                    entity_id=equipment.id,
                    actor_id=actor_id,
                    equipment_id=equipment.id,
                    details={
                        "old_status": old_status.value,
                        "new_status": EquipmentStatus.OFFLINE.value,
                        "reason": "no_active_assignment",
                    },
                )
            # Release equipment row locks before taking address locks
            await session.commit()

            addresses = await session.execute(
                select(IPAddress.address).order_by(IPAddress.address)
            )
            for address in addresses.scalars().all():
                async with ip_locks.hold(address):
                    ip_row = await get_ip_by_address(session, address, for_update=True)
                    if ip_row is None:
                        continue
                    previous = ip_row.status
                    await recompute_ip_status(session, ip_row)
                    await session.commit()

                if ip_row.status == previous:
                    continue
                result.ip_status_fixed.append(ip_row.address)
                if previous == IPStatus.ASSIGNED:
                    effects.add(
                        "audit.orphan_fixed",
                        self.audit.append,
                        action=audit_service.IP_ORPHANED_FIXED,
                        entity_type="ip_address",
                        entity_id=str(ip_row.id),
                        actor_id=actor_id,
                        ip_address_id=ip_row.id,
                        details={
                            "ip_address": ip_row.address,
                            "previous_status": previous.value,
                            "new_status": ip_row.status.value,
                        },
                    )

            online = await session.execute(
                select(Equipment.id).where(Equipment.status == EquipmentStatus.ONLINE)
            )
            for equipment_id in online.scalars().all():
                result.alerts_resolved += await self.alerts.auto_resolve(
                    session,
                    CONNECTIVITY_ALERT_TYPES,
                    equipment_id=equipment_id,
                    resolved_by=actor_id,
                )

            await session.commit()

            logger.info(
                "Reconciliation complete",
                extra={
                    "equipment_forced_offline": len(result.equipment_forced_offline),
                    "ip_status_fixed": len(result.ip_status_fixed),
                    "alerts_resolved": result.alerts_resolved,
                },
            )

        await effects.flush(session)
        return result
