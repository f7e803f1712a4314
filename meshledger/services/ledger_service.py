"""Address allocation ledger: exclusive IP-to-equipment assignment."""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from meshledger.config import settings
from meshledger.core.exceptions import ConflictError, NotFoundError, ValidationError
from meshledger.models import (
    Equipment,
    EquipmentStatus,
    IPAddress,
    IPAssignment,
    IPStatus,
)
from meshledger.services import audit_service
from meshledger.services.alert_service import AlertService, CONNECTIVITY_ALERT_TYPES
from meshledger.services.audit_service import AuditService
from meshledger.services.side_effects import SideEffects
from meshledger.utils.context import operation_context
from meshledger.utils.logger import get_logger
from meshledger.utils.network import validate_ipv4
from meshledger.utils.telemetry import get_tracer, add_span_attributes
from meshledger.utils.timeutils import utc_now

logger = get_logger(__name__)
tracer = get_tracer()


class KeyedLock:
    """Per-key asyncio locks, dropped once no task holds or waits on them."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


# Serializes check-and-write per address within this process
ip_locks = KeyedLock()


@dataclass
class AssignmentSelector:
    """Identifies one active assignment.

    Exactly one form must be given: ``assignment_id``, the
    (``ip_address_id``, ``equipment_id``) pair, or the bare ``ip`` string.
    """

    assignment_id: Optional[int] = None
    ip_address_id: Optional[int] = None
    equipment_id: Optional[str] = None
    ip: Optional[str] = None

    def validate(self) -> str:
        """Return the selector form, or raise ValidationError."""
        forms = []
        if self.assignment_id is not None:
            forms.append("assignment_id")
        if self.ip_address_id is not None or self.equipment_id is not None:
            if self.ip_address_id is None or self.equipment_id is None:
                raise ValidationError(
                    "Both ip_address_id and equipment_id are required together"
                )
            forms.append("pair")
        if self.ip is not None:
            forms.append("ip")

        if len(forms) != 1:
            raise ValidationError(
                "Exactly one of assignment_id, (ip_address_id, equipment_id) or ip is required"
            )
        if forms[0] == "ip" and not validate_ipv4(self.ip):
            raise ValidationError(f"Invalid IPv4 address: {self.ip!r}")
        return forms[0]


@dataclass
class AssignmentResult:
    """Outcome of a successful assign."""

    assignment: IPAssignment
    ip_address: IPAddress
    ip_created: bool = False
    equipment_status_changed: bool = False
    outcome: str = "assigned"


@dataclass
class ReleaseResult:
    """Outcome of a successful release.

    ``remaining_active`` above zero means a conflicting assignment still
    holds the address, which therefore stays ASSIGNED.
    """

    assignment: IPAssignment
    ip_address: IPAddress
    remaining_active: int = 0
    equipment_status_changed: bool = False
    outcome: str = "released"


@dataclass
class IPCheckResult:
    """Availability of one address."""

    address: str
    status: str
    ip_address: Optional[IPAddress] = None
    holders: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def available(self) -> bool:
        return self.status == "available"


def describe_holder(
    assignment: IPAssignment, equipment: Optional[Equipment]
) -> Dict[str, Any]:
    """Holder identity reported with conflicts."""
    return {
        "assignment_id": assignment.id,
        "equipment_id": assignment.equipment_id,
        "equipment_name": equipment.name if equipment else None,
        "location": equipment.location if equipment else None,
        "assigned_at": assignment.assigned_at.isoformat(),
        "user_id": assignment.user_id,
    }


async def active_assignments_for(
    session: AsyncSession, ip_address_id: int
) -> List[Tuple[IPAssignment, Optional[Equipment]]]:
    """Active assignments of one IP with their equipment, oldest first."""
    stmt = (
        select(IPAssignment, Equipment)
        .outerjoin(Equipment, IPAssignment.equipment_id == Equipment.id)
        .where(
            and_(
                IPAssignment.ip_address_id == ip_address_id,
                IPAssignment.is_active,
            )
        )
        .order_by(IPAssignment.assigned_at, IPAssignment.id)
    )
    result = await session.execute(stmt)
    return [(row[0], row[1]) for row in result.all()]


async def count_active_for_equipment(session: AsyncSession, equipment_id: str) -> int:
    stmt = select(func.count(IPAssignment.id)).where(
        and_(IPAssignment.equipment_id == equipment_id, IPAssignment.is_active)
    )
    return (await session.scalar(stmt)) or 0


async def recompute_ip_status(session: AsyncSession, ip_row: IPAddress) -> int:
    """Derive IP status from its active assignments; returns the active count."""
    stmt = select(func.count(IPAssignment.id)).where(
        and_(IPAssignment.ip_address_id == ip_row.id, IPAssignment.is_active)
    )
    active = (await session.scalar(stmt)) or 0
    if active:
        ip_row.status = IPStatus.ASSIGNED
    elif ip_row.is_reserved:
        ip_row.status = IPStatus.RESERVED
    else:
        ip_row.status = IPStatus.AVAILABLE
    session.add(ip_row)
    return active


async def get_ip_by_address(
    session: AsyncSession, address: str, for_update: bool = False
) -> Optional[IPAddress]:
    stmt = select(IPAddress).where(IPAddress.address == address)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def lock_equipment(
    session: AsyncSession, equipment_id: str
) -> Optional[Equipment]:
    """Row-locked equipment, re-read even if the session already holds it."""
    result = await session.execute(
        select(Equipment)
        .where(Equipment.id == equipment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


class LedgerService:
    """Service for IP assignment operations.

    Each write runs as one transaction under the address's keyed lock and
    a row lock on the IP record; audit and alert writes follow the commit.
    """

    def __init__(
        self,
        audit: Optional[AuditService] = None,
        alerts: Optional[AlertService] = None,
    ):
        self.audit = audit or AuditService()
        self.alerts = alerts or AlertService(self.audit)

    async def assign(
        self,
        session: AsyncSession,
        ip_address: str,
        equipment_id: str,
        actor_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> AssignmentResult:
        """
        Assign an IP address to equipment.

        The IP record is created with the default subnet, gateway and DNS
        when the address is new. OFFLINE equipment goes ONLINE.

        Args:
            session: Database session
            ip_address: Dotted-quad IPv4 address
            equipment_id: Equipment identifier
            actor_id: Acting user
            notes: Optional assignment notes

        Returns:
            AssignmentResult with the new assignment and IP record

        Raises:
            ValidationError: If the address is malformed or equipment_id missing
            NotFoundError: If the equipment does not exist
            ConflictError: If the address is held by an active assignment or reserved
        """
        actor_id = actor_id or settings.SYSTEM_ACTOR_ID
        if not validate_ipv4(ip_address):
            raise ValidationError(f"Invalid IPv4 address: {ip_address!r}")
        if not equipment_id:
            raise ValidationError("equipment_id is required")

        with tracer.start_as_current_span("service.ledger.assign"), operation_context(
            "ledger.assign",
            actor_id=actor_id,
            equipment_id=equipment_id,
            ip_address=ip_address,
        ):
            add_span_attributes(
                **{"ip.address": ip_address, "equipment.id": equipment_id}
            )
            logger.info("Assigning IP to equipment")

            async with ip_locks.hold(ip_address):
                equipment = await lock_equipment(session, equipment_id)
                if equipment is None:
                    raise NotFoundError(f"Equipment {equipment_id} not found")

                ip_row = await get_ip_by_address(session, ip_address, for_update=True)
                ip_created = False

                if ip_row is not None:
                    holders = await active_assignments_for(session, ip_row.id)
                    if holders:
                        holder = describe_holder(*holders[0])
                        logger.warning(
                            "IP already assigned",
                            extra={"holder_equipment_id": holder["equipment_id"]},
                        )
                        raise ConflictError(
                            f"IP {ip_address} is already assigned to "
                            f"{holder['equipment_name'] or holder['equipment_id']}",
                            holder=holder,
                        )
                    if ip_row.is_reserved:
                        raise ConflictError(f"IP {ip_address} is reserved")
                else:
                    ip_row = IPAddress(
                        address=ip_address,
                        subnet=settings.DEFAULT_SUBNET,
                        gateway=settings.DEFAULT_GATEWAY,
                        dns=settings.DEFAULT_DNS,
                        status=IPStatus.AVAILABLE,
                    )
                    session.add(ip_row)
                    ip_created = True

                try:
                    await session.flush()

                    assignment = IPAssignment(
                        ip_address_id=ip_row.id,
                        equipment_id=equipment.id,
                        user_id=actor_id,
                        is_active=True,
                        assigned_at=utc_now(),
                        notes=notes,
                    )
                    session.add(assignment)
                    ip_row.status = IPStatus.ASSIGNED
                    session.add(ip_row)

                    status_changed = equipment.status == EquipmentStatus.OFFLINE
                    if status_changed:
                        equipment.status = EquipmentStatus.ONLINE
                        equipment.last_seen = utc_now()
                        session.add(equipment)

                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    logger.warning(
                        "Concurrent write on IP record",
                        extra={"error": str(e.orig)},
                    )
                    raise ConflictError(
                        f"IP {ip_address} was assigned concurrently"
                    ) from e

            logger.info(
                "IP assigned successfully",
                extra={
                    "assignment_id": assignment.id,
                    "ip_created": ip_created,
                    "equipment_status_changed": status_changed,
                },
            )

            effects = SideEffects()
            effects.add(
                "audit.ip_assigned",
                self.audit.append,
                action=audit_service.IP_ASSIGNED,
                entity_type="ip_assignment",
                entity_id=str(assignment.id),
                actor_id=actor_id,
                equipment_id=equipment.id,
                ip_address_id=ip_row.id,
                details={
                    "ip_address": ip_address,
                    "equipment_name": equipment.name,
                    "ip_created": ip_created,
                    "equipment_status_changed": status_changed,
                    "notes": notes,
                },
            )
            effects.add(
                "alert.ip_assigned",
                self.alerts.alert_ip_assigned,
                ip_row.id,
                ip_address,
                equipment.id,
                equipment.name,
                actor_id,
            )
            if status_changed:
                effects.add(
                    "alert.auto_resolve",
                    self.alerts.auto_resolve,
                    CONNECTIVITY_ALERT_TYPES,
                    equipment_id=equipment.id,
                    resolved_by=actor_id,
                )
            await effects.flush(session)

            return AssignmentResult(
                assignment=assignment,
                ip_address=ip_row,
                ip_created=ip_created,
                equipment_status_changed=status_changed,
            )

    async def _select_for_release(
        self, session: AsyncSession, selector: AssignmentSelector
    ) -> IPAssignment:
        form = selector.validate()

        if form == "assignment_id":
            assignment = await session.get(IPAssignment, selector.assignment_id)
            if assignment is None or not assignment.is_active:
                raise NotFoundError(
                    f"No active assignment with id {selector.assignment_id}"
                )
            return assignment

        if form == "pair":
            stmt = select(IPAssignment).where(
                and_(
                    IPAssignment.ip_address_id == selector.ip_address_id,
                    IPAssignment.equipment_id == selector.equipment_id,
                    IPAssignment.is_active,
                )
            )
            result = await session.execute(stmt.order_by(IPAssignment.assigned_at))
            assignment = result.scalars().first()
            if assignment is None:
                raise NotFoundError(
                    f"No active assignment of IP {selector.ip_address_id} "
                    f"to equipment {selector.equipment_id}"
                )
            return assignment

        ip_row = await get_ip_by_address(session, selector.ip)
        if ip_row is None:
            raise NotFoundError(f"IP {selector.ip} not found")
        holders = await active_assignments_for(session, ip_row.id)
        if not holders:
            raise NotFoundError(f"No active assignment for IP {selector.ip}")
        if len(holders) > 1:
            logger.warning(
                "Releasing oldest of conflicting assignments",
                extra={"active_count": len(holders)},
            )
        return holders[0][0]

    async def release(
        self,
        session: AsyncSession,
        selector: AssignmentSelector,
        actor_id: Optional[str] = None,
    ) -> ReleaseResult:
        """
        Release one active assignment.

        The IP goes back to AVAILABLE (RESERVED for reserved addresses) only
        when no other active assignment remains. A bare IP selector releases
        the oldest active holder. Equipment left without any active
        assignment is set OFFLINE.

        Args:
            session: Database session
            selector: Which assignment to release
            actor_id: Acting user

        Returns:
            ReleaseResult

        Raises:
            ValidationError: If the selector is malformed
            NotFoundError: If there is no matching active assignment
        """
        actor_id = actor_id or settings.SYSTEM_ACTOR_ID

        with tracer.start_as_current_span("service.ledger.release"), operation_context(
            "ledger.release", actor_id=actor_id, ip_address=selector.ip
        ):
            assignment = await self._select_for_release(session, selector)
            ip_row = await session.get(IPAddress, assignment.ip_address_id)

            async with ip_locks.hold(ip_row.address):
                ip_row = await get_ip_by_address(
                    session, ip_row.address, for_update=True
                )
                await session.refresh(assignment)
                if not assignment.is_active:
                    raise NotFoundError(
                        f"Assignment {assignment.id} was released concurrently"
                    )

                add_span_attributes(
                    **{
                        "ip.address": ip_row.address,
                        "assignment.id": assignment.id,
                        "equipment.id": assignment.equipment_id,
                    }
                )

                assignment.is_active = False
                assignment.released_at = utc_now()
                session.add(assignment)
                await session.flush()

                remaining = await recompute_ip_status(session, ip_row)

                equipment = None
                status_changed = False
                old_status = None
                if assignment.equipment_id:
                    equipment = await session.get(Equipment, assignment.equipment_id)
                if equipment is not None and equipment.status != EquipmentStatus.OFFLINE:
                    if not await count_active_for_equipment(session, equipment.id):
                        old_status = equipment.status
                        equipment.status = EquipmentStatus.OFFLINE
                        session.add(equipment)
                        status_changed = True

                await session.commit()

            logger.info(
                "IP released successfully",
                extra={
                    "assignment_id": assignment.id,
                    "ip_address": ip_row.address,
                    "remaining_active": remaining,
                    "ip_status": ip_row.status.value,
                },
            )

            effects = SideEffects()
            effects.add(
                "audit.ip_unassigned",
                self.audit.append,
                action=audit_service.IP_UNASSIGNED,
                entity_type="ip_assignment",
                entity_id=str(assignment.id),
                actor_id=actor_id,
                equipment_id=assignment.equipment_id,
                ip_address_id=ip_row.id,
                details={
                    "ip_address": ip_row.address,
                    "remaining_active": remaining,
                    "ip_status": ip_row.status.value,
                },
            )
            effects.add(
                "alert.ip_unassigned",
                self.alerts.alert_ip_unassigned,
                ip_row.id,
                ip_row.address,
                assignment.equipment_id,
                equipment.name if equipment else None,
                actor_id,
            )
            if status_changed:
                effects.add(
                    "audit.status_changed",
                    self.audit.append,
                    action=audit_service.EQUIPMENT_STATUS_CHANGED,
                    entity_type="equipment",
                    entity_id=equipment.id,
                    actor_id=actor_id,
                    equipment_id=equipment.id,
                    ip_address_id=ip_row.id,
                    details={
                        "old_status": old_status.value,
                        "new_status": EquipmentStatus.OFFLINE.value,
                        "ip_address": ip_row.address,
                        "reason": "no_active_assignment",
                    },
                )
            await effects.flush(session)

            return ReleaseResult(
                assignment=assignment,
                ip_address=ip_row,
                remaining_active=remaining,
                equipment_status_changed=status_changed,
            )

    async def get_active_assignments(
        self, session: AsyncSession, ip_address: str
    ) -> List[IPAssignment]:
        """Active assignments for an address, oldest first."""
        if not validate_ipv4(ip_address):
            raise ValidationError(f"Invalid IPv4 address: {ip_address!r}")
        ip_row = await get_ip_by_address(session, ip_address)
        if ip_row is None:
            return []
        return [a for a, _ in await active_assignments_for(session, ip_row.id)]

    async def list_assignments(
        self,
        session: AsyncSession,
        active_only: bool = True,
        equipment_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Tuple[List[Tuple[IPAssignment, IPAddress]], int]:
        """List assignments with their IP records, newest first, and the total."""
        filters = []
        if active_only:
            filters.append(IPAssignment.is_active)
        if equipment_id:
            filters.append(IPAssignment.equipment_id == equipment_id)
        if ip_address:
            filters.append(IPAddress.address == ip_address)

        total = await session.scalar(
            select(func.count(IPAssignment.id))
            .select_from(IPAssignment)
            .join(IPAddress, IPAssignment.ip_address_id == IPAddress.id)
            .where(*filters)
        )
        result = await session.execute(
            select(IPAssignment, IPAddress)
            .join(IPAddress, IPAssignment.ip_address_id == IPAddress.id)
            .where(*filters)
            .order_by(IPAssignment.assigned_at.desc(), IPAssignment.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return [(row[0], row[1]) for row in result.all()], total or 0

    async def check_ip(self, session: AsyncSession, ip_address: str) -> IPCheckResult:
        """Report whether an address can be assigned, and who holds it if not."""
        if not validate_ipv4(ip_address):
            return IPCheckResult(address=ip_address, status="invalid")

        ip_row = await get_ip_by_address(session, ip_address)
        if ip_row is None:
            return IPCheckResult(address=ip_address, status="available")

        active = await active_assignments_for(session, ip_row.id)
        holders = [describe_holder(a, e) for a, e in active]
        if len(holders) > 1:
            status = "conflict"
        elif holders:
            status = "assigned"
        elif ip_row.is_reserved:
            status = "reserved"
        else:
            status = "available"
        return IPCheckResult(
            address=ip_address, status=status, ip_address=ip_row, holders=holders
        )
