"""Equipment registry: registration, updates, status override and deletion."""

from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from meshledger.config import settings
from meshledger.core.exceptions import (
    ConflictError,
    DeletionVerificationError,
    NotFoundError,
    ValidationError,
)
from meshledger.models import (
    Alert,
    Equipment,
    EquipmentStatus,
    EquipmentType,
    IPAddress,
    IPAssignment,
)
from meshledger.services import audit_service
from meshledger.services.alert_service import AlertService
from meshledger.services.audit_service import AuditService
from meshledger.services.ledger_service import (
    count_active_for_equipment,
    ip_locks,
    lock_equipment,
    recompute_ip_status,
)
from meshledger.services.side_effects import SideEffects
from meshledger.utils.context import operation_context
from meshledger.utils.logger import get_logger
from meshledger.utils.network import normalize_mac_address, validate_mac_address
from meshledger.utils.telemetry import get_tracer, add_span_attributes, add_span_event
from meshledger.utils.timeutils import utc_now

logger = get_logger(__name__)
tracer = get_tracer()

UPDATABLE_FIELDS = ("name", "type", "mac_address", "location", "mesh_strength", "node_id")


@dataclass
class EquipmentUpdateResult:
    equipment: Equipment
    changes: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def outcome(self) -> str:
        return "updated" if self.changes else "unchanged"


@dataclass
class StatusChangeResult:
    equipment: Equipment
    old_status: EquipmentStatus
    new_status: EquipmentStatus

    @property
    def outcome(self) -> str:
        return "changed" if self.old_status != self.new_status else "unchanged"


@dataclass
class DeletionResult:
    equipment_id: str
    name: str
    released_assignment_ids: List[int] = field(default_factory=list)
    released_ips: List[str] = field(default_factory=list)
    alerts_detached: int = 0
    outcome: str = "deleted"


def _validate_mesh_strength(value: Optional[int]) -> None:
    if value is not None and not 0 <= value <= 100:
        raise ValidationError("mesh_strength must be between 0 and 100")


def _serialize(value: Any) -> Any:
    return value.value if isinstance(value, (EquipmentStatus, EquipmentType)) else value


class EquipmentService:
    """Service for equipment registry operations.

    Liveness transitions are applied by ProbeService; this service only
    handles registration, edits, administrative overrides and deletion.
    """

    def __init__(
        self,
        audit: Optional[AuditService] = None,
        alerts: Optional[AlertService] = None,
    ):
        self.audit = audit or AuditService()
        self.alerts = alerts or AlertService(self.audit)

    async def _check_mac(
        self,
        session: AsyncSession,
        mac_address: Optional[str],
        exclude_id: Optional[str] = None,
    ) -> Optional[str]:
        if mac_address is None:
            return None
        if not validate_mac_address(mac_address):
            raise ValidationError(f"Invalid MAC address: {mac_address!r}")

        normalized = normalize_mac_address(mac_address)
        stmt = select(Equipment.id).where(Equipment.mac_address == normalized)
        if exclude_id:
            stmt = stmt.where(Equipment.id != exclude_id)
        holder = await session.scalar(stmt)
        if holder:
            raise ConflictError(
                f"MAC address {normalized} is already registered",
                holder={"equipment_id": holder},
            )
        return normalized

    async def create(
        self,
        session: AsyncSession,
        name: str,
        equipment_type: EquipmentType = EquipmentType.OTHER,
        mac_address: Optional[str] = None,
        location: Optional[str] = None,
        mesh_strength: int = 0,
        node_id: Optional[str] = None,
        equipment_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Equipment:
        """
        Register new equipment.

        New equipment starts OFFLINE since it has no IP assignment yet.

        Args:
            session: Database session
            name: Equipment name
            equipment_type: Equipment type
            mac_address: Optional MAC, normalized to upper-case with ':'
            location: Optional location
            mesh_strength: Initial mesh strength (0-100)
            node_id: Optional mesh node identifier
            equipment_id: Optional explicit identifier (generated otherwise)
            actor_id: Acting user

        Returns:
            Created Equipment

        Raises:
            ValidationError: If name, MAC or mesh strength is invalid
            ConflictError: If the id or MAC address is already registered
        """
        actor_id = actor_id or settings.SYSTEM_ACTOR_ID
        if not name or not name.strip():
            raise ValidationError("name is required")
        _validate_mesh_strength(mesh_strength)

        with tracer.start_as_current_span("service.equipment.create"):
            mac = await self._check_mac(session, mac_address)

            if equipment_id and await session.get(Equipment, equipment_id):
                raise ConflictError(f"Equipment {equipment_id} already exists")

            equipment = Equipment(
                name=name.strip(),
                type=EquipmentType(equipment_type),
                status=EquipmentStatus.OFFLINE,
                mac_address=mac,
                location=location,
                mesh_strength=mesh_strength,
                node_id=node_id,
            )
            if equipment_id:
                equipment.id = equipment_id

            session.add(equipment)
            await session.commit()

            add_span_attributes(**{"equipment.id": equipment.id})
            logger.info(
                "Equipment registered",
                extra={
                    "equipment_id": equipment.id,
                    "equipment_type": equipment.type.value,
                },
            )

            effects = SideEffects()
            effects.add(
                "audit.equipment_created",
                self.audit.append,
                action=audit_service.EQUIPMENT_CREATED,
                entity_type="equipment",
                entity_id=equipment.id,
                actor_id=actor_id,
                equipment_id=equipment.id,
                details={
                    "name": equipment.name,
                    "type": equipment.type.value,
                    "mac_address": mac,
                },
            )
            effects.add(
                "alert.equipment_added",
                self.alerts.alert_equipment_added,
                equipment.id,
                equipment.name,
                equipment.type.value,
                actor_id,
            )
            await effects.flush(session)
            return equipment

    async def get(self, session: AsyncSession, equipment_id: str) -> Equipment:
        equipment = await session.get(Equipment, equipment_id)
        if equipment is None:
            raise NotFoundError(f"Equipment {equipment_id} not found")
        return equipment

    async def list(
        self,
        session: AsyncSession,
        status: Optional[EquipmentStatus] = None,
        equipment_type: Optional[EquipmentType] = None,
        search: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Tuple[List[Equipment], int]:
        """List equipment by name, returning the page and the total count."""
        filters = []
        if status:
            filters.append(Equipment.status == status)
        if equipment_type:
            filters.append(Equipment.type == equipment_type)
        if search:
            filters.append(Equipment.name.ilike(f"%{search}%"))

        total = await session.scalar(select(func.count(Equipment.id)).where(*filters))
        result = await session.execute(
            select(Equipment)
            .where(*filters)
            .order_by(Equipment.name, Equipment.id)
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all()), total or 0

    async def update(
        self,
        session: AsyncSession,
        equipment_id: str,
        changes: Dict[str, Any],
        actor_id: Optional[str] = None,
    ) -> EquipmentUpdateResult:
        """
        Update descriptive equipment fields.

        Status is not editable here; use set_status.

        Raises:
            NotFoundError: If the equipment does not exist
            ValidationError: If a field is unknown or invalid
            ConflictError: If the new MAC is registered to other equipment
        """
        actor_id = actor_id or settings.SYSTEM_ACTOR_ID
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(
                f"Fields cannot be updated: {', '.join(sorted(unknown))}"
            )

        with tracer.start_as_current_span("service.equipment.update"):
            add_span_attributes(**{"equipment.id": equipment_id})
            equipment = await self.get(session, equipment_id)

            if "name" in changes and not (changes["name"] or "").strip():
                raise ValidationError("name is required")
            if "mesh_strength" in changes:
                _validate_mesh_strength(changes["mesh_strength"])
            if changes.get("mac_address") is not None:
                changes = {
                    **changes,
                    "mac_address": await self._check_mac(
                        session, changes["mac_address"], exclude_id=equipment_id
                    ),
                }
            if "type" in changes:
                changes = {**changes, "type": EquipmentType(changes["type"])}

            diff: Dict[str, Dict[str, Any]] = {}
            for key, value in changes.items():
                old = getattr(equipment, key)
                if old != value:
                    diff[key] = {"old": _serialize(old), "new": _serialize(value)}
                    setattr(equipment, key, value)

            if not diff:
                return EquipmentUpdateResult(equipment=equipment)

            session.add(equipment)
            await session.commit()

            logger.info(
                "Equipment updated",
                extra={"equipment_id": equipment_id, "fields": sorted(diff)},
            )

            effects = SideEffects()
            effects.add(
                "audit.equipment_updated",
                self.audit.append,
                action=audit_service.EQUIPMENT_UPDATED,
                entity_type="equipment",
                entity_id=equipment_id,
                actor_id=actor_id,
                equipment_id=equipment_id,
                details={"changes": diff},
            )
            effects.add(
                "alert.equipment_updated",
                self.alerts.alert_equipment_updated,
                equipment_id,
                equipment.name,
                diff,
                actor_id,
            )
            await effects.flush(session)
            return EquipmentUpdateResult(equipment=equipment, changes=diff)

    async def set_status(
        self,
        session: AsyncSession,
        equipment_id: str,
        status: EquipmentStatus,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> StatusChangeResult:
        """
        Administrative status override (e.g. MAINTENANCE).

        The override holds only until the next probe cycle, which re-derives
        ONLINE or OFFLINE from reachability.

        Raises:
            NotFoundError: If the equipment does not exist
            ConflictError: If a non-OFFLINE status is requested for equipment
                without an active IP assignment
        """
        actor_id = actor_id or settings.SYSTEM_ACTOR_ID
        try:
            status = EquipmentStatus(status)
        except ValueError as e:
            raise ValidationError(f"Invalid equipment status: {status!r}") from e

        with tracer.start_as_current_span("service.equipment.set_status"):
            add_span_attributes(
                **{"equipment.id": equipment_id, "equipment.status": status.value}
            )
            equipment = await self.get(session, equipment_id)
            old_status = equipment.status

            if old_status == status:
                return StatusChangeResult(equipment, old_status, status)

            if status != EquipmentStatus.OFFLINE and not await count_active_for_equipment(
                session, equipment_id
            ):
                raise ConflictError(
                    f"Equipment {equipment_id} has no active IP assignment "
                    "and must stay OFFLINE"
                )

            equipment.status = status
            if status == EquipmentStatus.ONLINE:
                equipment.last_seen = utc_now()
            session.add(equipment)
            await session.commit()

            logger.info(
                "Equipment status overridden",
                extra={
                    "equipment_id": equipment_id,
                    "old_status": old_status.value,
                    "new_status": status.value,
                },
            )

            effects = SideEffects()
            effects.add(
                "audit.status_changed",
                self.audit.append,
                action=audit_service.EQUIPMENT_STATUS_CHANGED,
                entity_type="equipment",
                entity_id=equipment_id,
                actor_id=actor_id,
                equipment_id=equipment_id,
                details={
                    "old_status": old_status.value,
                    "new_status": status.value,
                    "reason": reason or "administrative",
                },
            )
            await effects.flush(session)
            return StatusChangeResult(equipment, old_status, status)

    async def _active_snapshot(
        self, session: AsyncSession, equipment_id: str
    ) -> List[Tuple[IPAssignment, IPAddress]]:
        result = await session.execute(
            select(IPAssignment, IPAddress)
            .join(IPAddress, IPAssignment.ip_address_id == IPAddress.id)
            .where(
                and_(
                    IPAssignment.equipment_id == equipment_id,
                    IPAssignment.is_active,
                )
            )
            .order_by(IPAssignment.id)
            .execution_options(populate_existing=True)
        )
        return [(row[0], row[1]) for row in result.all()]

    async def delete(
        self,
        session: AsyncSession,
        equipment_id: str,
        actor_id: Optional[str] = None,
    ) -> DeletionResult:
        """
        Delete equipment with its cleanup cascade, as one transaction.

        Steps:
            1. Snapshot active assignments under the address locks and the
               equipment row lock
            2. Write the EQUIPMENT_DELETED audit entry while the row exists
            3. Deactivate the assignments
            4. Release IPs left without an active assignment
            5. Detach alerts and historical assignments (equipment_id = NULL)
            6. Delete the row and verify it is gone

        Raises:
            NotFoundError: If the equipment does not exist
            DeletionVerificationError: If the row is still present afterwards
        """
        actor_id = actor_id or settings.SYSTEM_ACTOR_ID

        with tracer.start_as_current_span("service.equipment.delete"), operation_context(
            "equipment.delete", actor_id=actor_id, equipment_id=equipment_id
        ):
            add_span_attributes(**{"equipment.id": equipment_id})
            await self.get(session, equipment_id)

            snapshot = await self._active_snapshot(session, equipment_id)
            addresses = sorted({ip_row.address for _, ip_row in snapshot})

            async with AsyncExitStack() as stack:
                # Fixed lock order across addresses
                for address in addresses:
                    await stack.enter_async_context(ip_locks.hold(address))

                # The row lock keeps new assignments out; re-read what
                # committed while the address locks were being taken
                equipment = await lock_equipment(session, equipment_id)
                if equipment is None:
                    raise NotFoundError(f"Equipment {equipment_id} not found")
                snapshot = await self._active_snapshot(session, equipment_id)
                for address in sorted({ip.address for _, ip in snapshot}):
                    if address not in addresses:
                        await stack.enter_async_context(ip_locks.hold(address))

                name = equipment.name
                equipment_type = equipment.type.value

                await self.audit.append(
                    session,
                    action=audit_service.EQUIPMENT_DELETED,
                    entity_type="equipment",
                    entity_id=equipment_id,
                    actor_id=actor_id,
                    equipment_id=equipment_id,
                    details={
                        "name": name,
                        "type": equipment_type,
                        "mac_address": equipment.mac_address,
                        "active_assignments": [
                            {"assignment_id": a.id, "ip_address": ip_row.address}
                            for a, ip_row in snapshot
                        ],
                    },
                )
                add_span_event("equipment.delete.audited")

                now = utc_now()
                for assignment, _ in snapshot:
                    assignment.is_active = False
                    assignment.released_at = now
                    session.add(assignment)
                await session.flush()

                released_ips = []
                for ip_row in {ip_row.id: ip_row for _, ip_row in snapshot}.values():
                    if not await recompute_ip_status(session, ip_row):
                        released_ips.append(ip_row.address)

                detached = await session.execute(
                    update(Alert)
                    .where(Alert.equipment_id == equipment_id)
                    .values(equipment_id=None)
                )
                await session.execute(
                    update(IPAssignment)
                    .where(IPAssignment.equipment_id == equipment_id)
                    .values(equipment_id=None)
                )

                await session.delete(equipment)
                await session.flush()

                still_there = await session.scalar(
                    select(func.count(Equipment.id)).where(Equipment.id == equipment_id)
                )
                if still_there:
                    await session.rollback()
                    logger.error(
                        "Equipment still present after deletion",
                        extra={"equipment_id": equipment_id},
                    )
                    raise DeletionVerificationError(
                        f"Equipment {equipment_id} is still present after deletion"
                    )

                await session.commit()

            logger.info(
                "Equipment deleted",
                extra={
                    "equipment_id": equipment_id,
                    "released_assignments": len(snapshot),
                    "released_ips": len(released_ips),
                    "alerts_detached": detached.rowcount,
                },
            )

            effects = SideEffects()
            effects.add(
                "alert.equipment_deleted",
                self.alerts.alert_equipment_deleted,
                equipment_id,
                name,
                equipment_type,
                actor_id,
            )
            await effects.flush(session)

            return DeletionResult(
                equipment_id=equipment_id,
                name=name,
                released_assignment_ids=[a.id for a, _ in snapshot],
                released_ips=sorted(released_ips),
                alerts_detached=detached.rowcount or 0,
            )
