"""Liveness prober: reachability checks driving equipment status transitions."""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from meshledger.clients.pinger import Pinger, PingResult
from meshledger.config import settings
from meshledger.core.exceptions import NotFoundError, ValidationError
from meshledger.events.publisher import EventPublisher
from meshledger.models import Equipment, EquipmentStatus, IPAddress, IPAssignment
from meshledger.services import audit_service
from meshledger.services.alert_service import AlertService, CONNECTIVITY_ALERT_TYPES
from meshledger.services.audit_service import AuditService
from meshledger.services.ledger_service import (
    count_active_for_equipment,
    lock_equipment,
)
from meshledger.services.side_effects import SideEffects
from meshledger.utils.context import operation_context
from meshledger.utils.logger import get_logger, log_timer
from meshledger.utils.network import mesh_strength_from_latency
from meshledger.utils.telemetry import get_tracer, add_span_attributes
from meshledger.utils.timeutils import calculate_uptime, time_ago, to_naive_utc, utc_now

logger = get_logger(__name__)
tracer = get_tracer()


@dataclass
class ProbeResult:
    """Outcome of probing one piece of equipment."""

    equipment_id: str
    ip_address: Optional[str]
    is_reachable: bool
    old_status: EquipmentStatus
    new_status: EquipmentStatus
    latency_ms: Optional[float] = None
    mesh_strength: Optional[int] = None
    error: Optional[str] = None

    @property
    def status_changed(self) -> bool:
        return self.old_status != self.new_status

    @property
    def outcome(self) -> str:
        if self.ip_address is None:
            return "no_assignment"
        return "online" if self.is_reachable else "unreachable"


@dataclass
class HeartbeatResult:
    """``outcome`` is "online", or "no_assignment" when the equipment must stay OFFLINE."""

    equipment_id: str
    old_status: EquipmentStatus
    new_status: EquipmentStatus
    last_seen: datetime
    mesh_strength: int
    outcome: str = "online"


@dataclass
class CommunicationStatus:
    """Read-only liveness projection of one piece of equipment."""

    equipment_id: str
    name: str
    status: EquipmentStatus
    is_online: bool
    ip_address: Optional[str]
    mesh_strength: int
    last_seen: Optional[datetime]
    last_seen_text: str
    uptime_percent: int


def summarize(results: List[ProbeResult]) -> Dict[str, int]:
    """Counts per outcome for a probe cycle."""
    return {
        "total": len(results),
        "online": sum(1 for r in results if r.new_status == EquipmentStatus.ONLINE),
        "offline": sum(1 for r in results if r.new_status == EquipmentStatus.OFFLINE),
        "changed": sum(1 for r in results if r.status_changed),
        "errors": sum(1 for r in results if r.error),
    }


class ProbeService:
    """Service for liveness probing and push heartbeats.

    Transition rules:
        * no active IP assignment -> OFFLINE, whatever the probe says
        * reachable -> ONLINE, last_seen = now, mesh strength from latency
        * unreachable or probe error -> OFFLINE, mesh strength unchanged

    MAINTENANCE is not sticky: a probe re-derives ONLINE/OFFLINE from it.
    """

    def __init__(
        self,
        pinger: Optional[Any] = None,
        batch_size: Optional[int] = None,
        timeout: Optional[float] = None,
        audit: Optional[AuditService] = None,
        alerts: Optional[AlertService] = None,
    ):
        self.pinger = pinger or Pinger()
        self.batch_size = batch_size or settings.MONITOR_BATCH_SIZE
        self.timeout = timeout or settings.PROBE_TIMEOUT_SECONDS
        self.audit = audit or AuditService()
        self.alerts = alerts or AlertService(self.audit)

    async def _primary_ip(
        self, session: AsyncSession, equipment_id: str
    ) -> Optional[str]:
        """Address of the equipment's oldest active assignment."""
        stmt = (
            select(IPAddress.address)
            .join(IPAssignment, IPAssignment.ip_address_id == IPAddress.id)
            .where(
                and_(IPAssignment.equipment_id == equipment_id, IPAssignment.is_active)
            )
            .order_by(IPAssignment.assigned_at, IPAssignment.id)
            .limit(1)
        )
        return await session.scalar(stmt)

    async def _select_targets(
        self, session: AsyncSession
    ) -> List[Tuple[str, Optional[str], EquipmentStatus]]:
        """Equipment with an active assignment, plus non-OFFLINE equipment without one."""
        result = await session.execute(
            select(Equipment, IPAddress.address, IPAssignment.assigned_at)
            .join(IPAssignment, IPAssignment.equipment_id == Equipment.id)
            .join(IPAddress, IPAssignment.ip_address_id == IPAddress.id)
            .where(IPAssignment.is_active)
            .order_by(Equipment.id, IPAssignment.assigned_at, IPAssignment.id)
        )
        targets: Dict[str, Tuple[str, Optional[str], EquipmentStatus]] = {}
        for equipment, address, _ in result.all():
            targets.setdefault(equipment.id, (equipment.id, address, equipment.status))

        stray = await session.execute(
            select(Equipment).where(Equipment.status != EquipmentStatus.OFFLINE)
        )
        for equipment in stray.scalars().all():
            targets.setdefault(equipment.id, (equipment.id, None, equipment.status))

        return [targets[key] for key in sorted(targets)]

    async def _ping(self, ip_address: Optional[str]) -> Optional[PingResult]:
        if ip_address is None:
            return None
        try:
            return await self.pinger.ping(ip_address, self.timeout)
        except Exception as e:
            return PingResult(is_reachable=False, error=f"{type(e).__name__}: {e}")

    async def _apply(
        self,
        session: AsyncSession,
        equipment_id: str,
        ip_address: Optional[str],
        ping: Optional[PingResult],
        actor_id: str,
    ) -> ProbeResult:
        """Apply one probe outcome, commit it and flush its side effects.

        Assignments are re-read under the row lock, so a release that
        committed while the ping was in flight still forces OFFLINE.
        """
        equipment = await lock_equipment(session, equipment_id)
        if equipment is None:
            raise NotFoundError(f"Equipment {equipment_id} not found")

        if ip_address is not None and not await count_active_for_equipment(
            session, equipment_id
        ):
            logger.info(
                "Assignment released during probe",
                extra={"equipment_id": equipment_id, "ip_address": ip_address},
            )
            ip_address = None

        old_status = equipment.status
        now = utc_now()

        if ip_address is None:
            new_status = EquipmentStatus.OFFLINE
        elif ping.is_reachable:
            new_status = EquipmentStatus.ONLINE
            equipment.last_seen = now
            equipment.mesh_strength = mesh_strength_from_latency(ping.latency_ms)
        else:
            new_status = EquipmentStatus.OFFLINE

        equipment.status = new_status
        session.add(equipment)
        await session.commit()

        result = ProbeResult(
            equipment_id=equipment.id,
            ip_address=ip_address,
            is_reachable=bool(ping and ping.is_reachable),
            old_status=old_status,
            new_status=new_status,
            latency_ms=ping.latency_ms if ping else None,
            mesh_strength=equipment.mesh_strength,
            error=ping.error if ping else None,
        )

        effects = SideEffects()
        if result.status_changed:
            logger.info(
                "Equipment status changed",
                extra={
                    "equipment_id": equipment.id,
                    "ip_address": ip_address,
                    "old_status": old_status.value,
                    "new_status": new_status.value,
                    "latency_ms": result.latency_ms,
                },
            )
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
                    "new_status": new_status.value,
                    "ip_address": ip_address,
                    "latency_ms": result.latency_ms,
                    "error": result.error,
                    "reason": "probe" if ip_address else "no_active_assignment",
                },
            )
            if new_status == EquipmentStatus.OFFLINE:
                effects.add(
                    "alert.equipment_offline",
                    self.alerts.alert_equipment_offline,
                    equipment.id,
                    equipment.name,
                    equipment.last_seen,
                    ip_address,
                )
            elif new_status == EquipmentStatus.ONLINE:
                effects.add(
                    "alert.auto_resolve",
                    self.alerts.auto_resolve,
                    CONNECTIVITY_ALERT_TYPES,
                    equipment_id=equipment.id,
                    resolved_by=actor_id,
                )

        if (
            new_status == EquipmentStatus.ONLINE
            and equipment.mesh_strength < settings.WEAK_SIGNAL_THRESHOLD
        ):
            effects.add(
                "alert.weak_signal",
                self.alerts.alert_weak_mesh_signal,
                equipment.id,
                equipment.name,
                equipment.mesh_strength,
            )

        await effects.flush(session)

        if result.status_changed:
            await EventPublisher.publish_equipment_event(
                equipment.id,
                "equipment.status_change",
                {
                    "old_status": old_status.value,
                    "new_status": new_status.value,
                    "ip_address": ip_address,
                },
            )
        return result

    async def probe_one(
        self,
        session: AsyncSession,
        equipment_id: str,
        actor_id: Optional[str] = None,
    ) -> ProbeResult:
        """
        Probe one piece of equipment on demand.

        Raises:
            NotFoundError: If the equipment does not exist
        """
        actor_id = actor_id or settings.SYSTEM_ACTOR_ID

        with tracer.start_as_current_span("service.probe.one"), operation_context(
            "probe.one", actor_id=actor_id, equipment_id=equipment_id
        ):
            equipment = await session.get(Equipment, equipment_id)
            if equipment is None:
                raise NotFoundError(f"Equipment {equipment_id} not found")

            ip_address = await self._primary_ip(session, equipment_id)
            add_span_attributes(**{"equipment.id": equipment_id, "ip.address": ip_address})

            ping = await self._ping(ip_address)
            return await self._apply(session, equipment_id, ip_address, ping, actor_id)

    async def probe_all(self, session: AsyncSession) -> List[ProbeResult]:
        """
        Probe every piece of equipment that holds an active assignment.

        Equipment without an assignment that still claims a non-OFFLINE
        status is included so it gets forced OFFLINE. Pings run in parallel
        within a batch of ``batch_size`` and batches run one after another;
        a failure for one piece of equipment becomes an OFFLINE result.

        Returns:
            One ProbeResult per equipment, ordered by equipment id
        """
        actor_id = settings.SYSTEM_ACTOR_ID

        with tracer.start_as_current_span("service.probe.all"), operation_context(
            "probe.cycle", actor_id=actor_id
        ):
            targets = await self._select_targets(session)
            add_span_attributes(
                **{"probe.targets": len(targets), "probe.batch_size": self.batch_size}
            )

            results: List[ProbeResult] = []
            for start in range(0, len(targets), self.batch_size):
                batch = targets[start : start + self.batch_size]

                with log_timer(f"probe_batch_{start // self.batch_size}", logger):
                    pings = await asyncio.gather(
                        *(self._ping(ip_address) for _, ip_address, _ in batch)
                    )

                for (equipment_id, ip_address, old_status), ping in zip(batch, pings):
                    try:
                        result = await self._apply(
                            session, equipment_id, ip_address, ping, actor_id
                        )
                    except Exception as e:
                        await session.rollback()
                        logger.error(
                            "Failed to apply probe result",
                            extra={
                                "equipment_id": equipment_id,
                                "error": str(e),
                                "error_type": type(e).__name__,
                            },
                        )
                        result = ProbeResult(
                            equipment_id=equipment_id,
                            ip_address=ip_address,
                            is_reachable=False,
                            old_status=old_status,
                            new_status=old_status,
                            error=str(e),
                        )
                    results.append(result)

            logger.info("Probe cycle complete", extra=summarize(results))
            return results

    async def heartbeat(
        self,
        session: AsyncSession,
        equipment_id: str,
        mesh_strength: int,
        data_rate: Optional[float] = None,
        location: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> HeartbeatResult:
        """
        Record a self-reported liveness signal.

        Sets ONLINE with last_seen = timestamp and the reported mesh
        strength. Equipment without an active assignment keeps OFFLINE.

        Raises:
            ValidationError: If mesh_strength is outside 0-100
            NotFoundError: If the equipment does not exist
        """
        if mesh_strength is None or not 0 <= mesh_strength <= 100:
            raise ValidationError("mesh_strength must be between 0 and 100")

        with tracer.start_as_current_span("service.probe.heartbeat"), operation_context(
            "probe.heartbeat", equipment_id=equipment_id
        ):
            equipment = await lock_equipment(session, equipment_id)
            if equipment is None:
                raise NotFoundError(f"Equipment {equipment_id} not found")

            seen_at = to_naive_utc(timestamp) if timestamp else utc_now()
            ip_address = await self._primary_ip(session, equipment_id)
            old_status = equipment.status
            new_status = (
                EquipmentStatus.ONLINE if ip_address else EquipmentStatus.OFFLINE
            )

            equipment.status = new_status
            equipment.last_seen = seen_at
            equipment.mesh_strength = mesh_strength
            if location:
                equipment.location = location
            session.add(equipment)
            await session.commit()

            actor_id = settings.SYSTEM_ACTOR_ID
            effects = SideEffects()
            effects.add(
                "audit.heartbeat",
                self.audit.append,
                action=audit_service.EQUIPMENT_HEARTBEAT,
                entity_type="equipment",
                entity_id=equipment_id,
                actor_id=actor_id,
                equipment_id=equipment_id,
                details={
                    "mesh_strength": mesh_strength,
                    "data_rate": data_rate,
                    "location": location,
                    "timestamp": seen_at.isoformat(),
                },
            )
            if old_status != new_status:
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
                        "new_status": new_status.value,
                        "ip_address": ip_address,
                        "reason": "heartbeat",
                    },
                )
            if new_status == EquipmentStatus.ONLINE:
                if old_status != new_status:
                    effects.add(
                        "alert.auto_resolve",
                        self.alerts.auto_resolve,
                        CONNECTIVITY_ALERT_TYPES,
                        equipment_id=equipment_id,
                        resolved_by=actor_id,
                    )
                if mesh_strength < settings.WEAK_SIGNAL_THRESHOLD:
                    effects.add(
                        "alert.weak_signal",
                        self.alerts.alert_weak_mesh_signal,
                        equipment_id,
                        equipment.name,
                        mesh_strength,
                    )
            await effects.flush(session)

            logger.info(
                "Heartbeat recorded",
                extra={
                    "equipment_id": equipment_id,
                    "mesh_strength": mesh_strength,
                    "new_status": new_status.value,
                },
            )
            return HeartbeatResult(
                equipment_id=equipment_id,
                old_status=old_status,
                new_status=new_status,
                last_seen=seen_at,
                mesh_strength=mesh_strength,
                outcome="online" if ip_address else "no_assignment",
            )

    async def communication_status(
        self, session: AsyncSession, equipment_id: str
    ) -> CommunicationStatus:
        """Liveness summary for one piece of equipment. Does not probe."""
        equipment = await session.get(Equipment, equipment_id)
        if equipment is None:
            raise NotFoundError(f"Equipment {equipment_id} not found")

        ip_address = await self._primary_ip(session, equipment_id)
        return CommunicationStatus(
            equipment_id=equipment.id,
            name=equipment.name,
            status=equipment.status,
            is_online=equipment.status == EquipmentStatus.ONLINE,
            ip_address=ip_address,
            mesh_strength=equipment.mesh_strength,
            last_seen=equipment.last_seen,
            last_seen_text=time_ago(equipment.last_seen).text,
            uptime_percent=calculate_uptime(equipment.last_seen),
        )
