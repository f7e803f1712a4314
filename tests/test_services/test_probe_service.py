"""Tests for Probe Service."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meshledger.clients.pinger import PingResult
from meshledger.core.exceptions import NotFoundError, ValidationError
from meshledger.models import (
    Alert,
    AlertSeverity,
    AlertStatus,
    AlertType,
    AuditLogEntry,
    Equipment,
    EquipmentStatus,
    IPAssignment,
)
from meshledger.services.ledger_service import AssignmentSelector, LedgerService
from meshledger.services.probe_service import ProbeResult, ProbeService, summarize

from conftest import (
    FakePinger,
    fetch_all,
    fetch_one,
    force_assignment,
    make_equipment,
    make_ip,
)


async def seed_online(
    session: AsyncSession,
    equipment_id: str,
    address: str,
    name: Optional[str] = None,
) -> None:
    await make_equipment(
        session, equipment_id, name=name, status=EquipmentStatus.ONLINE
    )
    ip_row = await make_ip(session, address)
    await force_assignment(session, ip_row, equipment_id)


async def status_audits(session_factory: async_sessionmaker):
    return await fetch_all(
        session_factory,
        AuditLogEntry,
        AuditLogEntry.action == "EQUIPMENT_STATUS_CHANGED",
    )


@pytest.mark.asyncio
async def test_probe_timeout_takes_equipment_offline(
    db_session: AsyncSession,
    session_factory: async_sessionmaker,
    fake_pinger: FakePinger,
) -> None:
    """Test an ONLINE machine whose probe stops answering."""
    await seed_online(db_session, "EQ3", "10.0.0.30", name="Excavator 3")
    service = ProbeService(pinger=fake_pinger)

    fake_pinger.reachable("10.0.0.30", latency_ms=5.0)
    first = await service.probe_one(db_session, "EQ3")

    assert first.outcome == "online"
    assert first.status_changed is False
    assert first.mesh_strength == 99
    assert await status_audits(session_factory) == []

    fake_pinger.unreachable("10.0.0.30")
    second = await service.probe_one(db_session, "EQ3")

    assert second.outcome == "unreachable"
    assert second.old_status == EquipmentStatus.ONLINE
    assert second.new_status == EquipmentStatus.OFFLINE
    assert second.error == "host unreachable"

    equipment = await fetch_one(session_factory, Equipment, "EQ3")
    assert equipment.status == EquipmentStatus.OFFLINE

    audits = await status_audits(session_factory)
    assert len(audits) == 1
    assert audits[0].details["old_status"] == "ONLINE"
    assert audits[0].details["new_status"] == "OFFLINE"
    assert audits[0].user_id == "system"

    alerts = await fetch_all(
        session_factory, Alert, Alert.type == AlertType.EQUIPMENT_OFFLINE
    )
    assert len(alerts) == 1
    assert alerts[0].status == AlertStatus.PENDING
    assert alerts[0].severity == AlertSeverity.ERROR
    assert alerts[0].equipment_id == "EQ3"


@pytest.mark.asyncio
async def test_repeated_failures_do_not_duplicate_alert(
    db_session: AsyncSession,
    session_factory: async_sessionmaker,
    fake_pinger: FakePinger,
) -> None:
    await seed_online(db_session, "EQ3", "10.0.0.30")
    service = ProbeService(pinger=fake_pinger)

    for _ in range(3):
        await service.probe_one(db_session, "EQ3")

    alerts = await fetch_all(
        session_factory, Alert, Alert.type == AlertType.EQUIPMENT_OFFLINE
    )
    assert len(alerts) == 1
    assert len(await status_audits(session_factory)) == 1


@pytest.mark.asyncio
async def test_recovery_resolves_offline_alert(
    db_session: AsyncSession,
    session_factory: async_sessionmaker,
    fake_pinger: FakePinger,
) -> None:
    """Test that coming back ONLINE clears pending connectivity alerts."""
    await seed_online(db_session, "EQ3", "10.0.0.30")
    service = ProbeService(pinger=fake_pinger)
    await service.probe_one(db_session, "EQ3")

    fake_pinger.reachable("10.0.0.30", latency_ms=20.0)
    result = await service.probe_one(db_session, "EQ3", actor_id="U1")

    assert result.new_status == EquipmentStatus.ONLINE
    assert result.mesh_strength == 98

    alerts = await fetch_all(
        session_factory, Alert, Alert.type == AlertType.EQUIPMENT_OFFLINE
    )
    assert alerts[0].status == AlertStatus.RESOLVED
    assert alerts[0].resolved_by == "U1"

    equipment = await fetch_one(session_factory, Equipment, "EQ3")
    assert equipment.last_seen is not None


@pytest.mark.asyncio
async def test_weak_signal_alert_escalates(
    db_session: AsyncSession,
    session_factory: async_sessionmaker,
    fake_pinger: FakePinger,
) -> None:
    """Test weak-signal severity and its escalation on a single alert."""
    await seed_online(db_session, "EQ1", "10.0.0.11")
    service = ProbeService(pinger=fake_pinger)

    fake_pinger.reachable("10.0.0.11", latency_ms=600.0)
    result = await service.probe_one(db_session, "EQ1")
    assert result.mesh_strength == 40

    alerts = await fetch_all(
        session_factory, Alert, Alert.type == AlertType.MESH_WEAK_SIGNAL
    )
    assert len(alerts) == 1
    assert alerts[0].severity == AlertSeverity.WARNING

    fake_pinger.reachable("10.0.0.11", latency_ms=800.0)
    await service.probe_one(db_session, "EQ1")

    alerts = await fetch_all(
        session_factory, Alert, Alert.type == AlertType.MESH_WEAK_SIGNAL
    )
    assert len(alerts) == 1
    assert alerts[0].severity == AlertSeverity.ERROR


@pytest.mark.asyncio
async def test_maintenance_is_rederived(
    db_session: AsyncSession, fake_pinger: FakePinger
) -> None:
    await make_equipment(db_session, "EQ1", status=EquipmentStatus.MAINTENANCE)
    ip_row = await make_ip(db_session, "10.0.0.11")
    await force_assignment(db_session, ip_row, "EQ1")
    fake_pinger.reachable("10.0.0.11")
    service = ProbeService(pinger=fake_pinger)

    result = await service.probe_one(db_session, "EQ1")

    assert result.old_status == EquipmentStatus.MAINTENANCE
    assert result.new_status == EquipmentStatus.ONLINE


@pytest.mark.asyncio
async def test_probe_one_without_assignment(
    db_session: AsyncSession, fake_pinger: FakePinger
) -> None:
    await make_equipment(db_session, "EQ1", status=EquipmentStatus.ONLINE)
    service = ProbeService(pinger=fake_pinger)

    result = await service.probe_one(db_session, "EQ1")

    assert result.outcome == "no_assignment"
    assert result.new_status == EquipmentStatus.OFFLINE
    assert fake_pinger.calls == []

    with pytest.raises(NotFoundError):
        await service.probe_one(db_session, "missing")


@pytest.mark.asyncio
async def test_probe_all_forces_unassigned_offline(
    db_session: AsyncSession,
    session_factory: async_sessionmaker,
    fake_pinger: FakePinger,
) -> None:
    """Test that unassigned equipment ends OFFLINE without being pinged."""
    await seed_online(db_session, "EQ1", "10.0.0.11")
    await make_equipment(db_session, "EQ2", status=EquipmentStatus.ONLINE)
    await make_equipment(db_session, "EQ3")
    fake_pinger.reachable("10.0.0.11")
    service = ProbeService(pinger=fake_pinger)

    results = await service.probe_all(db_session)

    assert [r.equipment_id for r in results] == ["EQ1", "EQ2"]
    assert results[0].new_status == EquipmentStatus.ONLINE
    assert results[1].new_status == EquipmentStatus.OFFLINE
    assert results[1].outcome == "no_assignment"
    assert fake_pinger.calls == ["10.0.0.11"]

    eq2 = await fetch_one(session_factory, Equipment, "EQ2")
    assert eq2.status == EquipmentStatus.OFFLINE
    audits = await status_audits(session_factory)
    assert [a.details["reason"] for a in audits] == ["no_active_assignment"]


@pytest.mark.asyncio
async def test_probe_all_runs_every_batch(
    db_session: AsyncSession, fake_pinger: FakePinger
) -> None:
    for index in range(5):
        await seed_online(db_session, f"EQ{index}", f"10.0.0.{index + 10}")
        fake_pinger.reachable(f"10.0.0.{index + 10}")
    service = ProbeService(pinger=fake_pinger, batch_size=2)

    results = await service.probe_all(db_session)

    assert len(results) == 5
    assert sorted(fake_pinger.calls) == [f"10.0.0.{i}" for i in range(10, 15)]
    assert summarize(results)["online"] == 5


@pytest.mark.asyncio
async def test_probe_all_pinger_exception_is_offline(
    db_session: AsyncSession,
) -> None:
    """Test that a crashing pinger counts as an unreachable host."""

    class BrokenPinger:
        async def ping(self, ip_address, timeout=None):
            raise RuntimeError("socket closed")

    await seed_online(db_session, "EQ1", "10.0.0.11")
    service = ProbeService(pinger=BrokenPinger())

    results = await service.probe_all(db_session)

    assert results[0].new_status == EquipmentStatus.OFFLINE
    assert results[0].error == "RuntimeError: socket closed"


@pytest.mark.asyncio
async def test_probe_all_isolates_apply_failures(
    db_session: AsyncSession,
    session_factory: async_sessionmaker,
    fake_pinger: FakePinger,
) -> None:
    """Test that one failing equipment does not stop the cycle."""
    await seed_online(db_session, "EQ1", "10.0.0.11")
    await seed_online(db_session, "EQ2", "10.0.0.12")
    fake_pinger.reachable("10.0.0.11")
    fake_pinger.reachable("10.0.0.12")
    service = ProbeService(pinger=fake_pinger)
    apply = service._apply

    async def flaky_apply(session, equipment_id, *args):
        if equipment_id == "EQ1":
            raise RuntimeError("write failed")
        return await apply(session, equipment_id, *args)

    service._apply = flaky_apply

    results = await service.probe_all(db_session)

    assert results[0].equipment_id == "EQ1"
    assert results[0].new_status == EquipmentStatus.ONLINE
    assert results[0].status_changed is False
    assert results[0].error == "write failed"
    assert results[1].new_status == EquipmentStatus.ONLINE
    assert summarize(results)["errors"] == 1
    assert summarize(results)["changed"] == 0

    equipment = await fetch_one(session_factory, Equipment, "EQ1")
    assert equipment.status == EquipmentStatus.ONLINE


@pytest.mark.asyncio
async def test_probe_all_caps_pings_per_batch(db_session: AsyncSession) -> None:
    """Test that no more than batch_size pings are in flight at once."""

    class CountingPinger:
        def __init__(self):
            self.in_flight = 0
            self.peak = 0
            self.calls = 0

        async def ping(self, ip_address, timeout=None):
            self.in_flight += 1
            self.calls += 1
            self.peak = max(self.peak, self.in_flight)
            await asyncio.sleep(0.01)
            self.in_flight -= 1
            return PingResult(is_reachable=True, latency_ms=5.0)

    for index in range(7):
        await seed_online(db_session, f"EQ{index}", f"10.0.0.{index + 20}")
    pinger = CountingPinger()
    service = ProbeService(pinger=pinger, batch_size=3)

    results = await service.probe_all(db_session)

    assert len(results) == 7
    assert pinger.calls == 7
    assert pinger.peak == 3


@pytest.mark.asyncio
async def test_release_during_ping_forces_offline(
    db_session: AsyncSession, session_factory: async_sessionmaker
) -> None:
    """Test that a release committed mid-ping wins over a reachable reply."""
    await make_equipment(db_session, "EQ3")
    ip_row = await make_ip(db_session, "10.0.0.7")
    await force_assignment(db_session, ip_row, "EQ3")
    # Load the row into this session's identity map before the release
    await db_session.get(Equipment, "EQ3")

    class ReleasingPinger:
        async def ping(self, ip_address, timeout=None):
            async with session_factory() as other:
                await LedgerService().release(
                    other, AssignmentSelector(ip=ip_address)
                )
            return PingResult(is_reachable=True, latency_ms=5.0)

    service = ProbeService(pinger=ReleasingPinger())

    result = await service.probe_one(db_session, "EQ3")

    assert result.new_status == EquipmentStatus.OFFLINE
    assert result.outcome == "no_assignment"
    equipment = await fetch_one(session_factory, Equipment, "EQ3")
    assert equipment.status == EquipmentStatus.OFFLINE
    active = await fetch_all(session_factory, IPAssignment, IPAssignment.is_active)
    assert active == []


@pytest.mark.asyncio
async def test_heartbeat_marks_online(
    db_session: AsyncSession,
    session_factory: async_sessionmaker,
    fake_pinger: FakePinger,
) -> None:
    """Test a self-reported heartbeat from assigned equipment."""
    await make_equipment(db_session, "EQ1")
    ip_row = await make_ip(db_session, "10.0.0.11")
    await force_assignment(db_session, ip_row, "EQ1")
    service = ProbeService(pinger=fake_pinger)
    reported = datetime(2024, 5, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))

    result = await service.heartbeat(
        db_session,
        "EQ1",
        mesh_strength=80,
        data_rate=54.0,
        location="Pit 2",
        timestamp=reported,
    )

    assert result.outcome == "online"
    assert result.new_status == EquipmentStatus.ONLINE
    assert result.last_seen == datetime(2024, 5, 1, 10, 0)

    equipment = await fetch_one(session_factory, Equipment, "EQ1")
    assert equipment.mesh_strength == 80
    assert equipment.location == "Pit 2"

    heartbeats = await fetch_all(
        session_factory, AuditLogEntry, AuditLogEntry.action == "EQUIPMENT_HEARTBEAT"
    )
    assert len(heartbeats) == 1
    assert heartbeats[0].details["data_rate"] == 54.0
    assert len(await status_audits(session_factory)) == 1


@pytest.mark.asyncio
async def test_heartbeat_without_assignment_stays_offline(
    db_session: AsyncSession, fake_pinger: FakePinger
) -> None:
    await make_equipment(db_session, "EQ1")
    service = ProbeService(pinger=fake_pinger)

    result = await service.heartbeat(db_session, "EQ1", mesh_strength=70)

    assert result.outcome == "no_assignment"
    assert result.new_status == EquipmentStatus.OFFLINE


@pytest.mark.asyncio
@pytest.mark.parametrize("mesh_strength", [-1, 101, None])
async def test_heartbeat_rejects_bad_strength(
    db_session: AsyncSession, fake_pinger: FakePinger, mesh_strength
) -> None:
    await make_equipment(db_session, "EQ1")
    service = ProbeService(pinger=fake_pinger)

    with pytest.raises(ValidationError):
        await service.heartbeat(db_session, "EQ1", mesh_strength=mesh_strength)


@pytest.mark.asyncio
async def test_heartbeat_unknown_equipment(
    db_session: AsyncSession, fake_pinger: FakePinger
) -> None:
    service = ProbeService(pinger=fake_pinger)

    with pytest.raises(NotFoundError):
        await service.heartbeat(db_session, "missing", mesh_strength=50)


@pytest.mark.asyncio
async def test_communication_status(
    db_session: AsyncSession, fake_pinger: FakePinger
) -> None:
    await seed_online(db_session, "EQ1", "10.0.0.11", name="Drill 1")
    fake_pinger.reachable("10.0.0.11", latency_ms=100.0)
    service = ProbeService(pinger=fake_pinger)
    await service.probe_one(db_session, "EQ1")

    status = await service.communication_status(db_session, "EQ1")

    assert status.name == "Drill 1"
    assert status.is_online is True
    assert status.ip_address == "10.0.0.11"
    assert status.mesh_strength == 90
    assert status.uptime_percent == 100
    assert status.last_seen_text.endswith("ago")

    await make_equipment(db_session, "EQ2")
    idle = await service.communication_status(db_session, "EQ2")
    assert idle.is_online is False
    assert idle.ip_address is None
    assert idle.last_seen_text == "Never"
    assert idle.uptime_percent == 0


def test_summarize() -> None:
    online, offline = EquipmentStatus.ONLINE, EquipmentStatus.OFFLINE
    results = [
        ProbeResult("EQ1", "10.0.0.1", True, offline, online),
        ProbeResult("EQ2", "10.0.0.2", False, offline, offline, error="down"),
        ProbeResult("EQ3", None, False, online, offline),
    ]

    assert summarize(results) == {
        "total": 3,
        "online": 1,
        "offline": 2,
        "changed": 2,
        "errors": 1,
    }
