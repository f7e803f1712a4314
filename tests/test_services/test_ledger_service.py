"""Tests for Ledger Service."""

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meshledger.config import settings
from meshledger.core.exceptions import ConflictError, NotFoundError, ValidationError
from meshledger.models import (
    Alert,
    AlertType,
    AuditLogEntry,
    Equipment,
    EquipmentStatus,
    IPAddress,
    IPAssignment,
    IPStatus,
)
from meshledger.services.ledger_service import (
    AssignmentSelector,
    KeyedLock,
    LedgerService,
)

from conftest import fetch_all, fetch_one, force_assignment, make_equipment, make_ip


@pytest.mark.asyncio
async def test_assign_marks_ip_assigned(
    db_session: AsyncSession, session_factory: async_sessionmaker
) -> None:
    """Test assigning a fresh address to equipment."""
    await make_equipment(db_session, "EQ1", name="Haul Truck 1")
    service = LedgerService()

    result = await service.assign(db_session, "10.0.0.5", "EQ1", actor_id="U1")

    assert result.outcome == "assigned"
    assert result.ip_created is True
    assert result.assignment.is_active is True
    assert result.assignment.user_id == "U1"
    assert result.ip_address.status == IPStatus.ASSIGNED

    ip_rows = await fetch_all(
        session_factory, IPAddress, IPAddress.address == "10.0.0.5"
    )
    assert len(ip_rows) == 1
    assert ip_rows[0].status == IPStatus.ASSIGNED
    assert ip_rows[0].subnet == settings.DEFAULT_SUBNET


@pytest.mark.asyncio
async def test_assign_brings_offline_equipment_online(
    db_session: AsyncSession, session_factory: async_sessionmaker
) -> None:
    """Test that the first assignment moves OFFLINE equipment to ONLINE."""
    await make_equipment(db_session, "EQ1")
    service = LedgerService()

    result = await service.assign(db_session, "10.0.0.5", "EQ1", actor_id="U1")

    assert result.equipment_status_changed is True
    equipment = await fetch_one(session_factory, Equipment, "EQ1")
    assert equipment.status == EquipmentStatus.ONLINE
    assert equipment.last_seen is not None


@pytest.mark.asyncio
async def test_assign_writes_audit_and_alert(
    db_session: AsyncSession, session_factory: async_sessionmaker
) -> None:
    """Test that assign leaves an IP_ASSIGNED audit entry and alert."""
    await make_equipment(db_session, "EQ1", name="Haul Truck 1")
    service = LedgerService()

    result = await service.assign(
        db_session, "10.0.0.5", "EQ1", actor_id="U1", notes="shift A"
    )

    entries = await fetch_all(
        session_factory, AuditLogEntry, AuditLogEntry.action == "IP_ASSIGNED"
    )
    assert len(entries) == 1
    assert entries[0].user_id == "U1"
    assert entries[0].entity_id == str(result.assignment.id)
    assert entries[0].details["ip_address"] == "10.0.0.5"
    assert entries[0].details["notes"] == "shift A"

    alerts = await fetch_all(session_factory, Alert, Alert.type == AlertType.IP_ASSIGNED)
    assert len(alerts) == 1
    assert alerts[0].equipment_id == "EQ1"
    assert "Haul Truck 1" in alerts[0].message


@pytest.mark.asyncio
async def test_assign_held_ip_names_holder(
    db_session: AsyncSession, session_factory: async_sessionmaker
) -> None:
    """Test that a second assign of the same address is refused."""
    await make_equipment(db_session, "EQ1", name="Haul Truck 1")
    await make_equipment(db_session, "EQ2")
    service = LedgerService()
    first = await service.assign(db_session, "10.0.0.5", "EQ1", actor_id="U1")

    with pytest.raises(ConflictError) as exc_info:
        await service.assign(db_session, "10.0.0.5", "EQ2", actor_id="U1")

    assert "Haul Truck 1" in exc_info.value.detail
    assert exc_info.value.holder["equipment_id"] == "EQ1"
    assert exc_info.value.holder["assignment_id"] == first.assignment.id

    active = await fetch_all(session_factory, IPAssignment, IPAssignment.is_active)
    assert [a.equipment_id for a in active] == ["EQ1"]


@pytest.mark.asyncio
async def test_assign_reserved_ip_rejected(db_session: AsyncSession) -> None:
    """Test that reserved addresses cannot be assigned."""
    await make_equipment(db_session, "EQ1")
    await make_ip(db_session, "10.0.0.2", status=IPStatus.RESERVED, is_reserved=True)
    service = LedgerService()

    with pytest.raises(ConflictError) as exc_info:
        await service.assign(db_session, "10.0.0.2", "EQ1")

    assert "reserved" in exc_info.value.detail


@pytest.mark.asyncio
@pytest.mark.parametrize("address", ["10.0.0", "256.1.1.1", "", "abc"])
async def test_assign_invalid_ip(db_session: AsyncSession, address: str) -> None:
    """Test that malformed addresses are rejected before any write."""
    await make_equipment(db_session, "EQ1")
    service = LedgerService()

    with pytest.raises(ValidationError):
        await service.assign(db_session, address, "EQ1")


@pytest.mark.asyncio
async def test_assign_unknown_equipment(
    db_session: AsyncSession, session_factory: async_sessionmaker
) -> None:
    """Test assigning to equipment that does not exist."""
    service = LedgerService()

    with pytest.raises(NotFoundError):
        await service.assign(db_session, "10.0.0.5", "missing")

    assert await fetch_all(session_factory, IPAddress) == []


@pytest.mark.asyncio
async def test_assign_requires_equipment_id(db_session: AsyncSession) -> None:
    service = LedgerService()

    with pytest.raises(ValidationError):
        await service.assign(db_session, "10.0.0.5", "")


@pytest.mark.asyncio
async def test_assign_reuses_existing_ip_record(
    db_session: AsyncSession, session_factory: async_sessionmaker
) -> None:
    """Test that a known address keeps its own subnet settings."""
    await make_equipment(db_session, "EQ1")
    await make_ip(db_session, "10.0.0.7")
    service = LedgerService()

    result = await service.assign(db_session, "10.0.0.7", "EQ1")

    assert result.ip_created is False
    ip_rows = await fetch_all(session_factory, IPAddress)
    assert len(ip_rows) == 1
    assert ip_rows[0].subnet == "10.0.0.0/24"


@pytest.mark.asyncio
async def test_assign_survives_failing_alert(
    db_session: AsyncSession, session_factory: async_sessionmaker
) -> None:
    """Test that a failing alert write does not undo the assignment."""
    await make_equipment(db_session, "EQ1")
    service = LedgerService()
    service.alerts.alert_ip_assigned = AsyncMock(side_effect=RuntimeError("boom"))

    result = await service.assign(db_session, "10.0.0.5", "EQ1")

    assert result.outcome == "assigned"
    active = await fetch_all(session_factory, IPAssignment, IPAssignment.is_active)
    assert len(active) == 1
    entries = await fetch_all(
        session_factory, AuditLogEntry, AuditLogEntry.action == "IP_ASSIGNED"
    )
    assert len(entries) == 1


@pytest.mark.asyncio
async def test_release_round_trip(
    db_session: AsyncSession, session_factory: async_sessionmaker
) -> None:
    """Test assign, release, then a second release of the same address."""
    await make_equipment(db_session, "EQ1")
    service = LedgerService()
    await service.assign(db_session, "10.0.0.5", "EQ1", actor_id="U1")

    result = await service.release(
        db_session, AssignmentSelector(ip="10.0.0.5"), actor_id="U1"
    )

    assert result.outcome == "released"
    assert result.remaining_active == 0
    assert result.assignment.is_active is False
    assert result.assignment.released_at is not None
    assert result.ip_address.status == IPStatus.AVAILABLE

    with pytest.raises(NotFoundError):
        await service.release(
            db_session, AssignmentSelector(ip="10.0.0.5"), actor_id="U1"
        )

    ip_rows = await fetch_all(session_factory, IPAddress)
    assert ip_rows[0].status == IPStatus.AVAILABLE


@pytest.mark.asyncio
async def test_release_by_assignment_id(db_session: AsyncSession) -> None:
    await make_equipment(db_session, "EQ1")
    service = LedgerService()
    assigned = await service.assign(db_session, "10.0.0.5", "EQ1")

    result = await service.release(
        db_session, AssignmentSelector(assignment_id=assigned.assignment.id)
    )

    assert result.assignment.id == assigned.assignment.id

    with pytest.raises(NotFoundError):
        await service.release(
            db_session, AssignmentSelector(assignment_id=assigned.assignment.id)
        )


@pytest.mark.asyncio
async def test_release_by_pair(db_session: AsyncSession) -> None:
    await make_equipment(db_session, "EQ1")
    service = LedgerService()
    assigned = await service.assign(db_session, "10.0.0.5", "EQ1")

    result = await service.release(
        db_session,
        AssignmentSelector(
            ip_address_id=assigned.ip_address.id, equipment_id="EQ1"
        ),
    )

    assert result.ip_address.status == IPStatus.AVAILABLE

    with pytest.raises(NotFoundError):
        await service.release(
            db_session,
            AssignmentSelector(
                ip_address_id=assigned.ip_address.id, equipment_id="EQ1"
            ),
        )


@pytest.mark.asyncio
async def test_release_reserved_ip_goes_back_to_reserved(
    db_session: AsyncSession,
) -> None:
    """Test releasing an address that was reserved after being assigned."""
    await make_equipment(db_session, "EQ1")
    ip_row = await make_ip(db_session, "10.0.0.3", is_reserved=True)
    await force_assignment(db_session, ip_row, "EQ1")
    service = LedgerService()

    result = await service.release(db_session, AssignmentSelector(ip="10.0.0.3"))

    assert result.ip_address.status == IPStatus.RESERVED


@pytest.mark.asyncio
async def test_release_sets_equipment_offline(
    db_session: AsyncSession, session_factory: async_sessionmaker
) -> None:
    """Test that equipment left without an assignment goes OFFLINE."""
    await make_equipment(db_session, "EQ1")
    service = LedgerService()
    await service.assign(db_session, "10.0.0.5", "EQ1", actor_id="U1")

    result = await service.release(
        db_session, AssignmentSelector(ip="10.0.0.5"), actor_id="U1"
    )

    assert result.equipment_status_changed is True
    equipment = await fetch_one(session_factory, Equipment, "EQ1")
    assert equipment.status == EquipmentStatus.OFFLINE

    entries = await fetch_all(
        session_factory,
        AuditLogEntry,
        AuditLogEntry.action == "EQUIPMENT_STATUS_CHANGED",
    )
    assert len(entries) == 1
    assert entries[0].details["new_status"] == "OFFLINE"
    assert entries[0].details["reason"] == "no_active_assignment"

    unassigned = await fetch_all(
        session_factory, Alert, Alert.type == AlertType.IP_UNASSIGNED
    )
    assert len(unassigned) == 1


@pytest.mark.asyncio
async def test_release_keeps_equipment_online_with_other_assignment(
    db_session: AsyncSession, session_factory: async_sessionmaker
) -> None:
    await make_equipment(db_session, "EQ1")
    service = LedgerService()
    await service.assign(db_session, "10.0.0.5", "EQ1")
    await service.assign(db_session, "10.0.0.6", "EQ1")

    result = await service.release(db_session, AssignmentSelector(ip="10.0.0.5"))

    assert result.equipment_status_changed is False
    equipment = await fetch_one(session_factory, Equipment, "EQ1")
    assert equipment.status == EquipmentStatus.ONLINE


@pytest.mark.asyncio
async def test_release_bare_ip_during_conflict_releases_oldest(
    db_session: AsyncSession, session_factory: async_sessionmaker
) -> None:
    """Test that a bare address releases the oldest holder and stays ASSIGNED."""
    await make_equipment(db_session, "EQ1")
    await make_equipment(db_session, "EQ2")
    ip_row = await make_ip(db_session, "10.0.0.9")
    first = await force_assignment(
        db_session, ip_row, "EQ1", assigned_at=datetime(2024, 1, 1)
    )
    second = await force_assignment(
        db_session, ip_row, "EQ2", assigned_at=datetime(2024, 1, 2)
    )
    service = LedgerService()

    result = await service.release(db_session, AssignmentSelector(ip="10.0.0.9"))

    assert result.assignment.id == first.id
    assert result.remaining_active == 1
    assert result.ip_address.status == IPStatus.ASSIGNED

    stored = await fetch_all(
        session_factory, IPAssignment, IPAssignment.is_active
    )
    assert [a.id for a in stored] == [second.id]
    ip_stored = await fetch_one(session_factory, IPAddress, ip_row.id)
    assert ip_stored.status == IPStatus.ASSIGNED

    result = await service.release(db_session, AssignmentSelector(ip="10.0.0.9"))

    assert result.assignment.id == second.id
    assert result.remaining_active == 0
    assert result.ip_address.status == IPStatus.AVAILABLE


@pytest.mark.asyncio
async def test_release_unknown_ip(db_session: AsyncSession) -> None:
    service = LedgerService()

    with pytest.raises(NotFoundError):
        await service.release(db_session, AssignmentSelector(ip="10.0.0.99"))


@pytest.mark.parametrize(
    "selector",
    [
        AssignmentSelector(),
        AssignmentSelector(assignment_id=1, ip="10.0.0.5"),
        AssignmentSelector(ip_address_id=1),
        AssignmentSelector(equipment_id="EQ1"),
        AssignmentSelector(ip="not-an-ip"),
    ],
)
def test_selector_validation(selector: AssignmentSelector) -> None:
    """Test that selectors need exactly one well-formed form."""
    with pytest.raises(ValidationError):
        selector.validate()


def test_selector_forms() -> None:
    assert AssignmentSelector(assignment_id=3).validate() == "assignment_id"
    assert AssignmentSelector(ip_address_id=3, equipment_id="EQ1").validate() == "pair"
    assert AssignmentSelector(ip="10.0.0.1").validate() == "ip"


@pytest.mark.asyncio
async def test_get_active_assignments_oldest_first(db_session: AsyncSession) -> None:
    await make_equipment(db_session, "EQ1")
    await make_equipment(db_session, "EQ2")
    ip_row = await make_ip(db_session, "10.0.0.9")
    late = await force_assignment(
        db_session, ip_row, "EQ2", assigned_at=datetime(2024, 1, 2)
    )
    early = await force_assignment(
        db_session, ip_row, "EQ1", assigned_at=datetime(2024, 1, 1)
    )
    service = LedgerService()

    active = await service.get_active_assignments(db_session, "10.0.0.9")

    assert [a.id for a in active] == [early.id, late.id]
    assert await service.get_active_assignments(db_session, "10.0.0.10") == []

    with pytest.raises(ValidationError):
        await service.get_active_assignments(db_session, "bad")


@pytest.mark.asyncio
async def test_list_assignments_filters_and_total(db_session: AsyncSession) -> None:
    await make_equipment(db_session, "EQ1")
    await make_equipment(db_session, "EQ2")
    service = LedgerService()
    await service.assign(db_session, "10.0.0.5", "EQ1")
    await service.assign(db_session, "10.0.0.6", "EQ1")
    await service.assign(db_session, "10.0.0.7", "EQ2")
    await service.release(db_session, AssignmentSelector(ip="10.0.0.7"))

    rows, total = await service.list_assignments(db_session)
    assert total == 2
    assert {ip_row.address for _, ip_row in rows} == {"10.0.0.5", "10.0.0.6"}

    rows, total = await service.list_assignments(db_session, active_only=False)
    assert total == 3

    rows, total = await service.list_assignments(
        db_session, active_only=False, equipment_id="EQ2"
    )
    assert total == 1
    assert rows[0][0].is_active is False

    rows, total = await service.list_assignments(db_session, ip_address="10.0.0.6")
    assert total == 1

    rows, total = await service.list_assignments(db_session, limit=1)
    assert total == 2
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_check_ip_statuses(db_session: AsyncSession) -> None:
    """Test availability answers for every address state."""
    await make_equipment(db_session, "EQ1", name="Haul Truck 1")
    await make_equipment(db_session, "EQ2")
    await make_ip(db_session, "10.0.0.2", status=IPStatus.RESERVED, is_reserved=True)
    await make_ip(db_session, "10.0.0.3")
    conflicted = await make_ip(db_session, "10.0.0.9")
    await force_assignment(db_session, conflicted, "EQ1")
    await force_assignment(db_session, conflicted, "EQ2")
    service = LedgerService()
    await service.assign(db_session, "10.0.0.5", "EQ1")

    invalid = await service.check_ip(db_session, "10.0.0")
    assert invalid.status == "invalid"
    assert invalid.available is False

    unknown = await service.check_ip(db_session, "10.0.0.100")
    assert unknown.status == "available"
    assert unknown.available is True
    assert unknown.ip_address is None

    assert (await service.check_ip(db_session, "10.0.0.3")).status == "available"
    assert (await service.check_ip(db_session, "10.0.0.2")).status == "reserved"

    assigned = await service.check_ip(db_session, "10.0.0.5")
    assert assigned.status == "assigned"
    assert assigned.holders[0]["equipment_name"] == "Haul Truck 1"

    conflict = await service.check_ip(db_session, "10.0.0.9")
    assert conflict.status == "conflict"
    assert len(conflict.holders) == 2


@pytest.mark.asyncio
async def test_keyed_lock_serializes_same_key() -> None:
    """Test that holders of one key run one at a time."""
    locks = KeyedLock()
    order = []

    async def worker(key: str, name: str) -> None:
        async with locks.hold(key):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("10.0.0.5", "a"), worker("10.0.0.5", "b"))

    assert order == ["a-in", "a-out", "b-in", "b-out"]
    assert locks._locks == {}


@pytest.mark.asyncio
async def test_keyed_lock_independent_keys() -> None:
    locks = KeyedLock()
    order = []

    async def worker(key: str) -> None:
        async with locks.hold(key):
            order.append(f"{key}-in")
            await asyncio.sleep(0.01)
            order.append(f"{key}-out")

    await asyncio.gather(worker("a"), worker("b"))

    assert order[:2] == ["a-in", "b-in"]
