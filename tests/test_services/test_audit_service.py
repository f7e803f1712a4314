"""Tests for Audit Service."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from meshledger.services import audit_service
from meshledger.services.audit_service import AuditService

from conftest import make_equipment


@pytest.mark.asyncio
async def test_append_entry(db_session: AsyncSession) -> None:
    await make_equipment(db_session, "EQ1")
    service = AuditService()

    entry = await service.append(
        db_session,
        action=audit_service.EQUIPMENT_UPDATED,
        entity_type="equipment",
        entity_id="EQ1",
        actor_id="U1",
        equipment_id="EQ1",
        details={"changes": {"location": {"old": None, "new": "Pit 1"}}},
    )
    await db_session.commit()

    assert entry.id is not None
    assert entry.user_id == "U1"
    assert entry.created_at is not None
    assert entry.details["changes"]["location"]["new"] == "Pit 1"


@pytest.mark.asyncio
async def test_append_stringifies_entity_id(db_session: AsyncSession) -> None:
    service = AuditService()

    entry = await service.append(
        db_session, action=audit_service.ALERT_RESOLVED, entity_type="alert", entity_id=42
    )

    assert entry.entity_id == "42"
    assert entry.user_id == "system"


@pytest.mark.asyncio
async def test_list_entries_filters(db_session: AsyncSession) -> None:
    """Test newest-first listing and filters."""
    await make_equipment(db_session, "EQ1")
    service = AuditService()
    for action, entity_type, equipment_id in [
        (audit_service.EQUIPMENT_CREATED, "equipment", "EQ1"),
        (audit_service.IP_ASSIGNED, "ip_assignment", "EQ1"),
        (audit_service.IP_ORPHANED_FIXED, "ip_address", None),
    ]:
        await service.append(
            db_session,
            action=action,
            entity_type=entity_type,
            equipment_id=equipment_id,
        )
    await db_session.commit()

    entries = await service.list_entries(db_session)
    assert [e.action for e in entries] == [
        "IP_ORPHANED_FIXED",
        "IP_ASSIGNED",
        "EQUIPMENT_CREATED",
    ]

    entries = await service.list_entries(db_session, equipment_id="EQ1")
    assert len(entries) == 2

    entries = await service.list_entries(db_session, entity_type="ip_address")
    assert [e.action for e in entries] == ["IP_ORPHANED_FIXED"]

    entries = await service.list_entries(
        db_session, action=audit_service.EQUIPMENT_CREATED
    )
    assert len(entries) == 1

    entries = await service.list_entries(db_session, limit=1, offset=1)
    assert [e.action for e in entries] == ["IP_ASSIGNED"]


def test_audit_actions_are_unique() -> None:
    assert len(set(audit_service.AUDIT_ACTIONS)) == len(audit_service.AUDIT_ACTIONS)
    assert audit_service.IP_CONFLICT_RESOLVED in audit_service.AUDIT_ACTIONS


def test_no_mutation_api() -> None:
    """Test that audit entries can only be appended."""
    assert not hasattr(AuditService, "update")
    assert not hasattr(AuditService, "delete")
