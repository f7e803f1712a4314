"""Tests for alert API endpoints."""

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import make_equipment


@pytest.mark.asyncio
async def test_create_alert_defaults(client: AsyncClient) -> None:
    """Test that severity and title default from the alert type."""
    response = await client.post("/api/v1/alerts", json={"type": "IP_CONFLICT"})
    assert response.status_code == 201
    data = response.json()
    assert data["severity"] == "CRITICAL"
    assert data["status"] == "PENDING"
    assert data["title"] == "Ip Conflict"
    assert data["message"] == "Ip Conflict"
    assert data["resolved_at"] is None


@pytest.mark.asyncio
async def test_create_alert_invalid_type(client: AsyncClient) -> None:
    response = await client.post("/api/v1/alerts", json={"type": "VOLCANO"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_resolve_alert(client: AsyncClient) -> None:
    """Test resolving an alert once."""
    response = await client.post(
        "/api/v1/alerts",
        json={"type": "SYSTEM_ERROR", "message": "disk full", "severity": "ERROR"},
    )
    alert_id = response.json()["id"]

    response = await client.post(
        f"/api/v1/alerts/{alert_id}/resolve", headers={"X-Actor-ID": "U7"}
    )
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "RESOLVED"
    assert data["resolved_by"] == "U7"
    assert data["resolved_at"] is not None

    response = await client.post(f"/api/v1/alerts/{alert_id}/resolve")
    assert response.status_code == 409

    response = await client.post("/api/v1/alerts/9999/resolve")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_list_and_filter_alerts(
    client: AsyncClient, db_session: AsyncSession
) -> None:
    await make_equipment(db_session, "EQ1")
    await client.post(
        "/api/v1/alerts", json={"type": "EQUIPMENT_OFFLINE", "equipment_id": "EQ1"}
    )
    await client.post("/api/v1/alerts", json={"type": "CONFIG_CHANGED"})

    response = await client.get("/api/v1/alerts")
    assert response.status_code == 200
    assert response.json()["total"] == 2

    response = await client.get("/api/v1/alerts", params={"equipment_id": "EQ1"})
    items = response.json()["items"]
    assert [item["type"] for item in items] == ["EQUIPMENT_OFFLINE"]

    response = await client.get("/api/v1/alerts", params={"severity": "WARNING"})
    items = response.json()["items"]
    assert [item["type"] for item in items] == ["CONFIG_CHANGED"]

    response = await client.get("/api/v1/alerts", params={"status": "RESOLVED"})
    assert response.json()["total"] == 0


@pytest.mark.asyncio
async def test_get_alert(client: AsyncClient) -> None:
    response = await client.post("/api/v1/alerts", json={"type": "CONFIG_CHANGED"})
    alert_id = response.json()["id"]

    response = await client.get(f"/api/v1/alerts/{alert_id}")
    assert response.status_code == 200
    assert response.json()["type"] == "CONFIG_CHANGED"

    response = await client.get("/api/v1/alerts/9999")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_alert_stats(client: AsyncClient) -> None:
    for alert_type in ["IP_CONFLICT", "IP_CONFLICT", "CONFIG_CHANGED"]:
        await client.post("/api/v1/alerts", json={"type": alert_type})
    response = await client.post("/api/v1/alerts", json={"type": "IP_ASSIGNED"})
    await client.post(f"/api/v1/alerts/{response.json()['id']}/resolve")

    response = await client.get("/api/v1/alerts/stats")
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 4
    assert data["pending"] == 3
    assert data["resolved"] == 1
    assert data["pending_by_severity"]["CRITICAL"] == 2
    assert data["pending_by_severity"]["WARNING"] == 1
    assert data["pending_by_type"] == {"IP_CONFLICT": 2, "CONFIG_CHANGED": 1}
