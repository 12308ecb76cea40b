"""Tests for health check endpoints."""

import pytest


@pytest.mark.asyncio
async def test_health_check(client):
    """Test basic health check."""
    response = await client.get("/health")
    assert response.status_code == 200

    data = response.json()
    assert data["status"] == "healthy"
    assert "timestamp" in data


@pytest.mark.asyncio
async def test_readiness_check(client):
    """In-memory storage is always reachable."""
    response = await client.get("/health/ready")
    assert response.status_code == 200

    data = response.json()
    assert data["status"] == "ready"
    assert data["checks"]["storage"] is True


@pytest.mark.asyncio
async def test_liveness_check(client):
    """Test liveness check."""
    response = await client.get("/health/live")
    assert response.status_code == 200

    data = response.json()
    assert data["status"] == "alive"


@pytest.mark.asyncio
async def test_root_endpoint(client):
    """Test root endpoint."""
    response = await client.get("/")
    assert response.status_code == 200

    data = response.json()
    assert data["service"] == "Messenger Outreach API"
    assert data["status"] == "running"


@pytest.mark.asyncio
async def test_diagnostics_requires_session(client):
    response = await client.get("/diagnostics")
    assert response.status_code == 401
    assert response.json()["error"] == "NOT_AUTHENTICATED"


@pytest.mark.asyncio
async def test_diagnostics_reports_pages_and_storage(auth_client, page):
    response = await auth_client.get("/diagnostics")
    assert response.status_code == 200

    data = response.json()
    assert data["storage"] == {"backend": "InMemoryStorage", "healthy": True}
    assert data["pages"][0]["name"] == "Santos Bakery"
    assert data["pages"][0]["has_token"] is True
    assert data["authentication"]["token_expired"] is False
