import pytest
from unittest.mock import AsyncMock, patch


@pytest.mark.asyncio
async def test_health_reports_database_status(client):
    healthy = {"status": "healthy", "test_query": True}
    with patch("app.main.check_database_health", new=AsyncMock(return_value=healthy)):
        resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["services"]["database"]["status"] == "healthy"

    with patch("app.main.check_database_health", new=AsyncMock(return_value={"status": "unhealthy"})):
        resp = await client.get("/health")
    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_metrics_and_version(client):
    await client.get("/version")
    resp = await client.get("/metrics")
    assert resp.status_code == 200
    assert "http_requests_total" in resp.text


@pytest.mark.asyncio
async def test_unknown_route_uses_error_envelope(client):
    resp = await client.get("/api/v1/nothing-here")
    assert resp.status_code == 404
    body = resp.json()
    assert body["success"] is False
    assert body["error_code"] == "NOT_FOUND"
    assert body["request_id"] == resp.headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_request_validation_errors_are_400(client):
    resp = await client.post("/api/v1/auth/login", json={"password": "x"})
    assert resp.status_code == 400
    assert resp.json()["error_code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_invalid_token_is_401(client):
    resp = await client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401
    assert resp.headers["WWW-Authenticate"] == "Bearer"
