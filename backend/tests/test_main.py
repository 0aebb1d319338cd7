"""
Tests for main application
"""
import uuid

import pytest
from httpx import AsyncClient

from app.core.errors import RunLocked, InsufficientPermissions, NotFound


class TestHealthCheck:
    """Tests for health check endpoint"""

    @pytest.mark.asyncio
    async def test_health_check(self, client: AsyncClient):
        """Test health check returns healthy status"""
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()

        assert data["status"] == "healthy"
        assert "app" in data


class TestAppConfiguration:
    """Tests for application configuration"""

    @pytest.mark.asyncio
    async def test_cors_headers(self, client: AsyncClient):
        """Test CORS headers are present"""
        response = await client.options(
            "/api/admin/audit-runs",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "POST",
            }
        )

        assert response.headers.get("access-control-allow-origin") == "http://localhost:3000"

    @pytest.mark.asyncio
    async def test_api_routes_mounted(self, client: AsyncClient, manager, organization, auth_headers):
        """Admin routes are mounted under /api/admin"""
        response = await client.get(
            "/api/admin/audit-runs",
            params={"organizationId": str(organization.id)},
            headers=auth_headers(manager),
        )
        assert response.status_code == 200

        response = await client.get("/api/nonexistent")
        assert response.status_code in [404, 405]


class TestErrorEnvelope:
    """Every failure is rendered as {"error": message}"""

    @pytest.mark.asyncio
    async def test_unauthenticated_request(self, client: AsyncClient):
        response = await client.get("/api/admin/audit-runs")

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    @pytest.mark.asyncio
    async def test_wrong_password_advertises_basic(self, client: AsyncClient, manager):
        response = await client.get(
            "/api/admin/audit-runs",
            auth=(manager.email, "not-the-password"),
        )

        assert response.status_code == 401
        assert response.headers.get("www-authenticate") == "Basic"

    @pytest.mark.asyncio
    async def test_missing_organization_id(self, client: AsyncClient, manager, auth_headers):
        response = await client.get("/api/admin/audit-runs", headers=auth_headers(manager))

        assert response.status_code == 400
        assert response.json() == {"error": "Organization ID is required"}

    @pytest.mark.asyncio
    async def test_malformed_query_value_is_400(self, client: AsyncClient, manager, auth_headers):
        response = await client.get(
            "/api/admin/audit-runs",
            params={"organizationId": "not-a-uuid"},
            headers=auth_headers(manager),
        )

        assert response.status_code == 400
        assert "error" in response.json()

    @pytest.mark.asyncio
    async def test_unknown_audit_run_is_404(self, client: AsyncClient, manager, organization, auth_headers):
        response = await client.get(
            f"/api/admin/audit-runs/{uuid.uuid4()}",
            params={"organizationId": str(organization.id)},
            headers=auth_headers(manager),
        )

        assert response.status_code == 404
        assert response.json() == {"error": "Audit run not found"}

    def test_error_status_codes(self):
        assert RunLocked().status_code == 400
        assert RunLocked().message == "Cannot modify locked audit run"
        assert InsufficientPermissions().status_code == 403
        assert InsufficientPermissions().message == "Insufficient permissions"
        assert NotFound("Task not found").status_code == 404
