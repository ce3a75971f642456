"""
Tests for health and utility endpoints.
"""

import pytest
from httpx import AsyncClient


@pytest.mark.unit
class TestHealthEndpoints:
    """Test health check endpoints."""

    async def test_health_check(self, client: AsyncClient) -> None:
        """Health reports every screening provider once startup has run."""
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "surveyguard-api"
        assert data["providers"] == 8

    async def test_root_endpoint(self, client: AsyncClient) -> None:
        """Test root endpoint returns API info."""
        response = await client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["version"] == "1.0.0"
        assert "name" in data

    async def test_security_headers(self, client: AsyncClient) -> None:
        response = await client.get("/health")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"] == "no-store"

    async def test_request_id_is_echoed(self, client: AsyncClient) -> None:
        response = await client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"

    async def test_request_id_is_generated(self, client: AsyncClient) -> None:
        response = await client.get("/health")
        assert len(response.headers["X-Request-ID"]) == 32


@pytest.mark.unit
class TestAPIDocumentation:
    """Test API documentation endpoints."""

    async def test_openapi_schema_available(self, client: AsyncClient) -> None:
        """Test OpenAPI schema is accessible (only in debug mode)."""
        from core.config import settings

        response = await client.get("/openapi.json")
        if settings.DEBUG:
            assert response.status_code == 200
            data = response.json()
            assert "openapi" in data
            assert "paths" in data
        else:
            # Docs disabled in production
            assert response.status_code in [200, 404]

    async def test_docs_available(self, client: AsyncClient) -> None:
        """Test Swagger UI docs are accessible (only in debug mode)."""
        from core.config import settings

        response = await client.get("/docs")
        if settings.DEBUG:
            assert response.status_code == 200
        else:
            # Docs disabled in production
            assert response.status_code in [200, 404]


@pytest.mark.unit
class TestServiceStatus:
    """Test the lookup source status endpoint."""

    async def test_empty_tor_list_is_degraded(self, client: AsyncClient) -> None:
        response = await client.get("/health/services")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "degraded"
        assert data["services"]["tor_exit_list"] == {"configured": False, "details": {"nodes": 0}}
        assert set(data["services"]) == {"ipinfo", "abuseipdb", "captcha_siteverify", "rdap", "tor_exit_list"}

    async def test_loaded_tor_list_is_healthy(self, client: AsyncClient, app) -> None:
        app.state.components.tor_exit_nodes.replace({"185.220.101.1"})
        data = (await client.get("/health/services")).json()
        assert data["status"] == "healthy"
        assert data["services"]["tor_exit_list"]["details"]["nodes"] == 1
