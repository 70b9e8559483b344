"""Tests for FastAPI application endpoints.

Tests cover:
- Health check endpoint (/health) - P0 critical for deployment
- Root endpoint (/) - P1 API metadata and discovery
- Router registration
"""

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from framebrew import __version__
from framebrew.main import app


@pytest.fixture
def client() -> TestClient:
    """Create FastAPI test client.

    The client is used without a ``with`` block, so the lifespan (and the
    pipeline it builds) does not run.

    Returns:
        TestClient: Synchronous client for testing FastAPI endpoints.
    """
    return TestClient(app)


class TestHealthEndpoint:
    """Tests for /health endpoint (P0 - Critical for deployment)."""

    def test_health_endpoint_returns_200(self, client: TestClient) -> None:
        """[P0] Test health endpoint returns 200 OK status.

        GIVEN: FastAPI application is running
        WHEN: GET request to /health endpoint
        THEN: Returns 200 OK status code
        """
        # WHEN: Requesting health endpoint
        response = client.get("/health")

        # THEN: Returns 200 OK
        assert response.status_code == status.HTTP_200_OK

    def test_health_endpoint_reports_service(self, client: TestClient) -> None:
        """[P0] Health body names the service and reports no backend before startup."""
        data = client.get("/health").json()

        assert data == {"status": "healthy", "service": "framebrew", "queue_backend": None}


class TestRootEndpoint:
    """Tests for / endpoint (P1 - API discovery)."""

    def test_root_endpoint_returns_metadata(self, client: TestClient) -> None:
        """[P1] Root endpoint returns version and discovery links.

        GIVEN: FastAPI application is running
        WHEN: GET request to / endpoint
        THEN: Response contains version, docs, health and events links
        """
        response = client.get("/")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["version"] == __version__
        assert data["docs"] == "/docs"
        assert data["health"] == "/health"
        assert data["events"] == "/api/v1/events"


class TestApplicationConfiguration:
    def test_pipeline_routes_are_registered(self) -> None:
        """[P1] Job, event and file routes are mounted on the app."""
        paths = {route.path for route in app.routes}

        assert "/api/v1/generations" in paths
        assert "/api/v1/jobs/{job_id}/cancel" in paths
        assert "/api/v1/events" in paths
        assert "/api/files/{key:path}" in paths

    def test_app_has_lifespan(self) -> None:
        assert app.router.lifespan_context is not None
