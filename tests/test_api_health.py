"""Tests for the /health endpoint."""

from unittest.mock import AsyncMock
from fastapi import FastAPI
from fastapi.testclient import TestClient

from deal_workflow.api.routes.health import router


def _make_app(postgres=None) -> FastAPI:
    app = FastAPI()
    app.include_router(router)
    app.state.postgres = postgres
    return app


class TestHealthRoute:
    def test_health_memory_store(self):
        client = TestClient(_make_app())
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "store": "memory"}

    def test_health_ok(self):
        mock_pg = AsyncMock()
        mock_pg.verify_connectivity = AsyncMock(return_value=True)
        client = TestClient(_make_app(mock_pg))
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["store"] == "postgres"

    def test_health_postgres_down(self):
        mock_pg = AsyncMock()
        mock_pg.verify_connectivity = AsyncMock(return_value=False)
        client = TestClient(_make_app(mock_pg))
        response = client.get("/health")
        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"
