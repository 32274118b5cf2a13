"""Integration tests for /health, /health/ready and /metrics."""

from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient


class TestLivenessEndpoint:
    @pytest.mark.asyncio
    async def test_liveness_returns_healthy(self, client: AsyncClient):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"


class TestReadinessEndpoint:
    @pytest.mark.asyncio
    async def test_ready_when_queue_reachable(self, client: AsyncClient, queue_client):
        with patch("marketpulse.api.deps.get_queue", return_value=queue_client):
            resp = await client.get("/health/ready")
        assert resp.status_code == 200
        assert resp.json()["checks"]["queue"] == "ok"

    @pytest.mark.asyncio
    async def test_returns_503_when_queue_down(self, client: AsyncClient, queue_client):
        queue_client.get_queue_attributes = AsyncMock(side_effect=Exception("Connection refused"))
        with patch("marketpulse.api.deps.get_queue", return_value=queue_client):
            resp = await client.get("/health/ready")
        assert resp.status_code == 503
        data = resp.json()
        assert data["status"] == "not ready"
        assert data["checks"]["queue"].startswith("error:")


class TestMetricsEndpoint:
    @pytest.mark.asyncio
    async def test_metrics_exposed(self, client: AsyncClient):
        await client.post("/v1/jobs", json={"source": "reddit"})
        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert "jobs_enqueued_total" in resp.text

    @pytest.mark.asyncio
    async def test_metrics_disabled(self, client: AsyncClient):
        with patch("marketpulse.api.v1.health.settings.METRICS_ENABLED", False):
            resp = await client.get("/metrics")
        assert resp.status_code == 404
