"""Integration tests for the /v1/jobs enqueue endpoints."""

import json

import pytest
from httpx import AsyncClient

from conftest import client_error


def batch(n: int) -> dict:
    return {"jobs": [{"source": "reddit", "params": {"page": i}} for i in range(n)]}


class TestEnqueueJob:
    @pytest.mark.asyncio
    async def test_enqueue_returns_202(self, client: AsyncClient, fake_sqs):
        resp = await client.post("/v1/jobs", json={"source": "amazon", "params": {"asin": "B0"}})
        assert resp.status_code == 202
        data = resp.json()
        assert data["success"] is True
        assert data["jobId"]
        assert data["messageId"] == "msg-1"
        body = json.loads(fake_sqs.calls[0][1]["MessageBody"])
        assert body["params"] == {"asin": "B0"}

    @pytest.mark.asyncio
    async def test_missing_source_is_400(self, client: AsyncClient, fake_sqs):
        resp = await client.post("/v1/jobs", json={"params": {}})
        assert resp.status_code == 400
        data = resp.json()
        assert data["success"] is False
        assert data["error_code"] == "VALIDATION_ERROR"
        assert fake_sqs.calls == []

    @pytest.mark.asyncio
    async def test_request_id_header_is_echoed(self, client: AsyncClient):
        resp = await client.post(
            "/v1/jobs", json={"source": "reddit"}, headers={"X-Request-ID": "req-123"}
        )
        assert resp.headers["X-Request-ID"] == "req-123"

    @pytest.mark.asyncio
    async def test_queue_failure_is_503(self, client: AsyncClient, fake_sqs):
        fake_sqs.send_error = client_error("ServiceUnavailable", "SendMessage")
        resp = await client.post("/v1/jobs", json={"source": "reddit"})
        assert resp.status_code == 503
        assert resp.json()["error_code"] == "QUEUE_ERROR"


class TestEnqueueBatch:
    @pytest.mark.asyncio
    async def test_batch_of_25(self, client: AsyncClient, fake_sqs):
        resp = await client.post("/v1/jobs/batch", json=batch(25))
        assert resp.status_code == 202
        data = resp.json()
        assert data["success"] is True
        assert data["total"] == 25
        assert len(data["successful"]) == 25
        assert data["failed"] == []
        assert [len(c["Entries"]) for c in fake_sqs.batch_calls()] == [10, 10, 5]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [{}, {"jobs": []}, {"jobs": None}, {"jobs": "nope"}],
    )
    async def test_invalid_jobs_array_is_400(self, client: AsyncClient, fake_sqs, payload):
        resp = await client.post("/v1/jobs/batch", json=payload)
        assert resp.status_code == 400
        data = resp.json()
        assert data["success"] is False
        assert data["error_code"] == "VALIDATION_ERROR"
        assert fake_sqs.calls == []

    @pytest.mark.asyncio
    async def test_entry_without_source_rejects_batch(self, client: AsyncClient, fake_sqs):
        payload = batch(5)
        payload["jobs"][3] = {"params": {}}
        resp = await client.post("/v1/jobs/batch", json=payload)
        assert resp.status_code == 400
        assert "index 3" in resp.json()["error"]
        assert fake_sqs.calls == []

    @pytest.mark.asyncio
    async def test_partial_failure_reported(self, client: AsyncClient, fake_sqs):
        payload = {"jobs": [{"id": f"j{i}", "source": "reddit"} for i in range(4)]}
        fake_sqs.fail_job_ids = {"j2"}
        resp = await client.post("/v1/jobs/batch", json=payload)
        assert resp.status_code == 202
        data = resp.json()
        assert data["success"] is True
        assert [s["jobId"] for s in data["successful"]] == ["j0", "j1", "j3"]
        assert data["failed"][0]["jobId"] == "j2"
        assert data["failed"][0]["code"] == "InternalError"

    @pytest.mark.asyncio
    async def test_total_queue_failure_is_queue_error(self, client: AsyncClient, fake_sqs):
        fake_sqs.batch_errors = {0: client_error("ServiceUnavailable", "SendMessageBatch")}
        resp = await client.post("/v1/jobs/batch", json=batch(3))
        assert resp.status_code == 503
        data = resp.json()
        assert data["success"] is False
        assert data["error_code"] == "QUEUE_ERROR"


class TestQueueAttributes:
    @pytest.mark.asyncio
    async def test_attributes(self, client: AsyncClient):
        resp = await client.get("/v1/jobs/queue")
        assert resp.status_code == 200
        assert resp.json()["attributes"]["ApproximateNumberOfMessages"] == "3"
