"""
HTTP boundary tests (aiohttp test client against the real app).
"""

import pytest
from aiohttp.test_utils import TestClient, TestServer

from adflow.coordinator import RetryPolicy
from adflow.ingest import create_app
from adflow.producer import EventPublisher
from adflow_client import InMemoryQueue

from tests.conftest import meta_event


def make_client(queue, **kwargs):
    publisher = EventPublisher(queue, flush_interval=0.01, **kwargs)
    return TestClient(TestServer(create_app(publisher)))


@pytest.mark.asyncio
async def test_valid_event_is_accepted():
    queue = InMemoryQueue()
    async with make_client(queue) as client:
        resp = await client.post("/events", json=meta_event())
        body = await resp.json()

    assert resp.status == 202
    assert body["success"] is True
    assert body["correlationId"]
    assert body["messageId"] in queue.published


@pytest.mark.asyncio
async def test_invalid_event_returns_400():
    queue = InMemoryQueue()
    async with make_client(queue) as client:
        resp = await client.post("/events", json={"source": "", "payload": {}})
        body = await resp.json()

    assert resp.status == 400
    assert body["success"] is False
    assert "source" in body["error"]
    assert queue.published == []


@pytest.mark.asyncio
async def test_malformed_json_returns_400():
    async with make_client(InMemoryQueue()) as client:
        resp = await client.post(
            "/events", data="{oops", headers={"Content-Type": "application/json"}
        )
        body = await resp.json()

    assert resp.status == 400
    assert body["error"] == "malformed JSON body"


@pytest.mark.asyncio
async def test_queue_outage_returns_503_without_cause():
    queue = InMemoryQueue()
    queue.fail_publish = 100
    retry = RetryPolicy(max_attempts=1, initial_backoff_ms=1, jitter=False)
    async with make_client(queue, retry_policy=retry) as client:
        resp = await client.post("/events", json=meta_event())
        body = await resp.json()

    assert resp.status == 503
    assert body["success"] is False
    assert "injected" not in body["error"]


@pytest.mark.asyncio
async def test_health_and_metrics_endpoints():
    async with make_client(InMemoryQueue()) as client:
        await client.post("/events", json=meta_event())
        health = await (await client.get("/health")).json()
        metrics = await client.get("/metrics")
        text = await metrics.text()

    assert health["status"] == "ok"
    assert health["processed"] == 1
    assert metrics.status == 200
    assert "adflow_producer_events_total" in text
