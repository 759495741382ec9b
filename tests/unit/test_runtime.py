"""
End-to-end wiring over the in-memory adapters.
"""

import asyncio

import pytest

from adflow.coordinator import AdflowSettings
from adflow.normalizers import MetaNormalizer, NormalizerRegistry
from adflow.runtime import ConsumerRuntime, ProducerRuntime

from tests.conftest import google_event, meta_event


def fast_settings(**overrides):
    opts = dict(
        _env_file=None,
        worker_count=2,
        wait_time_seconds=0,
        polling_interval_ms=10,
        processing_timeout_ms=2000,
        flush_interval_ms=10,
        write_flush_interval_ms=10,
        retry_initial_backoff_ms=1,
        retry_max_backoff_ms=5,
    )
    opts.update(overrides)
    return AdflowSettings(**opts)


async def wait_until(predicate, timeout=3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
@pytest.mark.parametrize("coalesce", [True, False])
async def test_produce_then_consume(queue, raw_store, normalized_store, coalesce):
    settings = fast_settings(coalesce_writes=coalesce)

    async with ProducerRuntime(queue=queue, settings=settings) as producer:
        results = await asyncio.gather(
            *(producer.publisher.publish(meta_event(f"c{i}")) for i in range(6)),
            producer.publisher.publish(google_event()),
            producer.publisher.publish({"source": "tiktok", "payload": {"x": 1}}),
        )
    assert all(r.success for r in results)
    assert queue.pending == 8

    async with ConsumerRuntime(
        queue=queue, raw_store=raw_store, normalized_store=normalized_store, settings=settings
    ) as consumer:
        await wait_until(lambda: queue.pending == 1)
        await wait_until(lambda: consumer.health()["errors"] == 1)
        health = consumer.health()

    assert len(raw_store.rows) == 8
    assert len(normalized_store.rows) == 7
    assert health["acknowledged"] == 7
    assert health["state"] == "running"
    assert consumer.poller.health().workers_alive == 0


def test_missing_required_normalizer_fails_at_startup(queue, raw_store, normalized_store):
    with pytest.raises(ValueError, match="google"):
        ConsumerRuntime(
            queue=queue,
            raw_store=raw_store,
            normalized_store=normalized_store,
            registry=NormalizerRegistry({"meta": MetaNormalizer()}),
            settings=fast_settings(),
        )


def test_from_settings_requires_database_urls():
    with pytest.raises(ValueError):
        ConsumerRuntime.from_settings(fast_settings(queue_url="https://sqs.local/q"))
