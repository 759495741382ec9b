"""
Unit tests for EventPublisher validation and batched publishing.
"""

import asyncio
import json

import pytest

from adflow.coordinator import RetryPolicy
from adflow.producer import EventPublisher, validate_event
from adflow_client import InMemoryQueue

from tests.conftest import meta_event


class CountingQueue(InMemoryQueue):
    def __init__(self):
        super().__init__()
        self.batch_sizes = []
        self.single_publishes = 0

    async def publish_batch(self, bodies):
        self.batch_sizes.append(len(bodies))
        return await super().publish_batch(bodies)

    async def publish(self, body):
        self.single_publishes += 1
        return await super().publish(body)


def no_retry():
    return RetryPolicy(max_attempts=1, initial_backoff_ms=1, jitter=False)


def test_validate_event_messages():
    assert validate_event(meta_event()) == []
    assert validate_event([]) == ["event must be a JSON object"]
    errors = validate_event({"source": 5, "payload": "x", "timestamp": 1})
    assert len(errors) == 3


@pytest.mark.asyncio
async def test_concurrent_publishes_are_batched():
    queue = CountingQueue()
    async with EventPublisher(queue, flush_interval=0.02) as publisher:
        results = await asyncio.gather(*(publisher.publish(meta_event(f"c{i}")) for i in range(12)))

    assert all(r.success for r in results)
    assert len({r.message_id for r in results}) == 12
    assert len({r.correlation_id for r in results}) == 12
    assert queue.batch_sizes == [10, 2]
    assert queue.single_publishes == 0


@pytest.mark.asyncio
async def test_missing_id_is_filled_with_correlation_id():
    queue = InMemoryQueue()
    async with EventPublisher(queue, flush_interval=0.01) as publisher:
        generated = await publisher.publish(meta_event())
        kept = await publisher.publish(meta_event(id="evt-1"))

    bodies = [json.loads(b) for b in queue.bodies()]
    assert bodies[0]["id"] == generated.correlation_id
    assert bodies[1]["id"] == "evt-1"
    assert "timestamp" not in bodies[0]


@pytest.mark.asyncio
async def test_invalid_event_is_rejected_without_publishing():
    queue = InMemoryQueue()
    async with EventPublisher(queue, flush_interval=0.01) as publisher:
        result = await publisher.publish({"source": "meta"})
        stats = publisher.stats()

    assert not result.success
    assert result.rejected
    assert "payload" in result.error
    assert result.correlation_id
    assert queue.published == []
    assert stats.rejected == 1
    assert stats.errors == 0


@pytest.mark.asyncio
async def test_queue_failure_is_reported_not_raised():
    queue = InMemoryQueue()
    queue.fail_publish = 100
    async with EventPublisher(queue, flush_interval=0.01, retry_policy=no_retry()) as publisher:
        result = await publisher.publish(meta_event())
        stats = publisher.stats()

    assert not result.success
    assert not result.rejected
    assert stats.errors == 1
    assert stats.success_rate == 0.0


@pytest.mark.asyncio
async def test_unbatched_publish_retries_transient_failures(fast_retry):
    queue = CountingQueue()
    queue.fail_publish = 1
    publisher = EventPublisher(queue, batching=False, retry_policy=fast_retry)

    result = await publisher.publish(meta_event())
    await publisher.shutdown()

    assert result.success
    assert queue.single_publishes == 2
    assert queue.batch_sizes == []
    assert publisher.stats().accumulator is None


@pytest.mark.asyncio
async def test_stats_track_success_rate():
    queue = InMemoryQueue()
    async with EventPublisher(queue, flush_interval=0.01) as publisher:
        await publisher.publish(meta_event("a"))
        await publisher.publish(meta_event("b"))
        stats = publisher.stats()

    assert stats.processed == 2
    assert stats.success_rate == 100.0
    assert stats.events_per_second > 0
