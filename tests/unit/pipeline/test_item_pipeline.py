"""
Unit tests for the dual-sink pipeline state machine.
"""

import asyncio
import json
from decimal import Decimal

import pytest
from prometheus_client import REGISTRY

from adflow.errors import NormalizationError, QueueError, RawWriteError, ValidationError
from adflow.models import NormalizedEvent
from adflow.pipeline import FailureStage, Stage, parse_event

from tests.conftest import google_event, meta_event


async def receive_one(queue):
    (message,) = await queue.receive_batch(1, 0, 30)
    return message


def errors_sample(stage, kind):
    return (
        REGISTRY.get_sample_value("adflow_pipeline_errors_total", {"stage": stage, "kind": kind})
        or 0.0
    )


@pytest.mark.asyncio
async def test_meta_event_is_normalized_and_acknowledged(
    queue, raw_store, normalized_store, pipeline, publish_json
):
    message_id = await publish_json(meta_event())

    outcome = await pipeline.process(await receive_one(queue))

    assert outcome.acknowledged
    assert outcome.stage is Stage.ACKNOWLEDGED
    assert outcome.source == "meta"
    assert queue.delete_count(message_id) == 1
    assert queue.pending == 0

    (raw,) = raw_store.rows.values()
    assert raw.source == "meta"
    assert raw.message_id == message_id

    (row,) = normalized_store.rows.values()
    assert row == NormalizedEvent(
        unified_campaign_id="c1",
        campaign_name="Camp",
        source_platform="meta",
        event_date="2024-01-01",
        impressions=100,
        clicks=10,
        spend=Decimal("5.5"),
        conversions=2,
    )


@pytest.mark.asyncio
async def test_google_event_spend_from_micros(queue, normalized_store, pipeline, publish_json):
    await publish_json(google_event())

    outcome = await pipeline.process(await receive_one(queue))

    assert outcome.acknowledged
    (row,) = normalized_store.rows.values()
    assert row.unified_campaign_id == "987"
    assert row.spend == Decimal("12.5")
    assert row.event_date == "2024-02-03"


@pytest.mark.asyncio
async def test_unknown_source_keeps_raw_copy_and_is_not_acknowledged(
    queue, raw_store, normalized_store, pipeline, publish_json
):
    before = errors_sample("normalize", "normalization")
    message_id = await publish_json({"source": "tiktok", "payload": {"campaign_id": "t1"}})

    outcome = await pipeline.process(await receive_one(queue))

    assert outcome.failed_stage is FailureStage.NORMALIZE
    assert outcome.stage is Stage.RAW_PERSISTED
    assert isinstance(outcome.error, NormalizationError)
    assert "tiktok" in str(outcome.error)
    assert len(raw_store.rows) == 1
    assert normalized_store.calls == 0
    assert pipeline.stats().error_count == 1
    assert errors_sample("normalize", "normalization") - before == 1
    assert queue.delete_count(message_id) == 0
    assert queue.pending == 1


@pytest.mark.asyncio
async def test_raw_write_failure_skips_normalized_store(
    queue, raw_store, normalized_store, pipeline, publish_json
):
    raw_store.permanent = True
    message_id = await publish_json(meta_event())

    outcome = await pipeline.process(await receive_one(queue))

    assert outcome.failed_stage is FailureStage.RAW_WRITE
    assert isinstance(outcome.error, RawWriteError)
    assert normalized_store.calls == 0
    assert queue.delete_count(message_id) == 0


@pytest.mark.asyncio
async def test_normalized_write_failure_needs_reconciliation_then_redelivery_succeeds(
    queue, raw_store, normalized_store, pipeline, publish_json
):
    normalized_store.permanent = True
    message_id = await publish_json(meta_event())

    first = await pipeline.process(await receive_one(queue))
    assert first.failed_stage is FailureStage.NORMALIZED_WRITE
    assert first.needs_reconciliation
    assert pipeline.stats().reconciliation_needed == 1
    assert queue.delete_count(message_id) == 0

    # visibility timeout expires; the queue hands the message out again
    normalized_store.permanent = False
    queue.expire_visibility()
    second = await pipeline.process(await receive_one(queue))

    assert second.acknowledged
    assert len(raw_store.rows) == 1
    assert len(normalized_store.rows) == 1
    assert queue.delete_count(message_id) == 1


@pytest.mark.asyncio
async def test_malformed_json_fails_at_parse(queue, raw_store, pipeline):
    await queue.publish("{not json")

    outcome = await pipeline.process(await receive_one(queue))

    assert outcome.failed_stage is FailureStage.PARSE
    assert outcome.stage is Stage.RECEIVED
    assert isinstance(outcome.error, ValidationError)
    assert raw_store.calls == 0
    assert queue.pending == 1


@pytest.mark.asyncio
async def test_delete_is_retried_before_giving_up(queue, pipeline, publish_json):
    message_id = await publish_json(meta_event())
    queue.fail_delete = 1

    outcome = await pipeline.process(await receive_one(queue))

    assert outcome.acknowledged
    assert queue.delete_count(message_id) == 1


@pytest.mark.asyncio
async def test_delete_failure_leaves_message_for_redelivery(
    queue, normalized_store, pipeline, publish_json
):
    message_id = await publish_json(meta_event())
    queue.fail_delete = 10

    outcome = await pipeline.process(await receive_one(queue))

    assert outcome.failed_stage is FailureStage.ACK
    assert outcome.stage is Stage.NORMALIZED_PERSISTED
    assert len(normalized_store.rows) == 1
    assert queue.delete_count(message_id) == 0


@pytest.mark.asyncio
async def test_permanent_delete_error_is_not_retried(queue, pipeline, publish_json, monkeypatch):
    await publish_json(meta_event())
    calls = []

    async def missing_queue(ack_token):
        calls.append(ack_token)
        raise QueueError("sqs delete_message failed permanently (AWS.SimpleQueueService.NonExistentQueue)")

    message = await receive_one(queue)
    monkeypatch.setattr(queue, "delete", missing_queue)

    outcome = await pipeline.process(message)

    assert outcome.failed_stage is FailureStage.ACK
    assert isinstance(outcome.error, QueueError)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_stats_snapshot_is_immutable(queue, pipeline, publish_json):
    await publish_json(meta_event())
    await publish_json({"source": "tiktok", "payload": {}})
    for message in await queue.receive_batch(10, 0, 30):
        await pipeline.process(message)

    snap = pipeline.stats()
    assert snap.received == 2
    assert snap.acknowledged == 1
    assert snap.error_count == 1
    assert snap.success_rate == 50.0
    assert snap.failures_by_stage["normalize"] == 1
    with pytest.raises(TypeError):
        snap.failures_by_stage["normalize"] = 0


@pytest.mark.asyncio
async def test_concurrent_messages_are_processed_independently(
    queue, raw_store, normalized_store, pipeline, publish_json
):
    for i in range(5):
        await publish_json(meta_event(f"c{i}"))
    await publish_json({"source": "meta", "payload": {"insights": {}}})

    messages = await queue.receive_batch(10, 0, 30)
    outcomes = await asyncio.gather(*(pipeline.process(m) for m in messages))

    assert sum(o.acknowledged for o in outcomes) == 5
    assert len(normalized_store.rows) == 5
    assert queue.pending == 1


def test_parse_event_rejects_non_objects():
    with pytest.raises(ValidationError):
        parse_event(json.dumps([1, 2, 3]))
    with pytest.raises(ValidationError):
        parse_event(json.dumps({"source": "", "payload": {}}))
    with pytest.raises(ValidationError):
        parse_event(json.dumps({"source": "meta", "payload": "nope"}))
    assert parse_event(json.dumps({"source": "meta", "payload": {}})).source == "meta"
