"""
Dual-sink item pipeline: received bytes -> raw store -> normalizer -> normalized store -> ack.

Stages run strictly in order. The raw copy is persisted before normalization is
attempted, so raw data survives normalization bugs and unknown sources. The
queue message is deleted only after every prior stage succeeded; any failure
leaves it for redelivery, which is why both stores must accept duplicate writes.
"""

from __future__ import annotations

import asyncio
import json
from time import monotonic
from typing import Any, Optional

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from ..coordinator.policy import RetryPolicy
from ..coordinator.types import QueueClient, QueueMessage, RecordStore, WriteResult
from ..errors import (
    NormalizationError,
    NormalizedWriteError,
    PipelineError,
    ProcessingTimeout,
    RawWriteError,
    TransientQueueError,
    ValidationError,
)
from ..metrics.registry import (
    PIPELINE_ERRORS_TOTAL,
    PIPELINE_LATENCY_MS,
    PIPELINE_MESSAGES_TOTAL,
    PIPELINE_RECONCILIATION_TOTAL,
    QUEUE_OPERATIONS_TOTAL,
)
from ..models import Event, NormalizedEvent, RawRecord
from ..normalizers.base import NormalizerRegistry
from .outcome import FailureStage, PipelineOutcome, Stage
from .stats import PipelineStats, StatsSnapshot


def parse_event(body: str) -> Event:
    """Deserialize a queue message body.

    Raises:
        ValidationError: malformed JSON or not an event object
    """
    try:
        data: Any = json.loads(body)
    except (json.JSONDecodeError, TypeError) as exc:
        raise ValidationError(f"malformed JSON: {exc}", cause=exc) from exc
    if not isinstance(data, dict):
        raise ValidationError(f"event must be a JSON object, got {type(data).__name__}")
    try:
        return Event.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid event: {exc.error_count()} error(s): {exc}") from exc


class DualSinkPipeline:
    """Per-message state machine driven by the queue poller.

    ``process()`` never raises for expected failures; it returns a
    PipelineOutcome whose ``failed_stage`` names the transition that failed.
    """

    def __init__(
        self,
        *,
        queue: QueueClient,
        raw_store: RecordStore[RawRecord],
        normalized_store: RecordStore[NormalizedEvent],
        registry: NormalizerRegistry,
        retry_policy: Optional[RetryPolicy] = None,
        stats: Optional[PipelineStats] = None,
        name: str = "pipeline",
    ):
        self._queue = queue
        self._raw = raw_store
        self._normalized = normalized_store
        self._registry = registry
        self._retry = retry_policy or RetryPolicy()
        self._stats = stats or PipelineStats()
        self._name = name

    def stats(self) -> StatsSnapshot:
        return self._stats.snapshot()

    async def process(self, message: QueueMessage) -> PipelineOutcome:
        t0 = monotonic()
        self._stats.record_received()

        # Received -> Parsed
        try:
            event = parse_event(message.body)
        except ValidationError as exc:
            return self._failed(message, Stage.RECEIVED, FailureStage.PARSE, exc, t0)

        # Parsed -> RawPersisted
        record = RawRecord.from_event(event, message_id=message.message_id)
        raw = await self._write(self._raw, record)
        if not raw.success:
            err = RawWriteError(f"raw write failed: {raw.error}")
            return self._failed(message, Stage.PARSED, FailureStage.RAW_WRITE, err, t0, event)
        logger.debug(f"{self._name}: {message.message_id} raw persisted ({record.dedupe_key})")

        # RawPersisted -> Normalized
        normalized = self._registry.normalize(record)
        if isinstance(normalized, NormalizationError):
            return self._failed(
                message, Stage.RAW_PERSISTED, FailureStage.NORMALIZE, normalized, t0, event
            )

        # Normalized -> NormalizedPersisted
        result = await self._write(self._normalized, normalized)
        if not result.success:
            err = NormalizedWriteError(f"normalized write failed: {result.error}")
            PIPELINE_RECONCILIATION_TOTAL.labels(source=event.source).inc()
            logger.warning(
                f"{self._name}: {message.message_id} raw record {record.dedupe_key} "
                f"has no normalized row; needs reconciliation"
            )
            return self._failed(
                message, Stage.NORMALIZED, FailureStage.NORMALIZED_WRITE, err, t0, event
            )

        # NormalizedPersisted -> Acknowledged
        try:
            await self._acknowledge(message)
        except Exception as exc:
            if isinstance(exc, PipelineError):
                err = exc
            else:
                err = TransientQueueError(f"delete failed: {exc}", cause=exc)
            return self._failed(
                message, Stage.NORMALIZED_PERSISTED, FailureStage.ACK, err, t0, event
            )

        outcome = PipelineOutcome(
            message_id=message.message_id,
            stage=Stage.ACKNOWLEDGED,
            source=event.source,
            duration_ms=(monotonic() - t0) * 1000.0,
        )
        self._stats.record(outcome)
        PIPELINE_MESSAGES_TOTAL.labels(outcome="acknowledged").inc()
        PIPELINE_LATENCY_MS.labels(outcome="acknowledged").observe(outcome.duration_ms)
        logger.debug(
            f"{self._name}: {message.message_id} processed in {outcome.duration_ms:.1f}ms"
        )
        return outcome

    def record_timeout(self, message: QueueMessage, error: ProcessingTimeout) -> None:
        """Count a dispatch abandoned by the poller's processing timeout."""
        self._stats.record_failure(FailureStage.TIMEOUT)
        PIPELINE_MESSAGES_TOTAL.labels(outcome="failed").inc()
        PIPELINE_ERRORS_TOTAL.labels(stage=FailureStage.TIMEOUT.value, kind=error.kind.value).inc()

    # --------------- internals

    async def _write(self, store: RecordStore[Any], record: Any) -> WriteResult:
        try:
            return await store.insert(record)
        except Exception as exc:
            return WriteResult.failed(f"{type(exc).__name__}: {exc}")

    async def _acknowledge(self, message: QueueMessage) -> None:
        attempt = 0
        while True:
            attempt += 1
            try:
                await self._queue.delete(message.ack_token)
                QUEUE_OPERATIONS_TOTAL.labels(operation="delete", status="success").inc()
                return
            except Exception as exc:
                QUEUE_OPERATIONS_TOTAL.labels(operation="delete", status="failure").inc()
                if not self._retry.should_retry(exc, attempt):
                    raise
                delay_ms = self._retry.next_backoff_ms(attempt)
                logger.warning(
                    f"{self._name}: delete of {message.message_id} failed ({exc}); "
                    f"retrying in {delay_ms}ms"
                )
                await asyncio.sleep(delay_ms / 1000.0)

    def _failed(
        self,
        message: QueueMessage,
        stage: Stage,
        failed_stage: FailureStage,
        error: PipelineError,
        t0: float,
        event: Optional[Event] = None,
    ) -> PipelineOutcome:
        outcome = PipelineOutcome(
            message_id=message.message_id,
            stage=stage,
            failed_stage=failed_stage,
            error=error,
            source=event.source if event else None,
            duration_ms=(monotonic() - t0) * 1000.0,
        )
        self._stats.record(outcome)
        PIPELINE_MESSAGES_TOTAL.labels(outcome="failed").inc()
        PIPELINE_ERRORS_TOTAL.labels(stage=failed_stage.value, kind=error.kind.value).inc()
        PIPELINE_LATENCY_MS.labels(outcome="failed").observe(outcome.duration_ms)
        logger.error(
            f"{self._name}: message {message.message_id} failed at {failed_stage.value} "
            f"({error.kind.value}): {error}; left for redelivery"
        )
        return outcome
