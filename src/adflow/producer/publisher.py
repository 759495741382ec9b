from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from time import monotonic
from typing import Any, Optional

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from ..coordinator.accumulator import AccumulatorStats, BatchAccumulator
from ..coordinator.gate import ConcurrencyGate
from ..coordinator.policy import RetryPolicy
from ..coordinator.types import SQS_BATCH_LIMIT, QueueClient
from ..metrics.registry import PRODUCER_EVENTS_TOTAL, QUEUE_OPERATIONS_TOTAL
from ..models import Event
from .validation import EventValidator, validate_event


@dataclass(frozen=True)
class PublishResult:
    """What the HTTP boundary may tell the producer: accepted or not, plus a correlation id."""

    success: bool
    correlation_id: str
    message_id: Optional[str] = None
    error: Optional[str] = None
    rejected: bool = False  # invalid request, as opposed to a publish failure


@dataclass(frozen=True)
class PublisherStats:
    processed: int
    errors: int
    rejected: int
    uptime_seconds: float
    accumulator: Optional[AccumulatorStats] = None

    @property
    def success_rate(self) -> float:
        total = self.processed + self.errors
        return (self.processed / total) * 100 if total > 0 else 0.0

    @property
    def events_per_second(self) -> float:
        return self.processed / self.uptime_seconds if self.uptime_seconds > 0 else 0.0


class EventPublisher:
    """Validate events and publish them to the queue in batches of up to 10.

    Every caller waits for its own event's outcome, so an accepted response is
    only returned once the event is durably on the queue.

    Usage:
        async with EventPublisher(queue, flush_interval=0.1) as publisher:
            result = await publisher.publish({"source": "meta", "payload": {...}})
    """

    def __init__(
        self,
        queue: QueueClient,
        *,
        validator: EventValidator = validate_event,
        batching: bool = True,
        max_batch_size: int = SQS_BATCH_LIMIT,
        flush_interval: float = 0.1,
        gate: Optional[ConcurrencyGate] = None,
        retry_policy: Optional[RetryPolicy] = None,
        name: str = "publisher",
    ):
        self._queue = queue
        self._validator = validator
        self._retry = retry_policy or RetryPolicy()
        self._name = name
        self._acc: Optional[BatchAccumulator[str]] = None
        if batching:
            self._acc = BatchAccumulator[str](
                queue.publish_batch,
                max_batch_size=max_batch_size,
                flush_interval=flush_interval,
                hard_limit=SQS_BATCH_LIMIT,
                gate=gate,
                retry_policy=self._retry,
                name=f"{name}-batch",
            )

        self._started = monotonic()
        self._processed = 0
        self._errors = 0
        self._rejected = 0

    async def __aenter__(self) -> "EventPublisher":
        if self._acc is not None:
            await self._acc.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()

    async def publish(self, body: Any) -> PublishResult:
        correlation_id = str(uuid.uuid4())

        problems = self._validator(body)
        event: Optional[Event] = None
        if not problems:
            try:
                event = Event.model_validate(body)
            except PydanticValidationError as exc:
                problems = [f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors()]
        if problems or event is None:
            self._rejected += 1
            PRODUCER_EVENTS_TOTAL.labels(status="rejected").inc()
            return PublishResult(
                success=False,
                correlation_id=correlation_id,
                error=f"Validation failed: {', '.join(problems)}",
                rejected=True,
            )

        if event.id is None:
            # stable id lets the raw store deduplicate redeliveries of this event
            event = event.model_copy(update={"id": correlation_id})
        body_json = event.model_dump_json(exclude_none=True)

        try:
            if self._acc is not None:
                message_id = await self._acc.write(body_json)
            else:
                message_id = await self._publish_one(body_json)
        except Exception as exc:
            self._errors += 1
            PRODUCER_EVENTS_TOTAL.labels(status="failed").inc()
            logger.error(f"{self._name}: publish failed [{correlation_id}]: {exc}")
            return PublishResult(success=False, correlation_id=correlation_id, error=str(exc))

        self._processed += 1
        PRODUCER_EVENTS_TOTAL.labels(status="published").inc()
        logger.debug(f"{self._name}: event {event.id} published as {message_id}")
        return PublishResult(success=True, correlation_id=correlation_id, message_id=message_id)

    async def _publish_one(self, body: str) -> str:
        attempt = 0
        while True:
            attempt += 1
            try:
                message_id = await self._queue.publish(body)
                QUEUE_OPERATIONS_TOTAL.labels(operation="publish", status="success").inc()
                return message_id
            except Exception as exc:
                QUEUE_OPERATIONS_TOTAL.labels(operation="publish", status="failure").inc()
                if not self._retry.should_retry(exc, attempt):
                    raise
                await asyncio.sleep(self._retry.next_backoff_ms(attempt) / 1000.0)

    def stats(self) -> PublisherStats:
        return PublisherStats(
            processed=self._processed,
            errors=self._errors,
            rejected=self._rejected,
            uptime_seconds=monotonic() - self._started,
            accumulator=self._acc.stats() if self._acc is not None else None,
        )

    async def shutdown(self) -> None:
        logger.info(f"{self._name}: shutting down")
        if self._acc is not None:
            await self._acc.shutdown()
