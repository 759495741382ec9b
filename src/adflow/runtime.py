"""
Wiring for the two long-running processes.

ConsumerRuntime: queue -> QueuePoller -> DualSinkPipeline -> raw/normalized stores
ProducerRuntime: HTTP -> EventPublisher -> queue

Both take their collaborators explicitly; ``from_settings`` builds the
production adapters (SQS + Postgres) from ``AdflowSettings``.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

from loguru import logger

from .coordinator.gate import ConcurrencyGate
from .coordinator.poller import QueuePoller
from .coordinator.settings import AdflowSettings, get_settings
from .coordinator.types import QueueClient, RecordStore
from .models import NormalizedEvent, RawRecord
from .normalizers import NormalizerRegistry, default_registry
from .pipeline import BufferedWriter, DualSinkPipeline, PipelineStats
from .producer import EventPublisher

DEFAULT_SOURCES = ("meta", "google")


class ConsumerRuntime:
    def __init__(
        self,
        *,
        queue: QueueClient,
        raw_store: RecordStore[RawRecord],
        normalized_store: RecordStore[NormalizedEvent],
        registry: Optional[NormalizerRegistry] = None,
        settings: Optional[AdflowSettings] = None,
        required_sources: Iterable[str] = DEFAULT_SOURCES,
    ):
        self.settings = settings or get_settings()
        s = self.settings
        retry = s.retry_policy()

        self.registry = registry or default_registry()
        # fail at startup, not on the first message of a missing platform
        self.registry.require(required_sources)

        self._stores: list[Any] = [raw_store, normalized_store]
        self._writers: list[BufferedWriter] = []
        raw_sink: RecordStore[RawRecord] = raw_store
        normalized_sink: RecordStore[NormalizedEvent] = normalized_store
        if s.coalesce_writes:
            gate = ConcurrencyGate(s.max_concurrent_batches, name="store-writes")
            raw_writer = BufferedWriter[RawRecord](
                raw_store,
                max_batch_size=s.max_batch_size,
                flush_interval=s.write_flush_interval,
                gate=gate,
                retry_policy=retry,
                name="raw-writer",
            )
            normalized_writer = BufferedWriter[NormalizedEvent](
                normalized_store,
                max_batch_size=s.max_batch_size,
                flush_interval=s.write_flush_interval,
                gate=gate,
                retry_policy=retry,
                name="normalized-writer",
            )
            self._writers = [raw_writer, normalized_writer]
            raw_sink, normalized_sink = raw_writer, normalized_writer

        self.pipeline = DualSinkPipeline(
            queue=queue,
            raw_store=raw_sink,
            normalized_store=normalized_sink,
            registry=self.registry,
            retry_policy=retry,
            stats=PipelineStats(),
        )
        self.poller = QueuePoller(
            queue,
            self.pipeline,
            worker_count=s.worker_count,
            max_messages=s.max_messages_per_batch,
            wait_seconds=s.wait_time_seconds,
            visibility_timeout=s.visibility_timeout_seconds,
            polling_interval=s.polling_interval,
            processing_timeout=s.processing_timeout,
            retry_policy=retry,
            name="consumer",
        )

    @classmethod
    def from_settings(cls, settings: Optional[AdflowSettings] = None) -> "ConsumerRuntime":
        from adflow_client import NormalizedEventStore, RawEventStore, SqsQueueClient
        from adflow_client.sqs import create_sqs_client

        s = settings or get_settings()
        if not s.raw_database_url or not s.normalized_database_url:
            raise ValueError("ADFLOW_RAW_DATABASE_URL and ADFLOW_NORMALIZED_DATABASE_URL required")
        client = create_sqs_client(region=s.aws_region, endpoint_url=s.aws_endpoint_url)
        return cls(
            queue=SqsQueueClient(s.queue_url, client=client),
            raw_store=RawEventStore({"dsn": s.raw_database_url, "pool_max": s.db_pool_max}),
            normalized_store=NormalizedEventStore(
                {"dsn": s.normalized_database_url, "pool_max": s.db_pool_max}
            ),
            settings=s,
        )

    async def __aenter__(self) -> "ConsumerRuntime":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def start(self) -> None:
        for store in self._stores:
            opener = getattr(store, "open", None)
            if opener is not None:
                await opener()
        self.poller.start()
        logger.info(f"consumer runtime started (sources={self.registry.sources})")

    async def run(self) -> None:
        """Start and block until ``stop()``."""
        await self.start()
        await self.poller.run_forever()

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Drain loops, flush buffered writes, then close stores (in that order)."""
        await self.poller.stop(timeout=timeout)
        for writer in self._writers:
            await writer.shutdown()
        for store in self._stores:
            closer = getattr(store, "aclose", None)
            if closer is not None:
                await closer()
        snap = self.pipeline.stats()
        logger.info(
            f"consumer runtime stopped: {snap.acknowledged} acknowledged, "
            f"{snap.error_count} failed ({snap.success_rate:.1f}% success)"
        )

    def health(self) -> dict:
        poller = self.poller.health()
        snap = self.pipeline.stats()
        return {
            "state": poller.state.value,
            "workers_alive": poller.workers_alive,
            "received": snap.received,
            "acknowledged": snap.acknowledged,
            "errors": snap.error_count,
            "success_rate": snap.success_rate,
            "events_per_second": snap.events_per_second,
            "reconciliation_needed": snap.reconciliation_needed,
            "writers": {st.name: st.pending for st in (w.stats() for w in self._writers)},
        }


class ProducerRuntime:
    def __init__(self, *, queue: QueueClient, settings: Optional[AdflowSettings] = None):
        self.settings = settings or get_settings()
        s = self.settings
        self.publisher = EventPublisher(
            queue,
            max_batch_size=s.max_batch_size,
            flush_interval=s.flush_interval,
            gate=ConcurrencyGate(s.max_concurrent_batches, name="publish"),
            retry_policy=s.retry_policy(),
        )

    @classmethod
    def from_settings(cls, settings: Optional[AdflowSettings] = None) -> "ProducerRuntime":
        from adflow_client import SqsQueueClient
        from adflow_client.sqs import create_sqs_client

        s = settings or get_settings()
        client = create_sqs_client(region=s.aws_region, endpoint_url=s.aws_endpoint_url)
        return cls(queue=SqsQueueClient(s.queue_url, client=client), settings=s)

    async def __aenter__(self) -> "ProducerRuntime":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def stop(self) -> None:
        await self.publisher.shutdown()
