"""
adflow: durable ingestion and normalization of marketing-platform campaign events.

Producer side: HTTP -> EventPublisher (batched) -> queue.
Consumer side: queue -> QueuePoller -> DualSinkPipeline -> raw store + normalized store.

Infrastructure adapters (SQS, Postgres, in-memory) live in ``adflow_client``.
"""

from .errors import ErrorKind, PipelineError
from .models import Event, NormalizedEvent, RawRecord

__version__ = "0.1.0"
__all__ = ["Event", "RawRecord", "NormalizedEvent", "PipelineError", "ErrorKind"]
