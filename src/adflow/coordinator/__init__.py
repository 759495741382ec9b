"""Batching / bounded-concurrency coordinator

Shared by the producer (accumulate events before a queue batch publish) and the
consumer (poll queue batches, drive the dual-sink pipeline per message):
- BatchAccumulator (size/time flushing, snapshot-swap buffer, re-queue on failure)
- ConcurrencyGate (completion-order admission over in-flight flushes)
- QueuePoller (N independent worker loops, per-message timeout)
- RetryPolicy with jitter
- Environment-based settings
"""

from .types import (
    SQS_BATCH_LIMIT,
    BatchItem,
    BatchSink,
    QueueClient,
    QueueMessage,
    RecordStore,
    T,
    WriteResult,
)
from .policy import RetryPolicy, default_retry_classifier
from .gate import ConcurrencyGate
from .accumulator import AccumulatorStats, BatchAccumulator
from .poller import MessageHandler, PollerHealth, QueuePoller, RunState, WorkerState
from .settings import AdflowSettings, get_settings

__all__ = [
    # types
    "SQS_BATCH_LIMIT",
    "BatchItem",
    "BatchSink",
    "QueueClient",
    "QueueMessage",
    "RecordStore",
    "T",
    "WriteResult",
    # policies
    "RetryPolicy",
    "default_retry_classifier",
    # runtime
    "ConcurrencyGate",
    "BatchAccumulator",
    "AccumulatorStats",
    "QueuePoller",
    "PollerHealth",
    "MessageHandler",
    "RunState",
    "WorkerState",
    # settings
    "AdflowSettings",
    "get_settings",
]
