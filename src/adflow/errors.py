"""
Error taxonomy for the ingestion pipeline.

Every expected failure carries an ``ErrorKind`` so callers (stats, metrics, logs)
can branch on the kind without isinstance ladders.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Failure kinds surfaced by the pipeline."""

    VALIDATION = "validation"
    TRANSIENT_QUEUE = "transient_queue"
    QUEUE = "queue"
    RAW_WRITE = "raw_write"
    NORMALIZATION = "normalization"
    NORMALIZED_WRITE = "normalized_write"
    PROCESSING_TIMEOUT = "processing_timeout"
    BATCH_FLUSH = "batch_flush"
    STORE = "store"


class PipelineError(Exception):
    """Base error for adflow."""

    kind: ErrorKind = ErrorKind.STORE

    def __init__(self, message: str, *, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class ValidationError(PipelineError):
    """Message body is not a well-formed event."""

    kind = ErrorKind.VALIDATION


class TransientQueueError(PipelineError):
    """Queue publish/receive/delete failed; safe to retry."""

    kind = ErrorKind.TRANSIENT_QUEUE


class QueueError(PipelineError):
    """Queue call failed in a way a retry cannot fix (missing queue, bad credentials)."""

    kind = ErrorKind.QUEUE


class RawWriteError(PipelineError):
    kind = ErrorKind.RAW_WRITE


class NormalizationError(PipelineError):
    """Unknown source platform or structurally invalid payload."""

    kind = ErrorKind.NORMALIZATION


class NormalizedWriteError(PipelineError):
    """Normalized write failed after the raw write succeeded (needs reconciliation)."""

    kind = ErrorKind.NORMALIZED_WRITE


class ProcessingTimeout(PipelineError):
    kind = ErrorKind.PROCESSING_TIMEOUT


class BatchFlushError(PipelineError):
    """A batch flush failed; the batch items were re-queued or failed."""

    kind = ErrorKind.BATCH_FLUSH


class StoreError(PipelineError):
    """Permanent store failure (constraint violation, bad data)."""

    kind = ErrorKind.STORE


class RetryableStoreError(StoreError):
    """Temporary store failure that should be retried with backoff."""


def map_db_error(e: Exception) -> StoreError:
    import psycopg
    import psycopg.errors as E

    if isinstance(e, (E.SerializationFailure, E.DeadlockDetected, psycopg.OperationalError)):
        return RetryableStoreError(str(e), cause=e)
    if isinstance(e, E.QueryCanceled):
        return RetryableStoreError(f"statement timeout: {e}", cause=e)
    return StoreError(str(e), cause=e)
