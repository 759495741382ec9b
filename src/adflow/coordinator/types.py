from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, Optional, Protocol, Sequence, TypeVar

T = TypeVar("T")
T_contra = TypeVar("T_contra", contravariant=True)

# Platform-imposed cap for one batch publish / write (SQS SendMessageBatch limit)
SQS_BATCH_LIMIT = 10


@dataclass(frozen=True)
class WriteResult:
    """Per-item outcome of a publish or store write."""

    success: bool
    id: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, id: str | None = None) -> "WriteResult":
        return cls(success=True, id=id)

    @classmethod
    def failed(cls, error: str) -> "WriteResult":
        return cls(success=False, error=error)


@dataclass(frozen=True)
class QueueMessage:
    """Read-only view of a received queue message plus its ack token."""

    message_id: str
    ack_token: str
    body: str


@dataclass(eq=False)
class BatchItem(Generic[T]):
    """A buffered value and its eventual outcome.

    The producer awaits ``result()``; the accumulator resolves it with the
    sink-assigned id or fails it with the flush error.
    """

    value: T
    future: asyncio.Future = field(repr=False)
    attempts: int = 0

    def done(self) -> bool:
        return self.future.done()

    async def result(self) -> Optional[str]:
        return await asyncio.shield(self.future)

    def _resolve(self, result: WriteResult) -> None:
        if not self.future.done():
            self.future.set_result(result.id)

    def _fail(self, exc: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(exc)


BatchSink = Callable[[Sequence[T]], Awaitable[Sequence[WriteResult]]]
"""Writes one batch and returns one WriteResult per input item, in order."""


class QueueClient(Protocol):
    """Durable at-least-once queue (SQS semantics)."""

    async def publish(self, body: str) -> str: ...

    async def publish_batch(self, bodies: Sequence[str]) -> Sequence[WriteResult]: ...

    async def receive_batch(
        self, max_messages: int, wait_seconds: int, visibility_timeout: int
    ) -> Sequence[QueueMessage]: ...

    async def delete(self, ack_token: str) -> None: ...


class RecordStore(Protocol[T_contra]):
    """Raw or normalized store; writes must be idempotent."""

    async def insert(self, record: T_contra) -> WriteResult: ...

    async def insert_many(self, records: Sequence[T_contra]) -> Sequence[WriteResult]: ...
