"""
In-memory adapters for local development and tests.

``InMemoryQueue`` keeps SQS delivery semantics that the pipeline relies on:
received messages become invisible for the visibility timeout and reappear
unless deleted with their current ack token. The stores are idempotent in the
same way as their Postgres counterparts and support failure injection.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import Counter
from dataclasses import dataclass
from time import monotonic
from typing import Callable, Dict, Generic, List, Optional, Sequence, Set, TypeVar

from loguru import logger

from adflow.coordinator.types import SQS_BATCH_LIMIT, QueueMessage, WriteResult
from adflow.errors import RetryableStoreError, StoreError, TransientQueueError
from adflow.models import NormalizedEvent, RawRecord

from .stores import normalized_key

R = TypeVar("R")

_WAIT_SLICE = 0.05


@dataclass
class _Entry:
    message_id: str
    body: str
    visible_at: float
    receive_count: int = 0
    ack_token: Optional[str] = None


class InMemoryQueue:
    def __init__(self, *, clock: Callable[[], float] = monotonic):
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._ids = itertools.count(1)
        self._deletes: Counter = Counter()
        self._published: List[str] = []

        # failure injection: number of upcoming calls that raise TransientQueueError
        self.fail_publish = 0
        self.fail_receive = 0
        self.fail_delete = 0

    # ---------- QueueClient ----------

    async def publish(self, body: str) -> str:
        self._maybe_fail("publish")
        message_id = f"msg-{next(self._ids)}"
        self._entries[message_id] = _Entry(message_id, body, visible_at=self._clock())
        self._published.append(message_id)
        return message_id

    async def publish_batch(self, bodies: Sequence[str]) -> list[WriteResult]:
        if len(bodies) > SQS_BATCH_LIMIT:
            raise ValueError(f"batch of {len(bodies)} exceeds {SQS_BATCH_LIMIT}")
        self._maybe_fail("publish")
        results = []
        for body in bodies:
            message_id = f"msg-{next(self._ids)}"
            self._entries[message_id] = _Entry(message_id, body, visible_at=self._clock())
            self._published.append(message_id)
            results.append(WriteResult.ok(message_id))
        return results

    async def receive_batch(
        self, max_messages: int, wait_seconds: int, visibility_timeout: int
    ) -> list[QueueMessage]:
        self._maybe_fail("receive")
        deadline = self._clock() + wait_seconds
        while True:
            batch = self._take(max_messages, visibility_timeout)
            remaining = deadline - self._clock()
            if batch or remaining <= 0:
                return batch
            await asyncio.sleep(min(_WAIT_SLICE, remaining))

    async def delete(self, ack_token: str) -> None:
        self._maybe_fail("delete")
        message_id = ack_token.split("#", 1)[0]
        entry = self._entries.get(message_id)
        if entry is None or entry.ack_token != ack_token:
            logger.debug(f"memory queue: stale ack token {ack_token} ignored")
            return
        del self._entries[message_id]
        self._deletes[message_id] += 1

    # ---------- inspection ----------

    @property
    def published(self) -> List[str]:
        return list(self._published)

    @property
    def pending(self) -> int:
        """Messages not yet deleted (visible or in flight)."""
        return len(self._entries)

    @property
    def in_flight(self) -> int:
        now = self._clock()
        return sum(1 for e in self._entries.values() if e.visible_at > now)

    def bodies(self) -> List[str]:
        return [e.body for e in self._entries.values()]

    def delete_count(self, message_id: str) -> int:
        return self._deletes[message_id]

    def receive_count(self, message_id: str) -> int:
        entry = self._entries.get(message_id)
        return entry.receive_count if entry else 0

    def expire_visibility(self) -> None:
        """Make every in-flight message visible again (simulates timeout expiry)."""
        now = self._clock()
        for e in self._entries.values():
            e.visible_at = now

    # ---------- internals ----------

    def _take(self, max_messages: int, visibility_timeout: int) -> list[QueueMessage]:
        now = self._clock()
        out: list[QueueMessage] = []
        for e in self._entries.values():
            if len(out) >= max(1, min(max_messages, SQS_BATCH_LIMIT)):
                break
            if e.visible_at > now:
                continue
            e.receive_count += 1
            e.ack_token = f"{e.message_id}#{e.receive_count}"
            e.visible_at = now + visibility_timeout
            out.append(QueueMessage(message_id=e.message_id, ack_token=e.ack_token, body=e.body))
        return out

    def _maybe_fail(self, operation: str) -> None:
        attr = f"fail_{operation}"
        if getattr(self, attr) > 0:
            setattr(self, attr, getattr(self, attr) - 1)
            raise TransientQueueError(f"injected {operation} failure")


class _InMemoryStore(Generic[R]):
    def __init__(self, *, delay: float = 0.0):
        self.rows: Dict[str, R] = {}
        self.calls = 0
        self.batch_sizes: List[int] = []
        self.delay = delay

        # failure injection
        self.fail_batches = 0  # upcoming insert_many calls raising RetryableStoreError
        self.permanent = False  # raise StoreError on every call
        self.reject_keys: Set[str] = set()  # per-item rejections inside a batch

    def key(self, record: R) -> str:
        raise NotImplementedError

    def _store(self, key: str, record: R) -> None:
        raise NotImplementedError

    async def insert(self, record: R) -> WriteResult:
        try:
            (result,) = await self.insert_many([record])
        except StoreError as exc:
            return WriteResult.failed(str(exc))
        return result

    async def insert_many(self, records: Sequence[R]) -> list[WriteResult]:
        self.calls += 1
        self.batch_sizes.append(len(records))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.permanent:
            raise StoreError("injected permanent failure")
        if self.fail_batches > 0:
            self.fail_batches -= 1
            raise RetryableStoreError("injected transient failure")

        results = []
        for record in records:
            k = self.key(record)
            if k in self.reject_keys:
                results.append(WriteResult.failed(f"rejected {k}"))
                continue
            self._store(k, record)
            results.append(WriteResult.ok(k))
        return results

    async def aclose(self) -> None:
        return None


class InMemoryRawStore(_InMemoryStore[RawRecord]):
    def key(self, record: RawRecord) -> str:
        return record.dedupe_key

    def _store(self, key: str, record: RawRecord) -> None:
        self.rows.setdefault(key, record)


class InMemoryNormalizedStore(_InMemoryStore[NormalizedEvent]):
    def key(self, record: NormalizedEvent) -> str:
        return normalized_key(record)

    def _store(self, key: str, record: NormalizedEvent) -> None:
        self.rows[key] = record
