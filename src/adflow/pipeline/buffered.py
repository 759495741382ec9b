from __future__ import annotations

from typing import Generic, Optional, Sequence

from ..coordinator.accumulator import AccumulatorStats, BatchAccumulator
from ..coordinator.gate import ConcurrencyGate
from ..coordinator.policy import RetryPolicy
from ..coordinator.types import RecordStore, T, WriteResult
from ..errors import BatchFlushError

# Rows per insert_many call a store accepts (one multi-row statement)
STORE_BATCH_LIMIT = 1000


class BufferedWriter(Generic[T]):
    """Single-record ``insert`` that coalesces concurrent callers into ``insert_many``.

    Each caller still gets its own WriteResult, so the pipeline can keep
    per-message semantics while the store sees batched writes.
    """

    def __init__(
        self,
        store: RecordStore[T],
        *,
        max_batch_size: int = 10,
        flush_interval: float = 0.05,
        gate: Optional[ConcurrencyGate] = None,
        retry_policy: Optional[RetryPolicy] = None,
        hard_limit: int = STORE_BATCH_LIMIT,
        name: str = "store-writer",
    ):
        self._store = store
        self._acc = BatchAccumulator[T](
            store.insert_many,
            max_batch_size=max_batch_size,
            flush_interval=flush_interval,
            hard_limit=hard_limit,
            gate=gate,
            retry_policy=retry_policy,
            name=name,
        )

    @property
    def accumulator(self) -> BatchAccumulator[T]:
        return self._acc

    async def insert(self, record: T) -> WriteResult:
        try:
            record_id = await self._acc.write(record)
        except BatchFlushError as exc:
            return WriteResult.failed(str(exc))
        return WriteResult.ok(record_id)

    async def insert_many(self, records: Sequence[T]) -> Sequence[WriteResult]:
        return await self._store.insert_many(records)

    async def shutdown(self) -> None:
        await self._acc.shutdown()

    def stats(self) -> AccumulatorStats:
        return self._acc.stats()
