"""
Batch accumulator: coalesce individually submitted items into bounded batches.

A batch is flushed when it reaches ``max_batch_size`` or when ``flush_interval``
seconds have passed since the first item entered an empty buffer. The buffer is
only ever touched through a synchronous swap (grab + replace, no ``await`` in
between), so items submitted while a flush is in flight are never lost or
double-counted.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from time import monotonic
from typing import Generic, Optional, Sequence

from loguru import logger

from ..errors import BatchFlushError
from ..metrics.registry import (
    ACCUMULATOR_FLUSH_LATENCY,
    ACCUMULATOR_FLUSH_TOTAL,
    ACCUMULATOR_REQUEUED_TOTAL,
)
from .gate import ConcurrencyGate
from .policy import RetryPolicy
from .types import SQS_BATCH_LIMIT, BatchItem, BatchSink, T, WriteResult


@dataclass(frozen=True)
class AccumulatorStats:
    """Immutable snapshot of accumulator counters."""

    name: str
    pending: int
    in_flight_flushes: int
    submitted: int
    batches_flushed: int
    items_written: int
    failed_flushes: int
    requeued_items: int
    failed_items: int
    max_batch_size: int
    flush_interval: float


@dataclass(frozen=True)
class _FlushReport:
    written: int
    failed: int
    error: Optional[Exception] = None


class BatchAccumulator(Generic[T]):
    """Size/time batcher in front of a batch sink with bounded in-flight flushes.

    Usage:

        acc = BatchAccumulator[str](queue.publish_batch, max_batch_size=10, flush_interval=0.5)
        async with acc:
            item = await acc.submit(body)
            message_id = await item.result()
        # final flush on context exit
    """

    def __init__(
        self,
        sink: BatchSink[T],
        *,
        max_batch_size: int = SQS_BATCH_LIMIT,
        flush_interval: float = 1.0,
        hard_limit: int = SQS_BATCH_LIMIT,
        gate: Optional[ConcurrencyGate] = None,
        retry_policy: Optional[RetryPolicy] = None,
        name: str = "accumulator",
    ):
        if hard_limit <= 0:
            raise ValueError("hard_limit must be > 0")
        if flush_interval <= 0:
            raise ValueError("flush_interval must be > 0")

        self._sink = sink
        self._name = name
        self._hard_limit = hard_limit
        self._max_batch = self._clamp(max_batch_size)
        self._interval = flush_interval
        self._gate = gate or ConcurrencyGate(5, name=f"{name}-gate")
        self._retry = retry_policy or RetryPolicy()

        self._buffer: list[BatchItem[T]] = []
        self._deadline: Optional[float] = None
        self._pending = asyncio.Event()
        self._timer: Optional[asyncio.Task] = None
        self._flushes: set[asyncio.Task] = set()
        self._closed = False

        self._submitted = 0
        self._batches = 0
        self._written = 0
        self._failed_flushes = 0
        self._requeued = 0
        self._failed_items = 0

    # --------------- context management

    async def __aenter__(self) -> "BatchAccumulator[T]":
        self._ensure_timer()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()

    # --------------- public API

    @property
    def name(self) -> str:
        return self._name

    @property
    def max_batch_size(self) -> int:
        return self._max_batch

    @property
    def flush_interval(self) -> float:
        return self._interval

    @property
    def pending(self) -> int:
        return len(self._buffer)

    async def submit(self, value: T) -> BatchItem[T]:
        """Buffer ``value``; a full buffer is flushed immediately.

        Suspends while the concurrency gate is saturated (backpressure).
        """
        if self._closed:
            raise RuntimeError(f"{self._name}: accumulator is shut down")
        self._ensure_timer()

        item = BatchItem(value=value, future=asyncio.get_running_loop().create_future())
        self._append([item])
        self._submitted += 1

        while len(self._buffer) >= self._max_batch:
            await self._dispatch(self._swap())
        return item

    async def write(self, value: T) -> Optional[str]:
        """Submit and wait for the item's own outcome."""
        item = await self.submit(value)
        return await item.result()

    async def flush(self) -> int:
        """Flush everything buffered now. Returns items written.

        Raises:
            BatchFlushError: if any batch failed (its items were re-queued or failed).
        """
        # at most one swapped-out batch is held while waiting on the gate
        tasks: list[asyncio.Task[_FlushReport]] = []
        while self._buffer:
            tasks.append(await self._dispatch(self._swap()))
        reports: list[_FlushReport] = list(await asyncio.gather(*tasks)) if tasks else []

        errors = [r.error for r in reports if r.error is not None]
        if errors:
            raise BatchFlushError(
                f"{self._name}: {len(errors)} of {len(reports)} batch flushes failed: {errors[0]}",
                cause=errors[0],
            )
        return sum(r.written for r in reports)

    def configure(
        self, *, max_batch_size: Optional[int] = None, flush_interval: Optional[float] = None
    ) -> None:
        """Change thresholds at runtime.

        A new interval re-arms the timer (the previous timer task is cancelled);
        the pending buffer keeps its current deadline.
        """
        if max_batch_size is not None:
            self._max_batch = self._clamp(max_batch_size)
        if flush_interval is not None:
            if flush_interval <= 0:
                raise ValueError("flush_interval must be > 0")
            self._interval = flush_interval
            self._rearm_timer()
        logger.info(
            f"{self._name}: configured max_batch_size={self._max_batch} "
            f"flush_interval={self._interval}s"
        )

    async def shutdown(self) -> None:
        """Disable the timer, flush once more and wait for in-flight flushes."""
        if self._closed:
            return
        self._closed = True
        await self._cancel_timer()

        try:
            await self.flush()
        except BatchFlushError as exc:
            logger.error(f"{self._name}: final flush failed: {exc}")

        if self._flushes:
            await asyncio.gather(*list(self._flushes), return_exceptions=True)

        leftover, self._buffer = self._buffer, []
        for item in leftover:
            self._failed_items += 1
            item._fail(BatchFlushError(f"{self._name}: accumulator shut down before flush"))
        logger.info(f"{self._name}: shut down ({self._written} items written)")

    def stats(self) -> AccumulatorStats:
        return AccumulatorStats(
            name=self._name,
            pending=len(self._buffer),
            in_flight_flushes=len(self._flushes),
            submitted=self._submitted,
            batches_flushed=self._batches,
            items_written=self._written,
            failed_flushes=self._failed_flushes,
            requeued_items=self._requeued,
            failed_items=self._failed_items,
            max_batch_size=self._max_batch,
            flush_interval=self._interval,
        )

    # --------------- buffer (synchronous: no await between read and replace)

    def _clamp(self, size: int) -> int:
        if size > self._hard_limit:
            logger.warning(
                f"{self._name}: max_batch_size {size} exceeds hard limit, "
                f"clamped to {self._hard_limit}"
            )
        return max(1, min(size, self._hard_limit))

    def _append(self, items: Sequence[BatchItem[T]], *, front: bool = False) -> None:
        was_empty = not self._buffer
        if front:
            self._buffer[:0] = items
        else:
            self._buffer.extend(items)
        if was_empty and self._buffer:
            self._start_cycle()

    def _swap(self) -> list[BatchItem[T]]:
        batch = self._buffer[: self._max_batch]
        self._buffer = self._buffer[self._max_batch :]
        if self._buffer:
            self._start_cycle()
        else:
            self._deadline = None
            self._pending.clear()
        return batch

    def _start_cycle(self) -> None:
        self._deadline = asyncio.get_running_loop().time() + self._interval
        self._pending.set()

    # --------------- timer

    def _ensure_timer(self) -> None:
        if self._closed:
            return
        if self._timer is None or self._timer.done():
            self._timer = asyncio.get_running_loop().create_task(
                self._timer_loop(), name=f"{self._name}-timer"
            )

    def _rearm_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return  # armed lazily on the next submit
        self._ensure_timer()

    async def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is None or timer.done():
            return
        timer.cancel()
        try:
            await timer
        except asyncio.CancelledError:
            pass

    async def _timer_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await self._pending.wait()
            if self._deadline is None:
                self._pending.clear()
                continue
            delay = self._deadline - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
                continue
            batch = self._swap()
            if batch:
                logger.debug(f"{self._name}: interval flush of {len(batch)} items")
                await self._dispatch(batch)

    # --------------- flushing

    async def _dispatch(self, batch: list[BatchItem[T]]) -> "asyncio.Task[_FlushReport]":
        try:
            slot = await self._gate.acquire()
        except asyncio.CancelledError:
            # swapped out but never started: put it back rather than lose it
            self._append(batch, front=True)
            raise
        task = asyncio.get_running_loop().create_task(self._flush_batch(batch))
        task.add_done_callback(lambda _t: self._gate.release(slot))
        self._flushes.add(task)
        task.add_done_callback(self._flushes.discard)
        return task

    async def _flush_batch(self, batch: list[BatchItem[T]]) -> _FlushReport:
        if not batch:
            return _FlushReport(written=0, failed=0)

        t0 = monotonic()
        attempt = 0
        while True:
            attempt += 1
            try:
                results: list[WriteResult] = list(await self._sink([i.value for i in batch]))
                if len(results) != len(batch):
                    raise BatchFlushError(
                        f"sink returned {len(results)} results for {len(batch)} items"
                    )
                break
            except Exception as exc:
                if self._retry.should_retry(exc, attempt):
                    delay_ms = self._retry.next_backoff_ms(attempt)
                    logger.warning(
                        f"{self._name}: flush attempt {attempt} failed "
                        f"({type(exc).__name__}: {exc}); retrying in {delay_ms}ms"
                    )
                    await asyncio.sleep(delay_ms / 1000.0)
                    continue

                self._failed_flushes += 1
                ACCUMULATOR_FLUSH_TOTAL.labels(accumulator=self._name, status="failure").inc()
                ACCUMULATOR_FLUSH_LATENCY.labels(accumulator=self._name).observe(monotonic() - t0)
                logger.error(
                    f"{self._name}: flush of {len(batch)} items failed after {attempt} "
                    f"attempt(s): {type(exc).__name__}: {exc}"
                )
                self._handle_failed(batch, exc, retryable=self._retry.classify_retryable(exc))
                return _FlushReport(written=0, failed=len(batch), error=exc)

        rejected: list[tuple[BatchItem[T], WriteResult]] = []
        for item, result in zip(batch, results):
            if result.success:
                item._resolve(result)
            else:
                rejected.append((item, result))

        written = len(batch) - len(rejected)
        self._batches += 1
        self._written += written
        ACCUMULATOR_FLUSH_LATENCY.labels(accumulator=self._name).observe(monotonic() - t0)

        if not rejected:
            ACCUMULATOR_FLUSH_TOTAL.labels(accumulator=self._name, status="success").inc()
            logger.debug(f"{self._name}: flushed {written} items")
            return _FlushReport(written=written, failed=0)

        ACCUMULATOR_FLUSH_TOTAL.labels(accumulator=self._name, status="partial").inc()
        err = BatchFlushError(
            f"{self._name}: {len(rejected)}/{len(batch)} items rejected: {rejected[0][1].error}"
        )
        logger.warning(str(err))
        # per-item rejections (throttling, transient conflicts) are re-queued
        self._handle_failed([item for item, _ in rejected], err, retryable=True)
        return _FlushReport(written=written, failed=len(rejected), error=err)

    def _handle_failed(
        self, items: Sequence[BatchItem[T]], exc: Exception, *, retryable: bool
    ) -> None:
        requeue: list[BatchItem[T]] = []
        for item in items:
            if item.done():
                continue
            item.attempts += 1
            if retryable and not self._closed and item.attempts < self._retry.max_attempts:
                requeue.append(item)
            else:
                self._failed_items += 1
                item._fail(
                    BatchFlushError(
                        f"{self._name}: item failed after {item.attempts} attempt(s): {exc}",
                        cause=exc,
                    )
                )

        if requeue:
            self._append(requeue, front=True)
            self._requeued += len(requeue)
            ACCUMULATOR_REQUEUED_TOTAL.labels(accumulator=self._name).inc(len(requeue))
            logger.warning(f"{self._name}: re-queued {len(requeue)} items at buffer front")
