from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol, Sequence

from loguru import logger

from ..errors import ProcessingTimeout
from ..metrics.registry import POLLER_WORKERS_ALIVE, QUEUE_OPERATIONS_TOTAL
from .policy import RetryPolicy
from .types import SQS_BATCH_LIMIT, QueueClient, QueueMessage


class RunState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


class WorkerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    DISPATCHING = "dispatching"
    STOPPED = "stopped"


class MessageHandler(Protocol):
    """Per-message processor driven by the poller (the dual-sink pipeline)."""

    async def process(self, message: QueueMessage) -> Any:
        """Run the message to completion; the result exposes ``acknowledged``."""
        ...

    def record_timeout(self, message: QueueMessage, error: ProcessingTimeout) -> None: ...


@dataclass(frozen=True)
class PollerHealth:
    """Immutable snapshot of poller state and counters."""

    state: RunState
    workers_alive: int
    worker_states: tuple[WorkerState, ...]
    batches_received: int
    empty_polls: int
    receive_errors: int
    messages_dispatched: int
    messages_acknowledged: int
    messages_failed: int
    timeouts: int


class QueuePoller:
    """Fixed pool of independent consumer loops over one queue.

    Each loop long-polls for up to ``max_messages``, dispatches them concurrently
    through the handler, waits for every outcome and polls again. A message is
    only deleted by the handler after full success; anything else is left for
    redelivery once its visibility timeout expires.

    Example:
        poller = QueuePoller(queue, pipeline, worker_count=3)
        async with poller:
            await asyncio.sleep(60)
        # loops finish their current iteration before exit
    """

    def __init__(
        self,
        queue: QueueClient,
        handler: MessageHandler,
        *,
        worker_count: int = 3,
        max_messages: int = SQS_BATCH_LIMIT,
        wait_seconds: int = 20,
        visibility_timeout: int = 30,
        polling_interval: float = 1.0,
        processing_timeout: float = 25.0,
        retry_policy: Optional[RetryPolicy] = None,
        name: str = "poller",
    ):
        if worker_count <= 0:
            raise ValueError("worker_count must be > 0")
        if processing_timeout <= 0:
            raise ValueError("processing_timeout must be > 0")

        self._queue = queue
        self._handler = handler
        self._worker_count = worker_count
        self._max_messages = max(1, min(max_messages, SQS_BATCH_LIMIT))
        self._wait_seconds = wait_seconds
        self._visibility_timeout = visibility_timeout
        self._polling_interval = polling_interval
        self._processing_timeout = processing_timeout
        self._retry = retry_policy or RetryPolicy()
        self._name = name

        if processing_timeout >= visibility_timeout:
            logger.warning(
                f"{name}: processing_timeout ({processing_timeout}s) >= visibility timeout "
                f"({visibility_timeout}s); messages may be redelivered while still in flight"
            )

        self._state = RunState.STOPPED
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._worker_states: list[WorkerState] = [WorkerState.STOPPED] * worker_count

        self._batches = 0
        self._empty_polls = 0
        self._receive_errors = 0
        self._dispatched = 0
        self._acked = 0
        self._failed = 0
        self._timeouts = 0

    # --------------- lifecycle

    async def __aenter__(self) -> "QueuePoller":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    @property
    def state(self) -> RunState:
        return self._state

    def start(self) -> None:
        """Spawn the worker loops. No-op when already running."""
        if self._state is not RunState.STOPPED:
            logger.info(f"{self._name}: already running")
            return

        self._stop.clear()
        self._state = RunState.RUNNING
        self._tasks = [
            asyncio.create_task(self._worker_loop(i), name=f"{self._name}-worker-{i + 1}")
            for i in range(self._worker_count)
        ]
        POLLER_WORKERS_ALIVE.labels(poller=self._name).set(self._worker_count)
        logger.info(f"{self._name}: started {self._worker_count} worker loops")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Ask loops to exit after their current iteration and wait for them.

        In-flight dispatches run to completion. Loops still alive after ``timeout``
        are cancelled.
        """
        if self._state is RunState.STOPPED:
            return

        self._state = RunState.STOPPING
        self._stop.set()
        logger.info(f"{self._name}: stopping (draining in-flight messages)")

        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=timeout)
            for t in pending:
                logger.warning(f"{self._name}: {t.get_name()} did not drain in {timeout}s")
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            for t in done:
                if not t.cancelled() and t.exception() is not None:
                    logger.error(f"{self._name}: {t.get_name()} crashed: {t.exception()!r}")

        self._tasks = []
        self._state = RunState.STOPPED
        POLLER_WORKERS_ALIVE.labels(poller=self._name).set(0)
        logger.info(f"{self._name}: stopped")

    async def run_forever(self) -> None:
        """Start (if needed) and block until ``stop()`` is called."""
        self.start()
        await self._stop.wait()

    def health(self) -> PollerHealth:
        alive = sum(1 for t in self._tasks if not t.done())
        return PollerHealth(
            state=self._state,
            workers_alive=alive,
            worker_states=tuple(self._worker_states),
            batches_received=self._batches,
            empty_polls=self._empty_polls,
            receive_errors=self._receive_errors,
            messages_dispatched=self._dispatched,
            messages_acknowledged=self._acked,
            messages_failed=self._failed,
            timeouts=self._timeouts,
        )

    # --------------- worker loop

    async def _worker_loop(self, idx: int) -> None:
        worker = f"{self._name}-worker-{idx + 1}"
        try:
            while not self._stop.is_set():
                self._worker_states[idx] = WorkerState.POLLING
                try:
                    messages = await self._receive()
                except Exception as exc:
                    self._receive_errors += 1
                    logger.error(f"{worker}: receive failed: {type(exc).__name__}: {exc}")
                    self._worker_states[idx] = WorkerState.IDLE
                    await self._pause()
                    continue

                if not messages:
                    self._empty_polls += 1
                    self._worker_states[idx] = WorkerState.IDLE
                    await self._pause()
                    continue

                self._batches += 1
                self._worker_states[idx] = WorkerState.DISPATCHING
                logger.debug(f"{worker}: processing {len(messages)} messages concurrently")

                results = await asyncio.gather(
                    *(self._dispatch(m) for m in messages), return_exceptions=True
                )
                ok = sum(1 for r in results if r is True)
                failed = len(results) - ok
                for m, r in zip(messages, results):
                    if isinstance(r, BaseException):
                        logger.error(f"{worker}: message {m.message_id} crashed: {r!r}")
                logger.info(f"{worker}: {ok} successful, {failed} failed")

                self._worker_states[idx] = WorkerState.IDLE
        finally:
            self._worker_states[idx] = WorkerState.STOPPED

    async def _pause(self) -> None:
        """Sleep ``polling_interval`` but wake up early on stop."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self._polling_interval)
        except asyncio.TimeoutError:
            pass

    async def _receive(self) -> Sequence[QueueMessage]:
        attempt = 0
        while True:
            attempt += 1
            try:
                messages = await self._queue.receive_batch(
                    self._max_messages, self._wait_seconds, self._visibility_timeout
                )
                QUEUE_OPERATIONS_TOTAL.labels(operation="receive", status="success").inc()
                return messages
            except Exception as exc:
                QUEUE_OPERATIONS_TOTAL.labels(operation="receive", status="failure").inc()
                if self._stop.is_set() or not self._retry.should_retry(exc, attempt):
                    raise
                delay_ms = self._retry.next_backoff_ms(attempt)
                logger.warning(
                    f"{self._name}: receive attempt {attempt} failed ({exc}); "
                    f"retrying in {delay_ms}ms"
                )
                await asyncio.sleep(delay_ms / 1000.0)

    async def _dispatch(self, message: QueueMessage) -> bool:
        """Race the handler against ``processing_timeout``. True only when acknowledged."""
        self._dispatched += 1
        try:
            outcome = await asyncio.wait_for(
                self._handler.process(message), timeout=self._processing_timeout
            )
        except asyncio.TimeoutError:
            self._timeouts += 1
            self._failed += 1
            err = ProcessingTimeout(
                f"message {message.message_id} not processed within {self._processing_timeout}s"
            )
            logger.error(f"{self._name}: {err}; left for redelivery")
            self._handler.record_timeout(message, err)
            return False
        except Exception:
            self._failed += 1
            raise

        if getattr(outcome, "acknowledged", False):
            self._acked += 1
            return True
        self._failed += 1
        return False
