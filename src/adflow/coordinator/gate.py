"""
Admission control over in-flight batch operations.

Waiters are admitted when *any* in-flight operation completes (a race over
completion, like ``asyncio.wait(..., FIRST_COMPLETED)``), not in request order.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Optional, TypeVar

from loguru import logger

from ..metrics.registry import GATE_IN_FLIGHT

R = TypeVar("R")


class ConcurrencyGate:
    """Bound how many operations run at once; a failing operation still frees its slot."""

    def __init__(self, max_concurrent: int, *, name: str = "gate"):
        if max_concurrent <= 0:
            raise ValueError("max_concurrent must be > 0")
        self._max = max_concurrent
        self._name = name
        self._in_flight: set[asyncio.Future] = set()
        self._peak = 0
        self._admitted = 0
        self._waiting = 0

    @property
    def max_concurrent(self) -> int:
        return self._max

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def peak_in_flight(self) -> int:
        return self._peak

    @property
    def admitted(self) -> int:
        return self._admitted

    @property
    def waiting(self) -> int:
        return self._waiting

    async def acquire(self) -> asyncio.Future:
        """Register an operation; suspends until a slot is free. Returns the slot token."""
        while len(self._in_flight) >= self._max:
            self._waiting += 1
            try:
                await asyncio.wait(set(self._in_flight), return_when=asyncio.FIRST_COMPLETED)
            finally:
                self._waiting -= 1

        slot = asyncio.get_running_loop().create_future()
        self._in_flight.add(slot)
        # registered before any waiter callback so waiters see the freed slot
        slot.add_done_callback(self._on_slot_done)
        self._admitted += 1
        self._peak = max(self._peak, len(self._in_flight))
        GATE_IN_FLIGHT.labels(gate=self._name).set(len(self._in_flight))
        return slot

    def release(self, slot: asyncio.Future) -> None:
        """Free a slot. Safe to call more than once."""
        if not slot.done():
            slot.set_result(None)

    def _on_slot_done(self, slot: asyncio.Future) -> None:
        self._in_flight.discard(slot)
        GATE_IN_FLIGHT.labels(gate=self._name).set(len(self._in_flight))

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        token = await self.acquire()
        try:
            yield
        finally:
            self.release(token)

    async def run(self, coro: Awaitable[R], *, name: Optional[str] = None) -> "asyncio.Task[R]":
        """Acquire a slot, then start ``coro`` as a task that releases it when done."""
        token = await self.acquire()
        try:
            task = asyncio.ensure_future(coro)
        except BaseException:
            self.release(token)
            raise
        if name and isinstance(task, asyncio.Task):
            task.set_name(name)
        task.add_done_callback(lambda _t: self.release(token))
        logger.debug(f"{self._name}: admitted ({self.in_flight}/{self._max} in flight)")
        return task
