"""
Unit tests for ConcurrencyGate admission control.
"""

import asyncio

import pytest

from adflow.coordinator import ConcurrencyGate


@pytest.mark.asyncio
async def test_in_flight_never_exceeds_bound():
    gate = ConcurrencyGate(3, name="bound-test")
    running = 0
    observed = []

    async def op(i):
        nonlocal running
        running += 1
        observed.append(running)
        await asyncio.sleep(0.01 * (i % 4 + 1))
        running -= 1
        return i

    tasks = [await gate.run(op(i)) for i in range(12)]
    results = await asyncio.gather(*tasks)

    assert sorted(results) == list(range(12))
    assert max(observed) <= 3
    assert gate.peak_in_flight == 3
    assert gate.admitted == 12
    await asyncio.sleep(0)
    assert gate.in_flight == 0


@pytest.mark.asyncio
async def test_admission_follows_completion_order():
    """The waiter is admitted when the *first* in-flight operation finishes."""
    gate = ConcurrencyGate(2)
    slow_done = asyncio.Event()
    fast_done = asyncio.Event()
    order = []

    async def slow():
        await slow_done.wait()
        order.append("slow")

    async def fast():
        await fast_done.wait()
        order.append("fast")

    t_slow = await gate.run(slow())
    t_fast = await gate.run(fast())

    admitted = asyncio.create_task(gate.acquire())
    await asyncio.sleep(0)
    assert not admitted.done()
    assert gate.waiting == 1

    fast_done.set()
    slot = await asyncio.wait_for(admitted, 1.0)
    assert order == ["fast"]
    assert not t_slow.done()

    gate.release(slot)
    slow_done.set()
    await asyncio.gather(t_slow, t_fast)
    await asyncio.sleep(0)
    assert gate.in_flight == 0


@pytest.mark.asyncio
async def test_failing_operation_frees_its_slot():
    gate = ConcurrencyGate(1)

    async def boom():
        raise RuntimeError("sink exploded")

    task = await gate.run(boom())
    with pytest.raises(RuntimeError):
        await task

    async with gate.slot():
        assert gate.in_flight == 1
    await asyncio.sleep(0)
    assert gate.in_flight == 0


@pytest.mark.asyncio
async def test_release_is_idempotent():
    gate = ConcurrencyGate(2)
    slot = await gate.acquire()
    gate.release(slot)
    gate.release(slot)
    await asyncio.sleep(0)
    assert gate.in_flight == 0


def test_gate_requires_positive_bound():
    with pytest.raises(ValueError):
        ConcurrencyGate(0)
