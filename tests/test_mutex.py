"""Tests for the keyed asyncio mutex."""

from __future__ import annotations

import asyncio
import random

import pytest

from convoy.mutex import NamedMutex


@pytest.mark.asyncio
@pytest.mark.parametrize("n", [1, 2, 10, 50])
async def test_concurrent_sections_lose_no_updates(n):
    mutex = NamedMutex()
    state = {"items": []}
    rng = random.Random(n)

    async def append(i: int) -> None:
        snapshot = list(state["items"])
        await asyncio.sleep(rng.random() / 1000)
        snapshot.append(i)
        state["items"] = snapshot

    await asyncio.gather(*(mutex.run_exclusive("plan-1", append, i) for i in range(n)))

    assert sorted(state["items"]) == list(range(n))
    assert "plan-1" not in mutex
    assert len(mutex) == 0


@pytest.mark.asyncio
async def test_sections_run_in_arrival_order():
    mutex = NamedMutex()
    order: list[int] = []

    async def record(i: int) -> None:
        await asyncio.sleep(0)
        order.append(i)

    tasks = [asyncio.create_task(mutex.run_exclusive("k", record, i)) for i in range(5)]
    await asyncio.gather(*tasks)
    assert order == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_no_overlap_for_same_key():
    mutex = NamedMutex()
    active = 0
    peak = 0

    async def section() -> None:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.001)
        active -= 1

    await asyncio.gather(*(mutex.run_exclusive("k", section) for _ in range(8)))
    assert peak == 1


@pytest.mark.asyncio
async def test_different_keys_run_concurrently():
    mutex = NamedMutex()
    slow_started = asyncio.Event()
    release_slow = asyncio.Event()

    async def slow() -> str:
        slow_started.set()
        await release_slow.wait()
        return "slow"

    async def fast() -> str:
        return "fast"

    slow_task = asyncio.create_task(mutex.run_exclusive("a", slow))
    await slow_started.wait()

    # Completes while "a" is still held.
    assert await asyncio.wait_for(mutex.run_exclusive("b", fast), timeout=1) == "fast"
    assert mutex.locked("a")

    release_slow.set()
    assert await slow_task == "slow"


@pytest.mark.asyncio
async def test_exception_propagates_and_releases_key():
    mutex = NamedMutex()

    async def boom() -> None:
        raise ValueError("boom")

    async def ok() -> str:
        return "ok"

    failing = asyncio.create_task(mutex.run_exclusive("k", boom))
    following = asyncio.create_task(mutex.run_exclusive("k", ok))

    with pytest.raises(ValueError, match="boom"):
        await failing
    assert await following == "ok"
    assert "k" not in mutex


@pytest.mark.asyncio
async def test_sync_callable_supported():
    mutex = NamedMutex()
    assert await mutex.run_exclusive("k", lambda x: x * 2, 21) == 42


@pytest.mark.asyncio
async def test_cancelled_waiter_is_removed():
    mutex = NamedMutex()
    hold = asyncio.Event()

    async def holder() -> None:
        await hold.wait()

    first = asyncio.create_task(mutex.run_exclusive("k", holder))
    await asyncio.sleep(0)
    waiter = asyncio.create_task(mutex.run_exclusive("k", holder))
    await asyncio.sleep(0)
    assert mutex.waiting("k") == 1

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter
    assert mutex.waiting("k") == 0

    hold.set()
    await first
    assert len(mutex) == 0


@pytest.mark.asyncio
async def test_reentrant_acquire_deadlocks_predictably():
    mutex = NamedMutex()

    async def inner() -> None:
        return None

    async def outer() -> None:
        await mutex.run_exclusive("k", inner)

    with pytest.raises(TimeoutError):
        await asyncio.wait_for(mutex.run_exclusive("k", outer), timeout=0.05)

    # Cancellation unwound both levels and left nothing behind.
    assert len(mutex) == 0
