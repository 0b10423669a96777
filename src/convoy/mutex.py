"""Keyed mutual exclusion for asyncio critical sections.

:class:`NamedMutex` serializes read-modify-write sequences that span
several suspension points (read a plan file, mutate it, write it back)
so two of them against the same key never interleave. Each key has its
own FIFO queue; different keys never wait on each other.

Known limitation: acquisition is not re-entrant. A critical section that
calls ``run_exclusive`` again with its own key waits on itself forever.
That deadlock is deterministic and leaves the registry consistent; it is
not detected or special-cased.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")


class _KeyQueue:
    """Held flag plus the waiters queued behind the current holder."""

    __slots__ = ("held", "waiters")

    def __init__(self) -> None:
        self.held = False
        self.waiters: deque[asyncio.Future[None]] = deque()


class NamedMutex:
    """A registry of one FIFO lock per key.

    Registry entries exist only while a key is held or has waiters, so
    memory is bounded by the number of keys in use, not the number of keys
    ever seen.
    """

    def __init__(self, name: str = "mutex") -> None:
        self.name = name
        self._queues: dict[str, _KeyQueue] = {}

    def __len__(self) -> int:
        return len(self._queues)

    def __contains__(self, key: object) -> bool:
        return key in self._queues

    def locked(self, key: str) -> bool:
        """Return whether a critical section currently holds *key*."""
        queue = self._queues.get(key)
        return queue is not None and queue.held

    def waiting(self, key: str) -> int:
        """Number of callers queued behind the holder of *key*."""
        queue = self._queues.get(key)
        if queue is None:
            return 0
        return sum(1 for waiter in queue.waiters if not waiter.done())

    async def run_exclusive(
        self,
        key: str,
        fn: Callable[..., Awaitable[T] | T],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Run ``fn(*args, **kwargs)`` while holding *key*.

        *fn* may be a plain function or return an awaitable. Its result is
        returned and its exception propagates to this caller only; the key
        is released either way.
        """
        await self._acquire(key)
        try:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result  # type: ignore[return-value]
        finally:
            self._release(key)

    async def _acquire(self, key: str) -> None:
        queue = self._queues.get(key)
        if queue is None:
            queue = self._queues[key] = _KeyQueue()
        if not queue.held:
            queue.held = True
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        queue.waiters.append(waiter)
        log.debug("%s: waiting for %s (%d queued)", self.name, key, len(queue.waiters))
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Ownership was handed over just before the cancellation landed.
                self._release(key)
            else:
                current = self._queues.get(key)
                if current is not None and waiter in current.waiters:
                    current.waiters.remove(waiter)
            raise

    def _release(self, key: str) -> None:
        queue = self._queues.get(key)
        if queue is None or not queue.held:
            raise RuntimeError(f"{self.name}: release of unheld key {key!r}")
        while queue.waiters:
            waiter = queue.waiters.popleft()
            if not waiter.done():
                # Hand ownership directly to the next waiter; held stays True.
                waiter.set_result(None)
                return
        queue.held = False
        del self._queues[key]
