"""Per-key asyncio coordination primitives.

``SingleFlight`` collapses concurrent calls for one key into a single
in-progress operation whose outcome every caller shares.  ``KeyedLock``
serializes critical sections per key.  Both are process-local.
"""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import Awaitable, Callable, Hashable
from typing import Generic, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class SingleFlight(Generic[K, V]):
    """At most one in-progress operation per key.

    The first caller for a key starts the operation as a task; callers that
    arrive while it is running await the same task and receive the same
    result or exception.  The key is released as soon as the task settles,
    so the next call after a failure starts a fresh attempt.

    A caller being cancelled does not cancel the shared operation.
    """

    def __init__(self) -> None:
        self._inflight: dict[K, asyncio.Future[V]] = {}

    def in_flight(self, key: K) -> bool:
        return key in self._inflight

    async def do(self, key: K, operation: Callable[[], Awaitable[V]]) -> V:
        future = self._inflight.get(key)
        if future is None:
            future = asyncio.ensure_future(operation())
            self._inflight[key] = future
            future.add_done_callback(lambda done, key=key: self._release(key, done))
        return await asyncio.shield(future)

    def _release(self, key: K, done: asyncio.Future[V]) -> None:
        if self._inflight.get(key) is done:
            del self._inflight[key]
        # Mark the exception retrieved when every waiter was cancelled.
        if not done.cancelled():
            done.exception()


class KeyedLock(Generic[K]):
    """One ``asyncio.Lock`` per key, dropped once no task holds a reference."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[K, asyncio.Lock] = weakref.WeakValueDictionary()

    def __call__(self, key: K) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def locked(self, key: K) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()
