"""Keyed work queue for reconcile passes.

The queue guarantees that at most one worker processes a given key at a time. A
key added while it is being processed is marked dirty and queued again once the
current pass is done, so no change notification is lost and no key is reconciled
concurrently with itself.
"""

import asyncio
import logging
from collections.abc import Hashable
from typing import Generic, TypeVar

_LOGGER = logging.getLogger(__name__)

__all__ = ["WorkQueue"]

K = TypeVar("K", bound=Hashable)


class WorkQueue(Generic[K]):
    """A deduplicating work queue with delayed requeue support."""

    def __init__(self) -> None:
        """Initialize the WorkQueue."""
        self._queue: asyncio.Queue[K] = asyncio.Queue()
        self._queued: set[K] = set()
        self._processing: set[K] = set()
        self._dirty: set[K] = set()
        self._delayed: dict[K, asyncio.TimerHandle] = {}
        self._idle = asyncio.Event()
        self._idle.set()
        self._shutdown = False

    def add(self, key: K) -> None:
        """Add a key to be processed as soon as a worker is available."""
        if self._shutdown:
            return
        if key in self._queued:
            return
        if key in self._processing:
            _LOGGER.debug("Key %s is being processed, marking dirty", key)
            self._dirty.add(key)
            return
        self._queued.add(key)
        self._idle.clear()
        self._queue.put_nowait(key)

    def add_after(self, key: K, delay: float) -> None:
        """Add a key after the delay in seconds has passed.

        If the key is already scheduled to be added sooner, this is a no-op.
        """
        if self._shutdown:
            return
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        when = loop.time() + delay
        if (handle := self._delayed.get(key)) is not None:
            if handle.when() <= when:
                return
            handle.cancel()
        _LOGGER.debug("Scheduling %s in %0.1fs", key, delay)
        self._delayed[key] = loop.call_at(when, self._fire_delayed, key)

    def _fire_delayed(self, key: K) -> None:
        self._delayed.pop(key, None)
        self.add(key)

    def forget(self, key: K) -> None:
        """Drop any delayed requeue for the key."""
        if (handle := self._delayed.pop(key, None)) is not None:
            handle.cancel()

    async def get(self) -> K:
        """Wait for the next key and mark it as being processed."""
        key = await self._queue.get()
        self._queued.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: K) -> None:
        """Mark the processing of a key as finished."""
        self._processing.discard(key)
        self._queue.task_done()
        if key in self._dirty:
            self._dirty.discard(key)
            self.add(key)
        if not self._queued and not self._processing:
            self._idle.set()

    def is_processing(self, key: K) -> bool:
        """Return True if a worker is currently processing the key."""
        return key in self._processing

    def __len__(self) -> int:
        """Number of keys waiting to be processed."""
        return len(self._queued)

    async def wait_idle(self) -> None:
        """Wait until no key is queued or being processed.

        Delayed keys that have not fired yet are not waited for.
        """
        await self._idle.wait()

    def shut_down(self) -> None:
        """Stop accepting new keys and drop any delayed keys."""
        self._shutdown = True
        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()
