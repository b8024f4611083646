"""
Work Queue - Coalescing per-cluster queue for the reconcile workers.

A key is held in at most one pending slot and at most one worker at a
time. Re-adding a queued key is a no-op; re-adding a key that is being
processed marks it dirty so it runs once more after ``done()``.
"""

import asyncio
import logging
import random
from typing import Dict, Generic, Hashable, List, Optional, Set, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


class ShutDown(Exception):
    """Raised by get() once the queue has been shut down."""


class WorkQueue(Generic[K]):
    """
    Keyed, latest-wins work queue with delayed adds and failure backoff.

    Args:
        base_delay: First retry delay in seconds
        max_delay: Upper bound for the retry delay in seconds
        jitter_factor: Jitter of ±X applied to each retry delay
    """

    def __init__(
        self,
        base_delay: float = 60,
        max_delay: float = 3600,
        jitter_factor: float = 0.1,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_factor = jitter_factor

        self._queue: List[K] = []
        self._queued: Set[K] = set()
        self._processing: Set[K] = set()
        self._dirty: Set[K] = set()
        self._failures: Dict[K, int] = {}
        self._timers: Dict[K, asyncio.TimerHandle] = {}
        self._timer_deadlines: Dict[K, float] = {}
        self._pending_adds: Set[asyncio.Task] = set()
        self._condition = asyncio.Condition()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def is_processing(self, key: K) -> bool:
        return key in self._processing

    async def add(self, key: K) -> None:
        """Queue a key now. Coalesces with any pending or in-flight entry."""
        async with self._condition:
            self._add_locked(key)

    def _add_locked(self, key: K) -> None:
        if self._shutting_down:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.append(key)
        self._condition.notify()

    def add_after(self, key: K, delay: float) -> None:
        """
        Queue a key once ``delay`` seconds have passed.

        Only the earliest pending timer for a key is kept.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self._spawn_add(key)
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        existing = self._timer_deadlines.get(key)
        if existing is not None and existing <= deadline:
            return
        if key in self._timers:
            self._timers.pop(key).cancel()

        self._timer_deadlines[key] = deadline
        self._timers[key] = loop.call_at(deadline, self._fire_timer, key)

    def _fire_timer(self, key: K) -> None:
        self._timers.pop(key, None)
        self._timer_deadlines.pop(key, None)
        self._spawn_add(key)

    def _spawn_add(self, key: K) -> None:
        task = asyncio.ensure_future(self.add(key))
        self._pending_adds.add(task)
        task.add_done_callback(self._pending_adds.discard)

    def add_rate_limited(self, key: K) -> float:
        """
        Queue a key after its failure backoff and count the failure.

        Returns:
            The delay that was applied, in seconds.
        """
        delay = self.backoff_delay(key)
        self._failures[key] = self._failures.get(key, 0) + 1
        self.add_after(key, delay)
        return delay

    def backoff_delay(self, key: K) -> float:
        """Exponential backoff with jitter for the key's next retry."""
        failures = min(self._failures.get(key, 0), 10)
        delay = min(self.base_delay * (2 ** failures), self.max_delay)
        jitter = 1 + (random.random() * 2 - 1) * self.jitter_factor
        return delay * jitter

    def failures(self, key: K) -> int:
        return self._failures.get(key, 0)

    def forget(self, key: K) -> None:
        """Reset the key's failure count after a successful pass."""
        self._failures.pop(key, None)

    async def get(self) -> K:
        """
        Wait for the next key and mark it in flight.

        Raises:
            ShutDown: When the queue is shut down
        """
        async with self._condition:
            while not self._queue and not self._shutting_down:
                await self._condition.wait()
            if self._shutting_down:
                raise ShutDown()
            key = self._queue.pop(0)
            self._queued.discard(key)
            self._processing.add(key)
            return key

    async def done(self, key: K) -> None:
        """Release an in-flight key, requeueing it if it went dirty."""
        async with self._condition:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                self._add_locked(key)

    async def shutdown(self) -> None:
        """Stop handing out keys and wake every waiting worker."""
        async with self._condition:
            self._shutting_down = True
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._timer_deadlines.clear()
            self._condition.notify_all()
        logger.info("Work queue shut down")

    def pending_delay(self, key: K) -> Optional[float]:
        """Seconds until the key's delayed add fires, if one is pending."""
        deadline = self._timer_deadlines.get(key)
        if deadline is None:
            return None
        return max(deadline - asyncio.get_running_loop().time(), 0.0)
