import asyncio
import logging
from collections import deque
from typing import Deque, Dict, Hashable, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class ExponentialBackoff:
    """Per-item exponential backoff: base * 2^failures, capped at max_delay."""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: Dict[Hashable, int] = {}

    def when(self, item: Hashable) -> float:
        exp = self._failures.get(item, 0)
        self._failures[item] = exp + 1
        # float overflow
        if exp > 64:
            return self.max_delay
        return min(self.base_delay * 2**exp, self.max_delay)

    def num_requeues(self, item: Hashable) -> int:
        return self._failures.get(item, 0)

    def forget(self, item: Hashable) -> None:
        self._failures.pop(item, None)


class RateLimitingQueue:
    """
    Deduplicating work queue with delayed and rate-limited re-adds.

    An item is handed to at most one worker at a time. Adding an item that is already
    queued is a no-op; adding one that is being processed marks it dirty so it is queued
    again once the worker calls done().
    """

    def __init__(self, name: str, rate_limiter: Optional[ExponentialBackoff] = None):
        self.name = name
        self.rate_limiter = rate_limiter or ExponentialBackoff()
        self._queue: Deque[Hashable] = deque()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._timers: Set[asyncio.TimerHandle] = set()
        self._shutting_down = False
        self._not_empty = asyncio.Event()

    def __len__(self) -> int:
        return len(self._queue)

    def add(self, item: Hashable) -> None:
        if self._shutting_down:
            return
        if item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._not_empty.set()

    async def get(self) -> Tuple[Optional[Hashable], bool]:
        """
        Blocks until an item is available.

        Returns:
            (item, False), or (None, True) once the queue is shut down and drained.
        """
        while not self._queue and not self._shutting_down:
            self._not_empty.clear()
            await self._not_empty.wait()
        if not self._queue:
            return None, True

        item = self._queue.popleft()
        self._processing.add(item)
        self._dirty.discard(item)
        return item, False

    def done(self, item: Hashable) -> None:
        self._processing.discard(item)
        if item in self._dirty:
            self._queue.append(item)
            self._not_empty.set()

    def add_after(self, item: Hashable, delay: float) -> None:
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(item)
            return

        def fire():
            self._timers.discard(handle)
            self.add(item)

        handle = asyncio.get_running_loop().call_later(delay, fire)
        self._timers.add(handle)

    def add_rate_limited(self, item: Hashable) -> None:
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    def shut_down(self) -> None:
        logger.debug(f"Shutting down queue '{self.name}'")
        self._shutting_down = True
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        self._not_empty.set()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down
