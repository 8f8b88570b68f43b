"""A deduplicating work queue with rate limited retries.

The queue follows the semantics of the client-go workqueue:

- An item added while it is already waiting in the queue is collapsed
  into the waiting entry.
- An item added while it is being processed is marked dirty and queued
  again once the worker calls `done`, so one item is never processed
  twice at the same time.
- Failed items are added back after a delay computed by a rate limiter,
  the maximum of a per-item exponential backoff and a global token
  bucket.
- After `shut_down`, adds are ignored and `get` reports the shutdown.
  Items still waiting are dropped, the item being processed is left to
  complete.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable, Hashable
import logging
import time
from typing import Generic, TypeVar

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T", bound=Hashable)

__all__ = [
    "RateLimiter",
    "ItemExponentialFailureRateLimiter",
    "BucketRateLimiter",
    "MaxOfRateLimiter",
    "RateLimitingQueue",
    "default_rate_limiter",
]


class RateLimiter(ABC, Generic[T]):
    """Computes how long an item must wait before being retried."""

    @abstractmethod
    def when(self, item: T) -> float:
        """Return the delay in seconds before the item may be processed again."""

    @abstractmethod
    def forget(self, item: T) -> None:
        """Stop tracking the item, resetting its retry state."""

    @abstractmethod
    def num_requeues(self, item: T) -> int:
        """Return the number of failures recorded for the item."""


class ItemExponentialFailureRateLimiter(RateLimiter[T]):
    """Backoff of `base_delay * 2^failures` per item, capped at `max_delay`."""

    def __init__(self, base_delay: float, max_delay: float) -> None:
        """Initialize the ItemExponentialFailureRateLimiter."""
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._failures: dict[T, int] = {}

    def when(self, item: T) -> float:
        """Record a failure and return the backoff for the item."""
        failures = self._failures.get(item, 0)
        self._failures[item] = failures + 1
        try:
            backoff = self._base_delay * (2**failures)
        except OverflowError:
            return self._max_delay
        return min(backoff, self._max_delay)

    def forget(self, item: T) -> None:
        """Reset the failures of the item."""
        self._failures.pop(item, None)

    def num_requeues(self, item: T) -> int:
        """Return the number of failures of the item."""
        return self._failures.get(item, 0)


class BucketRateLimiter(RateLimiter[T]):
    """A global token bucket shared by all items.

    The bucket holds up to `burst` tokens and refills at `qps` tokens per
    second. Every retry takes a token, waiting for it when the bucket is
    empty.
    """

    def __init__(
        self,
        qps: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the BucketRateLimiter."""
        self._qps = qps
        self._burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()

    def when(self, item: T) -> float:
        """Reserve a token and return the time to wait for it."""
        now = self._clock()
        self._tokens = min(float(self._burst), self._tokens + (now - self._last) * self._qps)
        self._last = now
        self._tokens -= 1
        if self._tokens >= 0:
            return 0.0
        return -self._tokens / self._qps

    def forget(self, item: T) -> None:
        """Tokens are not tracked per item."""

    def num_requeues(self, item: T) -> int:
        """Tokens are not tracked per item."""
        return 0


class MaxOfRateLimiter(RateLimiter[T]):
    """Combines rate limiters, waiting for the longest of their delays."""

    def __init__(self, *limiters: RateLimiter[T]) -> None:
        """Initialize the MaxOfRateLimiter."""
        self._limiters = limiters

    def when(self, item: T) -> float:
        """Return the longest delay of all limiters."""
        return max(limiter.when(item) for limiter in self._limiters)

    def forget(self, item: T) -> None:
        """Forget the item in all limiters."""
        for limiter in self._limiters:
            limiter.forget(item)

    def num_requeues(self, item: T) -> int:
        """Return the highest failure count of all limiters."""
        return max(limiter.num_requeues(item) for limiter in self._limiters)


class RateLimitingQueue(Generic[T]):
    """Single consumer work queue keyed by item identity."""

    def __init__(self, rate_limiter: RateLimiter[T]) -> None:
        """Initialize the RateLimitingQueue."""
        self._rate_limiter = rate_limiter
        self._queue: deque[T] = deque()
        self._dirty: set[T] = set()
        self._processing: set[T] = set()
        self._waiting: dict[T, tuple[float, asyncio.TimerHandle]] = {}
        self._wakeup = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        """Return the number of items waiting to be processed."""
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        """Return True once the queue was shut down."""
        return self._shutting_down

    def add(self, item: T) -> None:
        """Mark the item as needing processing."""
        if self._shutting_down:
            return
        if item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._wakeup.set()

    def add_after(self, item: T, delay: float) -> None:
        """Add the item once the delay has passed.

        A pending delayed add of the same item is kept if it fires earlier.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(item)
            return
        loop = asyncio.get_running_loop()
        ready_at = loop.time() + delay
        if (pending := self._waiting.get(item)) is not None:
            if pending[0] <= ready_at:
                return
            pending[1].cancel()
        handle = loop.call_at(ready_at, self._fire, item)
        self._waiting[item] = (ready_at, handle)

    def _fire(self, item: T) -> None:
        self._waiting.pop(item, None)
        self.add(item)

    def add_rate_limited(self, item: T) -> None:
        """Add the item after the delay given by the rate limiter."""
        delay = self._rate_limiter.when(item)
        _LOGGER.debug("Requeuing %s in %0.3fs", item, delay)
        self.add_after(item, delay)

    def forget(self, item: T) -> None:
        """Reset the retry state of the item after a success."""
        self._rate_limiter.forget(item)

    def num_requeues(self, item: T) -> int:
        """Return the number of times the item was retried."""
        return self._rate_limiter.num_requeues(item)

    async def get(self) -> tuple[T | None, bool]:
        """Wait for the next item.

        Returns:
            A tuple of the item and a shutdown flag. When the flag is True
            the item is None and the worker must stop.
        """
        while not self._queue and not self._shutting_down:
            self._wakeup.clear()
            await self._wakeup.wait()
        if self._shutting_down:
            return None, True
        item = self._queue.popleft()
        self._processing.add(item)
        self._dirty.discard(item)
        return item, False

    def done(self, item: T) -> None:
        """Mark the processing of the item as complete."""
        self._processing.discard(item)
        if item in self._dirty and not self._shutting_down:
            self._queue.append(item)
            self._wakeup.set()

    def shut_down(self) -> None:
        """Stop accepting items and wake up the worker."""
        _LOGGER.debug("Shutting down queue")
        self._shutting_down = True
        for _, handle in self._waiting.values():
            handle.cancel()
        self._waiting.clear()
        self._wakeup.set()


def default_rate_limiter(
    base_delay: float, max_delay: float, qps: float, burst: int
) -> RateLimiter[T]:
    """Return the per-item exponential backoff capped by a global token bucket."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay, max_delay),
        BucketRateLimiter(qps, burst),
    )
