"""Async token bucket rate limiter for upstream API admission control.

Token bucket algorithm:
- Bucket starts full at ``capacity`` tokens.
- Each upstream request consumes 1 token via ``acquire()``.
- Tokens refill continuously at ``refill_rate`` per second, recomputed
  lazily from elapsed time on every acquire/check.
- If the bucket is empty, callers queue and are released in FIFO order.
  A loop timer only wakes the queue; it never refills on its own.

All state mutations happen between suspension points on a single event
loop, so no lock is needed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Callable

logger = logging.getLogger(__name__)

# Minimum timer delay so a wake-up never spins on float rounding.
_MIN_WAKE_SECONDS = 0.001


class TokenBucketRateLimiter:
    """Per-upstream token bucket with a FIFO wait queue.

    Usage::

        limiter = TokenBucketRateLimiter(capacity=10, refill_rate=10.0)
        await limiter.acquire()  # waits if necessary, never rejects
        response = await client.get(...)
    """

    def __init__(
        self,
        capacity: int,
        refill_rate: float,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Create a full bucket.

        Args:
            capacity: Maximum tokens held at once (>= 1).
            refill_rate: Tokens added per second (> 0).
            name: Label used in log messages.
            clock: Monotonic clock in seconds.

        Raises:
            ValueError: If capacity < 1 or refill_rate <= 0.
        """
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        if refill_rate <= 0:
            raise ValueError(f"refill_rate must be > 0, got {refill_rate}")
        self.name = name
        self.capacity = capacity
        self.refill_rate = float(refill_rate)
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._wakeup: asyncio.TimerHandle | None = None

    # -- Public API ----------------------------------------------------------

    async def acquire(self) -> None:
        """Reserve one token, waiting in FIFO order if none is available."""
        self._refill()
        if not self._waiters and self._tokens >= 1:
            self._tokens -= 1
            return

        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[None] = loop.create_future()
        self._waiters.append(waiter)
        logger.debug(
            "Rate limiter %s exhausted, queued (queue_length=%d)",
            self.name,
            len(self._waiters),
        )
        self._schedule_wakeup(loop)
        await waiter

    def try_acquire(self) -> bool:
        """Take a token if one is available right now; never waits.

        Returns False while other callers are queued so they keep their
        place in line.
        """
        self._refill()
        if not self._waiters and self._tokens >= 1:
            self._tokens -= 1
            return True
        return False

    @property
    def available_tokens(self) -> float:
        """Current (possibly fractional) token level."""
        self._refill()
        return self._tokens

    @property
    def queue_length(self) -> int:
        """Number of callers waiting for a token."""
        return len(self._waiters)

    def reset(self) -> None:
        """Refill to capacity and release every queued waiter for free."""
        self._tokens = float(self.capacity)
        self._last_refill = self._clock()
        if self._wakeup is not None:
            self._wakeup.cancel()
            self._wakeup = None
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)

    # -- Internal ------------------------------------------------------------

    def _refill(self) -> None:
        """Add tokens for the time elapsed since the last refill."""
        now = self._clock()
        elapsed = now - self._last_refill
        self._last_refill = now
        if elapsed > 0:
            self._tokens = min(
                float(self.capacity),
                self._tokens + elapsed * self.refill_rate,
            )

    def _wait_time(self) -> float:
        """Seconds until the level reaches one token."""
        if self._tokens >= 1:
            return 0.0
        return (1 - self._tokens) / self.refill_rate

    def _schedule_wakeup(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._wakeup is not None or not self._waiters:
            return
        delay = max(_MIN_WAKE_SECONDS, self._wait_time())
        self._wakeup = loop.call_later(delay, self._drain)

    def _drain(self) -> None:
        """Release waiters from the head of the queue while tokens allow."""
        self._wakeup = None
        self._refill()
        while self._waiters:
            head = self._waiters[0]
            if head.done():
                # Cancelled while waiting; drop without consuming a token.
                self._waiters.popleft()
                continue
            if self._tokens < 1:
                break
            self._tokens -= 1
            self._waiters.popleft()
            head.set_result(None)
        if self._waiters:
            self._schedule_wakeup(asyncio.get_running_loop())
