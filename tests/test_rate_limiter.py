"""Unit tests for the token bucket rate limiter: admission, FIFO, reset."""

from __future__ import annotations

import asyncio
import time

import pytest

from terminology_mcp_server.rate_limiter import TokenBucketRateLimiter


class TestConstruction:
    """Tests for constructor validation."""

    def test_starts_full(self, clock) -> None:
        limiter = TokenBucketRateLimiter(capacity=5, refill_rate=5.0, clock=clock)
        assert limiter.available_tokens == 5
        assert limiter.queue_length == 0

    @pytest.mark.parametrize("capacity,rate", [(0, 1.0), (-1, 1.0), (1, 0.0), (1, -2.0)])
    def test_rejects_invalid_parameters(self, capacity: int, rate: float) -> None:
        with pytest.raises(ValueError):
            TokenBucketRateLimiter(capacity=capacity, refill_rate=rate)


class TestTryAcquire:
    """Tests for the non-blocking path and lazy refill."""

    def test_consumes_until_empty(self, clock) -> None:
        limiter = TokenBucketRateLimiter(capacity=2, refill_rate=1.0, clock=clock)
        assert limiter.try_acquire() is True
        assert limiter.try_acquire() is True
        assert limiter.try_acquire() is False

    def test_refills_with_elapsed_time(self, clock) -> None:
        limiter = TokenBucketRateLimiter(capacity=2, refill_rate=4.0, clock=clock)
        limiter.try_acquire()
        limiter.try_acquire()
        clock.advance(0.25)
        assert limiter.available_tokens == pytest.approx(1.0)
        assert limiter.try_acquire() is True

    def test_never_exceeds_capacity(self, clock) -> None:
        limiter = TokenBucketRateLimiter(capacity=3, refill_rate=10.0, clock=clock)
        clock.advance(60)
        assert limiter.available_tokens == 3

    @pytest.mark.asyncio
    async def test_does_not_overtake_queued_waiters(self, clock) -> None:
        limiter = TokenBucketRateLimiter(capacity=1, refill_rate=1.0, clock=clock)
        assert limiter.try_acquire() is True
        waiter = asyncio.create_task(limiter.acquire())
        await asyncio.sleep(0)
        assert limiter.queue_length == 1

        clock.advance(5)
        assert limiter.try_acquire() is False

        limiter.reset()
        await asyncio.wait_for(waiter, timeout=1)


class TestAcquire:
    """Tests for the waiting path."""

    @pytest.mark.asyncio
    async def test_immediate_when_tokens_available(self) -> None:
        limiter = TokenBucketRateLimiter(capacity=3, refill_rate=1.0)
        started = time.monotonic()
        for _ in range(3):
            await limiter.acquire()
        assert time.monotonic() - started < 0.05

    @pytest.mark.asyncio
    async def test_saturation_delays_next_caller_by_refill_interval(self) -> None:
        limiter = TokenBucketRateLimiter(capacity=2, refill_rate=10.0)
        for _ in range(2):
            await limiter.acquire()
        started = time.monotonic()
        await limiter.acquire()
        elapsed = time.monotonic() - started
        assert elapsed >= 0.08
        assert elapsed < 0.5

    @pytest.mark.asyncio
    async def test_waiters_are_released_in_fifo_order(self) -> None:
        limiter = TokenBucketRateLimiter(capacity=1, refill_rate=50.0)
        await limiter.acquire()
        order: list[int] = []

        async def worker(index: int) -> None:
            await limiter.acquire()
            order.append(index)

        tasks = []
        for index in range(4):
            tasks.append(asyncio.create_task(worker(index)))
            await asyncio.sleep(0)
        await asyncio.wait_for(asyncio.gather(*tasks), timeout=2)
        assert order == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_consume_a_token(self) -> None:
        limiter = TokenBucketRateLimiter(capacity=1, refill_rate=20.0)
        await limiter.acquire()
        cancelled = asyncio.create_task(limiter.acquire())
        await asyncio.sleep(0)
        survivor = asyncio.create_task(limiter.acquire())
        await asyncio.sleep(0)
        cancelled.cancel()
        await asyncio.wait_for(survivor, timeout=1)
        assert cancelled.cancelled()
        assert limiter.queue_length == 0


class TestReset:
    """Tests for reset()."""

    @pytest.mark.asyncio
    async def test_reset_releases_all_waiters_and_refills(self) -> None:
        limiter = TokenBucketRateLimiter(capacity=2, refill_rate=0.01)
        await limiter.acquire()
        await limiter.acquire()
        waiters = [asyncio.create_task(limiter.acquire()) for _ in range(3)]
        await asyncio.sleep(0)
        assert limiter.queue_length == 3

        limiter.reset()
        await asyncio.wait_for(asyncio.gather(*waiters), timeout=1)
        assert limiter.queue_length == 0
        assert limiter.available_tokens == pytest.approx(2, abs=0.01)
