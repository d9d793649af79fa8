"""Unit tests for the retry executor: classification, backoff, history."""

from __future__ import annotations

import random

import httpx
import pytest

from terminology_mcp_server.errors import (
    AuthConfigError,
    AuthExpiredError,
    NotFoundError,
    RateLimitError,
    UpstreamApiError,
    UpstreamTransportError,
)
from terminology_mcp_server.retry import (
    RetryExecutor,
    RetryPolicy,
    is_retryable,
)


class Flaky:
    """Thunk that fails with the queued errors, then returns ``value``."""

    def __init__(self, errors: list[Exception], value: object = "ok") -> None:
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


class TestIsRetryable:
    """Tests for error classification."""

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
    def test_transient_statuses(self, status: int) -> None:
        assert is_retryable(UpstreamApiError("boom", status_code=status)) is True

    @pytest.mark.parametrize("status", [400, 401, 403, 422])
    def test_client_statuses(self, status: int) -> None:
        assert is_retryable(UpstreamApiError("bad", status_code=status)) is False

    def test_transport_errors(self) -> None:
        assert is_retryable(UpstreamTransportError("reset")) is True
        assert is_retryable(httpx.ConnectError("refused")) is True
        assert is_retryable(httpx.ReadTimeout("slow")) is True

    def test_rate_limit_is_retryable(self) -> None:
        assert is_retryable(RateLimitError("slow down", status_code=429)) is True

    def test_terminal_errors(self) -> None:
        assert is_retryable(NotFoundError("gone")) is False
        assert is_retryable(AuthConfigError("no creds")) is False
        assert is_retryable(AuthExpiredError("stale")) is False
        assert is_retryable(ValueError("programming error")) is False

    def test_custom_status_set(self) -> None:
        err = UpstreamApiError("boom", status_code=500)
        assert is_retryable(err, frozenset({503})) is False


class TestRetryPolicy:
    """Tests for policy validation and delay computation."""

    def test_base_delay_grows_and_caps(self) -> None:
        policy = RetryPolicy(initial_delay=1.0, backoff_multiplier=2.0, max_delay=5.0)
        assert [policy.base_delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_retries": -1},
            {"initial_delay": -0.5},
            {"max_delay": -1.0},
            {"backoff_multiplier": 0.5},
        ],
    )
    def test_rejects_invalid(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestRetryExecutor:
    """Tests for RetryExecutor.call / execute."""

    @pytest.mark.asyncio
    async def test_success_first_try(self, no_sleep) -> None:
        thunk = Flaky([], value=42)
        executor = RetryExecutor(RetryPolicy(), sleep=no_sleep)
        outcome = await executor.execute(thunk)
        assert outcome.succeeded
        assert outcome.value == 42
        assert outcome.attempt_count == 1
        assert outcome.attempts == []
        assert no_sleep.delays == []

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self, no_sleep) -> None:
        thunk = Flaky([UpstreamTransportError("reset"), httpx.ConnectError("refused")], value="ok")
        executor = RetryExecutor(RetryPolicy(max_retries=3, jitter=False), sleep=no_sleep)
        assert await executor.call(thunk) == "ok"
        assert thunk.calls == 3
        assert no_sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhaustion_makes_exactly_max_retries_plus_one_calls(self, no_sleep) -> None:
        errors = [UpstreamApiError(f"fail {n}", status_code=503) for n in range(4)]
        thunk = Flaky(errors)
        executor = RetryExecutor(RetryPolicy(max_retries=3, jitter=False), sleep=no_sleep)

        outcome = await executor.execute(thunk)

        assert thunk.calls == 4
        assert outcome.attempt_count == 4
        assert not outcome.succeeded
        assert outcome.error.message == "fail 3"
        assert [a.attempt for a in outcome.attempts] == [1, 2, 3, 4]
        assert [a.delay for a in outcome.attempts] == [1.0, 2.0, 4.0, None]

    @pytest.mark.asyncio
    async def test_call_raises_last_error(self, no_sleep) -> None:
        errors = [UpstreamApiError(f"fail {n}", status_code=500) for n in range(3)]
        executor = RetryExecutor(RetryPolicy(max_retries=2), sleep=no_sleep)
        with pytest.raises(UpstreamApiError, match="fail 2"):
            await executor.call(Flaky(errors))

    @pytest.mark.asyncio
    async def test_non_retryable_stops_after_one_attempt(self, no_sleep) -> None:
        thunk = Flaky([UpstreamApiError("bad request", status_code=400)])
        executor = RetryExecutor(RetryPolicy(max_retries=3), sleep=no_sleep)
        with pytest.raises(UpstreamApiError):
            await executor.call(thunk)
        assert thunk.calls == 1
        assert no_sleep.delays == []

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self, no_sleep) -> None:
        thunk = Flaky([NotFoundError("missing")])
        executor = RetryExecutor(RetryPolicy(max_retries=3), sleep=no_sleep)
        outcome = await executor.execute(thunk)
        assert isinstance(outcome.error, NotFoundError)
        assert outcome.attempt_count == 1

    @pytest.mark.asyncio
    async def test_zero_retries(self, no_sleep) -> None:
        thunk = Flaky([UpstreamTransportError("reset")])
        executor = RetryExecutor(RetryPolicy(max_retries=0), sleep=no_sleep)
        with pytest.raises(UpstreamTransportError):
            await executor.call(thunk)
        assert thunk.calls == 1

    @pytest.mark.asyncio
    async def test_delays_capped_at_max_delay(self, no_sleep) -> None:
        errors = [UpstreamTransportError("x") for _ in range(5)]
        policy = RetryPolicy(max_retries=5, initial_delay=1.0, max_delay=3.0, jitter=False)
        await RetryExecutor(policy, sleep=no_sleep).execute(Flaky(errors))
        assert no_sleep.delays == [1.0, 2.0, 3.0, 3.0, 3.0]

    @pytest.mark.asyncio
    async def test_jitter_stays_within_quarter_of_base(self, no_sleep) -> None:
        errors = [UpstreamTransportError("x") for _ in range(4)]
        policy = RetryPolicy(max_retries=4, initial_delay=1.0, max_delay=100.0, jitter=True)
        executor = RetryExecutor(policy, sleep=no_sleep, rng=random.Random(7))
        await executor.execute(Flaky(errors))
        for attempt, delay in enumerate(no_sleep.delays, start=1):
            base = policy.base_delay(attempt)
            assert 0.75 * base <= delay <= 1.25 * base

    @pytest.mark.asyncio
    async def test_on_retry_hook(self, no_sleep) -> None:
        seen: list[tuple[int, str, float]] = []
        executor = RetryExecutor(
            RetryPolicy(max_retries=2, jitter=False),
            sleep=no_sleep,
            on_retry=lambda n, err, delay: seen.append((n, str(err), delay)),
        )
        thunk = Flaky([UpstreamTransportError("first"), UpstreamTransportError("second")])
        await executor.call(thunk)
        assert [(n, d) for n, _, d in seen] == [(1, 1.0), (2, 2.0)]
        assert "first" in seen[0][1]
