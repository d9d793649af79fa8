"""Retry executor: bounded attempts, exponential backoff with jitter.

Wraps a zero-argument coroutine function (a thunk) with tenacity's
``AsyncRetrying``. Retryability is decided from structured error
attributes set at the transport boundary, never from message text:

- Transport failures (``UpstreamTransportError`` or a raw
  ``httpx.TransportError``, which covers timeouts, refused/reset
  connections, and DNS failures) are always retryable.
- An error carrying an HTTP status is retryable iff the status is in
  ``RetryPolicy.retryable_status_codes``.
- Anything else (validation errors, NOT_FOUND, programming errors) is
  terminal and propagates after a single attempt.

Instead of a side-effecting callback, each run returns a ``RetryOutcome``
with the full attempt history. ``on_retry`` is still accepted for callers
that want a hook.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from terminology_mcp_server.errors import UpstreamTransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# Jitter perturbs the delay by up to +/-25%.
_JITTER_FRACTION = 0.25


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration. Delays are in seconds.

    Attributes:
        max_retries: Retries after the first attempt (total = max_retries + 1).
        initial_delay: Delay before the first retry.
        max_delay: Upper bound on the computed (pre-jitter) delay.
        backoff_multiplier: Growth factor per attempt.
        jitter: Whether to perturb delays by up to +/-25%.
        retryable_status_codes: HTTP statuses treated as transient.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    retryable_status_codes: frozenset[int] = DEFAULT_RETRYABLE_STATUS_CODES

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

    def base_delay(self, attempt: int) -> float:
        """Pre-jitter delay after the given (1-indexed) failed attempt."""
        exponential = self.initial_delay * self.backoff_multiplier ** (attempt - 1)
        return min(self.max_delay, exponential)


@dataclass(frozen=True)
class RetryAttempt:
    """One failed attempt.

    ``delay`` is the sleep before the next attempt, or None when this
    failure ended the run.
    """

    attempt: int
    error: BaseException
    delay: float | None


@dataclass
class RetryOutcome(Generic[T]):
    """Result of a retried operation plus its attempt history."""

    value: T | None = None
    error: BaseException | None = None
    attempts: list[RetryAttempt] = field(default_factory=list)
    attempt_count: int = 0

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or raise the last observed error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


def is_retryable(
    exc: BaseException,
    retryable_status_codes: frozenset[int] = DEFAULT_RETRYABLE_STATUS_CODES,
) -> bool:
    """Classify an error as transient (retry) or terminal (propagate)."""
    if isinstance(exc, (UpstreamTransportError, httpx.TransportError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in retryable_status_codes
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status in retryable_status_codes
    return False


class wait_backoff_jitter(wait_base):
    """Exponential backoff capped at max_delay, with +/-25% uniform jitter."""

    def __init__(self, policy: RetryPolicy, rng: random.Random | None = None) -> None:
        self.policy = policy
        self.rng = rng or random.Random()

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self.policy.base_delay(retry_state.attempt_number)
        if self.policy.jitter:
            delay += self.rng.uniform(-1.0, 1.0) * delay * _JITTER_FRACTION
        return max(0.0, delay)


class RetryExecutor:
    """Runs thunks under a ``RetryPolicy``.

    Args:
        policy: Retry configuration.
        name: Label used in log messages.
        on_retry: Optional hook called with (attempt, error, delay) before
            each backoff sleep.
        sleep: Awaitable sleep function (injectable for tests).
        rng: Random source for jitter (injectable for tests).
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        name: str = "default",
        on_retry: Callable[[int, BaseException, float], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.name = name
        self._on_retry = on_retry
        self._sleep = sleep
        self._wait = wait_backoff_jitter(self.policy, rng)

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` with retry; return its value or raise the last error."""
        outcome = await self.execute(fn)
        return outcome.unwrap()

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> RetryOutcome[T]:
        """Run ``fn`` with retry and return the outcome with its history.

        ``Exception`` subclasses are captured in the outcome; cancellation
        and other ``BaseException``s propagate.
        """
        outcome: RetryOutcome[T] = RetryOutcome()

        def record_retry(retry_state: RetryCallState) -> None:
            if retry_state.outcome is None:
                return
            error = retry_state.outcome.exception()
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            outcome.attempts.append(
                RetryAttempt(attempt=retry_state.attempt_number, error=error, delay=delay)
            )
            logger.warning(
                "[%s] attempt %d failed, retrying in %.3fs: %s",
                self.name,
                retry_state.attempt_number,
                delay,
                error,
            )
            if self._on_retry is not None:
                self._on_retry(retry_state.attempt_number, error, delay)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception(
                lambda exc: is_retryable(exc, self.policy.retryable_status_codes)
            ),
            before_sleep=record_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                outcome.attempt_count = attempt.retry_state.attempt_number
                with attempt:
                    outcome.value = await fn()
        except Exception as exc:
            outcome.error = exc
            outcome.attempts.append(
                RetryAttempt(attempt=outcome.attempt_count, error=exc, delay=None)
            )
        return outcome
