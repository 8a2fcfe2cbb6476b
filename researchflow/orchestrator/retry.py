"""Generic retry/backoff executor shared by every stage consumer.

Wraps :class:`tenacity.AsyncRetrying` with the pipeline's backoff formula::

    sleep(n) = backoff × 2^(n-1) × (1 + U(0, jitter))

where *n* is the number of the attempt that just failed.  After the final
attempt the last exception propagates **unchanged** (``reraise=True``);
callers attach their own context.  The executor knows nothing about the
operation it wraps.

Typical usage::

    from researchflow.orchestrator.retry import RetryExecutor

    executor = RetryExecutor(attempts=3, backoff_ms=500, jitter=0.25,
                             should_retry=lambda exc: getattr(exc, "retryable", True))
    completion = await executor.run(lambda: provider.complete(model, body))
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from researchflow.core import events
from researchflow.core.exceptions import ConfigError
from researchflow.core.stage_config import RetrySettings

__all__ = ["RetryExecutor", "backoff_seconds"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_seconds(
    attempt: int,
    backoff_ms: float,
    jitter: float,
    rand: Callable[[float, float], float] = random.uniform,
) -> float:
    """Sleep before retrying after failed attempt number *attempt* (1-based)."""
    base = backoff_ms / 1000.0 * (2 ** (max(attempt, 1) - 1))
    factor = 1.0 + (rand(0.0, jitter) if jitter > 0 else 0.0)
    return base * factor


class RetryExecutor:
    """Run an async operation with bounded retries.

    Args:
        attempts: Total attempts including the first (≥ 1).
        backoff_ms: Base backoff in milliseconds.
        jitter: Maximum extra fraction added to each sleep.
        should_retry: Predicate deciding whether an exception is worth
            retrying; everything is retried when omitted.
        sleep: Awaitable sleep function (injected in tests).
        rand: ``uniform(a, b)`` source for jitter (injected in tests).

    Raises:
        ConfigError: *attempts* is below 1.
    """

    def __init__(
        self,
        attempts: int,
        backoff_ms: float = 0.0,
        jitter: float = 0.0,
        *,
        should_retry: Callable[[BaseException], bool] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rand: Callable[[float, float], float] = random.uniform,
    ) -> None:
        if attempts < 1:
            raise ConfigError(f"Retry attempts must be >= 1, got {attempts!r}")
        self.attempts = attempts
        self.backoff_ms = max(0.0, backoff_ms)
        self.jitter = max(0.0, jitter)
        self._should_retry = should_retry or (lambda _exc: True)
        self._sleep = sleep
        self._rand = rand

    @classmethod
    def from_settings(
        cls,
        settings: RetrySettings,
        *,
        should_retry: Callable[[BaseException], bool] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> RetryExecutor:
        return cls(
            settings.attempts,
            settings.backoff_ms,
            settings.jitter,
            should_retry=should_retry,
            sleep=sleep,
        )

    def _wait(self, retry_state: RetryCallState) -> float:
        return backoff_seconds(retry_state.attempt_number, self.backoff_ms, self.jitter, self._rand)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "Attempt %d/%d failed (%s: %s). Retrying in %.2f s.",
            retry_state.attempt_number,
            self.attempts,
            type(exc).__name__ if exc else "?",
            exc,
            wait,
            extra={"event": events.PROVIDER_RETRY},
        )

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Await ``operation()`` until it succeeds or attempts run out.

        Returns:
            The first successful result.

        Raises:
            BaseException: The last error, unchanged.
        """
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=self._wait,
            retry=retry_if_exception(self._should_retry),
            reraise=True,
            sleep=self._sleep,
            before_sleep=self._before_sleep,
        ):
            with attempt:
                result = await operation()
        return result
