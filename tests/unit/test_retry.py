"""Unit tests for researchflow.orchestrator.retry."""

from __future__ import annotations

import pytest

from researchflow.core import events
from researchflow.core.exceptions import ConfigError, ProviderRequestError
from researchflow.core.stage_config import RetrySettings
from researchflow.orchestrator.retry import RetryExecutor, backoff_seconds


class _Flaky:
    """Fails with the given exceptions, in order, then returns ``"done"``."""

    def __init__(self, *errors: Exception) -> None:
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "done"


class _Sleeps:
    def __init__(self) -> None:
        self.waits: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)


class TestBackoffSeconds:
    @pytest.mark.parametrize(
        ("attempt", "expected"),
        [(1, 0.5), (2, 1.0), (3, 2.0), (0, 0.5)],
    )
    def test_doubles_per_attempt(self, attempt: int, expected: float) -> None:
        assert backoff_seconds(attempt, 500, 0.0) == pytest.approx(expected)

    def test_jitter_scales_up(self) -> None:
        assert backoff_seconds(2, 1000, 0.25, rand=lambda _a, b: b) == pytest.approx(2.5)

    def test_zero_jitter_skips_random_source(self) -> None:
        def _boom(_a: float, _b: float) -> float:
            raise AssertionError("rand must not be called")

        assert backoff_seconds(1, 100, 0.0, rand=_boom) == pytest.approx(0.1)


class TestRetryExecutor:
    async def test_first_success_does_not_sleep(self) -> None:
        sleeps = _Sleeps()
        operation = _Flaky()
        assert await RetryExecutor(3, 500, sleep=sleeps).run(operation) == "done"
        assert operation.calls == 1
        assert sleeps.waits == []

    async def test_retries_until_success(self) -> None:
        sleeps = _Sleeps()
        operation = _Flaky(RuntimeError("one"), RuntimeError("two"))
        executor = RetryExecutor(3, 200, 0.5, sleep=sleeps, rand=lambda _a, _b: 0.0)

        assert await executor.run(operation) == "done"
        assert operation.calls == 3
        assert sleeps.waits == pytest.approx([0.2, 0.4])

    async def test_last_error_reraised_unchanged(self) -> None:
        final = ValueError("last")
        operation = _Flaky(ValueError("first"), final, ValueError("never"))
        with pytest.raises(ValueError) as excinfo:
            await RetryExecutor(2, sleep=_Sleeps()).run(operation)
        assert excinfo.value is final
        assert operation.calls == 2

    async def test_non_retryable_error_stops_immediately(self) -> None:
        operation = _Flaky(
            ProviderRequestError("openai", "bad request", status_code=400, retryable=False)
        )
        executor = RetryExecutor(
            5, should_retry=lambda exc: getattr(exc, "retryable", True), sleep=_Sleeps()
        )
        with pytest.raises(ProviderRequestError):
            await executor.run(operation)
        assert operation.calls == 1

    async def test_single_attempt(self) -> None:
        operation = _Flaky(RuntimeError("once"))
        with pytest.raises(RuntimeError):
            await RetryExecutor(1, sleep=_Sleeps()).run(operation)
        assert operation.calls == 1

    @pytest.mark.parametrize("attempts", [0, -1])
    def test_attempts_below_one_rejected(self, attempts: int) -> None:
        with pytest.raises(ConfigError, match="attempts"):
            RetryExecutor(attempts)

    def test_negative_timing_clamped(self) -> None:
        executor = RetryExecutor(2, -100, -1)
        assert executor.backoff_ms == 0
        assert executor.jitter == 0

    def test_from_settings(self) -> None:
        executor = RetryExecutor.from_settings(RetrySettings(attempts=4, backoff_ms=250, jitter=0.1))
        assert (executor.attempts, executor.backoff_ms, executor.jitter) == (4, 250, 0.1)

    async def test_retry_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level("WARNING", logger="researchflow.orchestrator.retry"):
            await RetryExecutor(2, sleep=_Sleeps()).run(_Flaky(RuntimeError("flaky")))
        assert any(
            getattr(record, "event", None) == events.PROVIDER_RETRY for record in caplog.records
        )
