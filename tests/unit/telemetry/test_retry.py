# tests/unit/telemetry/test_retry.py
"""Unit tests for the export retry policy.

Tests cover:
- RetryConfig validation and mapping from RetrySettings
- Retry on RETRYABLE until success or exhaustion
- FATAL is never retried
- Deadline stops retrying and clips per-attempt timeouts
- Abort interrupts backoff sleeps
- Exceptions from the attempt propagate
- Backoff grows exponentially from base_delay without deprecation warnings
"""

import threading
import time
import warnings
from unittest.mock import patch

import pytest

from spanline.contracts.enums import ExportResult
from spanline.core.config import RetrySettings
from spanline.telemetry.retry import ExportRetrier, RetryConfig


def fast_config(max_attempts: int = 4) -> RetryConfig:
    return RetryConfig(max_attempts=max_attempts, base_delay=0.001, max_delay=0.002, jitter=0.0)


class ScriptedAttempt:
    """Attempt function returning scripted results, then the last one forever."""

    def __init__(self, *results: ExportResult) -> None:
        self._results = list(results)
        self.timeouts: list[float] = []

    def __call__(self, timeout: float) -> ExportResult:
        self.timeouts.append(timeout)
        if len(self._results) > 1:
            return self._results.pop(0)
        return self._results[0]

    @property
    def calls(self) -> int:
        return len(self.timeouts)


# =============================================================================
# Config
# =============================================================================


class TestRetryConfig:
    def test_invalid_max_attempts(self) -> None:
        with pytest.raises(ValueError, match="max_attempts must be >= 1"):
            RetryConfig(max_attempts=0)

    def test_no_retry(self) -> None:
        assert RetryConfig.no_retry().max_attempts == 1

    def test_from_settings_counts_the_first_attempt(self) -> None:
        config = RetryConfig.from_settings(
            RetrySettings(max_retries=5, initial_backoff_seconds=0.1, max_backoff_seconds=2.0, multiplier=3.0)
        )
        assert config.max_attempts == 6
        assert config.base_delay == 0.1
        assert config.max_delay == 2.0
        assert config.exponential_base == 3.0


# =============================================================================
# Retry behaviour
# =============================================================================


class TestExportRetrier:
    def test_success_first_try(self) -> None:
        attempt = ScriptedAttempt(ExportResult.SUCCESS)
        outcome = ExportRetrier(fast_config()).run(attempt, timeout=1.0)

        assert outcome.result == ExportResult.SUCCESS
        assert outcome.attempts == 1

    def test_retryable_then_success(self) -> None:
        """Three RETRYABLE results then SUCCESS: four attempts, delivered."""
        attempt = ScriptedAttempt(
            ExportResult.RETRYABLE, ExportResult.RETRYABLE, ExportResult.RETRYABLE, ExportResult.SUCCESS
        )
        outcome = ExportRetrier(fast_config(max_attempts=6)).run(attempt, timeout=1.0)

        assert outcome.result == ExportResult.SUCCESS
        assert outcome.attempts == 4

    def test_exhaustion_returns_retryable(self) -> None:
        attempt = ScriptedAttempt(ExportResult.RETRYABLE)
        outcome = ExportRetrier(fast_config(max_attempts=3)).run(attempt, timeout=1.0)

        assert outcome.result == ExportResult.RETRYABLE
        assert outcome.attempts == 3
        assert attempt.calls == 3

    def test_fatal_not_retried(self) -> None:
        attempt = ScriptedAttempt(ExportResult.FATAL)
        outcome = ExportRetrier(fast_config()).run(attempt, timeout=1.0)

        assert outcome.result == ExportResult.FATAL
        assert outcome.attempts == 1

    def test_on_retry_called_before_each_backoff(self) -> None:
        seen: list[int] = []
        attempt = ScriptedAttempt(ExportResult.RETRYABLE, ExportResult.RETRYABLE, ExportResult.SUCCESS)

        ExportRetrier(fast_config()).run(attempt, timeout=1.0, on_retry=seen.append)

        assert seen == [1, 2]

    def test_exception_propagates(self) -> None:
        def attempt(timeout: float) -> ExportResult:
            raise ValueError("exporter bug")

        with pytest.raises(ValueError, match="exporter bug"):
            ExportRetrier(fast_config()).run(attempt, timeout=1.0)

    def test_per_attempt_timeout_passed_through(self) -> None:
        attempt = ScriptedAttempt(ExportResult.SUCCESS)
        ExportRetrier(fast_config()).run(attempt, timeout=2.5)
        assert attempt.timeouts == [2.5]

    def test_backoff_grows_from_base_delay(self) -> None:
        retrier = ExportRetrier(RetryConfig(max_attempts=4, base_delay=0.01, max_delay=1.0, jitter=0.0))
        attempt = ScriptedAttempt(ExportResult.RETRYABLE)

        with patch.object(retrier, "_sleep") as sleep, warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            outcome = retrier.run(attempt, timeout=1.0)

        assert outcome.result == ExportResult.RETRYABLE
        assert [call.args[0] for call in sleep.call_args_list] == pytest.approx([0.01, 0.02, 0.04])


# =============================================================================
# Deadline / abort
# =============================================================================


class TestDeadline:
    def test_timeout_clipped_to_deadline(self) -> None:
        attempt = ScriptedAttempt(ExportResult.SUCCESS)
        ExportRetrier(fast_config()).run(attempt, timeout=10.0, deadline=time.monotonic() + 1.0)

        assert 0 < attempt.timeouts[0] <= 1.0

    def test_deadline_stops_retrying(self) -> None:
        config = RetryConfig(max_attempts=1000, base_delay=0.02, max_delay=0.02, jitter=0.0)
        attempt = ScriptedAttempt(ExportResult.RETRYABLE)

        started = time.monotonic()
        outcome = ExportRetrier(config).run(attempt, timeout=1.0, deadline=started + 0.1)

        assert outcome.result == ExportResult.RETRYABLE
        assert outcome.attempts < 1000
        assert time.monotonic() - started < 1.0

    def test_fake_clock_past_deadline_makes_one_attempt(self) -> None:
        now = [100.0]
        retrier = ExportRetrier(fast_config(), clock=lambda: now[0])

        def attempt(timeout: float) -> ExportResult:
            now[0] += 50.0
            return ExportResult.RETRYABLE

        outcome = retrier.run(attempt, timeout=10.0, deadline=120.0)
        assert outcome.attempts == 1


class TestAbort:
    def test_abort_set_before_run_allows_single_attempt(self) -> None:
        abort = threading.Event()
        abort.set()
        attempt = ScriptedAttempt(ExportResult.RETRYABLE)

        outcome = ExportRetrier(fast_config(), abort=abort).run(attempt, timeout=1.0)

        assert outcome.attempts == 1
        assert outcome.result == ExportResult.RETRYABLE

    def test_abort_interrupts_backoff(self) -> None:
        """A long backoff sleep ends as soon as abort is set."""
        abort = threading.Event()
        config = RetryConfig(max_attempts=5, base_delay=30.0, max_delay=30.0, jitter=0.0)
        attempt = ScriptedAttempt(ExportResult.RETRYABLE)
        timer = threading.Timer(0.05, abort.set)

        started = time.monotonic()
        timer.start()
        try:
            outcome = ExportRetrier(config, abort=abort).run(attempt, timeout=1.0)
        finally:
            timer.cancel()

        assert time.monotonic() - started < 5.0
        assert outcome.result == ExportResult.RETRYABLE
        assert outcome.attempts == 1
