# src/spanline/telemetry/retry.py
"""Export retry policy with tenacity integration.

Exporters report transient failures as ExportResult.RETRYABLE rather than
raising, so retries are driven by the result value:

- Exponential backoff with jitter
- Bounded attempt count (max_retries + the initial attempt)
- Optional absolute deadline (shutdown drain) that stops retrying early
- Interruptible backoff sleeps, so a hard shutdown never waits out a backoff

Exhaustion returns the last result (RETRYABLE); the caller decides to drop.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_result,
    stop_after_attempt,
    stop_any,
    wait_exponential_jitter,
)

from spanline.contracts.defaults import INTERNAL_DEFAULTS
from spanline.contracts.enums import ExportResult
from spanline.core.logging import get_logger

if TYPE_CHECKING:
    from spanline.core.config import RetrySettings

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Runtime retry configuration.

    max_attempts is the TOTAL number of tries, not the number of retries.
    So max_attempts=6 means: try, then retry up to 5 times.
    """

    max_attempts: int = 6
    base_delay: float = 0.5  # seconds
    max_delay: float = 5.0  # seconds
    jitter: float = 0.2  # seconds
    exponential_base: float = 2.0  # backoff multiplier

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def no_retry(cls) -> RetryConfig:
        """Factory for no-retry configuration (single attempt)."""
        return cls(max_attempts=1)

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryConfig:
        """Factory from RetrySettings config model.

        Args:
            settings: Validated Pydantic settings model

        Returns:
            RetryConfig with mapped values
        """
        return cls(
            max_attempts=settings.max_retries + 1,
            base_delay=settings.initial_backoff_seconds,
            max_delay=settings.max_backoff_seconds,
            jitter=float(INTERNAL_DEFAULTS["retry"]["jitter"]),  # Fixed jitter, not exposed in settings
            exponential_base=settings.multiplier,
        )


@dataclass(frozen=True, slots=True)
class RetryOutcome:
    """Final result of an export with retries."""

    result: ExportResult
    attempts: int


class ExportRetrier:
    """Runs one export attempt function until it stops returning RETRYABLE.

    Example:
        retrier = ExportRetrier(RetryConfig(max_attempts=3))
        outcome = retrier.run(lambda timeout: exporter.export(batch, timeout), timeout=10.0)
    """

    def __init__(
        self,
        config: RetryConfig,
        *,
        abort: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize with config.

        Args:
            config: Retry configuration
            abort: When set, backoff sleeps end immediately and no further
                attempts are made
            clock: Monotonic clock used for deadlines
        """
        self._config = config
        self._abort = abort if abort is not None else threading.Event()
        self._clock = clock

    @property
    def config(self) -> RetryConfig:
        return self._config

    def _sleep(self, seconds: float) -> None:
        # Event.wait instead of time.sleep so shutdown can cut a backoff short
        self._abort.wait(seconds)

    def run(
        self,
        attempt: Callable[[float], ExportResult],
        *,
        timeout: float,
        deadline: float | None = None,
        on_retry: Callable[[int], None] | None = None,
    ) -> RetryOutcome:
        """Call attempt(timeout) with retry on RETRYABLE.

        Args:
            attempt: One export attempt; receives its per-call timeout
            timeout: Per-attempt timeout (clipped to the deadline)
            deadline: Absolute clock() value after which no attempt starts
            on_retry: Callback before each backoff sleep (attempt number)

        Returns:
            RetryOutcome with the final result and number of attempts made.
            Exceptions raised by attempt propagate unchanged.
        """
        attempts = 0

        def _past_deadline(retry_state: RetryCallState) -> bool:
            if self._abort.is_set():
                return True
            if deadline is None:
                return False
            return self._clock() >= deadline

        def _one_attempt() -> ExportResult:
            nonlocal attempts
            attempt_timeout = timeout
            if deadline is not None:
                attempt_timeout = min(timeout, deadline - self._clock())
            if attempts > 0 and (self._abort.is_set() or attempt_timeout <= 0):
                # Backoff was interrupted or the deadline passed while sleeping
                return ExportResult.RETRYABLE
            attempts += 1
            return attempt(max(attempt_timeout, 0.0))

        def _before_sleep(retry_state: RetryCallState) -> None:
            logger.debug(
                "Retrying export",
                attempt=retry_state.attempt_number,
                backoff_seconds=round(retry_state.upcoming_sleep, 3),
            )
            if on_retry is not None:
                on_retry(retry_state.attempt_number)

        retrying = Retrying(
            stop=stop_any(stop_after_attempt(self._config.max_attempts), _past_deadline),
            wait=wait_exponential_jitter(
                multiplier=self._config.base_delay,
                max=self._config.max_delay,
                exp_base=self._config.exponential_base,
                jitter=self._config.jitter,
            ),
            retry=retry_if_result(lambda result: result == ExportResult.RETRYABLE),
            sleep=self._sleep,
            before_sleep=_before_sleep,
            # Retries exhausted: hand back the last result instead of raising RetryError
            retry_error_callback=lambda retry_state: retry_state.outcome.result() if retry_state.outcome else None,
            reraise=True,
        )
        result = retrying(_one_attempt)
        if result is None:
            result = ExportResult.RETRYABLE
        return RetryOutcome(result=result, attempts=attempts)
