# src/spanline/telemetry/shutdown.py
"""Shutdown coordination: drain every buffer once, within a deadline.

Shutdown Sequence:
1. Stop accepting new signals from producers
2. Stop the metric reader and collect the final metric interval
3. Drain all schedulers in parallel (buffers flushed immediately in
   max_batch_size chunks, in-flight exports awaited)
4. At the deadline, whatever is still unexported is dropped and counted
5. Close the exporter

The coordinator runs at most once. Concurrent and later calls return the
first call's report. install_hooks() registers an atexit hook and a
SIGTERM handler that chains to whatever handler was installed before.
"""

from __future__ import annotations

import atexit
import os
import signal
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from spanline.contracts.enums import ShutdownResult
from spanline.core.logging import get_logger

if TYPE_CHECKING:
    from spanline.telemetry.provider import TelemetryProvider
    from spanline.telemetry.scheduler import BatchScheduler

logger = get_logger(__name__)

# Extra time granted to scheduler shutdown threads beyond the deadline
# before their drop counts are estimated from the buffer depth
_JOIN_GRACE_SECONDS = 0.05


@dataclass(frozen=True, slots=True)
class ShutdownReport:
    """Result of a provider shutdown.

    Attributes:
        result: DRAINED if everything was exported or dropped by the exporter
            before the deadline, TIMED_OUT if signals were abandoned
        dropped_on_shutdown: Signals abandoned because the deadline passed
        elapsed_seconds: Wall time the shutdown took
        dropped_by_signal: dropped_on_shutdown per signal type
    """

    result: ShutdownResult
    dropped_on_shutdown: int
    elapsed_seconds: float
    dropped_by_signal: dict[str, int] = field(default_factory=dict)


class ShutdownCoordinator:
    """Runs the shutdown sequence for one provider exactly once."""

    def __init__(self, provider: TelemetryProvider, default_timeout: float) -> None:
        self._provider = provider
        self._default_timeout = default_timeout
        self._lock = threading.Lock()
        self._report: ShutdownReport | None = None
        self._hooks_installed = False
        self._previous_sigterm: Any = None

    @property
    def report(self) -> ShutdownReport | None:
        """The report of the completed shutdown, None before it ran."""
        return self._report

    def shutdown(self, timeout: float | None = None) -> ShutdownReport:
        """Drain and close the provider. Always returns within timeout (approximately).

        Args:
            timeout: Overall deadline in seconds (default shutdown_timeout_seconds)

        Returns:
            The ShutdownReport of the first shutdown.
        """
        with self._lock:
            if self._report is not None:
                return self._report
            self._report = self._run(self._default_timeout if timeout is None else max(timeout, 0.0))
            return self._report

    def _run(self, timeout: float) -> ShutdownReport:
        start = time.monotonic()
        deadline = start + timeout
        provider = self._provider

        def remaining() -> float:
            return max(deadline - time.monotonic(), 0.0)

        provider._stop_accepting()

        try:
            provider._stop_metric_reader(remaining())
            provider.collect_metrics()
        except Exception as e:
            logger.error("Final metric collection failed", error=str(e), error_type=type(e).__name__)

        dropped_by_signal = self._drain_schedulers(remaining)

        try:
            provider._shutdown_exporter()
        except Exception as e:
            logger.error("Exporter shutdown failed", error=str(e), error_type=type(e).__name__)

        dropped = sum(dropped_by_signal.values())
        result = ShutdownResult.TIMED_OUT if dropped > 0 else ShutdownResult.DRAINED
        report = ShutdownReport(
            result=result,
            dropped_on_shutdown=dropped,
            elapsed_seconds=time.monotonic() - start,
            dropped_by_signal=dropped_by_signal,
        )
        logger.info(
            "Telemetry shutdown complete",
            result=result.value,
            dropped_on_shutdown=dropped,
            elapsed_seconds=round(report.elapsed_seconds, 3),
            timeout_seconds=timeout,
        )
        return report

    def _drain_schedulers(self, remaining: Callable[[], float]) -> dict[str, int]:
        schedulers = self._provider.schedulers
        if not schedulers:
            return {}
        budget = remaining()
        results: dict[str, int] = {}
        errors: dict[str, str] = {}

        def drain(scheduler: BatchScheduler) -> None:
            name = scheduler.signal_type.value
            try:
                results[name] = scheduler.shutdown(budget)
            except Exception as e:
                errors[name] = str(e)

        threads: list[threading.Thread] = []
        for scheduler in schedulers:
            thread = threading.Thread(
                target=drain,
                args=(scheduler,),
                name=f"spanline-shutdown-{scheduler.signal_type.value}",
                daemon=True,
            )
            try:
                thread.start()
            except RuntimeError:
                # No new threads at interpreter shutdown: drain on this thread
                drain(scheduler)
                continue
            threads.append(thread)

        join_deadline = time.monotonic() + budget + _JOIN_GRACE_SECONDS
        for thread in threads:
            thread.join(timeout=max(join_deadline - time.monotonic(), 0.0))

        dropped: dict[str, int] = {}
        for scheduler in schedulers:
            name = scheduler.signal_type.value
            if name in results:
                dropped[name] = results[name]
                continue
            health = scheduler.health_metrics
            dropped[name] = health["queue_depth"] + health["in_flight"]
            logger.error(
                "Scheduler shutdown did not complete",
                signal_type=name,
                error=errors.get(name, "still running"),
            )
        return dropped

    # =========================================================================
    # Process hooks
    # =========================================================================

    def install_hooks(self) -> None:
        """Register the atexit hook and (main thread only) a SIGTERM handler."""
        if self._hooks_installed:
            return
        atexit.register(self._atexit)
        # signal.signal() can only be called from the main thread.
        if threading.current_thread() is threading.main_thread():
            self._previous_sigterm = signal.getsignal(signal.SIGTERM)
            signal.signal(signal.SIGTERM, self._handle_sigterm)
        else:
            logger.debug("Not in main thread - SIGTERM shutdown hook not installed")
        self._hooks_installed = True

    def uninstall_hooks(self) -> None:
        """Remove the hooks, restoring the previous SIGTERM handler."""
        if not self._hooks_installed:
            return
        atexit.unregister(self._atexit)
        if (
            threading.current_thread() is threading.main_thread()
            and signal.getsignal(signal.SIGTERM) == self._handle_sigterm
        ):
            signal.signal(signal.SIGTERM, self._previous_sigterm or signal.SIG_DFL)
        self._hooks_installed = False

    def _atexit(self) -> None:
        self.shutdown()

    def _handle_sigterm(self, signum: int, frame: Any) -> None:
        logger.info("SIGTERM received - shutting down telemetry")
        self.shutdown()
        previous = self._previous_sigterm
        if callable(previous):
            previous(signum, frame)
        elif previous == signal.SIG_IGN:
            return
        else:
            # Default disposition: terminate as if we had never intercepted it
            signal.signal(signal.SIGTERM, signal.SIG_DFL)
            os.kill(os.getpid(), signal.SIGTERM)
