# src/spanline/telemetry/scheduler.py
"""BatchScheduler: moves one signal type from its buffer to the exporter.

One scheduler per signal type (traces, metrics, logs):
1. Producers enqueue() finished signals - non-blocking, never raises
2. A background worker cuts FIFO batches when the buffer reaches
   max_batch_size or when max_delay has elapsed since the batch window
   opened, whichever comes first
3. Batches are exported on daemon export threads, at most max_in_flight
   at a time; beyond that the worker waits, producers never do. When no
   thread can be started (interpreter exit) the worker exports inline
4. Retryable failures are retried with bounded backoff (tenacity), then
   the batch is dropped; fatal failures drop it immediately
5. shutdown() drains the buffer in max_batch_size chunks and waits for
   in-flight exports up to a deadline

State machine:
    ACCEPTING -> RELEASING -> ACCEPTING      (size or timer threshold)
    ACCEPTING -> DRAINING -> CLOSED          (shutdown)

Batch window:
    The delay clock starts at the later of the last release and the first
    enqueue into an empty buffer. A buffer that still holds signals after a
    release starts its next window at that release.

Thread Safety:
    The buffer, state and in-flight table are guarded by one Condition.
    The lock is never held during an export call. Counters live in
    PipelineStats, which has its own lock.
"""

from __future__ import annotations

import functools
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from spanline.contracts.defaults import INTERNAL_DEFAULTS
from spanline.contracts.enums import ExportResult, OverflowPolicy, SchedulerState, SignalType
from spanline.contracts.signals import Batch, Signal
from spanline.core.logging import get_logger
from spanline.telemetry.buffer import BoundedBuffer
from spanline.telemetry.propagation import mark_thread_suppressed, suppress_instrumentation
from spanline.telemetry.retry import ExportRetrier, RetryConfig
from spanline.telemetry.stats import (
    BATCHES_DROPPED,
    BATCHES_EXPORTED,
    EXPORT_FAILURES,
    EXPORT_RETRIES,
    INTERNAL_ERRORS,
    SIGNALS_DROPPED_CLOSED,
    SIGNALS_DROPPED_EXPORT,
    SIGNALS_DROPPED_OVERFLOW,
    SIGNALS_DROPPED_SHUTDOWN,
    SIGNALS_ENQUEUED,
    SIGNALS_EXPORTED,
    PipelineStats,
)

if TYPE_CHECKING:
    from spanline.core.config import TelemetrySettings
    from spanline.core.resource import Resource
    from spanline.telemetry.protocols import ExporterProtocol

logger = get_logger(__name__)

_SLOT_POLL_SECONDS = float(INTERNAL_DEFAULTS["scheduler"]["slot_poll_seconds"])
_MIN_JOIN_SECONDS = float(INTERNAL_DEFAULTS["scheduler"]["min_join_seconds"])


@dataclass(frozen=True, slots=True)
class SchedulerConfig:
    """Runtime batching configuration for one scheduler."""

    max_batch_size: int = 512
    max_delay: float = 5.0  # seconds
    max_queue_size: int = 2048
    max_in_flight: int = 2
    overflow_policy: OverflowPolicy = OverflowPolicy.DROP_NEWEST
    export_timeout: float = 10.0  # seconds

    def __post_init__(self) -> None:
        if self.max_batch_size < 1:
            raise ValueError(f"max_batch_size must be >= 1, got {self.max_batch_size}")
        if self.max_delay <= 0:
            raise ValueError(f"max_delay must be > 0, got {self.max_delay}")
        if self.max_in_flight < 1:
            raise ValueError(f"max_in_flight must be >= 1, got {self.max_in_flight}")
        if self.export_timeout <= 0:
            raise ValueError(f"export_timeout must be > 0, got {self.export_timeout}")

    @classmethod
    def from_settings(cls, settings: TelemetrySettings) -> SchedulerConfig:
        """Factory from TelemetrySettings config model."""
        return cls(
            max_batch_size=settings.batch.max_batch_size,
            max_delay=settings.batch.max_delay_seconds,
            max_queue_size=settings.batch.max_queue_size,
            max_in_flight=settings.batch.max_in_flight,
            overflow_policy=settings.batch.overflow_policy,
            export_timeout=settings.exporter.timeout_seconds,
        )


class BatchScheduler:
    """Buffers one signal type and exports it in batches.

    Example:
        scheduler = BatchScheduler(SignalType.TRACES, exporter, resource, SchedulerConfig())
        scheduler.enqueue(span_data)
        scheduler.force_flush(timeout=5.0)
        dropped = scheduler.shutdown(timeout=10.0)
    """

    _LOG_INTERVAL = 100  # Log every 100 dropped batches

    def __init__(
        self,
        signal_type: SignalType,
        exporter: ExporterProtocol,
        resource: Resource,
        config: SchedulerConfig,
        *,
        retry_config: RetryConfig | None = None,
        stats: PipelineStats | None = None,
    ) -> None:
        self._signal_type = signal_type
        self._exporter = exporter
        self._resource = resource
        self._config = config
        self._stats = stats if stats is not None else PipelineStats()

        self._cond = threading.Condition()
        self._buffer = BoundedBuffer(config.max_queue_size, config.overflow_policy)
        self._state = SchedulerState.ACCEPTING
        self._window_start: float | None = None
        self._sequence = 0
        self._flush_requested = False
        self._in_flight: dict[int, Batch] = {}
        self._abandoned = False
        self._drain_deadline: float | None = None
        self._dropped_on_shutdown = 0
        self._failed_batches = 0

        # Set at the shutdown deadline: interrupts backoff sleeps and slot waits
        self._abort = threading.Event()
        self._retrier = ExportRetrier(retry_config or RetryConfig(), abort=self._abort)
        self._slots = threading.BoundedSemaphore(config.max_in_flight)

        self._worker_ready = threading.Event()
        self._worker = threading.Thread(
            target=self._run,
            name=f"spanline-scheduler-{signal_type.value}",
            daemon=True,
        )
        self._worker.start()
        # Wait for thread to be ready (prevents startup race)
        self._worker_ready.wait(timeout=5.0)

    # =========================================================================
    # Producer side
    # =========================================================================

    def enqueue(self, signal: Signal) -> bool:
        """Queue a finished signal for export.

        Never blocks on export and never raises. Returns False when the
        signal was dropped (buffer full, or scheduler draining/closed).
        """
        try:
            with self._cond:
                if self._state in (SchedulerState.DRAINING, SchedulerState.CLOSED):
                    self._stats.increment(self._signal_type, SIGNALS_DROPPED_CLOSED)
                    return False
                was_empty = len(self._buffer) == 0
                dropped_before = self._buffer.dropped_count
                accepted = self._buffer.offer(signal)
                self._stats.increment(
                    self._signal_type,
                    SIGNALS_DROPPED_OVERFLOW,
                    self._buffer.dropped_count - dropped_before,
                )
                if not accepted:
                    return False
                self._stats.increment(self._signal_type, SIGNALS_ENQUEUED)
                if was_empty and self._window_start is None:
                    self._window_start = time.monotonic()
                if was_empty or len(self._buffer) >= self._config.max_batch_size:
                    self._cond.notify_all()
                return True
        except Exception as e:
            self._stats.increment(self._signal_type, INTERNAL_ERRORS)
            logger.error("Enqueue failed", signal_type=self._signal_type.value, error=str(e))
            return False

    # =========================================================================
    # Worker
    # =========================================================================

    def _run(self) -> None:
        """Background thread: release batches until draining, then drain."""
        mark_thread_suppressed()
        self._worker_ready.set()
        try:
            self._schedule_loop()
            self._drain()
        except Exception as e:
            # Log but don't crash - telemetry must not kill the application
            self._stats.increment(self._signal_type, INTERNAL_ERRORS)
            logger.critical(
                "Batch scheduler worker failed",
                signal_type=self._signal_type.value,
                error=str(e),
                error_type=type(e).__name__,
            )
        finally:
            with self._cond:
                self._cond.notify_all()

    def _schedule_loop(self) -> None:
        while True:
            with self._cond:
                batch: Batch | None = None
                while batch is None:
                    if self._state in (SchedulerState.DRAINING, SchedulerState.CLOSED):
                        return
                    now = time.monotonic()
                    pending = len(self._buffer)
                    if pending and self._window_start is None:
                        self._window_start = now
                    if pending and (
                        self._flush_requested
                        or pending >= self._config.max_batch_size
                        or now >= self._window_start + self._config.max_delay  # type: ignore[operator]
                    ):
                        batch = self._cut_batch_locked(now)
                        break
                    if not pending and self._flush_requested:
                        self._flush_requested = False
                        self._cond.notify_all()
                    timeout = None
                    if self._window_start is not None:
                        timeout = max(self._window_start + self._config.max_delay - now, 0.0)
                    self._cond.wait(timeout)
            self._submit(batch)

    def _drain(self) -> None:
        """Export everything still buffered, chunked by max_batch_size."""
        while True:
            with self._cond:
                if not len(self._buffer) or self._abort.is_set():
                    return
                batch = self._cut_batch_locked(time.monotonic())
            self._submit(batch)

    def _cut_batch_locked(self, now: float) -> Batch:
        """Pop the next FIFO batch. Caller holds the condition lock."""
        if self._state == SchedulerState.ACCEPTING:
            self._state = SchedulerState.RELEASING
        items = self._buffer.pop_batch(self._config.max_batch_size)
        self._sequence += 1
        batch = Batch.of(self._signal_type, items, self._resource, sequence=self._sequence)
        self._window_start = now if len(self._buffer) else None
        self._in_flight[batch.sequence] = batch
        return batch

    def _submit(self, batch: Batch) -> None:
        """Start an export thread for a batch, waiting for a free in-flight slot."""
        while not self._slots.acquire(timeout=_SLOT_POLL_SECONDS):
            if self._abort.is_set():
                # Shutdown deadline passed; counted as dropped on shutdown
                self._complete(batch, ExportResult.FATAL)
                return
        thread = threading.Thread(
            target=self._export_thread,
            args=(batch,),
            name=f"spanline-export-{self._signal_type.value}-{batch.sequence}",
            daemon=True,
        )
        try:
            thread.start()
        except RuntimeError as e:
            # No new threads at interpreter shutdown: export on this thread
            logger.debug(
                "Export thread unavailable - exporting inline",
                signal_type=self._signal_type.value,
                sequence=batch.sequence,
                error=str(e),
            )
            self._export_batch(batch)
        with self._cond:
            if self._state == SchedulerState.RELEASING:
                self._state = SchedulerState.ACCEPTING

    # =========================================================================
    # Export
    # =========================================================================

    def _export_once(self, batch: Batch, timeout: float) -> ExportResult:
        try:
            result = self._exporter.export(batch, timeout)
        except Exception as e:
            # Exporters must not raise; an exception is a permanent failure
            logger.error(
                "Exporter raised during export",
                exporter=self._exporter.name,
                signal_type=self._signal_type.value,
                batch_size=len(batch),
                error=str(e),
                error_type=type(e).__name__,
            )
            return ExportResult.FATAL
        if not isinstance(result, ExportResult):
            logger.error(
                "Exporter returned an invalid result",
                exporter=self._exporter.name,
                result=repr(result),
            )
            return ExportResult.FATAL
        return result

    def _export_thread(self, batch: Batch) -> None:
        mark_thread_suppressed()
        self._export_batch(batch)

    def _export_batch(self, batch: Batch) -> None:
        """Run one batch through the retry policy, then release its slot."""
        result = ExportResult.FATAL
        try:
            with suppress_instrumentation():
                outcome = self._retrier.run(
                    functools.partial(self._export_once, batch),
                    timeout=self._config.export_timeout,
                    deadline=self._drain_deadline,
                    on_retry=lambda attempt: self._stats.increment(self._signal_type, EXPORT_RETRIES),
                )
            result = outcome.result
        except Exception as e:
            self._stats.increment(self._signal_type, INTERNAL_ERRORS)
            logger.error(
                "Export retry loop failed unexpectedly",
                signal_type=self._signal_type.value,
                error=str(e),
            )
        finally:
            self._slots.release()
            self._complete(batch, result)

    def _complete(self, batch: Batch, result: ExportResult) -> None:
        # Counters settle before the batch leaves the in-flight table
        failed_total = 0
        with self._cond:
            abandoned = self._abandoned
            if abandoned:
                # Already counted in dropped_on_shutdown
                failed_total = 0
            elif result == ExportResult.SUCCESS:
                self._stats.increment(self._signal_type, BATCHES_EXPORTED)
                self._stats.increment(self._signal_type, SIGNALS_EXPORTED, len(batch))
            else:
                self._stats.increment(self._signal_type, EXPORT_FAILURES)
                self._stats.increment(self._signal_type, BATCHES_DROPPED)
                self._stats.increment(self._signal_type, SIGNALS_DROPPED_EXPORT, len(batch))
                self._failed_batches += 1
                failed_total = self._failed_batches
            self._in_flight.pop(batch.sequence, None)
            self._cond.notify_all()

        if abandoned:
            logger.debug(
                "Batch finished after shutdown deadline",
                signal_type=self._signal_type.value,
                sequence=batch.sequence,
                result=result.value,
            )
            return

        # Aggregate logging: first failure, then every _LOG_INTERVAL
        if failed_total == 1 or (failed_total and failed_total % self._LOG_INTERVAL == 0):
            logger.warning(
                "Telemetry batch dropped after export failure",
                exporter=self._exporter.name,
                signal_type=self._signal_type.value,
                result=result.value,
                batch_size=len(batch),
                dropped_batches_total=failed_total,
            )

    # =========================================================================
    # Flush / shutdown
    # =========================================================================

    def force_flush(self, timeout: float) -> bool:
        """Export everything buffered now and wait for in-flight batches.

        Returns:
            True if the buffer and all in-flight exports finished within
            timeout.
        """
        deadline = time.monotonic() + timeout
        with self._cond:
            if self._state in (SchedulerState.DRAINING, SchedulerState.CLOSED):
                return not self._in_flight and not len(self._buffer)
            if len(self._buffer):
                self._flush_requested = True
                self._cond.notify_all()
            while self._flush_requested or self._in_flight:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True

    def shutdown(self, timeout: float) -> int:
        """Drain and close. Always returns within timeout (approximately).

        Shutdown Sequence:
        1. Enter DRAINING - later enqueues are dropped
        2. Worker cuts the remaining buffer into max_batch_size batches
        3. Wait for the worker and every in-flight export, up to the deadline
        4. At the deadline: abort retries, count what is left as dropped

        Idempotent: later calls return the first call's count.

        Returns:
            Number of signals dropped because the deadline passed.
        """
        deadline = time.monotonic() + timeout
        with self._cond:
            if self._state == SchedulerState.CLOSED:
                return self._dropped_on_shutdown
            if self._state != SchedulerState.DRAINING:
                self._state = SchedulerState.DRAINING
                self._drain_deadline = deadline
                self._cond.notify_all()

        self._worker.join(timeout=max(deadline - time.monotonic(), _MIN_JOIN_SECONDS))

        with self._cond:
            while self._in_flight or (len(self._buffer) and self._worker.is_alive()):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._cond.wait(remaining)

            if self._state == SchedulerState.CLOSED:
                # A concurrent shutdown() finished first
                return self._dropped_on_shutdown
            self._abort.set()
            self._abandoned = True
            dropped = self._buffer.clear() + sum(len(batch) for batch in self._in_flight.values())
            self._dropped_on_shutdown = dropped
            self._state = SchedulerState.CLOSED
            self._cond.notify_all()

        self._stats.increment(self._signal_type, SIGNALS_DROPPED_SHUTDOWN, dropped)
        if dropped:
            logger.warning(
                "Shutdown deadline reached - signals dropped",
                signal_type=self._signal_type.value,
                dropped_on_shutdown=dropped,
                timeout_seconds=timeout,
            )
        else:
            logger.debug("Batch scheduler drained", signal_type=self._signal_type.value)
        return dropped

    # =========================================================================
    # Introspection
    # =========================================================================

    @property
    def signal_type(self) -> SignalType:
        return self._signal_type

    @property
    def state(self) -> SchedulerState:
        with self._cond:
            return self._state

    @property
    def dropped_on_shutdown(self) -> int:
        with self._cond:
            return self._dropped_on_shutdown

    @property
    def health_metrics(self) -> dict[str, Any]:
        """Snapshot of scheduler health for monitoring."""
        with self._cond:
            return {
                "state": self._state.value,
                "queue_depth": len(self._buffer),
                "queue_maxsize": self._buffer.max_size,
                "overflow_dropped": self._buffer.dropped_count,
                "in_flight": len(self._in_flight),
                "batches_cut": self._sequence,
                "worker_alive": self._worker.is_alive(),
            }
