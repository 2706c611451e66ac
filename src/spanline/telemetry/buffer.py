# src/spanline/telemetry/buffer.py
"""Bounded FIFO buffer for finished signals awaiting export.

Overflow policy:
- DROP_NEWEST (default): a full buffer rejects the incoming signal. What is
  already queued is exported; what arrives during sustained overload is lost.
- DROP_OLDEST: ring buffer via deque(maxlen=N); the oldest queued signal is
  evicted to make room.

Key design decisions:
- Correct overflow counting: check was_full BEFORE append (deque evicts during)
- Aggregate logging: log every 100 drops to prevent Warning Fatigue
"""

from __future__ import annotations

from collections import deque

from spanline.contracts.defaults import INTERNAL_DEFAULTS
from spanline.contracts.enums import OverflowPolicy
from spanline.contracts.signals import Signal
from spanline.core.logging import get_logger

logger = get_logger(__name__)


class BoundedBuffer:
    """FIFO buffer with a fixed capacity and a configurable overflow policy.

    NOTE: Aggregate logging - logs every 100 drops instead of per-signal to
    avoid Warning Fatigue.

    Thread Safety:
        NOT thread-safe. The BatchScheduler serializes access under its
        condition lock.

    Attributes:
        dropped_count: Total number of signals dropped due to buffer overflow.

    Example:
        buffer = BoundedBuffer(max_size=2048)
        buffer.offer(span)
        batch = buffer.pop_batch(max_count=512)
    """

    # Log aggregate metrics every N drops to avoid Warning Fatigue
    _LOG_INTERVAL = int(INTERNAL_DEFAULTS["buffer"]["log_interval"])

    def __init__(self, max_size: int = 2048, policy: OverflowPolicy = OverflowPolicy.DROP_NEWEST) -> None:
        """Initialize the bounded buffer.

        Args:
            max_size: Maximum number of signals to buffer.
            policy: What to do with a signal offered to a full buffer.

        Raises:
            ValueError: If max_size < 1.
        """
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        self._max_size = max_size
        self._policy = policy
        maxlen = max_size if policy == OverflowPolicy.DROP_OLDEST else None
        self._buffer: deque[Signal] = deque(maxlen=maxlen)
        self._dropped_count: int = 0
        self._last_logged_drop_count: int = 0

    def offer(self, signal: Signal) -> bool:
        """Add a signal, tracking drops.

        Args:
            signal: The finished signal to buffer.

        Returns:
            True if the offered signal was queued. Under DROP_OLDEST this is
            always True (an older signal may have been evicted instead).
        """
        was_full = len(self._buffer) >= self._max_size
        if was_full and self._policy == OverflowPolicy.DROP_NEWEST:
            self._record_drop()
            return False
        self._buffer.append(signal)
        if was_full:
            # deque auto-dropped the oldest item
            self._record_drop()
        return True

    def _record_drop(self) -> None:
        self._dropped_count += 1
        if self._dropped_count - self._last_logged_drop_count >= self._LOG_INTERVAL:
            logger.warning(
                "Telemetry buffer overflow - signals dropped",
                dropped_since_last_log=self._dropped_count - self._last_logged_drop_count,
                dropped_total=self._dropped_count,
                buffer_size=self._max_size,
                policy=self._policy.value,
                hint="Consider increasing max_queue_size or reducing signal volume",
            )
            self._last_logged_drop_count = self._dropped_count

    def pop_batch(self, max_count: int) -> list[Signal]:
        """Pop up to max_count signals, oldest first.

        Args:
            max_count: Maximum number of signals to retrieve.

        Returns:
            List of signals, up to max_count. May be empty if buffer is empty.
        """
        batch = []
        for _ in range(min(max_count, len(self._buffer))):
            batch.append(self._buffer.popleft())
        return batch

    def clear(self) -> int:
        """Discard everything buffered. Returns the number discarded."""
        count = len(self._buffer)
        self._buffer.clear()
        return count

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def policy(self) -> OverflowPolicy:
        return self._policy

    @property
    def dropped_count(self) -> int:
        """Number of signals dropped due to buffer overflow."""
        return self._dropped_count

    def __len__(self) -> int:
        """Return the current number of signals in the buffer."""
        return len(self._buffer)
