# tests/unit/telemetry/test_buffer.py
"""Unit tests for BoundedBuffer signal buffering.

Tests cover:
- Basic offer and pop_batch behavior
- DROP_NEWEST and DROP_OLDEST overflow policies
- Correct overflow counting (critical: check was_full BEFORE append)
- Aggregate logging every 100 drops (Warning Fatigue prevention)
- Property-based tests for buffer invariants
"""

from unittest.mock import patch

import pytest
from hypothesis import given
from hypothesis import strategies as st

from spanline.contracts.enums import OverflowPolicy
from spanline.telemetry.buffer import BoundedBuffer
from tests.telemetry.fixtures import make_span

# =============================================================================
# Basic Behavior Tests
# =============================================================================


class TestBoundedBufferBasics:
    """Tests for basic offer and pop_batch behavior."""

    def test_empty_buffer_length(self) -> None:
        assert len(BoundedBuffer(max_size=100)) == 0

    def test_offer_increases_length(self) -> None:
        buffer = BoundedBuffer(max_size=100)
        assert buffer.offer(make_span())
        assert buffer.offer(make_span())
        assert len(buffer) == 2

    def test_pop_batch_returns_signals_in_fifo_order(self) -> None:
        """pop_batch returns signals oldest first."""
        buffer = BoundedBuffer(max_size=100)
        spans = [make_span(f"op-{i}") for i in range(5)]
        for span in spans:
            buffer.offer(span)

        assert buffer.pop_batch(max_count=3) == spans[:3]
        assert buffer.pop_batch(max_count=3) == spans[3:]
        assert buffer.pop_batch(max_count=3) == []

    def test_clear_returns_discarded_count(self) -> None:
        buffer = BoundedBuffer(max_size=10)
        for _ in range(4):
            buffer.offer(make_span())

        assert buffer.clear() == 4
        assert len(buffer) == 0

    @pytest.mark.parametrize("max_size", [0, -1])
    def test_invalid_max_size(self, max_size: int) -> None:
        with pytest.raises(ValueError, match="max_size must be >= 1"):
            BoundedBuffer(max_size=max_size)


# =============================================================================
# Overflow Policy Tests
# =============================================================================


class TestDropNewest:
    """Default policy: a full buffer rejects the incoming signal."""

    def test_full_buffer_rejects_new_signal(self) -> None:
        buffer = BoundedBuffer(max_size=2)
        first, second, third = make_span("a"), make_span("b"), make_span("c")

        assert buffer.offer(first)
        assert buffer.offer(second)
        assert buffer.offer(third) is False

        assert buffer.pop_batch(10) == [first, second]
        assert buffer.dropped_count == 1

    def test_no_drops_below_capacity(self) -> None:
        buffer = BoundedBuffer(max_size=5)
        for _ in range(5):
            buffer.offer(make_span())
        assert buffer.dropped_count == 0

    def test_space_freed_by_pop_is_reusable(self) -> None:
        buffer = BoundedBuffer(max_size=1)
        buffer.offer(make_span())
        buffer.pop_batch(1)
        assert buffer.offer(make_span())
        assert buffer.dropped_count == 0


class TestDropOldest:
    """Ring buffer: the oldest queued signal is evicted."""

    def test_oldest_evicted(self) -> None:
        buffer = BoundedBuffer(max_size=2, policy=OverflowPolicy.DROP_OLDEST)
        first, second, third = make_span("a"), make_span("b"), make_span("c")

        buffer.offer(first)
        buffer.offer(second)
        assert buffer.offer(third) is True

        assert buffer.pop_batch(10) == [second, third]
        assert buffer.dropped_count == 1

    def test_overflow_counted_per_eviction(self) -> None:
        buffer = BoundedBuffer(max_size=3, policy=OverflowPolicy.DROP_OLDEST)
        for _ in range(10):
            buffer.offer(make_span())

        assert len(buffer) == 3
        assert buffer.dropped_count == 7


# =============================================================================
# Aggregate Logging Tests
# =============================================================================


class TestAggregateLogging:
    """Overflow is logged every 100 drops, not per signal."""

    def test_no_log_below_interval(self) -> None:
        buffer = BoundedBuffer(max_size=1)
        buffer.offer(make_span())
        with patch("spanline.telemetry.buffer.logger") as mock_logger:
            for _ in range(99):
                buffer.offer(make_span())
            mock_logger.warning.assert_not_called()

    def test_logs_at_interval(self) -> None:
        buffer = BoundedBuffer(max_size=1)
        buffer.offer(make_span())
        with patch("spanline.telemetry.buffer.logger") as mock_logger:
            for _ in range(100):
                buffer.offer(make_span())

            mock_logger.warning.assert_called_once()
            kwargs = mock_logger.warning.call_args.kwargs
            assert kwargs["dropped_since_last_log"] == 100
            assert kwargs["dropped_total"] == 100
            assert kwargs["policy"] == "drop_newest"

    def test_logs_repeatedly(self) -> None:
        buffer = BoundedBuffer(max_size=1, policy=OverflowPolicy.DROP_OLDEST)
        buffer.offer(make_span())
        with patch("spanline.telemetry.buffer.logger") as mock_logger:
            for _ in range(350):
                buffer.offer(make_span())
            assert mock_logger.warning.call_count == 3


# =============================================================================
# Property-Based Tests
# =============================================================================


class TestBufferProperties:
    @given(
        max_size=st.integers(min_value=1, max_value=50),
        offers=st.integers(min_value=0, max_value=200),
        policy=st.sampled_from(list(OverflowPolicy)),
    )
    def test_accounting(self, max_size: int, offers: int, policy: OverflowPolicy) -> None:
        """Queued plus dropped always equals offered; size never exceeds capacity."""
        buffer = BoundedBuffer(max_size=max_size, policy=policy)
        for _ in range(offers):
            buffer.offer(make_span())

        assert len(buffer) <= max_size
        assert len(buffer) + buffer.dropped_count == offers

    @given(
        max_size=st.integers(min_value=1, max_value=20),
        offers=st.integers(min_value=0, max_value=60),
    )
    def test_drop_newest_keeps_the_first_signals(self, max_size: int, offers: int) -> None:
        buffer = BoundedBuffer(max_size=max_size)
        spans = [make_span() for _ in range(offers)]
        for span in spans:
            buffer.offer(span)

        assert buffer.pop_batch(max_size) == spans[:max_size]

    @given(
        max_size=st.integers(min_value=1, max_value=20),
        offers=st.integers(min_value=0, max_value=60),
    )
    def test_drop_oldest_keeps_the_last_signals(self, max_size: int, offers: int) -> None:
        buffer = BoundedBuffer(max_size=max_size, policy=OverflowPolicy.DROP_OLDEST)
        spans = [make_span() for _ in range(offers)]
        for span in spans:
            buffer.offer(span)

        assert buffer.pop_batch(max_size) == spans[-max_size:]
