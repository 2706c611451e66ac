"""Trace context value type.

A TraceContext identifies the current position in a trace. It is immutable
and propagated by value: deriving a child creates a new context rather than
modifying the parent.
"""

from __future__ import annotations

import random
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

_TRACE_ID_BITS = 128
_SPAN_ID_BITS = 64

# Shared RNG for id generation. random.getrandbits is thread-safe for the
# default generator and fast enough for per-span use.
_rng = random.Random()


def generate_trace_id() -> int:
    """Generate a random non-zero 128-bit trace id."""
    trace_id = 0
    while trace_id == 0:
        trace_id = _rng.getrandbits(_TRACE_ID_BITS)
    return trace_id


def generate_span_id() -> int:
    """Generate a random non-zero 64-bit span id."""
    span_id = 0
    while span_id == 0:
        span_id = _rng.getrandbits(_SPAN_ID_BITS)
    return span_id


def format_trace_id(trace_id: int) -> str:
    """Render a trace id as 32 lowercase hex characters."""
    return f"{trace_id:032x}"


def format_span_id(span_id: int) -> str:
    """Render a span id as 16 lowercase hex characters."""
    return f"{span_id:016x}"


@dataclass(frozen=True, slots=True)
class TraceContext:
    """Identifiers and decisions carried along the active call path.

    Attributes:
        trace_id: 128-bit trace identifier shared by every span in the trace
        span_id: 64-bit identifier of the span this context belongs to
        parent_span_id: span_id of the parent span, None for roots
        sampled: Sampling decision made at the root, inherited by children
        baggage: Ordered user key/value pairs propagated across boundaries
        is_remote: True when the context was extracted from an inbound carrier
    """

    trace_id: int
    span_id: int
    parent_span_id: int | None = None
    sampled: bool = True
    baggage: Mapping[str, str] = field(default_factory=dict)
    is_remote: bool = False

    def __post_init__(self) -> None:
        if not 0 < self.trace_id < 2**_TRACE_ID_BITS:
            raise ValueError(f"trace_id must be a non-zero 128-bit integer, got {self.trace_id}")
        if not 0 < self.span_id < 2**_SPAN_ID_BITS:
            raise ValueError(f"span_id must be a non-zero 64-bit integer, got {self.span_id}")
        if not isinstance(self.baggage, MappingProxyType):
            object.__setattr__(self, "baggage", MappingProxyType(dict(self.baggage)))

    @classmethod
    def new_root(cls, *, sampled: bool, baggage: Mapping[str, str] | None = None) -> TraceContext:
        """Create the context of a root span (fresh trace id, no parent)."""
        return cls(
            trace_id=generate_trace_id(),
            span_id=generate_span_id(),
            parent_span_id=None,
            sampled=sampled,
            baggage=baggage or {},
        )

    def child(self) -> TraceContext:
        """Derive the context of a child span.

        Same trace_id and sampling decision, new span_id, parent_span_id set
        to this context's span_id. Baggage flows to the child unchanged.
        """
        return TraceContext(
            trace_id=self.trace_id,
            span_id=generate_span_id(),
            parent_span_id=self.span_id,
            sampled=self.sampled,
            baggage=self.baggage,
            is_remote=False,
        )

    def with_baggage(self, key: str, value: str) -> TraceContext:
        """Return a copy with one baggage entry set (appended if new)."""
        updated = dict(self.baggage)
        updated[key] = value
        return TraceContext(
            trace_id=self.trace_id,
            span_id=self.span_id,
            parent_span_id=self.parent_span_id,
            sampled=self.sampled,
            baggage=updated,
            is_remote=self.is_remote,
        )

    @property
    def trace_id_hex(self) -> str:
        return format_trace_id(self.trace_id)

    @property
    def span_id_hex(self) -> str:
        return format_span_id(self.span_id)
