# src/spanline/telemetry/sampling.py
"""Head sampling: decide, once per trace, whether spans are recorded.

Sampling Strategies:
    - AlwaysOnSampler: Record all traces
    - AlwaysOffSampler: Record no traces
    - TraceIdRatioSampler: Record a fixed fraction, decided from the trace id
    - ParentBasedSampler: Inherit the parent's decision; delegate at the root

The ratio decision is a pure function of the trace id: the low 64 bits are
compared with ratio * 2**64, exactly as the OpenTelemetry SDKs do it. Every
producer that sees the same trace id - in this process or another one -
reaches the same decision.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from spanline.contracts.enums import SamplingStrategy
from spanline.contracts.errors import ConfigurationError

if TYPE_CHECKING:
    from spanline.core.config import SamplingSettings

_TRACE_ID_LOW_MASK = (1 << 64) - 1


class Sampler(Protocol):
    """Protocol for samplers.

    should_sample() is called once per new span. parent_sampled is the
    parent's decision, or None for a root span. Implementations MUST NOT
    raise.
    """

    def should_sample(self, trace_id: int, parent_sampled: bool | None = None) -> bool: ...

    @property
    def description(self) -> str: ...


class AlwaysOnSampler:
    """Sample every trace."""

    def should_sample(self, trace_id: int, parent_sampled: bool | None = None) -> bool:
        return True

    @property
    def description(self) -> str:
        return "AlwaysOnSampler"


class AlwaysOffSampler:
    """Sample no traces."""

    def should_sample(self, trace_id: int, parent_sampled: bool | None = None) -> bool:
        return False

    @property
    def description(self) -> str:
        return "AlwaysOffSampler"


class TraceIdRatioSampler:
    """Sample a fraction of traces, deterministically per trace id.

    Args:
        ratio: Probability of sampling, 0.0 (never) to 1.0 (always).

    Raises:
        ConfigurationError: If ratio is outside [0.0, 1.0].
    """

    def __init__(self, ratio: float) -> None:
        if not 0.0 <= ratio <= 1.0:
            raise ConfigurationError(f"sampling ratio must be between 0.0 and 1.0, got {ratio}")
        self._ratio = ratio
        self._bound = round(ratio * (1 << 64))

    @property
    def ratio(self) -> float:
        return self._ratio

    def should_sample(self, trace_id: int, parent_sampled: bool | None = None) -> bool:
        return (trace_id & _TRACE_ID_LOW_MASK) < self._bound

    @property
    def description(self) -> str:
        return f"TraceIdRatioSampler{{{self._ratio}}}"


class ParentBasedSampler:
    """Respect the parent's decision; use root for traces without a parent.

    The decision made at the root is immutable for the life of the trace:
    a sampled parent always yields a sampled child, an unsampled parent an
    unsampled child.
    """

    def __init__(self, root: Sampler) -> None:
        self._root = root

    def should_sample(self, trace_id: int, parent_sampled: bool | None = None) -> bool:
        if parent_sampled is None:
            return self._root.should_sample(trace_id, None)
        return parent_sampled

    @property
    def description(self) -> str:
        return f"ParentBased{{root={self._root.description}}}"


def sampler_from_settings(settings: SamplingSettings) -> Sampler:
    """Build the configured sampler."""
    if settings.strategy == SamplingStrategy.ALWAYS_ON:
        return AlwaysOnSampler()
    if settings.strategy == SamplingStrategy.ALWAYS_OFF:
        return AlwaysOffSampler()
    if settings.strategy == SamplingStrategy.RATIO:
        return TraceIdRatioSampler(settings.ratio)
    if settings.strategy == SamplingStrategy.PARENT_RATIO:
        return ParentBasedSampler(TraceIdRatioSampler(settings.ratio))
    raise ConfigurationError(f"Unknown sampling strategy: {settings.strategy!r}")
