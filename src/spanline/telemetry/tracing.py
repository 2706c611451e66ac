# src/spanline/telemetry/tracing.py
"""Tracer and Span: the tracing half of the producer API.

A Tracer is a lightweight handle bound to an instrumentation scope. It asks
its provider for the sampler, clock and pipeline at call time, so a tracer
obtained before spanline.init() starts recording once the provider exists.

Span lifecycle:
    start_span() -> set_attribute()/add_event()/set_status() -> end()

    Ending produces an immutable SpanData snapshot that goes through the
    processor chain into the traces buffer. A span ends exactly once: a
    second end() is a no-op that returns False. Mutations after end are
    ignored. An explicit end time earlier than the start is clamped to the
    start time.

Non-recording spans:
    Unsampled spans, spans started while instrumentation is suppressed and
    spans started with no provider still carry a valid TraceContext (so
    context propagation keeps working) but record nothing.

Nothing here raises into application code. Exceptions raised by the
application inside start_as_current_span() are recorded on the span and
re-raised unchanged.
"""

from __future__ import annotations

import threading
import traceback
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Final

from spanline.contracts.attributes import AttributeValue, clean_attributes, freeze_attributes, normalize_value
from spanline.contracts.context import TraceContext, generate_span_id, generate_trace_id
from spanline.contracts.enums import SignalType, SpanKind, StatusCode
from spanline.contracts.signals import InstrumentationScope, SpanData, SpanEvent, Status
from spanline.core.logging import get_logger
from spanline.telemetry.propagation import activate, current, is_instrumentation_suppressed
from spanline.telemetry.stats import INTERNAL_ERRORS

if TYPE_CHECKING:
    from spanline.telemetry.provider import TelemetryProvider

logger = get_logger(__name__)

# Per-span limits (OpenTelemetry SDK defaults)
MAX_SPAN_ATTRIBUTES: Final = 128
MAX_SPAN_EVENTS: Final = 128

EXCEPTION_EVENT_NAME: Final = "exception"


class _UseCurrent:
    """Sentinel: take the parent from the active context."""


_USE_CURRENT: Final = _UseCurrent()

ProviderResolver = Callable[[], "TelemetryProvider | None"]


class Span:
    """A timed operation, mutable by its owner until end().

    Thread Safety:
        A span is meant to be mutated by the execution that started it, but
        every mutation takes the span's lock so that a concurrent end() from
        a timeout handler cannot observe a half-applied update.
    """

    def __init__(
        self,
        name: str,
        context: TraceContext,
        *,
        kind: SpanKind = SpanKind.INTERNAL,
        scope: InstrumentationScope,
        start_time: int,
        attributes: Mapping[str, Any] | None = None,
        provider: TelemetryProvider | None = None,
    ) -> None:
        self._name = name
        self._context = context
        self._kind = kind
        self._scope = scope
        self._start_time = start_time
        self._provider = provider
        self._lock = threading.Lock()
        self._attributes: dict[str, AttributeValue] = {}
        self._dropped_attributes = 0
        self._events: list[SpanEvent] = []
        self._status = Status()
        self._end_time: int | None = None
        if attributes:
            self.set_attributes(attributes)

    # =========================================================================
    # Introspection
    # =========================================================================

    @property
    def name(self) -> str:
        return self._name

    @property
    def context(self) -> TraceContext:
        return self._context

    @property
    def kind(self) -> SpanKind:
        return self._kind

    @property
    def start_time(self) -> int:
        return self._start_time

    @property
    def end_time(self) -> int | None:
        return self._end_time

    @property
    def status(self) -> Status:
        return self._status

    @property
    def attributes(self) -> Mapping[str, AttributeValue]:
        with self._lock:
            return dict(self._attributes)

    @property
    def is_recording(self) -> bool:
        """True while attributes/events set on this span will be exported."""
        return self._provider is not None and self._end_time is None

    @property
    def is_ended(self) -> bool:
        return self._end_time is not None

    # =========================================================================
    # Mutation
    # =========================================================================

    def set_attribute(self, key: str, value: Any) -> None:
        """Set one attribute. Unsupported values are dropped, not raised."""
        if not self.is_recording:
            return
        normalized = normalize_value(value)
        if not isinstance(key, str) or not key or normalized is None:
            logger.debug("Dropping invalid span attribute", key=repr(key), value_type=type(value).__name__)
            return
        with self._lock:
            if self._end_time is not None:
                return
            if key not in self._attributes and len(self._attributes) >= MAX_SPAN_ATTRIBUTES:
                self._dropped_attributes += 1
                return
            self._attributes[key] = normalized

    def set_attributes(self, attributes: Mapping[str, Any]) -> None:
        for key, value in attributes.items():
            self.set_attribute(key, value)

    def add_event(
        self,
        name: str,
        attributes: Mapping[str, Any] | None = None,
        timestamp: int | None = None,
    ) -> None:
        """Append a timestamped event. Events beyond MAX_SPAN_EVENTS are dropped."""
        if not self.is_recording or self._provider is None:
            return
        event = SpanEvent(
            name=name,
            timestamp=timestamp if timestamp is not None else self._provider.now_ns(),
            attributes=freeze_attributes(clean_attributes(attributes)),
        )
        with self._lock:
            if self._end_time is not None or len(self._events) >= MAX_SPAN_EVENTS:
                return
            self._events.append(event)

    def set_status(self, code: StatusCode, message: str = "") -> None:
        """Set the span status.

        OK is final: once a span is OK, later ERROR/UNSET updates are
        ignored. The message is only kept for ERROR.
        """
        if not self.is_recording:
            return
        with self._lock:
            if self._end_time is not None or self._status.code == StatusCode.OK:
                return
            if code == StatusCode.UNSET:
                return
            self._status = Status(code=code, message=message if code == StatusCode.ERROR else "")

    def record_exception(
        self,
        exception: BaseException,
        attributes: Mapping[str, Any] | None = None,
        timestamp: int | None = None,
        escaped: bool = False,
    ) -> None:
        """Add an 'exception' event describing exception.

        Does not change the status; start_as_current_span() does that for
        exceptions escaping its block.
        """
        if not self.is_recording:
            return
        exc_type = type(exception)
        event_attributes: dict[str, Any] = {
            "exception.type": f"{exc_type.__module__}.{exc_type.__qualname__}"
            if exc_type.__module__ != "builtins"
            else exc_type.__qualname__,
            "exception.message": str(exception),
            "exception.stacktrace": "".join(
                traceback.format_exception(exc_type, exception, exception.__traceback__)
            ),
            "exception.escaped": escaped,
        }
        if attributes:
            event_attributes.update(attributes)
        self.add_event(EXCEPTION_EVENT_NAME, event_attributes, timestamp)

    def update_name(self, name: str) -> None:
        if not self.is_recording:
            return
        with self._lock:
            if self._end_time is None:
                self._name = name

    # =========================================================================
    # End
    # =========================================================================

    def end(self, end_time: int | None = None) -> bool:
        """End the span and queue it for export.

        Returns:
            True if this call ended the span; False if it was already ended
            (the second end is a no-op).
        """
        with self._lock:
            if self._end_time is not None:
                logger.debug("Span already ended", span_name=self._name, span_id=self._context.span_id_hex)
                return False
            if end_time is None:
                end_time = self._provider.now_ns() if self._provider is not None else self._start_time
            # end_time >= start_time
            self._end_time = max(end_time, self._start_time)
            if self._provider is None:
                return True
            snapshot = SpanData(
                name=self._name,
                context=self._context,
                kind=self._kind,
                start_time=self._start_time,
                end_time=self._end_time,
                scope=self._scope,
                attributes=freeze_attributes(self._attributes),
                events=tuple(self._events),
                status=self._status,
                dropped_attributes=self._dropped_attributes,
            )
        self._provider.emit(snapshot)
        return True

    def __repr__(self) -> str:
        return (
            f"Span(name={self._name!r}, trace_id={self._context.trace_id_hex}, "
            f"span_id={self._context.span_id_hex}, recording={self.is_recording})"
        )


class Tracer:
    """Creates spans for one instrumentation scope.

    Obtained from get_tracer(); cheap to create and safe to share between
    threads.
    """

    def __init__(self, scope: InstrumentationScope, resolve: ProviderResolver) -> None:
        self._scope = scope
        self._resolve = resolve

    @property
    def scope(self) -> InstrumentationScope:
        return self._scope

    def start_span(
        self,
        name: str,
        *,
        kind: SpanKind = SpanKind.INTERNAL,
        attributes: Mapping[str, Any] | None = None,
        parent: TraceContext | None | _UseCurrent = _USE_CURRENT,
        start_time: int | None = None,
    ) -> Span:
        """Start a span without activating it.

        Args:
            name: Operation name
            kind: Role of the span in the trace
            attributes: Initial attributes (invalid values dropped)
            parent: Parent context; defaults to the active context. Pass
                None to force a new root.
            start_time: Epoch nanoseconds; defaults to now

        Returns:
            A Span - recording if sampled and a provider is running,
            non-recording otherwise.
        """
        parent_ctx = current() if isinstance(parent, _UseCurrent) else parent
        provider = self._resolve()
        try:
            if provider is None or is_instrumentation_suppressed() or not provider.is_enabled(SignalType.TRACES):
                return self._non_recording(name, parent_ctx, kind, start_time)

            if parent_ctx is None:
                trace_id = generate_trace_id()
                sampled = provider.sampler.should_sample(trace_id, None)
                context = TraceContext(trace_id=trace_id, span_id=generate_span_id(), sampled=sampled)
            else:
                context = parent_ctx.child()
                sampled = provider.sampler.should_sample(parent_ctx.trace_id, parent_ctx.sampled)
                if sampled != context.sampled:
                    context = replace(context, sampled=sampled)

            return Span(
                name,
                context,
                kind=kind,
                scope=self._scope,
                start_time=start_time if start_time is not None else provider.now_ns(),
                attributes=attributes,
                provider=provider if sampled else None,
            )
        except Exception as e:
            # Producer API must not raise into application code
            if provider is not None:
                provider.stats.increment(SignalType.TRACES, INTERNAL_ERRORS)
            logger.error("Failed to start span", span_name=name, error=str(e), error_type=type(e).__name__)
            return self._non_recording(name, parent_ctx, kind, start_time)

    def _non_recording(
        self,
        name: str,
        parent: TraceContext | None,
        kind: SpanKind,
        start_time: int | None,
    ) -> Span:
        context = parent.child() if parent is not None else TraceContext.new_root(sampled=False)
        return Span(name, context, kind=kind, scope=self._scope, start_time=start_time or 0)

    @contextmanager
    def start_as_current_span(
        self,
        name: str,
        *,
        kind: SpanKind = SpanKind.INTERNAL,
        attributes: Mapping[str, Any] | None = None,
        parent: TraceContext | None | _UseCurrent = _USE_CURRENT,
        end_on_exit: bool = True,
        record_exception: bool = True,
        set_status_on_exception: bool = True,
    ) -> Iterator[Span]:
        """Start a span and make its context active for the block.

        The previous context is restored on every exit path. If the block
        raises, the exception is recorded on the span, the status is set to
        ERROR and the exception propagates unchanged. An abandoned block
        (e.g. cancelled by a timeout) still ends and queues the span.

        Example:
            with tracer.start_as_current_span("charge-card") as span:
                span.set_attribute("payment.provider", "acme")
        """
        span = self.start_span(name, kind=kind, attributes=attributes, parent=parent)
        try:
            with activate(span.context):
                yield span
        except BaseException as e:
            if record_exception:
                span.record_exception(e, escaped=True)
            if set_status_on_exception:
                span.set_status(StatusCode.ERROR, f"{type(e).__name__}: {e}")
            raise
        finally:
            if end_on_exit:
                span.end()

    def end_span(self, span: Span, end_time: int | None = None) -> bool:
        """End span (same as span.end()); False if it was already ended."""
        return span.end(end_time)
