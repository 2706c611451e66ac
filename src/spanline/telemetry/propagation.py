# src/spanline/telemetry/propagation.py
"""Context propagation within a process and across process boundaries.

In-process:
    The active TraceContext lives in a contextvars.ContextVar. asyncio tasks
    copy the context when they are created, so coroutines see their parent's
    context automatically. Thread pools and callback schedulers do NOT, so
    work handed to another thread must use the capture-and-restore pattern:

        captured = capture()                  # at schedule time
        executor.submit(captured.run, work)   # restored at run time

    or equivalently executor.submit(wrap(work)).

    activate() returns a Scope that restores the previous context on every
    exit path (normal return, early return, exception).

Across processes:
    inject()/extract() serialize the context as W3C Trace Context
    ('traceparent') and W3C Baggage ('baggage') headers. extract() never
    raises: malformed headers yield None.
"""

from __future__ import annotations

import contextvars
import functools
import re
from collections.abc import Callable, Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from typing import ParamSpec, TypeVar
from urllib.parse import quote, unquote

from spanline.contracts.context import TraceContext
from spanline.core.logging import get_logger

logger = get_logger(__name__)

P = ParamSpec("P")
R = TypeVar("R")

TRACEPARENT_HEADER = "traceparent"
BAGGAGE_HEADER = "baggage"

_TRACEPARENT_RE = re.compile(r"^([0-9a-f]{2})-([0-9a-f]{32})-([0-9a-f]{16})-([0-9a-f]{2})(-.*)?$")
_SAMPLED_FLAG = 0x01

# W3C Baggage limits
_MAX_BAGGAGE_ENTRIES = 180
_MAX_BAGGAGE_BYTES = 8192

_current_context: contextvars.ContextVar[TraceContext | None] = contextvars.ContextVar(
    "spanline_trace_context", default=None
)
_suppressed: contextvars.ContextVar[bool] = contextvars.ContextVar("spanline_suppress_instrumentation", default=False)


# =============================================================================
# In-process context
# =============================================================================


def current() -> TraceContext | None:
    """Return the active trace context, or None when nothing is active."""
    return _current_context.get()


class Scope:
    """Handle for an activated context.

    Usable as a context manager or released explicitly with close().
    Releasing restores whatever context was active before activation.
    Releasing twice is a no-op.
    """

    __slots__ = ("_token", "context")

    def __init__(self, ctx: TraceContext | None) -> None:
        self.context = ctx
        self._token: contextvars.Token[TraceContext | None] | None = _current_context.set(ctx)

    def close(self) -> None:
        if self._token is None:
            return
        token, self._token = self._token, None
        try:
            _current_context.reset(token)
        except ValueError:
            # Token created in a different contextvars.Context (scope released
            # from another thread/task). Fall back to restoring the old value.
            logger.debug("Scope released outside its owning context")
            old = token.old_value
            _current_context.set(None if old is contextvars.Token.MISSING else old)

    def __enter__(self) -> TraceContext | None:
        return self.context

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def activate(ctx: TraceContext | None) -> Scope:
    """Make ctx the active context until the returned Scope is released."""
    return Scope(ctx)


class CapturedContext:
    """A snapshot of the active context taken at schedule time."""

    __slots__ = ("context", "_suppressed")

    def __init__(self, ctx: TraceContext | None, suppressed: bool) -> None:
        self.context = ctx
        self._suppressed = suppressed

    def run(self, fn: Callable[P, R], *args: P.args, **kwargs: P.kwargs) -> R:
        """Run fn with the captured context active, restoring afterwards."""
        suppress_token = _suppressed.set(self._suppressed)
        try:
            with activate(self.context):
                return fn(*args, **kwargs)
        finally:
            _suppressed.reset(suppress_token)


def capture() -> CapturedContext:
    """Capture the active context for restoration on another thread/worker."""
    return CapturedContext(_current_context.get(), _suppressed.get())


def wrap(fn: Callable[P, R]) -> Callable[P, R]:
    """Bind fn to the context active now; it runs under that context later."""
    captured = capture()

    @functools.wraps(fn)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        return captured.run(fn, *args, **kwargs)

    return wrapper


# =============================================================================
# Baggage
# =============================================================================


def get_baggage(key: str, ctx: TraceContext | None = None) -> str | None:
    """Read one baggage entry from ctx (default: the active context)."""
    ctx = ctx if ctx is not None else current()
    if ctx is None:
        return None
    return ctx.baggage.get(key)


def set_baggage(key: str, value: str, ctx: TraceContext | None = None) -> TraceContext | None:
    """Return a copy of ctx (default: active context) with a baggage entry set.

    The returned context is NOT activated; pass it to activate(). Returns None
    when there is no context to attach baggage to.
    """
    ctx = ctx if ctx is not None else current()
    if ctx is None:
        return None
    return ctx.with_baggage(key, value)


# =============================================================================
# Instrumentation suppression
# =============================================================================


@contextmanager
def suppress_instrumentation() -> Iterator[None]:
    """Disable span/log production for the enclosed block.

    Export workers run suppressed so that exporting telemetry never produces
    new telemetry (no feedback loops).
    """
    token = _suppressed.set(True)
    try:
        yield
    finally:
        _suppressed.reset(token)


def is_instrumentation_suppressed() -> bool:
    return _suppressed.get()


def mark_thread_suppressed() -> None:
    """Permanently suppress instrumentation in the calling thread's context.

    Used at the top of background worker threads, which run in their own
    contextvars.Context and never return to application code.
    """
    _suppressed.set(True)


# =============================================================================
# W3C header propagation
# =============================================================================


def _get_header(carrier: Mapping[str, str], name: str) -> str | None:
    value = carrier.get(name)
    if value is not None:
        return value
    for key, candidate in carrier.items():
        if key.lower() == name:
            return candidate
    return None


def inject(ctx: TraceContext | None, carrier: MutableMapping[str, str]) -> None:
    """Write traceparent and baggage headers for ctx into carrier.

    Does nothing when ctx is None.
    """
    if ctx is None:
        return
    flags = _SAMPLED_FLAG if ctx.sampled else 0
    carrier[TRACEPARENT_HEADER] = f"00-{ctx.trace_id_hex}-{ctx.span_id_hex}-{flags:02x}"
    if ctx.baggage:
        entries = [f"{quote(k, safe='')}={quote(v, safe='')}" for k, v in ctx.baggage.items()]
        header = ",".join(entries[:_MAX_BAGGAGE_ENTRIES])
        if len(header.encode()) <= _MAX_BAGGAGE_BYTES:
            carrier[BAGGAGE_HEADER] = header
        else:
            logger.debug("Baggage exceeds W3C size limit, not propagated", size=len(header.encode()))


def _parse_baggage(header: str) -> dict[str, str]:
    baggage: dict[str, str] = {}
    for entry in header.split(","):
        # Drop W3C baggage properties (';'-separated metadata)
        member = entry.split(";", 1)[0].strip()
        if not member:
            continue
        key, sep, value = member.partition("=")
        if not sep or not key.strip():
            continue
        baggage[unquote(key.strip())] = unquote(value.strip())
        if len(baggage) >= _MAX_BAGGAGE_ENTRIES:
            break
    return baggage


def extract(carrier: Mapping[str, str]) -> TraceContext | None:
    """Read a remote parent context from inbound headers.

    Header lookup is case-insensitive. Returns None (never raises) when the
    traceparent header is missing or malformed.
    """
    header = _get_header(carrier, TRACEPARENT_HEADER)
    if header is None:
        return None
    match = _TRACEPARENT_RE.match(header.strip().lower())
    if match is None:
        logger.debug("Ignoring malformed traceparent", traceparent=header)
        return None
    version, trace_hex, span_hex, flags_hex, rest = match.groups()
    # Version ff is forbidden; version 00 must not carry extra fields
    if version == "ff" or (version == "00" and rest):
        logger.debug("Ignoring unsupported traceparent version", traceparent=header)
        return None
    trace_id = int(trace_hex, 16)
    span_id = int(span_hex, 16)
    if trace_id == 0 or span_id == 0:
        return None

    baggage_header = _get_header(carrier, BAGGAGE_HEADER)
    baggage = _parse_baggage(baggage_header) if baggage_header else {}
    return TraceContext(
        trace_id=trace_id,
        span_id=span_id,
        parent_span_id=None,
        sampled=bool(int(flags_hex, 16) & _SAMPLED_FLAG),
        baggage=baggage,
        is_remote=True,
    )


def inject_current(carrier: MutableMapping[str, str]) -> None:
    """inject() the active context (convenience for outbound requests)."""
    inject(current(), carrier)


def attach_extracted(carrier: Mapping[str, str]) -> Scope:
    """extract() from carrier and activate the result (inbound requests).

    Activates None when nothing valid was found, which still yields a Scope
    so callers can use a single with-statement.
    """
    return activate(extract(carrier))
