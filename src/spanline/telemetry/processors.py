# src/spanline/telemetry/processors.py
"""Attribute processor chain applied to every finished signal before buffering.

Each processor takes a signal and returns a (possibly modified) signal, or
None to veto it. Built-ins, in their canonical order:

- RouteExclusionProcessor: drop health-check style operations by glob
- EnrichmentProcessor: add static attributes without overwriting
- RedactionProcessor: mask email/phone/card-shaped substrings and
  sensitive attribute keys with fixed placeholders
- TruncationProcessor: cap string length, never clipping a placeholder

Failure isolation:
    A processor that raises is skipped for that signal: the signal it was
    given continues down the chain unmodified and processor_errors is
    incremented. Nothing raises into the caller's request path.
"""

from __future__ import annotations

import dataclasses
import fnmatch
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Protocol

from spanline.contracts.attributes import AttributeValue, Attributes, clean_attributes, freeze_attributes
from spanline.contracts.enums import ProcessorName
from spanline.contracts.signals import LogRecord, Signal, SpanData, SpanEvent, signal_type_of
from spanline.core.logging import get_logger
from spanline.telemetry.stats import PROCESSOR_ERRORS, SIGNALS_FILTERED, PipelineStats

if TYPE_CHECKING:
    from spanline.core.config import ProcessorSettings

logger = get_logger(__name__)

# Attributes that carry the operation's route/path
ROUTE_ATTRIBUTE_KEYS: tuple[str, ...] = ("http.route", "url.path", "http.target")

EMAIL_PLACEHOLDER = "[REDACTED_EMAIL]"
PHONE_PLACEHOLDER = "[REDACTED_PHONE]"
CARD_PLACEHOLDER = "[REDACTED_CARD]"
KEY_PLACEHOLDER = "[REDACTED]"

# Matches every placeholder above. Placeholders contain no digits and no '@',
# so no redaction pattern can ever match inside one.
PLACEHOLDER_RE = re.compile(r"\[REDACTED(?:_[A-Z]+)?\]")

_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)*\.[A-Za-z]{2,}")
# 13-19 digits, optionally grouped by single spaces or dashes
_CARD_RE = re.compile(r"(?<![\w])\d(?:[ -]?\d){12,18}(?![\w])")
_PHONE_RE = re.compile(r"(?<![\w+])(?:\+\d{1,3}[ .-]?)?(?:\(\d{3}\)|\d{3})[ .-]?\d{3}[ .-]?\d{4}(?![\w])")

# Card before phone: a card number contains phone-shaped digit runs
DEFAULT_REDACTION_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (_EMAIL_RE, EMAIL_PLACEHOLDER),
    (_CARD_RE, CARD_PLACEHOLDER),
    (_PHONE_RE, PHONE_PLACEHOLDER),
)

DEFAULT_REDACT_KEYS: tuple[str, ...] = ("password", "secret", "token", "authorization", "api_key")

# Log every N processor failures after the first (Warning Fatigue prevention)
_ERROR_LOG_INTERVAL = 100

# How far past the cut a straddling placeholder can end
_PLACEHOLDER_SCAN_SLACK = 64


class Processor(Protocol):
    """A single step in the chain. Returns None to veto the signal."""

    @property
    def name(self) -> str: ...

    def process(self, signal: Signal) -> Signal | None: ...


# =============================================================================
# Signal rewriting helpers
# =============================================================================


def _rewrite_attributes(
    attributes: Attributes,
    rewrite: Callable[[str, AttributeValue], AttributeValue],
) -> tuple[Attributes, bool]:
    changed = False
    result: dict[str, AttributeValue] = {}
    for key, value in attributes.items():
        new_value = rewrite(key, value)
        if new_value != value:
            changed = True
        result[key] = new_value
    if not changed:
        return attributes, False
    return freeze_attributes(result), True


def _rewrite_signal(
    signal: Signal,
    rewrite_value: Callable[[str, AttributeValue], AttributeValue],
    rewrite_text: Callable[[str], str],
) -> Signal:
    """Apply rewrite_value to every attribute and rewrite_text to log bodies.

    Returns the original object when nothing changed.
    """
    attributes, changed = _rewrite_attributes(signal.attributes, rewrite_value)
    changes: dict[str, object] = {}
    if changed:
        changes["attributes"] = attributes

    if isinstance(signal, SpanData) and signal.events:
        events: list[SpanEvent] = []
        events_changed = False
        for event in signal.events:
            event_attributes, event_changed = _rewrite_attributes(event.attributes, rewrite_value)
            if event_changed:
                events_changed = True
                event = dataclasses.replace(event, attributes=event_attributes)
            events.append(event)
        if events_changed:
            changes["events"] = tuple(events)
    elif isinstance(signal, LogRecord):
        body = rewrite_text(signal.body)
        if body != signal.body:
            changes["body"] = body

    if not changes:
        return signal
    return dataclasses.replace(signal, **changes)  # type: ignore[arg-type]


def _map_strings(value: AttributeValue, fn: Callable[[str], str]) -> AttributeValue:
    if isinstance(value, str):
        return fn(value)
    if isinstance(value, tuple):
        return tuple(fn(item) for item in value)
    return value


# =============================================================================
# Built-in processors
# =============================================================================


class RouteExclusionProcessor:
    """Veto signals from excluded operations (health checks and the like).

    A span matches on its name or on any route attribute; metric points and
    log records match on route attributes only. Patterns use glob syntax
    (fnmatch, case-sensitive): '/health*' matches '/health' and '/healthz'.
    """

    def __init__(self, patterns: Iterable[str]) -> None:
        self._patterns = tuple(patterns)

    @property
    def name(self) -> str:
        return ProcessorName.ROUTE_EXCLUSION.value

    @property
    def patterns(self) -> tuple[str, ...]:
        return self._patterns

    def _matches(self, value: str) -> bool:
        return any(fnmatch.fnmatchcase(value, pattern) for pattern in self._patterns)

    def process(self, signal: Signal) -> Signal | None:
        if not self._patterns:
            return signal
        if isinstance(signal, SpanData) and self._matches(signal.name):
            return None
        for key in ROUTE_ATTRIBUTE_KEYS:
            value = signal.attributes.get(key)
            if isinstance(value, str) and self._matches(value):
                return None
        return signal


class EnrichmentProcessor:
    """Add static attributes to every signal; existing keys win."""

    def __init__(self, attributes: Mapping[str, object]) -> None:
        self._attributes = clean_attributes(attributes)

    @property
    def name(self) -> str:
        return ProcessorName.ENRICHMENT.value

    def process(self, signal: Signal) -> Signal | None:
        missing = {k: v for k, v in self._attributes.items() if k not in signal.attributes}
        if not missing:
            return signal
        merged = {**missing, **signal.attributes}
        return dataclasses.replace(signal, attributes=freeze_attributes(merged))  # type: ignore[arg-type]


def redact_text(text: str, patterns: Sequence[tuple[re.Pattern[str], str]] = DEFAULT_REDACTION_PATTERNS) -> str:
    """Replace every pattern match with its placeholder.

    Repeats until stable, so the result is a fixed point: redacting it again
    returns it unchanged. Each substitution removes digits or an '@' and
    adds neither, so the loop terminates.
    """
    while True:
        redacted = text
        for pattern, placeholder in patterns:
            redacted = pattern.sub(placeholder, redacted)
        if redacted == text:
            return redacted
        text = redacted


class RedactionProcessor:
    """Mask PII-shaped substrings and sensitive attribute keys.

    String attributes, string array members, span event attributes and log
    bodies are scanned. An attribute whose key contains one of redact_keys
    (case-insensitive) is replaced by '[REDACTED]' whatever its value.
    """

    def __init__(
        self,
        patterns: Sequence[tuple[re.Pattern[str], str]] = DEFAULT_REDACTION_PATTERNS,
        redact_keys: Iterable[str] = DEFAULT_REDACT_KEYS,
    ) -> None:
        self._patterns = tuple(patterns)
        self._redact_keys = tuple(key.lower() for key in redact_keys)

    @property
    def name(self) -> str:
        return ProcessorName.REDACTION.value

    def _redact(self, text: str) -> str:
        return redact_text(text, self._patterns)

    def _is_sensitive_key(self, key: str) -> bool:
        lowered = key.lower()
        return any(fragment in lowered for fragment in self._redact_keys)

    def _rewrite_value(self, key: str, value: AttributeValue) -> AttributeValue:
        if self._is_sensitive_key(key):
            return KEY_PLACEHOLDER
        return _map_strings(value, self._redact)

    def process(self, signal: Signal) -> Signal | None:
        return _rewrite_signal(signal, self._rewrite_value, self._redact)


def truncate_text(text: str, max_length: int) -> str:
    """Cut text to at most max_length characters.

    If the cut falls inside a redaction placeholder, the cut moves back to
    the placeholder's start so the placeholder is dropped whole, never
    clipped mid-token.
    """
    if len(text) <= max_length:
        return text
    cut = max_length
    for match in PLACEHOLDER_RE.finditer(text, 0, max_length + _PLACEHOLDER_SCAN_SLACK):
        if match.start() < cut < match.end():
            cut = match.start()
            break
        if match.start() >= cut:
            break
    return text[:cut]


class TruncationProcessor:
    """Cap the length of string attributes, string array members and log bodies."""

    def __init__(self, max_length: int) -> None:
        if max_length < 1:
            raise ValueError(f"max_length must be >= 1, got {max_length}")
        self._max_length = max_length

    @property
    def name(self) -> str:
        return ProcessorName.TRUNCATION.value

    @property
    def max_length(self) -> int:
        return self._max_length

    def _truncate(self, text: str) -> str:
        return truncate_text(text, self._max_length)

    def _rewrite_value(self, key: str, value: AttributeValue) -> AttributeValue:
        return _map_strings(value, self._truncate)

    def process(self, signal: Signal) -> Signal | None:
        return _rewrite_signal(signal, self._rewrite_value, self._truncate)


# =============================================================================
# Chain
# =============================================================================

_CANONICAL_ORDER: tuple[ProcessorName, ...] = (
    ProcessorName.ROUTE_EXCLUSION,
    ProcessorName.ENRICHMENT,
    ProcessorName.REDACTION,
    ProcessorName.TRUNCATION,
)


class ProcessorChain:
    """Runs processors in registration order with failure isolation.

    Example:
        chain = ProcessorChain([RedactionProcessor(), TruncationProcessor(256)])
        processed = chain.process(span_data)  # None if vetoed
    """

    def __init__(self, processors: Iterable[Processor] = (), stats: PipelineStats | None = None) -> None:
        self._processors = tuple(processors)
        self._stats = stats if stats is not None else PipelineStats()
        self._error_count = 0

    @property
    def processors(self) -> tuple[Processor, ...]:
        return self._processors

    def process(self, signal: Signal) -> Signal | None:
        """Run every processor; None means the signal was vetoed."""
        current: Signal = signal
        for processor in self._processors:
            try:
                result = processor.process(current)
            except Exception as e:
                self._record_error(processor, current, e)
                continue
            if result is None:
                self._stats.increment(signal_type_of(signal), SIGNALS_FILTERED)
                return None
            current = result
        return current

    def _record_error(self, processor: Processor, signal: Signal, error: Exception) -> None:
        self._stats.increment(signal_type_of(signal), PROCESSOR_ERRORS)
        self._error_count += 1
        if self._error_count == 1 or self._error_count % _ERROR_LOG_INTERVAL == 0:
            logger.warning(
                "Attribute processor failed - signal passed through unmodified",
                processor=processor.name,
                signal_type=signal_type_of(signal).value,
                error=str(error),
                error_type=type(error).__name__,
                errors_total=self._error_count,
            )

    @classmethod
    def from_settings(cls, settings: ProcessorSettings, stats: PipelineStats | None = None) -> ProcessorChain:
        """Build the enabled processors in canonical order.

        Truncation always runs after redaction, whatever order the
        processors are listed in.
        """
        enabled = set(settings.enabled)
        processors: list[Processor] = []
        for name in _CANONICAL_ORDER:
            if name not in enabled:
                continue
            if name == ProcessorName.ROUTE_EXCLUSION:
                processors.append(RouteExclusionProcessor(settings.excluded_routes))
            elif name == ProcessorName.ENRICHMENT:
                processors.append(EnrichmentProcessor(settings.extra_attributes))
            elif name == ProcessorName.REDACTION:
                processors.append(RedactionProcessor(redact_keys=settings.redact_keys))
            elif name == ProcessorName.TRUNCATION:
                processors.append(TruncationProcessor(settings.max_attribute_length))
        return cls(processors, stats=stats)


__all__ = [
    "CARD_PLACEHOLDER",
    "EMAIL_PLACEHOLDER",
    "KEY_PLACEHOLDER",
    "PHONE_PLACEHOLDER",
    "EnrichmentProcessor",
    "Processor",
    "ProcessorChain",
    "RedactionProcessor",
    "RouteExclusionProcessor",
    "TruncationProcessor",
    "redact_text",
    "truncate_text",
]
