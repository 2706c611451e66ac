# tests/unit/telemetry/test_processors.py
"""Unit tests for the attribute processor chain.

Tests cover:
- Route exclusion by span name and route attributes
- Enrichment never overwrites
- Redaction of emails, phone numbers, card numbers and sensitive keys
- Redaction idempotence (no double-masking)
- Truncation never clips a placeholder
- Chain failure isolation and veto counting
- Canonical order from settings
"""

import dataclasses
from typing import Any

import pytest
from hypothesis import given
from hypothesis import strategies as st

from spanline.contracts.enums import ProcessorName, SignalType
from spanline.contracts.signals import Signal, SpanEvent
from spanline.core.config import ProcessorSettings
from spanline.telemetry.processors import (
    CARD_PLACEHOLDER,
    EMAIL_PLACEHOLDER,
    KEY_PLACEHOLDER,
    PHONE_PLACEHOLDER,
    EnrichmentProcessor,
    ProcessorChain,
    RedactionProcessor,
    RouteExclusionProcessor,
    TruncationProcessor,
    redact_text,
    truncate_text,
)
from spanline.telemetry.stats import PROCESSOR_ERRORS, SIGNALS_FILTERED, PipelineStats
from tests.telemetry.fixtures import make_log, make_metric, make_span

# =============================================================================
# Route exclusion
# =============================================================================


class TestRouteExclusion:
    @pytest.fixture
    def processor(self) -> RouteExclusionProcessor:
        return RouteExclusionProcessor(["/health*", "GET /ready"])

    def test_span_name_match_vetoes(self, processor: RouteExclusionProcessor) -> None:
        assert processor.process(make_span("/healthz")) is None
        assert processor.process(make_span("GET /ready")) is None

    def test_route_attribute_match_vetoes(self, processor: RouteExclusionProcessor) -> None:
        assert processor.process(make_span("GET", attributes={"http.route": "/health/live"})) is None
        assert processor.process(make_log(attributes={"url.path": "/health"})) is None
        assert processor.process(make_metric(attributes={"http.target": "/healthcheck"})) is None

    def test_non_matching_passes_unchanged(self, processor: RouteExclusionProcessor) -> None:
        span = make_span("GET /orders", attributes={"http.route": "/orders"})
        assert processor.process(span) is span

    def test_log_body_is_not_a_route(self, processor: RouteExclusionProcessor) -> None:
        log = make_log("/health ok")
        assert processor.process(log) is log

    def test_no_patterns_passes_everything(self) -> None:
        span = make_span("/health")
        assert RouteExclusionProcessor([]).process(span) is span


# =============================================================================
# Enrichment
# =============================================================================


class TestEnrichment:
    def test_adds_missing_attributes(self) -> None:
        processor = EnrichmentProcessor({"team": "payments", "region": "eu"})
        result = processor.process(make_span(attributes={"region": "us"}))

        assert result is not None
        assert dict(result.attributes) == {"team": "payments", "region": "us"}

    def test_nothing_missing_returns_same_object(self) -> None:
        span = make_span(attributes={"team": "x"})
        assert EnrichmentProcessor({"team": "payments"}).process(span) is span


# =============================================================================
# Redaction
# =============================================================================


class TestRedactText:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("contact alice@example.com now", f"contact {EMAIL_PLACEHOLDER} now"),
            ("a.b+tag@mail.co.uk", EMAIL_PLACEHOLDER),
            ("call 555-123-4567", f"call {PHONE_PLACEHOLDER}"),
            ("call (555) 123-4567", f"call {PHONE_PLACEHOLDER}"),
            ("intl +44 555 123 4567", f"intl {PHONE_PLACEHOLDER}"),
            ("card 4111 1111 1111 1111 ok", f"card {CARD_PLACEHOLDER} ok"),
            ("card 4111-1111-1111-1111", f"card {CARD_PLACEHOLDER}"),
            ("card 4111111111111111", f"card {CARD_PLACEHOLDER}"),
            ("order 12345 shipped", "order 12345 shipped"),
            ("", ""),
        ],
    )
    def test_patterns(self, text: str, expected: str) -> None:
        assert redact_text(text) == expected

    def test_already_redacted_text_unchanged(self) -> None:
        text = f"user {EMAIL_PLACEHOLDER} paid with {CARD_PLACEHOLDER}"
        assert redact_text(text) == text

    @given(st.text(alphabet=st.sampled_from("ab1234567890@.-+ ()x"), max_size=80))
    def test_idempotent(self, text: str) -> None:
        """Redacting already-redacted text yields the same text."""
        once = redact_text(text)
        assert redact_text(once) == once

    @given(
        local=st.from_regex(r"[a-z]{1,10}", fullmatch=True),
        domain=st.from_regex(r"[a-z]{1,10}", fullmatch=True),
        prefix=st.text(alphabet="xyz ", max_size=10),
    )
    def test_emails_never_survive(self, local: str, domain: str, prefix: str) -> None:
        result = redact_text(f"{prefix} {local}@{domain}.com")
        assert "@" not in result


class TestRedactionProcessor:
    @pytest.fixture
    def processor(self) -> RedactionProcessor:
        return RedactionProcessor()

    def test_string_attributes_redacted(self, processor: RedactionProcessor) -> None:
        result = processor.process(make_span(attributes={"user": "bob@example.com", "count": 3}))

        assert result is not None
        assert dict(result.attributes) == {"user": EMAIL_PLACEHOLDER, "count": 3}

    def test_string_array_members_redacted(self, processor: RedactionProcessor) -> None:
        result = processor.process(make_span(attributes={"cc": ["a@example.com", "plain"]}))
        assert result is not None
        assert result.attributes["cc"] == (EMAIL_PLACEHOLDER, "plain")

    @pytest.mark.parametrize("key", ["password", "db.password", "X-Api_Key", "Authorization", "refresh_token"])
    def test_sensitive_keys_masked_whatever_the_value(self, processor: RedactionProcessor, key: str) -> None:
        result = processor.process(make_span(attributes={key: 12345}))
        assert result is not None
        assert result.attributes[key] == KEY_PLACEHOLDER

    def test_log_body_redacted(self, processor: RedactionProcessor) -> None:
        result = processor.process(make_log("reset sent to eve@example.com"))
        assert result is not None
        assert result.body == f"reset sent to {EMAIL_PLACEHOLDER}"  # type: ignore[union-attr]

    def test_span_event_attributes_redacted(self, processor: RedactionProcessor) -> None:
        event = SpanEvent(name="login", timestamp=1, attributes={"email": "eve@example.com"})
        span = dataclasses.replace(make_span(), events=(event,))

        result = processor.process(span)
        assert result is not None
        assert result.events[0].attributes["email"] == EMAIL_PLACEHOLDER  # type: ignore[union-attr]

    def test_clean_signal_returned_unchanged(self, processor: RedactionProcessor) -> None:
        span = make_span(attributes={"route": "/orders"})
        assert processor.process(span) is span


# =============================================================================
# Truncation
# =============================================================================


class TestTruncateText:
    def test_short_text_unchanged(self) -> None:
        assert truncate_text("abc", 5) == "abc"

    def test_long_text_cut(self) -> None:
        assert truncate_text("x" * 10_000, 256) == "x" * 256

    def test_placeholder_before_cut_preserved(self) -> None:
        text = "a" * 10 + EMAIL_PLACEHOLDER + "b" * 10_000
        result = truncate_text(text, 256)

        assert len(result) == 256
        assert result.startswith("a" * 10 + EMAIL_PLACEHOLDER)

    def test_straddling_placeholder_dropped_whole(self) -> None:
        text = "a" * 250 + EMAIL_PLACEHOLDER + "b" * 100
        result = truncate_text(text, 256)

        assert result == "a" * 250
        assert "[REDACTED" not in result

    @given(
        prefix=st.integers(min_value=0, max_value=300),
        max_length=st.integers(min_value=1, max_value=300),
        placeholder=st.sampled_from([EMAIL_PLACEHOLDER, PHONE_PLACEHOLDER, CARD_PLACEHOLDER, KEY_PLACEHOLDER]),
    )
    def test_never_clips_a_placeholder(self, prefix: int, max_length: int, placeholder: str) -> None:
        text = "a" * prefix + placeholder + "b" * 50
        result = truncate_text(text, max_length)

        assert len(result) <= max_length
        if "[" in result:
            assert placeholder in result


class TestTruncationProcessor:
    def test_invalid_max_length(self) -> None:
        with pytest.raises(ValueError, match="max_length"):
            TruncationProcessor(0)

    def test_truncates_attributes_and_body(self) -> None:
        processor = TruncationProcessor(4)
        span = processor.process(make_span(attributes={"s": "abcdefgh", "n": 123456789, "arr": ["abcdef"]}))
        log = processor.process(make_log("abcdefgh"))

        assert span is not None
        assert dict(span.attributes) == {"s": "abcd", "n": 123456789, "arr": ("abcd",)}
        assert log is not None
        assert log.body == "abcd"  # type: ignore[union-attr]


# =============================================================================
# Chain
# =============================================================================


class _Exploding:
    name = "exploding"

    def process(self, signal: Signal) -> Signal | None:
        raise RuntimeError("processor bug")


class _Tagging:
    name = "tagging"

    def __init__(self, tag: str) -> None:
        self._tag = tag

    def process(self, signal: Signal) -> Signal | None:
        return EnrichmentProcessor({self._tag: True}).process(signal)


class TestProcessorChain:
    def test_empty_chain_passes_through(self) -> None:
        span = make_span()
        assert ProcessorChain([]).process(span) is span

    def test_veto_stops_chain_and_counts(self) -> None:
        stats = PipelineStats()
        chain = ProcessorChain([RouteExclusionProcessor(["/health"]), _Exploding()], stats)

        assert chain.process(make_span("/health")) is None
        assert stats.get(SignalType.TRACES, SIGNALS_FILTERED) == 1
        assert stats.get(SignalType.TRACES, PROCESSOR_ERRORS) == 0

    def test_failing_processor_is_skipped(self) -> None:
        """A raising processor passes its input on unmodified and is counted."""
        stats = PipelineStats()
        chain = ProcessorChain([_Tagging("before"), _Exploding(), _Tagging("after")], stats)

        result = chain.process(make_log("x"))

        assert result is not None
        assert dict(result.attributes) == {"before": True, "after": True}
        assert stats.get(SignalType.LOGS, PROCESSOR_ERRORS) == 1

    def test_failures_are_never_raised(self) -> None:
        chain = ProcessorChain([_Exploding()] * 3)
        span = make_span()
        for _ in range(250):
            assert chain.process(span) is span

    def test_from_settings_uses_canonical_order(self) -> None:
        settings = ProcessorSettings(
            enabled=[ProcessorName.TRUNCATION, ProcessorName.REDACTION, ProcessorName.ENRICHMENT],
            max_attribute_length=20,
            extra_attributes={"team": "payments"},
        )
        chain = ProcessorChain.from_settings(settings)

        assert [p.name for p in chain.processors] == ["enrichment", "redaction", "truncation"]

    def test_redaction_then_truncation_keeps_placeholder(self) -> None:
        """A 10,000 character attribute with PII is redacted and cut to the limit."""
        settings = ProcessorSettings(
            enabled=[ProcessorName.REDACTION, ProcessorName.TRUNCATION],
            max_attribute_length=256,
        )
        chain = ProcessorChain.from_settings(settings)
        value = "user alice@example.com said: " + "z" * 10_000

        result = chain.process(make_span(attributes={"message": value}))

        assert result is not None
        message: Any = result.attributes["message"]
        assert len(message) == 256
        assert message.startswith(f"user {EMAIL_PLACEHOLDER} said: ")

    def test_default_settings_chain(self) -> None:
        chain = ProcessorChain.from_settings(ProcessorSettings())
        assert [p.name for p in chain.processors] == ["route_exclusion", "redaction", "truncation"]
