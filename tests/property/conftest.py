# tests/property/conftest.py
"""Shared Hypothesis strategies for property-based tests.

Strategy Categories:
- Identifiers (trace ids, span ids)
- Baggage (percent-encodable keys and values)
- Attribute values (the OTLP attribute union)

Usage:
    from tests.property.conftest import trace_contexts

    @given(ctx=trace_contexts())
    def test_round_trip(ctx: TraceContext) -> None:
        ...
"""

from __future__ import annotations

from hypothesis import strategies as st

from spanline.contracts.context import TraceContext

# =============================================================================
# Identifiers
# =============================================================================

trace_ids = st.integers(min_value=1, max_value=2**128 - 1)
span_ids = st.integers(min_value=1, max_value=2**64 - 1)

# =============================================================================
# Baggage
# =============================================================================

# Surrogates cannot be UTF-8 encoded, so they never reach a header
_header_text = st.text(
    alphabet=st.characters(blacklist_categories=("Cs",)),
    min_size=1,
    max_size=12,
)

baggage = st.dictionaries(
    keys=_header_text.filter(lambda key: key.strip() != ""),
    values=_header_text,
    max_size=5,
)


@st.composite
def trace_contexts(draw: st.DrawFn) -> TraceContext:
    return TraceContext(
        trace_id=draw(trace_ids),
        span_id=draw(span_ids),
        sampled=draw(st.booleans()),
        baggage=draw(baggage),
    )


# =============================================================================
# Attribute values
# =============================================================================

attribute_values = st.one_of(
    st.text(max_size=20),
    st.booleans(),
    st.integers(min_value=-(2**63), max_value=2**63 - 1),
    st.floats(allow_nan=False, allow_infinity=False),
    st.lists(st.text(max_size=8), max_size=4).map(tuple),
)

attribute_dicts = st.dictionaries(
    keys=st.text(min_size=1, max_size=10),
    values=attribute_values,
    max_size=6,
)
