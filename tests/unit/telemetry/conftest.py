# tests/unit/telemetry/conftest.py
"""Shared fixtures for telemetry unit tests."""

import itertools
from collections.abc import Iterator

import pytest

from spanline.core.resource import Resource
from spanline.telemetry.provider import TelemetryProvider
from spanline.telemetry.retry import RetryConfig
from tests.telemetry.fixtures import InMemoryExporter, fast_settings


@pytest.fixture
def exporter() -> InMemoryExporter:
    return InMemoryExporter()


@pytest.fixture
def provider(exporter: InMemoryExporter) -> Iterator[TelemetryProvider]:
    """A running provider with an in-memory exporter and a ticking clock.

    The clock advances 1µs per reading, so start/end times are strictly
    increasing and deterministic. The metric reader thread is off; tests
    call collect_metrics() or force_flush() explicitly.
    """
    ticks = itertools.count(1_000_000_000, 1_000)
    provider = TelemetryProvider(
        fast_settings(),
        exporter=exporter,
        resource=Resource({"service.name": "test-service"}),
        clock=lambda: next(ticks),
        retry_config=RetryConfig(max_attempts=2, base_delay=0.001, max_delay=0.001, jitter=0.0),
        start_metric_reader=False,
    )
    yield provider
    provider.shutdown(timeout=1.0)
