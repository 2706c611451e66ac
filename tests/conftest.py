# tests/conftest.py
"""Shared test fixtures and configuration.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/

Global Provider Isolation:
    spanline.init() may only run once per process. The autouse fixture below
    shuts down and forgets the global provider after every test, so each
    test starts from an uninitialized registry.

Logging Isolation:
    configure_logging() (called by every CLI invocation) replaces the root
    handlers. They are restored after each test so a handler bound to a
    closed CliRunner stream never receives later records.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator

import pytest
import structlog
from hypothesis import Phase, Verbosity, settings

from spanline.telemetry import provider as provider_module

# =============================================================================
# Hypothesis Profiles
# =============================================================================

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Global Registry Cleanup (Thread Leak Prevention)
# =============================================================================


@pytest.fixture(autouse=True)
def _reset_global_provider() -> Iterator[None]:
    """Shut down any provider a test initialized through spanline.init().

    The provider starts scheduler and metric reader threads and installs
    atexit/SIGTERM hooks. Without this fixture a test that forgets to call
    shutdown() would leak them into every later test.
    """
    yield
    provider_module._reset_for_testing(timeout=1.0)


@pytest.fixture(autouse=True)
def _restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
    structlog.reset_defaults()
