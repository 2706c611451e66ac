"""Default value registries for runtime configuration.

INTERNAL_DEFAULTS: Values hardcoded in runtime code, NOT exposed in Settings.
These are implementation details that users shouldn't need to configure.
They are collected here so the values in use are visible in one place and
stay out of the settings models.
"""

from typing import Final

INTERNAL_DEFAULTS: Final[dict[str, dict[str, int | float | bool | str]]] = {
    "buffer": {
        # Log aggregate overflow warnings every N drops (Warning Fatigue prevention)
        "log_interval": 100,
    },
    "scheduler": {
        # Upper bound on how long a worker waits for its in-flight slot before
        # re-checking for shutdown
        "slot_poll_seconds": 0.05,
        # Join timeout applied to a worker when no shutdown deadline is left
        "min_join_seconds": 0.01,
    },
    "retry": {
        # Jitter added to exponential backoff (seconds)
        "jitter": 0.2,
    },
    "metrics": {
        # Attribute sets aggregated per instrument per interval; further sets
        # are folded into one overflow stream
        "cardinality_limit": 2000,
    },
    "oauth2": {
        # Refresh tokens this many seconds before they expire
        "expiry_skew_seconds": 30.0,
        # Lifetime assumed when the token endpoint omits expires_in
        "default_expires_in": 300,
    },
    "http": {
        # User-Agent sent by the OTLP/HTTP exporter
        "user_agent": "spanline-otlp-exporter",
    },
}

# Default explicit histogram bucket boundaries (OpenTelemetry SDK defaults)
DEFAULT_HISTOGRAM_BOUNDARIES: Final[tuple[float, ...]] = (
    0.0,
    5.0,
    10.0,
    25.0,
    50.0,
    75.0,
    100.0,
    250.0,
    500.0,
    750.0,
    1000.0,
    2500.0,
    5000.0,
    7500.0,
    10000.0,
)
