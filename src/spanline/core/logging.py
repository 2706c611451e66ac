# src/spanline/core/logging.py
"""Structured logging configuration for spanline.

Uses structlog for the pipeline's own diagnostics. This is the side channel
through which export and processor failures are reported - it never feeds
back into the telemetry pipeline itself (see TelemetryLoggingHandler, which
ignores records from spanline's own loggers).

Architecture:
    spanline's module loggers (get_logger) are structlog BoundLoggers over
    stdlib loggers under "spanline", so where their output goes is decided
    by stdlib logging. configure_logging() installs a root handler whose
    ProcessorFormatter renders every record (spanline's and third-party)
    through structlog's processor chain as JSON or console lines.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import ProcessorFormatter

# Third-party loggers that are excessively verbose at DEBUG level.
# Silence them to WARNING even when spanline runs in DEBUG mode.
_NOISY_LOGGERS: tuple[str, ...] = (
    # httpx/httpcore - HTTP client internals, one line per export request
    "httpx",
    "httpcore",
    # grpc - channel state transitions
    "grpc",
    "grpc._channel",
)

# Prefix of every logger owned by this package
INTERNAL_LOGGER_PREFIX = "spanline"

# spanline's own loggers render into stdlib LogRecords: the event becomes
# the message, key/value pairs become record extras (see ExtraAdder below)
_LIBRARY_PROCESSORS: list[Any] = [
    structlog.stdlib.filter_by_level,
    structlog.stdlib.render_to_log_kwargs,
]

# Library default: nothing is emitted until the application configures logging
logging.getLogger(INTERNAL_LOGGER_PREFIX).addHandler(logging.NullHandler())


def _remove_internal_fields(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Remove internal structlog fields from output.

    ProcessorFormatter ALWAYS adds _record and _from_structlog when processing
    log records. These are internal bookkeeping and should not appear in output.
    """
    del event_dict["_record"]
    del event_dict["_from_structlog"]
    return event_dict


def configure_logging(
    *,
    json_output: bool = False,
    level: str = "INFO",
) -> None:
    """Configure structlog and stdlib logging for spanline.

    Applications that already configure stdlib logging do not need to call
    this; spanline's loggers then follow the application's configuration.
    Without either, spanline stays silent.

    Args:
        json_output: If True, output JSON. If False, human-readable.
        level: Log level (DEBUG, INFO, WARNING, ERROR).
    """
    log_level = getattr(logging, level.upper())

    # Shared processors applied to ALL log records (structlog and stdlib)
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        final_processors: list[Any] = [
            _remove_internal_fields,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        final_processors = [
            _remove_internal_fields,
            structlog.dev.ConsoleRenderer(colors=False),
        ]

    structlog.configure(
        processors=[*shared_processors, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Disable caching to allow reconfiguration in tests
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        ProcessorFormatter(
            processors=final_processors,
            foreign_pre_chain=[structlog.stdlib.ExtraAdder(), *shared_processors],
        )
    )

    root = logging.getLogger()
    root.handlers = [h for h in root.handlers if getattr(h, "spanline_bridge", False)]
    root.addHandler(handler)
    root.setLevel(log_level)

    # Never make noisy loggers less restrictive than the configured root level.
    noisy_level = max(log_level, logging.WARNING)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(noisy_level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a bound logger for a spanline module.

    Bound to the stdlib logger of the same name, independent of structlog's
    global configuration. Output follows the application's logging handlers.

    Args:
        name: Logger name (typically __name__).

    Returns:
        Bound structlog logger.
    """
    logger: structlog.stdlib.BoundLogger = structlog.wrap_logger(
        logging.getLogger(name),
        processors=_LIBRARY_PROCESSORS,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
    )
    return logger


def is_internal_logger(name: str) -> bool:
    """True if a stdlib logger name belongs to spanline or its transports."""
    return any(name == prefix or name.startswith(prefix + ".") for prefix in (INTERNAL_LOGGER_PREFIX, *_NOISY_LOGGERS))
