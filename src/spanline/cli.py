# src/spanline/cli.py
"""Spanline Command Line Interface.

Diagnostic entry point for the spanline telemetry pipeline:

    spanline config telemetry.yaml   # validate and print resolved settings
    spanline ping telemetry.yaml     # send one span, metric and log record
"""

from __future__ import annotations

import json
from pathlib import Path

import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from spanline import __version__
from spanline.contracts.enums import ShutdownResult
from spanline.contracts.errors import ConfigurationError
from spanline.core.config import TelemetrySettings, load_settings, resolve_config, settings_from_env

__all__ = ["app"]

app = typer.Typer(
    name="spanline",
    help="Spanline: in-process telemetry pipeline diagnostics.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"spanline version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from .env file.

    Raises:
        typer.Exit: If explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(
                f"Error: .env file not found: {env_file}",
                fg=typer.colors.RED,
                err=True,
            )
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)

    # load_dotenv searches current dir and parents by default
    return load_dotenv(override=False)  # Don't override existing env vars


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(
        False,
        "--no-dotenv",
        help="Skip loading .env file.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
        exists=False,  # We handle existence check ourselves for better error message
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """Spanline: in-process telemetry pipeline diagnostics."""
    from spanline.core.logging import configure_logging

    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "WARNING")

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho(
            "Warning: --env-file ignored because --no-dotenv is set.",
            fg=typer.colors.YELLOW,
            err=True,
        )


def _load(settings_path: Path | None) -> TelemetrySettings:
    """Load settings from a YAML file, or OTEL_* variables when no file is given.

    Raises:
        typer.Exit: On any configuration error (after printing it).
    """
    try:
        if settings_path is None:
            return settings_from_env()
        return load_settings(settings_path)
    except (YamlParserError, YamlScannerError) as e:
        typer.echo(f"YAML syntax error in {settings_path}: {e.problem}", err=True)
        raise typer.Exit(1) from None
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings_path}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None
    except ConfigurationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(1) from None


@app.command()
def config(
    settings_path: Path | None = typer.Argument(
        None,
        help="Path to telemetry YAML (default: OTEL_* environment variables).",
    ),
) -> None:
    """Validate configuration and print the resolved settings (secrets masked)."""
    settings = _load(settings_path)
    typer.echo(json.dumps(resolve_config(settings), indent=2, sort_keys=True))


@app.command()
def ping(
    settings_path: Path | None = typer.Argument(
        None,
        help="Path to telemetry YAML (default: OTEL_* environment variables).",
    ),
    timeout: float = typer.Option(
        10.0,
        "--timeout",
        "-t",
        min=0.0,
        help="Shutdown deadline in seconds.",
    ),
) -> None:
    """Send one span, metric point and log record, then shut down and report.

    Exit code 1 when the shutdown timed out or a batch was dropped.
    """
    from spanline.telemetry.provider import TelemetryProvider

    settings = _load(settings_path)
    try:
        provider = TelemetryProvider(settings, start_metric_reader=False)
    except ConfigurationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(1) from None

    tracer = provider.get_tracer("spanline.cli", __version__)
    meter = provider.get_meter("spanline.cli", __version__)
    telemetry_logger = provider.get_logger("spanline.cli", __version__)

    with tracer.start_as_current_span("spanline.ping") as span:
        span.set_attribute("ping.source", "cli")
        meter.record_counter("spanline.ping.count", 1)
        telemetry_logger.info("spanline ping")

    report = provider.shutdown_report(timeout)
    counters = provider.stats.snapshot()
    batches_dropped = sum(values.get("batches_dropped", 0) for values in counters.values())

    typer.echo(
        json.dumps(
            {
                "exporter": provider.exporter.name if provider.exporter is not None else None,
                "endpoint": settings.exporter.effective_endpoint,
                "result": report.result.value,
                "dropped_on_shutdown": report.dropped_on_shutdown,
                "elapsed_seconds": round(report.elapsed_seconds, 3),
                "counters": counters,
            },
            indent=2,
            sort_keys=True,
        )
    )
    if report.result != ShutdownResult.DRAINED or batches_dropped:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
