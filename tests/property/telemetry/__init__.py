# tests/property/telemetry/__init__.py
"""Property tests for the telemetry pipeline."""
