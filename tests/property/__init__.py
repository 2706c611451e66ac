# tests/property/__init__.py
"""Property-based tests for spanline.

Property-based testing validates invariants that must hold for ALL inputs,
not just the specific examples we think of. For a telemetry pipeline the
invariants that matter most are accounting (every signal is exported or
counted as dropped) and ordering.

Test categories:
- telemetry/: pipeline accounting, FIFO delivery, context propagation
"""
