"""Preflight checks for the telemetry configuration (validator and dry-run inspector)."""
