"""
Observability bootstrap for the demo services.

Turns OTEL_* / PYROSCOPE_* environment variables into running pipelines for:
- Traces (OTLP/HTTP, batched or immediate flush)
- Metrics (OTLP/HTTP, periodic export)
- Logs (OTLP/HTTP, via the structured logger facade)
- CPU profiles (Pyroscope)

Targets either a local collector or Grafana Cloud.
"""

from telemetry.config import (
    TelemetryConfig,
    ProfilingAuth,
    SpanFlushMode,
    resolve_config,
    normalize_endpoint,
    signal_url,
    parse_headers,
    parse_resource_attributes,
    is_cloud_endpoint,
)
from telemetry.gate import Capabilities, CapabilityDecision, decide
from telemetry.manager import (
    METRICS_EXPORT_INTERVAL_MS,
    TelemetryContext,
    init_telemetry,
    bootstrap,
)
from telemetry.logger import ServiceLogger, configure_logging, get_logger

__all__ = [
    # Configuration
    "TelemetryConfig",
    "ProfilingAuth",
    "SpanFlushMode",
    "resolve_config",
    "normalize_endpoint",
    "signal_url",
    "parse_headers",
    "parse_resource_attributes",
    "is_cloud_endpoint",
    # Capability gate
    "Capabilities",
    "CapabilityDecision",
    "decide",
    # Pipelines
    "METRICS_EXPORT_INTERVAL_MS",
    "TelemetryContext",
    "init_telemetry",
    "bootstrap",
    # Logging
    "ServiceLogger",
    "configure_logging",
    "get_logger",
]
