"""
Capability gate: decides which telemetry subsystems run for a configuration.

Decisions are derived deterministically from a TelemetryConfig. Cloud-specific
problems (missing credentials for the hosted backend) are attached as warnings
here, so services keep running degraded; the preflight validator turns the
same problems into hard failures.
"""

import logging
from dataclasses import dataclass
from typing import Iterator, List, Tuple

from pydantic import AnyHttpUrl, TypeAdapter, ValidationError

from telemetry.config import (
    DEFAULT_OTLP_ENDPOINT,
    TelemetryConfig,
    find_header,
    is_cloud_endpoint,
)

logger = logging.getLogger(__name__)

DISABLED_VALUES = ("false", "disabled")
SUPPORTED_PROTOCOLS = ("http/protobuf", "http/json")

_url_adapter = TypeAdapter(AnyHttpUrl)


@dataclass(frozen=True)
class CapabilityDecision:
    """Whether a subsystem is enabled, and why."""

    enabled: bool
    reason: str
    warnings: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Capabilities:
    """Decisions for every telemetry subsystem."""

    tracing: CapabilityDecision
    metrics: CapabilityDecision
    logs: CapabilityDecision
    profiling: CapabilityDecision

    def items(self) -> Iterator[Tuple[str, CapabilityDecision]]:
        yield "tracing", self.tracing
        yield "metrics", self.metrics
        yield "logs", self.logs
        yield "profiling", self.profiling


def is_valid_url(url: str) -> bool:
    """Check that url is an absolute http(s) URL."""
    try:
        _url_adapter.validate_python(url)
    except ValidationError:
        return False
    return True


def otlp_cloud_problems(config: TelemetryConfig) -> List[str]:
    """Problems with the OTLP settings when the endpoint is the hosted backend."""
    if not is_cloud_endpoint(config.endpoint):
        return []
    if not find_header(config.headers, "Authorization"):
        return [
            "OTEL_EXPORTER_OTLP_HEADERS with an Authorization header is required "
            "for Grafana Cloud"
        ]
    return []


def profiling_cloud_problems(config: TelemetryConfig) -> List[str]:
    """Problems with the profiling settings when the URL is the hosted backend."""
    if not is_cloud_endpoint(config.profiling_endpoint):
        return []
    if config.profiling_auth is None:
        return [
            "PYROSCOPE_BASIC_AUTH_USER and PYROSCOPE_BASIC_AUTH_PASSWORD are required "
            "for Grafana Cloud"
        ]
    return []


def decide_tracing(config: TelemetryConfig) -> CapabilityDecision:
    warnings = otlp_cloud_problems(config)
    if config.endpoint and not is_valid_url(config.endpoint):
        warnings.append(f"Invalid OTEL_EXPORTER_OTLP_ENDPOINT: {config.endpoint}")
    if config.protocol and config.protocol.lower() not in SUPPORTED_PROTOCOLS:
        warnings.append(
            f"OTEL_EXPORTER_OTLP_PROTOCOL={config.protocol} is not supported; "
            "exporting with http/protobuf"
        )

    if config.endpoint:
        reason = f"Exporting to {config.traces_endpoint}"
    else:
        reason = f"No endpoint configured, using local collector {DEFAULT_OTLP_ENDPOINT}"
    return CapabilityDecision(enabled=True, reason=reason, warnings=tuple(warnings))


def decide_metrics(config: TelemetryConfig) -> CapabilityDecision:
    if not config.metrics_enabled:
        return CapabilityDecision(enabled=False, reason="OTEL_METRICS_ENABLED=false")
    return CapabilityDecision(enabled=True, reason=f"Exporting to {config.metrics_endpoint}")


def decide_logs(config: TelemetryConfig) -> CapabilityDecision:
    if not config.logs_enabled:
        return CapabilityDecision(enabled=False, reason="OTEL_LOGS_ENABLED=false")
    return CapabilityDecision(enabled=True, reason=f"Exporting to {config.logs_endpoint}")


def decide_profiling(config: TelemetryConfig) -> CapabilityDecision:
    url = config.profiling_endpoint
    if not url or url.lower() in DISABLED_VALUES:
        return CapabilityDecision(enabled=False, reason="PYROSCOPE_URL not set or disabled")
    if not is_valid_url(url):
        reason = f"Invalid PYROSCOPE_URL: {url}"
        return CapabilityDecision(enabled=False, reason=reason, warnings=(reason,))
    return CapabilityDecision(
        enabled=True,
        reason=f"Configured: {url}",
        warnings=tuple(profiling_cloud_problems(config)),
    )


def decide(config: TelemetryConfig) -> Capabilities:
    """Decide which subsystems are enabled for config."""
    return Capabilities(
        tracing=decide_tracing(config),
        metrics=decide_metrics(config),
        logs=decide_logs(config),
        profiling=decide_profiling(config),
    )
