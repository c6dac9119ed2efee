"""
Dry-run inspection of the telemetry configuration.

Shows what the services would resolve, with secrets masked, plus heuristic
warnings for common Grafana Cloud mistakes. Never touches the network.
"""

import base64
import binascii
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from telemetry.config import DEFAULT_OTLP_ENDPOINT, TelemetryConfig, find_header, is_cloud_endpoint
from telemetry.gate import (
    SUPPORTED_PROTOCOLS,
    decide_profiling,
    is_valid_url,
    profiling_cloud_problems,
)

NOT_SET = "(not set)"

# Grafana Cloud basic auth decodes to "<instance id>:<api key>"
_CLOUD_AUTH_PATTERN = re.compile(r"^\d+:.+$")

QUICK_TEST_STEPS = [
    "Ensure services are running: backend (port 3001) and gateway (port 3000)",
    "Generate traffic: POST and GET http://localhost:3000/api/items",
    "In Grafana Cloud: Explore -> Tempo (traces), Loki (logs), Pyroscope (profiles)",
    'Set time range to "Last 15 minutes" or "Last 1 hour"',
    'For traces, try TraceQL: { resource.service.name = "api-gateway" }',
]


@dataclass
class InspectionSection:
    title: str
    lines: List[Tuple[str, str]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)


@dataclass
class InspectionReport:
    sections: List[InspectionSection]
    steps: List[str] = field(default_factory=lambda: list(QUICK_TEST_STEPS))

    @property
    def warnings(self) -> List[str]:
        return [w for section in self.sections for w in section.warnings]


def mask_secret(value: Optional[str]) -> str:
    return "***" if value else NOT_SET


def preview_headers(config: TelemetryConfig, width: int = 30) -> str:
    """Header names with value prefixes, for display."""
    if not config.headers:
        return NOT_SET
    text = ",".join(f"{key}={value}" for key, value in config.headers.items())
    if len(text) > width:
        return f"{text[:width]}..."
    return text


def check_basic_auth(authorization: str) -> Tuple[bool, str]:
    """Check an Authorization header value for the user:apiKey Basic format.

    Returns (looks_ok, message).
    """
    match = re.match(r"Basic\s*(\S+)", authorization)
    if not match:
        return False, "Authorization is not Basic auth - expected 'Basic <base64 user:apiKey>'"
    try:
        decoded = base64.b64decode(match.group(1), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return False, "Could not decode Base64 - check formatting (no spaces, correct padding)"
    if _CLOUD_AUTH_PATTERN.match(decoded):
        return True, "Auth format looks correct (user:apiKey)"
    return False, 'Base64 decoded but format unexpected - expect "user:apiKey"'


def inspect_otlp(config: TelemetryConfig) -> InspectionSection:
    section = InspectionSection("OTLP (Traces, Metrics, Logs)")
    section.lines = [
        (
            "OTEL_EXPORTER_OTLP_ENDPOINT",
            config.endpoint or f"(not set - will use {DEFAULT_OTLP_ENDPOINT})",
        ),
        ("Traces URL", config.traces_endpoint),
        ("OTEL_EXPORTER_OTLP_PROTOCOL", config.protocol or NOT_SET),
        ("OTEL_EXPORTER_OTLP_HEADERS", preview_headers(config)),
        ("OTEL_SPAN_PROCESSOR", config.span_flush_mode.value),
        ("OTEL_METRICS_ENABLED", str(config.metrics_enabled).lower()),
        ("OTEL_LOGS_ENABLED", str(config.logs_enabled).lower()),
    ]

    if config.protocol and config.protocol.lower() not in SUPPORTED_PROTOCOLS:
        section.warnings.append(
            f"OTEL_EXPORTER_OTLP_PROTOCOL={config.protocol} is ignored; exporters use http/protobuf"
        )

    if config.endpoint and not is_valid_url(config.endpoint):
        section.warnings.append(f"OTEL_EXPORTER_OTLP_ENDPOINT is not a valid URL: {config.endpoint}")

    if not is_cloud_endpoint(config.endpoint):
        return section

    if config.endpoint and not config.endpoint.startswith("https://"):
        section.warnings.append("Grafana Cloud endpoint should start with https://")

    authorization = find_header(config.headers, "Authorization")
    if not authorization:
        section.warnings.append(
            "Grafana Cloud requires OTEL_EXPORTER_OTLP_HEADERS with Authorization"
        )
        return section

    looks_ok, message = check_basic_auth(authorization)
    if looks_ok:
        section.notes.append(message)
    else:
        section.warnings.append(message)
    return section


def inspect_profiling(config: TelemetryConfig) -> InspectionSection:
    section = InspectionSection("Pyroscope (Profiles)")
    auth = config.profiling_auth
    section.lines = [
        ("PYROSCOPE_URL", config.profiling_endpoint or NOT_SET),
        ("PYROSCOPE_BASIC_AUTH_USER", mask_secret(auth.user if auth else None)),
        ("PYROSCOPE_BASIC_AUTH_PASSWORD", mask_secret(auth.password if auth else None)),
    ]

    decision = decide_profiling(config)
    state = "enabled" if decision.enabled else "disabled"
    section.lines.append(("Profiling", f"{state} ({decision.reason})"))
    section.warnings.extend(decision.warnings)
    for problem in profiling_cloud_problems(config):
        if problem not in section.warnings:
            section.warnings.append(problem)
    return section


def inspect_config(config: TelemetryConfig) -> InspectionReport:
    """Build the dry-run report for config."""
    return InspectionReport(sections=[inspect_otlp(config), inspect_profiling(config)])


def render_report(report: InspectionReport) -> List[str]:
    """Render the report as printable lines."""
    lines: List[str] = []
    for section in report.sections:
        lines.append(f"=== {section.title} ===")
        for label, value in section.lines:
            lines.append(f"{label}: {value}")
        for note in section.notes:
            lines.append(f"  ✓ {note}")
        for warning in section.warnings:
            lines.append(f"  ⚠️  WARNING: {warning}")
        lines.append("")

    lines.append("=== Quick Test ===")
    for number, step in enumerate(report.steps, start=1):
        lines.append(f"{number}. {step}")
    return lines
