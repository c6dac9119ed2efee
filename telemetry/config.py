"""
Telemetry configuration resolution.

Reads the standard OTEL_* and PYROSCOPE_* environment variables (with a `.env`
file as a lower-priority source) and produces an immutable TelemetryConfig.

The header and resource-attribute parsers here are the only parsers in the
project: the pipeline initializer and the preflight validator both consume the
resolved TelemetryConfig, so they always agree on what was configured.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Optional
from urllib.parse import unquote, urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# OTLP over HTTP (4317 is gRPC)
DEFAULT_OTLP_ENDPOINT = "http://localhost:4318"

TRACES_PATH = "/v1/traces"
METRICS_PATH = "/v1/metrics"
LOGS_PATH = "/v1/logs"

# Hosted backend that requires authentication
CLOUD_DOMAIN = "grafana.net"

SERVICE_NAME_KEY = "service.name"
DEFAULT_SERVICE_NAME = "unknown_service"


class SpanFlushMode(str, Enum):
    """How finished spans are handed to the exporter."""

    BATCH = "batch"
    IMMEDIATE = "immediate"


class OtelSettings(BaseSettings):
    """Raw telemetry settings from environment variables.

    Live environment variables always win over values from the env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
    )

    otel_service_name: Optional[str] = None
    otel_exporter_otlp_endpoint: Optional[str] = None
    otel_exporter_otlp_headers: str = ""
    otel_exporter_otlp_protocol: Optional[str] = None
    otel_resource_attributes: str = ""
    otel_metrics_enabled: str = ""
    otel_logs_enabled: str = ""
    otel_span_processor: str = ""
    otel_log_level: Optional[str] = None

    pyroscope_url: Optional[str] = None
    pyroscope_basic_auth_user: Optional[str] = None
    pyroscope_basic_auth_password: Optional[str] = None

    # Static profiling tags
    kubernetes_namespace: Optional[str] = None
    namespace: Optional[str] = None
    kubernetes_cluster: Optional[str] = None
    pod_uid: Optional[str] = None

    # Substring flags, e.g. DEBUG=otel,pyroscope
    debug: str = ""


@dataclass(frozen=True)
class ProfilingAuth:
    """Basic-auth credentials for the profiling backend."""

    user: str
    password: str

    def __repr__(self) -> str:
        return f"ProfilingAuth(user={self.user!r}, password='***')"


def _frozen(mapping: Optional[Mapping[str, str]] = None) -> Mapping[str, str]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class TelemetryConfig:
    """Resolved telemetry configuration. Built once per process, never mutated."""

    service_name: str
    endpoint: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=_frozen)
    resource_attributes: Mapping[str, str] = field(default_factory=_frozen)
    protocol: Optional[str] = None
    profiling_endpoint: Optional[str] = None
    profiling_auth: Optional[ProfilingAuth] = None
    profiling_tags: Mapping[str, str] = field(default_factory=_frozen)
    span_flush_mode: SpanFlushMode = SpanFlushMode.BATCH
    metrics_enabled: bool = True
    logs_enabled: bool = True
    otel_log_level: Optional[str] = None
    debug: str = ""

    @property
    def otlp_base(self) -> str:
        """Endpoint used by the exporters, falling back to the local collector."""
        return self.endpoint or DEFAULT_OTLP_ENDPOINT

    @property
    def traces_endpoint(self) -> str:
        return signal_url(self.otlp_base, TRACES_PATH)

    @property
    def metrics_endpoint(self) -> str:
        return signal_url(self.otlp_base, METRICS_PATH)

    @property
    def logs_endpoint(self) -> str:
        return signal_url(self.otlp_base, LOGS_PATH)

    def debug_enabled(self, topic: str) -> bool:
        """Check whether DEBUG mentions the given topic (substring match)."""
        return bool(topic) and topic in self.debug


def normalize_endpoint(url: str) -> str:
    """Normalize an endpoint URL.

    Assumes https:// when no scheme is given and strips trailing slashes.
    Normalizing an already-normalized URL returns it unchanged.
    """
    url = url.strip()
    if "://" not in url:
        url = f"https://{url}"
    return url.rstrip("/")


def signal_url(endpoint: str, path: str) -> str:
    """Build a per-signal OTLP URL (e.g. .../v1/traces) from a base endpoint.

    The suffix is only appended when the endpoint does not already end with it,
    so fully-qualified URLs are left alone.
    """
    base = normalize_endpoint(endpoint)
    if base.endswith(path):
        return base
    return base + path


def parse_key_value_pairs(raw: Optional[str]) -> Dict[str, str]:
    """Parse a comma-separated list of key=value pairs.

    Each segment is split once on the first '='. Segments without '=' or with
    an empty key or value are dropped. Later duplicates overwrite earlier ones.
    """
    pairs: Dict[str, str] = {}
    if not raw:
        return pairs

    for segment in raw.split(","):
        key, sep, value = segment.partition("=")
        key = key.strip()
        value = value.strip()
        if not sep or not key or not value:
            continue
        pairs[key] = value
    return pairs


def parse_headers(raw: Optional[str]) -> Dict[str, str]:
    """Parse OTEL_EXPORTER_OTLP_HEADERS.

    Values may be percent-encoded (e.g. "Authorization=Basic%20abc"), as
    allowed for OTEL_EXPORTER_OTLP_HEADERS.
    """
    return {key: unquote(value) for key, value in parse_key_value_pairs(raw).items()}


def parse_resource_attributes(raw: Optional[str]) -> Dict[str, str]:
    """Parse OTEL_RESOURCE_ATTRIBUTES."""
    return parse_key_value_pairs(raw)


def build_resource_attributes(service_name: str, raw: Optional[str]) -> Dict[str, str]:
    """Parsed resource attributes with service.name set from service_name.

    A service.name inside the raw string never overrides the explicit one.
    """
    attributes = parse_resource_attributes(raw)
    attributes[SERVICE_NAME_KEY] = service_name
    return attributes


def find_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def is_cloud_endpoint(url: Optional[str]) -> bool:
    """Check if a URL points at the hosted (authenticated) backend."""
    if not url:
        return False
    try:
        host = urlparse(normalize_endpoint(url)).hostname or ""
    except ValueError:
        # Unparsable (e.g. unbalanced "[" in the host)
        return False
    return host == CLOUD_DOMAIN or host.endswith(f".{CLOUD_DOMAIN}")


def mentions_cloud_domain(url: Optional[str]) -> bool:
    """Loose check for URLs that look meant for the hosted backend, parsable or not."""
    return bool(url) and CLOUD_DOMAIN in url.lower()


def _flag_enabled(value: str) -> bool:
    # Only an explicit "false" disables; unset or anything else enables
    return value.strip().lower() != "false"


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def config_from_settings(
    settings: OtelSettings, service_name: Optional[str] = None
) -> TelemetryConfig:
    """Build a TelemetryConfig from already-loaded settings."""
    name = _clean(settings.otel_service_name) or service_name or DEFAULT_SERVICE_NAME

    endpoint = _clean(settings.otel_exporter_otlp_endpoint)
    if endpoint:
        endpoint = normalize_endpoint(endpoint)

    user = _clean(settings.pyroscope_basic_auth_user)
    password = _clean(settings.pyroscope_basic_auth_password)
    auth = ProfilingAuth(user=user, password=password) if user and password else None

    tags = {
        "namespace": _clean(settings.kubernetes_namespace)
        or _clean(settings.namespace)
        or "local",
        "cluster": _clean(settings.kubernetes_cluster) or "local",
        "pod": _clean(settings.pod_uid) or "local",
    }

    flush_mode = (
        SpanFlushMode.IMMEDIATE
        if settings.otel_span_processor.strip().lower() == "simple"
        else SpanFlushMode.BATCH
    )

    return TelemetryConfig(
        service_name=name,
        endpoint=endpoint,
        headers=_frozen(parse_headers(settings.otel_exporter_otlp_headers)),
        resource_attributes=_frozen(
            build_resource_attributes(name, settings.otel_resource_attributes)
        ),
        protocol=_clean(settings.otel_exporter_otlp_protocol),
        profiling_endpoint=_clean(settings.pyroscope_url),
        profiling_auth=auth,
        profiling_tags=_frozen(tags),
        span_flush_mode=flush_mode,
        metrics_enabled=_flag_enabled(settings.otel_metrics_enabled),
        logs_enabled=_flag_enabled(settings.otel_logs_enabled),
        otel_log_level=_clean(settings.otel_log_level),
        debug=settings.debug or "",
    )


def resolve_config(
    service_name: Optional[str] = None, env_file: Optional[str] = ".env"
) -> TelemetryConfig:
    """Resolve the process telemetry configuration.

    Args:
        service_name: Default service name when OTEL_SERVICE_NAME is not set
        env_file: Optional dotenv file merged below the live environment
            (None disables it)

    Returns:
        Immutable TelemetryConfig
    """
    settings = OtelSettings(_env_file=env_file)  # type: ignore[call-arg]
    config = config_from_settings(settings, service_name)
    logger.debug(
        f"Resolved telemetry config for {config.service_name}: "
        f"endpoint={config.endpoint or '(default)'}, headers={sorted(config.headers)}"
    )
    return config
