"""
OpenTelemetry pipeline initialization.

Builds one export pipeline per enabled subsystem (traces, metrics, logs,
profiles) and returns them together as a TelemetryContext.

Key design:
- Called once at process startup; calling it twice is not supported
- Each subsystem is built independently: a failure in one never affects
  the others, it only flips that subsystem's effective decision to disabled
- Providers are registered globally (so auto-instrumentation finds them) and
  also held on the returned TelemetryContext, which is passed explicitly to
  the services and the logger facade
"""

import logging
from dataclasses import dataclass, replace
from typing import Mapping, Optional, Sequence

from opentelemetry import trace, metrics
from opentelemetry import _logs as otel_logs
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SimpleSpanProcessor,
    SpanExporter,
)
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricExporter, PeriodicExportingMetricReader
from opentelemetry.sdk._logs import LoggerProvider
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor, LogExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
from opentelemetry.propagate import set_global_textmap
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator
from opentelemetry.baggage.propagation import W3CBaggagePropagator

from telemetry.config import SpanFlushMode, TelemetryConfig, resolve_config
from telemetry.gate import Capabilities, CapabilityDecision, decide
from telemetry.profiling import ProfilerHandle, init_profiling

logger = logging.getLogger(__name__)

# Fixed metrics export period
METRICS_EXPORT_INTERVAL_MS = 60_000

# OTEL_LOG_LEVEL values mapped onto the SDK's "opentelemetry" logger
_OTEL_LOG_LEVELS = {
    "none": logging.CRITICAL + 10,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "verbose": logging.DEBUG,
    "all": logging.NOTSET,
}


@dataclass(frozen=True)
class TelemetryContext:
    """Process-wide telemetry state, constructed once by init_telemetry().

    A provider is present if and only if the matching decision in
    `capabilities` is enabled.
    """

    config: TelemetryConfig
    capabilities: Capabilities
    tracer_provider: Optional[TracerProvider] = None
    meter_provider: Optional[MeterProvider] = None
    logger_provider: Optional[LoggerProvider] = None
    profiler: Optional[ProfilerHandle] = None

    @property
    def service_name(self) -> str:
        return self.config.service_name

    def get_tracer(self, name: Optional[str] = None) -> trace.Tracer:
        """Tracer for this service (no-op tracer when tracing is unavailable)."""
        if self.tracer_provider is None:
            return trace.NoOpTracer()
        return self.tracer_provider.get_tracer(name or self.service_name)

    def get_meter(self, name: Optional[str] = None) -> metrics.Meter:
        """Meter for this service (no-op meter when metrics are disabled)."""
        if self.meter_provider is None:
            return metrics.NoOpMeter(name or self.service_name)
        return self.meter_provider.get_meter(name or self.service_name)


def configure_diagnostics(config: TelemetryConfig) -> None:
    """Apply OTEL_LOG_LEVEL and DEBUG to the diagnostic loggers."""
    if config.otel_log_level:
        level = _OTEL_LOG_LEVELS.get(config.otel_log_level.lower(), logging.INFO)
        logging.getLogger("opentelemetry").setLevel(level)

    if config.debug_enabled("otel"):
        logging.getLogger("telemetry").setLevel(logging.DEBUG)
    if config.debug_enabled("pyroscope"):
        logging.getLogger("telemetry.profiling").setLevel(logging.DEBUG)


def _exporter_headers(config: TelemetryConfig) -> Optional[dict]:
    return dict(config.headers) or None


def init_tracing(
    config: TelemetryConfig,
    resource: Resource,
    exporter: Optional[SpanExporter] = None,
) -> TracerProvider:
    """Build the tracer provider with a batched or immediate span processor."""
    if exporter is None:
        exporter = OTLPSpanExporter(
            endpoint=config.traces_endpoint,
            headers=_exporter_headers(config),
        )

    provider = TracerProvider(resource=resource)
    if config.span_flush_mode is SpanFlushMode.IMMEDIATE:
        provider.add_span_processor(SimpleSpanProcessor(exporter))
    else:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


def init_metrics(
    config: TelemetryConfig,
    resource: Resource,
    exporter: Optional[MetricExporter] = None,
) -> MeterProvider:
    """Build the meter provider with a periodic exporting reader."""
    if exporter is None:
        exporter = OTLPMetricExporter(
            endpoint=config.metrics_endpoint,
            headers=_exporter_headers(config),
        )

    reader = PeriodicExportingMetricReader(
        exporter, export_interval_millis=METRICS_EXPORT_INTERVAL_MS
    )
    return MeterProvider(resource=resource, metric_readers=[reader])


def init_logs(
    config: TelemetryConfig,
    resource: Resource,
    exporter: Optional[LogExporter] = None,
) -> LoggerProvider:
    """Build the logger provider with a batching record processor."""
    if exporter is None:
        exporter = OTLPLogExporter(
            endpoint=config.logs_endpoint,
            headers=_exporter_headers(config),
        )

    provider = LoggerProvider(resource=resource)
    provider.add_log_record_processor(BatchLogRecordProcessor(exporter))
    return provider


def _failed(decision: CapabilityDecision, error: Exception) -> CapabilityDecision:
    return replace(decision, enabled=False, reason=f"Initialization failed: {error}")


def _register_globals(context: TelemetryContext) -> None:
    # W3C Trace Context + Baggage propagation
    set_global_textmap(
        CompositePropagator([TraceContextTextMapPropagator(), W3CBaggagePropagator()])
    )
    if context.tracer_provider is not None:
        trace.set_tracer_provider(context.tracer_provider)
    if context.meter_provider is not None:
        metrics.set_meter_provider(context.meter_provider)
    if context.logger_provider is not None:
        otel_logs.set_logger_provider(context.logger_provider)


def init_telemetry(
    config: TelemetryConfig,
    capabilities: Optional[Capabilities] = None,
    *,
    extra_tags: Optional[Mapping[str, str]] = None,
    source_roots: Optional[Sequence[str]] = (".",),
    span_exporter: Optional[SpanExporter] = None,
    metric_exporter: Optional[MetricExporter] = None,
    log_exporter: Optional[LogExporter] = None,
    register_globals: bool = True,
) -> TelemetryContext:
    """Initialize every enabled telemetry subsystem.

    Should be called once at process startup. Configuration problems never
    raise: a subsystem that cannot be built is reported and left disabled.

    Args:
        config: Resolved telemetry configuration
        capabilities: Gate decisions (derived from config when not given)
        extra_tags: Additional static profiling tags
        source_roots: Directories for profile source mapping (None to skip)
        span_exporter: Replaces the OTLP span exporter (tests, debugging)
        metric_exporter: Replaces the OTLP metric exporter
        log_exporter: Replaces the OTLP log exporter
        register_globals: Register providers as the process-wide defaults

    Returns:
        TelemetryContext with one handle per enabled subsystem
    """
    configure_diagnostics(config)
    if capabilities is None:
        capabilities = decide(config)
    log_decisions(capabilities)

    resource = Resource.create(dict(config.resource_attributes))

    tracing = capabilities.tracing
    tracer_provider: Optional[TracerProvider] = None
    if tracing.enabled:
        try:
            tracer_provider = init_tracing(config, resource, span_exporter)
        except Exception as e:
            logger.error(f"Failed to initialize tracing: {e}")
            tracing = _failed(tracing, e)

    metrics_decision = capabilities.metrics
    meter_provider: Optional[MeterProvider] = None
    if metrics_decision.enabled:
        try:
            meter_provider = init_metrics(config, resource, metric_exporter)
        except Exception as e:
            logger.warning(f"Metrics init skipped: {e}")
            metrics_decision = _failed(metrics_decision, e)

    logs = capabilities.logs
    logger_provider: Optional[LoggerProvider] = None
    if logs.enabled:
        try:
            logger_provider = init_logs(config, resource, log_exporter)
        except Exception as e:
            logger.warning(f"Logs init skipped: {e}")
            logs = _failed(logs, e)

    profiling = capabilities.profiling
    profiler: Optional[ProfilerHandle] = None
    if profiling.enabled:
        try:
            profiler = init_profiling(config, profiling, extra_tags, source_roots)
        except Exception as e:
            logger.error(f"Failed to initialize Pyroscope: {e}")
            profiling = _failed(profiling, e)

    context = TelemetryContext(
        config=config,
        capabilities=Capabilities(
            tracing=tracing,
            metrics=metrics_decision,
            logs=logs,
            profiling=profiling,
        ),
        tracer_provider=tracer_provider,
        meter_provider=meter_provider,
        logger_provider=logger_provider,
        profiler=profiler,
    )

    if register_globals:
        _register_globals(context)

    return context


def log_decisions(capabilities: Capabilities) -> None:
    """Report every subsystem decision and warning to the operator."""
    for name, decision in capabilities.items():
        state = "enabled" if decision.enabled else "disabled"
        logger.info(f"Telemetry {name} {state}: {decision.reason}")
        for warning in decision.warnings:
            logger.warning(f"Telemetry {name}: {warning}")


def bootstrap(
    default_service_name: str,
    *,
    env_file: Optional[str] = ".env",
    extra_tags: Optional[Mapping[str, str]] = None,
    source_roots: Optional[Sequence[str]] = (".",),
) -> TelemetryContext:
    """Resolve configuration and start telemetry for a service.

    Args:
        default_service_name: Service name used when OTEL_SERVICE_NAME is not set
        env_file: Optional dotenv file (None disables it)
        extra_tags: Additional static profiling tags
        source_roots: Directories for profile source mapping

    Returns:
        The process TelemetryContext
    """
    config = resolve_config(default_service_name, env_file=env_file)
    capabilities = decide(config)

    context = init_telemetry(
        config,
        capabilities,
        extra_tags=extra_tags,
        source_roots=source_roots,
    )
    logger.info(
        f"OpenTelemetry initialized: {config.traces_endpoint} "
        f"(service: {config.service_name})"
    )
    return context
