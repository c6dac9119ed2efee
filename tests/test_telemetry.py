"""
Tests for telemetry pipeline initialization.
"""

import io
import logging
from unittest.mock import patch

import pytest
from opentelemetry.sdk._logs.export import InMemoryLogExporter
from opentelemetry.sdk.metrics.export import ConsoleMetricExporter
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from telemetry.config import ProfilingAuth, SpanFlushMode, TelemetryConfig
from telemetry.gate import decide
from telemetry.manager import (
    METRICS_EXPORT_INTERVAL_MS,
    TelemetryContext,
    configure_diagnostics,
    init_telemetry,
)

CLOUD_OTLP = "https://otlp-gateway-prod-eu-west-2.grafana.net/otlp"


def make_config(**kwargs) -> TelemetryConfig:
    kwargs.setdefault("service_name", "backend")
    kwargs.setdefault("resource_attributes", {"service.name": kwargs["service_name"]})
    return TelemetryConfig(**kwargs)


def start(config: TelemetryConfig, **kwargs) -> TelemetryContext:
    """Initialize with in-memory exporters and no global registration."""
    kwargs.setdefault("span_exporter", InMemorySpanExporter())
    kwargs.setdefault("metric_exporter", ConsoleMetricExporter(out=io.StringIO()))
    kwargs.setdefault("log_exporter", InMemoryLogExporter())
    kwargs.setdefault("register_globals", False)
    kwargs.setdefault("source_roots", None)
    return init_telemetry(config, **kwargs)


def assert_handles_match_decisions(context: TelemetryContext):
    handles = {
        "tracing": context.tracer_provider,
        "metrics": context.meter_provider,
        "logs": context.logger_provider,
        "profiling": context.profiler,
    }
    for name, decision in context.capabilities.items():
        assert (handles[name] is not None) is decision.enabled, name


class TestTracingPipeline:
    """Tests for trace export and flush policy."""

    def test_batch_flush_by_default(self):
        exporter = InMemorySpanExporter()
        with patch("telemetry.manager.BatchSpanProcessor", wraps=BatchSpanProcessor) as batch:
            context = start(make_config(), span_exporter=exporter)
        batch.assert_called_once_with(exporter)

        with context.get_tracer().start_as_current_span("work"):
            pass
        context.tracer_provider.force_flush()
        assert [s.name for s in exporter.get_finished_spans()] == ["work"]

    def test_immediate_flush_exports_on_span_end(self):
        exporter = InMemorySpanExporter()
        config = make_config(span_flush_mode=SpanFlushMode.IMMEDIATE)
        with patch("telemetry.manager.SimpleSpanProcessor", wraps=SimpleSpanProcessor) as simple:
            context = start(config, span_exporter=exporter)
        simple.assert_called_once_with(exporter)

        with context.get_tracer().start_as_current_span("work"):
            pass
        assert len(exporter.get_finished_spans()) == 1

    def test_resource_carries_service_name(self):
        config = make_config(
            service_name="api-gateway",
            resource_attributes={"service.name": "api-gateway", "team": "obs"},
        )
        context = start(config)
        attributes = context.tracer_provider.resource.attributes
        assert attributes["service.name"] == "api-gateway"
        assert attributes["team"] == "obs"

    def test_otlp_exporter_uses_traces_url_and_headers(self):
        config = make_config(endpoint=CLOUD_OTLP, headers={"Authorization": "Basic abc"})
        with patch("telemetry.manager.OTLPSpanExporter") as exporter_cls:
            start(config, span_exporter=None)
        exporter_cls.assert_called_once_with(
            endpoint=f"{CLOUD_OTLP}/v1/traces",
            headers={"Authorization": "Basic abc"},
        )

    def test_cloud_without_auth_still_starts(self, caplog):
        with caplog.at_level(logging.WARNING, logger="telemetry.manager"):
            context = start(make_config(endpoint=CLOUD_OTLP))

        assert context.tracer_provider is not None
        assert context.capabilities.tracing.enabled is True
        assert any("Authorization" in r.getMessage() for r in caplog.records)


class TestMetricsPipeline:
    """Tests for the periodic metrics pipeline."""

    def test_export_interval_is_sixty_seconds(self):
        assert METRICS_EXPORT_INTERVAL_MS == 60_000
        with patch("telemetry.manager.PeriodicExportingMetricReader") as reader_cls:
            with patch("telemetry.manager.MeterProvider"):
                start(make_config())
        _, kwargs = reader_cls.call_args
        assert kwargs["export_interval_millis"] == METRICS_EXPORT_INTERVAL_MS

    def test_disabled_metrics_leave_tracing_alone(self):
        context = start(make_config(metrics_enabled=False))
        assert context.meter_provider is None
        assert context.tracer_provider is not None
        assert context.logger_provider is not None
        assert_handles_match_decisions(context)

    def test_noop_meter_when_disabled(self):
        context = start(make_config(metrics_enabled=False))
        counter = context.get_meter().create_counter("requests")
        counter.add(1)


class TestLogsPipeline:
    """Tests for the logs pipeline lifecycle."""

    def test_disabled_logs(self):
        context = start(make_config(logs_enabled=False))
        assert context.logger_provider is None
        assert context.tracer_provider is not None
        assert context.meter_provider is not None
        assert_handles_match_decisions(context)


class TestProfilingPipeline:
    """Tests for Pyroscope initialization."""

    def test_unset_url_registers_no_profiler(self):
        with patch("telemetry.profiling.pyroscope.configure") as configure:
            context = start(make_config())

        configure.assert_not_called()
        assert context.profiler is None
        assert context.capabilities.profiling.enabled is False
        assert_handles_match_decisions(context)

    def test_enabled_with_basic_auth_and_tags(self):
        config = make_config(
            profiling_endpoint="https://profiles-prod-001.grafana.net",
            profiling_auth=ProfilingAuth(user="123", password="key"),
            profiling_tags={"namespace": "local", "cluster": "local", "pod": "local"},
        )
        with patch("telemetry.profiling.pyroscope.configure") as configure:
            context = start(config, extra_tags={"region": "eu"})

        _, kwargs = configure.call_args
        assert kwargs["application_name"] == "backend"
        assert kwargs["server_address"] == "https://profiles-prod-001.grafana.net"
        assert kwargs["basic_auth_username"] == "123"
        assert kwargs["basic_auth_password"] == "key"
        assert kwargs["tags"] == {
            "namespace": "local",
            "cluster": "local",
            "pod": "local",
            "region": "eu",
        }
        assert context.profiler is not None
        assert context.profiler.application_name == "backend"
        assert_handles_match_decisions(context)

    def test_local_profiling_has_no_auth(self):
        config = make_config(profiling_endpoint="http://localhost:4040")
        with patch("telemetry.profiling.pyroscope.configure") as configure:
            start(config)

        _, kwargs = configure.call_args
        assert "basic_auth_username" not in kwargs

    def test_agent_failure_degrades(self):
        config = make_config(profiling_endpoint="http://localhost:4040")
        with patch("telemetry.profiling.pyroscope.configure", side_effect=RuntimeError("boom")):
            context = start(config)

        assert context.profiler is None
        assert context.capabilities.profiling.enabled is False
        assert "boom" in context.capabilities.profiling.reason
        assert context.tracer_provider is not None
        assert_handles_match_decisions(context)

    def test_missing_source_roots_degrade_to_no_mapper(self, tmp_path):
        config = make_config(profiling_endpoint="http://localhost:4040")
        with patch("telemetry.profiling.pyroscope.configure"):
            context = start(config, source_roots=[str(tmp_path / "missing")])

        assert context.profiler is not None
        assert context.profiler.source_mapper is None

    def test_source_mapper_built_from_roots(self, tmp_path):
        config = make_config(profiling_endpoint="http://localhost:4040")
        with patch("telemetry.profiling.pyroscope.configure"):
            context = start(config, source_roots=[str(tmp_path)])

        mapper = context.profiler.source_mapper
        assert mapper is not None
        assert mapper.resolve(str(tmp_path / "pkg" / "mod.py")) == "pkg/mod.py"


class TestInitTelemetry:
    """Tests for the overall initialization contract."""

    def test_all_enabled_by_default_except_profiling(self):
        context = start(make_config())
        assert context.capabilities.tracing.enabled is True
        assert context.capabilities.metrics.enabled is True
        assert context.capabilities.logs.enabled is True
        assert context.capabilities.profiling.enabled is False
        assert_handles_match_decisions(context)

    def test_subsystem_failure_is_isolated(self):
        with patch("telemetry.manager.init_metrics", side_effect=RuntimeError("no metrics")):
            context = start(make_config())

        assert context.meter_provider is None
        assert context.capabilities.metrics.enabled is False
        assert "no metrics" in context.capabilities.metrics.reason
        assert context.tracer_provider is not None
        assert context.logger_provider is not None
        assert_handles_match_decisions(context)

    def test_uses_given_capabilities(self):
        config = make_config()
        capabilities = decide(make_config(logs_enabled=False))
        context = start(config, capabilities=capabilities)
        assert context.logger_provider is None

    def test_registers_global_providers(self):
        with patch("telemetry.manager.trace.set_tracer_provider") as set_tracer, patch(
            "telemetry.manager.metrics.set_meter_provider"
        ) as set_meter, patch(
            "telemetry.manager.otel_logs.set_logger_provider"
        ) as set_logger, patch("telemetry.manager.set_global_textmap"):
            context = start(make_config(), register_globals=True)

        set_tracer.assert_called_once_with(context.tracer_provider)
        set_meter.assert_called_once_with(context.meter_provider)
        set_logger.assert_called_once_with(context.logger_provider)

    def test_skips_disabled_global_registration(self):
        with patch("telemetry.manager.trace.set_tracer_provider"), patch(
            "telemetry.manager.metrics.set_meter_provider"
        ) as set_meter, patch(
            "telemetry.manager.otel_logs.set_logger_provider"
        ) as set_logger, patch("telemetry.manager.set_global_textmap"):
            start(make_config(metrics_enabled=False, logs_enabled=False), register_globals=True)

        set_meter.assert_not_called()
        set_logger.assert_not_called()

    def test_decisions_logged(self, caplog):
        with caplog.at_level(logging.INFO, logger="telemetry.manager"):
            start(make_config())

        messages = [r.getMessage() for r in caplog.records]
        assert any(m.startswith("Telemetry profiling disabled") for m in messages)
        assert any(m.startswith("Telemetry tracing enabled") for m in messages)


class TestDiagnostics:
    """Tests for OTEL_LOG_LEVEL and DEBUG handling."""

    @pytest.fixture(autouse=True)
    def restore_levels(self):
        names = ["opentelemetry", "telemetry", "telemetry.profiling"]
        levels = {name: logging.getLogger(name).level for name in names}
        yield
        for name, level in levels.items():
            logging.getLogger(name).setLevel(level)

    def test_otel_log_level(self):
        configure_diagnostics(make_config(otel_log_level="debug"))
        assert logging.getLogger("opentelemetry").level == logging.DEBUG

        configure_diagnostics(make_config(otel_log_level="error"))
        assert logging.getLogger("opentelemetry").level == logging.ERROR

    def test_debug_flags(self):
        configure_diagnostics(make_config(debug="pyroscope"))
        assert logging.getLogger("telemetry.profiling").level == logging.DEBUG
        assert logging.getLogger("telemetry").level != logging.DEBUG
