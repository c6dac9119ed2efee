"""
Tests for the structured logger facade.
"""

import logging
from unittest.mock import Mock

import pytest
from opentelemetry._logs import SeverityNumber
from opentelemetry.sdk._logs import LoggerProvider
from opentelemetry.sdk._logs.export import InMemoryLogExporter, SimpleLogRecordProcessor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

from telemetry.config import TelemetryConfig
from telemetry.gate import decide
from telemetry.logger import ServiceLogger, configure_logging, get_logger
from telemetry.manager import TelemetryContext


def make_context(logger_provider=None) -> TelemetryContext:
    config = TelemetryConfig(service_name="backend")
    return TelemetryContext(
        config=config,
        capabilities=decide(config),
        logger_provider=logger_provider,
    )


@pytest.fixture
def exporter():
    return InMemoryLogExporter()


@pytest.fixture
def provider(exporter):
    provider = LoggerProvider(resource=Resource.create({"service.name": "backend"}))
    provider.add_log_record_processor(SimpleLogRecordProcessor(exporter))
    return provider


class TestConsoleOutput:
    """Console lines are always written."""

    def test_line_format(self, caplog):
        log = get_logger("backend")
        with caplog.at_level(logging.INFO, logger="backend"):
            log.info("Item created", {"id": 1})
            log.warn("Invalid item creation request")
            log.error("Backend request failed")

        messages = [r.getMessage() for r in caplog.records if r.name == "backend"]
        assert messages == [
            "[backend] INFO: Item created",
            "[backend] WARN: Invalid item creation request",
            "[backend] ERROR: Backend request failed",
        ]

    def test_levels_map_to_logging(self, caplog):
        log = get_logger("backend")
        with caplog.at_level(logging.INFO, logger="backend"):
            log.warn("careful")
            log.error("broken")

        levels = [r.levelno for r in caplog.records if r.name == "backend"]
        assert levels == [logging.WARNING, logging.ERROR]

    def test_non_string_message_serialized(self, caplog):
        log = get_logger("backend")
        with caplog.at_level(logging.INFO, logger="backend"):
            log.info({"count": 2})

        assert caplog.records[-1].getMessage() == '[backend] INFO: {"count": 2}'

    def test_no_export_without_logs_pipeline(self):
        log = get_logger("backend", make_context())
        assert log.exporting is False
        log.info("console only")


class TestExport:
    """Records go through the logs pipeline when it is running."""

    def test_record_exported_with_attributes(self, provider, exporter):
        log = get_logger("backend", make_context(provider))
        assert log.exporting is True

        log.info("Item created", {"id": 1, "item.name": "widget", "skipped": None})

        records = [data.log_record for data in exporter.get_finished_logs()]
        assert len(records) == 1
        record = records[0]
        assert record.body == "Item created"
        assert record.severity_text == "INFO"
        assert record.severity_number == SeverityNumber.INFO
        assert dict(record.attributes) == {
            "service.name": "backend",
            "id": 1,
            "item.name": "widget",
        }

    def test_severities(self, provider, exporter):
        log = get_logger("backend", make_context(provider))
        log.warn("w")
        log.error("e")

        severities = [data.log_record.severity_number for data in exporter.get_finished_logs()]
        assert severities == [SeverityNumber.WARN, SeverityNumber.ERROR]

    def test_non_primitive_attributes_stringified(self, provider, exporter):
        log = get_logger("backend", make_context(provider))
        log.info("payload", {"items": [1, 2]})

        record = exporter.get_finished_logs()[0].log_record
        assert record.attributes["items"] == "[1, 2]"

    def test_record_correlated_with_active_span(self, provider, exporter):
        tracer = TracerProvider().get_tracer("test")
        log = get_logger("backend", make_context(provider))

        with tracer.start_as_current_span("request") as span:
            log.info("inside span")
            span_context = span.get_span_context()

        record = exporter.get_finished_logs()[0].log_record
        assert record.trace_id == span_context.trace_id
        assert record.span_id == span_context.span_id


class TestFailures:
    """Logging calls never raise."""

    def test_export_failure_swallowed(self, caplog):
        provider = Mock()
        provider.get_logger.return_value.emit.side_effect = RuntimeError("exporter down")
        log = ServiceLogger("backend", make_context(provider))

        with caplog.at_level(logging.DEBUG):
            log.error("still printed")

        messages = [r.getMessage() for r in caplog.records]
        assert "[backend] ERROR: still printed" in messages
        assert any("Failed to export log record" in m for m in messages)

    def test_provider_failure_falls_back_to_console(self):
        provider = Mock()
        provider.get_logger.side_effect = RuntimeError("no logger")
        log = ServiceLogger("backend", make_context(provider))

        assert log.exporting is False
        log.info("console only")

    def test_circular_message_falls_back_to_repr(self, caplog, provider, exporter):
        msg = {}
        msg["self"] = msg
        log = get_logger("backend", make_context(provider))

        with caplog.at_level(logging.DEBUG):
            log.info(msg)

        messages = [r.getMessage() for r in caplog.records]
        assert "[backend] INFO: {'self': {...}}" in messages
        assert any("Unserializable log message" in m for m in messages)
        assert exporter.get_finished_logs()[0].log_record.body == "{'self': {...}}"


class TestConfigureLogging:
    """Tests for process logging setup."""

    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        quiet = {name: logging.getLogger(name).level for name in ("httpx", "httpcore")}
        yield
        root.handlers[:] = handlers
        root.setLevel(level)
        for name, value in quiet.items():
            logging.getLogger(name).setLevel(value)

    def test_level_and_quiet_libraries(self):
        configure_logging("debug")

        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("httpcore").level == logging.WARNING

    def test_unknown_level_defaults_to_info(self):
        configure_logging("chatty")
        assert logging.getLogger().level == logging.INFO
