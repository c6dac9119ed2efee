"""
Structured logger facade for the demo services.

Every call writes a console line and, when the logs pipeline is running,
exports a structured record through it. Public methods never raise: export
faults are reported on this module's own logger at DEBUG level.
"""

import json
import logging
import sys
import time
from typing import Any, Dict, Optional

from opentelemetry import trace
from opentelemetry._logs import SeverityNumber
from opentelemetry.sdk._logs import LogRecord

from telemetry.config import SERVICE_NAME_KEY
from telemetry.manager import TelemetryContext

logger = logging.getLogger(__name__)

LOGGER_VERSION = "1.0.0"


# ServiceLogger lines already carry "[service] LEVEL:", so records only add time
_CONSOLE_FORMAT = "%(asctime)s %(message)s"
_CORRELATED_FORMAT = "%(asctime)s trace_id=%(otelTraceID)s span_id=%(otelSpanID)s %(message)s"

_QUIET_LOGGERS = ("httpx", "httpcore")


def configure_logging(level: str = "INFO", otel_correlation: bool = False) -> None:
    """Send service logs to stdout, optionally stamped with the active trace/span ids."""
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    logging.basicConfig(
        level=log_level,
        format=_CORRELATED_FORMAT if otel_correlation else _CONSOLE_FORMAT,
        stream=sys.stdout,
        force=True,
    )
    if otel_correlation:
        try:
            from opentelemetry.instrumentation.logging import LoggingInstrumentor

            LoggingInstrumentor().instrument(set_logging_format=False)
        except Exception as e:
            logger.warning(f"Trace/log correlation unavailable: {e}")

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class ServiceLogger:
    """Per-service logger with info/warn/error.

    Console output follows call order. Exported records are batched, so their
    order relative to the console is not guaranteed.
    """

    def __init__(self, service_name: str, context: Optional[TelemetryContext] = None):
        self.service_name = service_name
        self._console = logging.getLogger(service_name)
        self._provider = context.logger_provider if context else None
        self._otel_logger = None
        if self._provider is not None:
            try:
                self._otel_logger = self._provider.get_logger(service_name, LOGGER_VERSION)
            except Exception as e:
                logger.debug(f"OTel logger unavailable for {service_name}: {e}")

    @property
    def exporting(self) -> bool:
        """True when records are also sent to the logs pipeline."""
        return self._otel_logger is not None

    def info(self, msg: Any, attrs: Optional[Dict[str, Any]] = None) -> None:
        self._emit(logging.INFO, SeverityNumber.INFO, "INFO", msg, attrs)

    def warn(self, msg: Any, attrs: Optional[Dict[str, Any]] = None) -> None:
        self._emit(logging.WARNING, SeverityNumber.WARN, "WARN", msg, attrs)

    def error(self, msg: Any, attrs: Optional[Dict[str, Any]] = None) -> None:
        self._emit(logging.ERROR, SeverityNumber.ERROR, "ERROR", msg, attrs)

    def _emit(
        self,
        level: int,
        severity_number: SeverityNumber,
        severity_text: str,
        msg: Any,
        attrs: Optional[Dict[str, Any]],
    ) -> None:
        body = self._render(msg)
        self._console.log(level, f"[{self.service_name}] {severity_text}: {body}")

        if self._otel_logger is None:
            return
        try:
            self._export(severity_number, severity_text, body, attrs or {})
        except Exception as e:
            logger.debug(f"Failed to export log record for {self.service_name}: {e}")

    def _render(self, msg: Any) -> str:
        if isinstance(msg, str):
            return msg
        try:
            return json.dumps(msg, default=str)
        except (TypeError, ValueError, RecursionError) as e:
            logger.debug(f"Unserializable log message for {self.service_name}: {e}")
            return repr(msg)

    def _export(
        self,
        severity_number: SeverityNumber,
        severity_text: str,
        body: str,
        attrs: Dict[str, Any],
    ) -> None:
        attributes = {SERVICE_NAME_KEY: self.service_name}
        attributes.update(
            {k: v if isinstance(v, (str, bool, int, float)) else str(v)
             for k, v in attrs.items() if v is not None}
        )

        span_context = trace.get_current_span().get_span_context()
        now = time.time_ns()
        record = LogRecord(
            timestamp=now,
            observed_timestamp=now,
            trace_id=span_context.trace_id,
            span_id=span_context.span_id,
            trace_flags=span_context.trace_flags,
            severity_text=severity_text,
            severity_number=severity_number,
            body=body,
            resource=self._provider.resource,
            attributes=attributes,
        )
        self._otel_logger.emit(record)


def get_logger(service_name: str, context: Optional[TelemetryContext] = None) -> ServiceLogger:
    """Get a logger that writes to the console and, if enabled, the logs pipeline."""
    return ServiceLogger(service_name, context)
