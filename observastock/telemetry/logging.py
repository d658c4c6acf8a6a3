"""
ObservaStock - Structured JSON Logging

Console logging for the services. Each line is one JSON object stamped with
the service resource and correlated to the active span, so a log line found
on stdout can be joined with the exported trace.

Usage:
    from observastock.telemetry.logging import setup_logging, get_logger

    setup_logging(level="INFO", descriptor=pipeline.descriptor)

    logger = get_logger(__name__)
    logger.info("Trade completed", trade_id="t_123", total_value=4210.5)

Output:
    {"timestamp": "2026-01-15T10:30:00+00:00", "level": "INFO",
     "logger": "observastock.services.trading", "message": "Trade completed",
     "service": "ObservaStock.TradingApi", "service_version": "1.0.0",
     "environment": "development", "instance": "trading-1",
     "trace_id": "0af7...", "span_id": "b7ad...", "request_id": "req_...",
     "trade_id": "t_123", "total_value": 4210.5}
"""

import json
import logging
import os
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional, TextIO, Union

from opentelemetry import trace

from .resource import ResourceDescriptor

_log_context: ContextVar[Optional["LogContext"]] = ContextVar("observastock_log_context", default=None)


@dataclass
class LogContext:
    """Request correlation attached to every line logged while it is bound."""
    request_id: str = ""
    route: str = ""
    fields: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def get_current(cls) -> Optional["LogContext"]:
        return _log_context.get()

    @classmethod
    @contextmanager
    def bind(cls, request_id: str = "", route: str = "", **fields) -> Iterator["LogContext"]:
        """
        Bind a context for the current task; the previous one is restored on exit.

        Usage:
            with LogContext.bind(request_id="req_1", route="/api/trades") as ctx:
                ctx.add(symbol="MSFT")
        """
        ctx = cls(request_id=request_id, route=route, fields=dict(fields))
        token = _log_context.set(ctx)
        try:
            yield ctx
        finally:
            _log_context.reset(token)

    def add(self, **fields):
        self.fields.update(fields)

    def as_fields(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.request_id:
            result["request_id"] = self.request_id
        if self.route:
            result["route"] = self.route
        result.update(self.fields)
        return result


def _span_fields() -> Dict[str, str]:
    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return {}
    return {
        "trace_id": format(span_context.trace_id, "032x"),
        "span_id": format(span_context.span_id, "016x"),
    }


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record.

    Standard LogRecord attributes are left out; anything passed through
    `extra` (or as keyword fields on StructuredLogger) is emitted as-is,
    with sensitive names redacted.
    """

    SENSITIVE_MARKERS = ("password", "secret", "token", "api_key", "apikey", "authorization", "credential")

    # Everything a bare LogRecord carries, plus attributes added later in its life
    _RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {
        "message",
        "asctime",
        "taskName",
        "otelSpanID",
        "otelTraceID",
        "otelTraceSampled",
        "otelServiceName",
    }

    def __init__(
        self,
        descriptor: Optional[ResourceDescriptor] = None,
        include_location: bool = False,
        redact_sensitive: bool = True,
    ):
        super().__init__()
        self.descriptor = descriptor
        self.include_location = include_location
        self.redact_sensitive = redact_sensitive

    def resource_fields(self) -> Dict[str, str]:
        if self.descriptor is None:
            return {}
        fields = {
            "service": self.descriptor.service_name,
            "service_version": self.descriptor.service_version,
            "environment": self.descriptor.environment,
        }
        if self.descriptor.instance_id:
            fields["instance"] = self.descriptor.instance_id
        return fields

    def format(self, record: logging.LogRecord) -> str:
        line: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        line.update(self.resource_fields())
        line.update(_span_fields())

        ctx = LogContext.get_current()
        if ctx is not None:
            line.update(ctx.as_fields())

        if self.include_location:
            line["location"] = f"{record.filename}:{record.lineno}"
        if record.exc_info:
            line["exception"] = self.formatException(record.exc_info)

        for key, value in vars(record).items():
            if key in self._RECORD_ATTRS:
                continue
            line[key] = "[REDACTED]" if self.redact_sensitive and self.is_sensitive(key) else value

        return json.dumps(line, default=str, ensure_ascii=False)

    def is_sensitive(self, name: str) -> bool:
        lowered = name.lower()
        return any(marker in lowered for marker in self.SENSITIVE_MARKERS)


class StructuredLogger(logging.LoggerAdapter):
    """
    Logger adapter taking structured fields as keyword arguments.

        logger.info("Price lookup failed", symbol="MSFT", status_code=503)
    """

    _PASSTHROUGH = ("exc_info", "stack_info", "stacklevel", "extra")

    def __init__(self, logger: logging.Logger):
        super().__init__(logger, {})

    def process(self, msg, kwargs):
        fields = dict(kwargs.pop("extra", None) or {})
        for key in [k for k in kwargs if k not in self._PASSTHROUGH]:
            fields[key] = kwargs.pop(key)
        kwargs["extra"] = fields
        return msg, kwargs


class ConsoleHandler(logging.StreamHandler):
    """The stdout handler installed by setup_logging."""


_configured = False

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def setup_logging(
    level: Union[str, int] = "INFO",
    json_output: bool = True,
    descriptor: Optional[ResourceDescriptor] = None,
    include_location: bool = False,
    stream: Optional[TextIO] = None,
) -> ConsoleHandler:
    """
    Configure console logging on the root logger.

    Calling it again replaces the ConsoleHandler from the previous call;
    other root handlers (the OpenTelemetry log bridge, pytest capture) stay.

    Args:
        level: Log level name or number
        json_output: JSON lines (True) or plain text (False)
        descriptor: Service resource stamped on every JSON line
        include_location: Add filename:lineno to JSON lines
        stream: Output stream (defaults to stdout)
    """
    global _configured

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    for existing in [h for h in root.handlers if isinstance(h, ConsoleHandler)]:
        root.removeHandler(existing)

    handler = ConsoleHandler(stream or sys.stdout)
    handler.setLevel(level)
    if json_output:
        handler.setFormatter(JSONFormatter(descriptor=descriptor, include_location=include_location))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True
    return handler


def get_logger(name: str) -> StructuredLogger:
    """
    Get a structured logger.

    Configures console logging from LOG_LEVEL / LOG_FORMAT on first use if
    setup_logging has not run yet.
    """
    if not _configured:
        setup_logging(
            level=os.getenv("LOG_LEVEL", "INFO"),
            json_output=os.getenv("LOG_FORMAT", "json").lower() == "json",
        )
    return StructuredLogger(logging.getLogger(name))


class TimedOperation:
    """
    Log the duration of a block.

    Usage:
        with TimedOperation("health_evaluation", logger, checks=3) as timer:
            report = await service.evaluate()
        timer.duration_ms
    """

    def __init__(
        self,
        operation: str,
        logger: Optional[logging.LoggerAdapter] = None,
        level: int = logging.DEBUG,
        **fields,
    ):
        self.operation = operation
        self.logger = logger or get_logger("observastock.timing")
        self.level = level
        self.fields = fields
        self.duration_ms: Optional[float] = None
        self._started = 0.0

    def __enter__(self) -> "TimedOperation":
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self._started) * 1000
        fields = {"operation": self.operation, "duration_ms": round(self.duration_ms, 2), **self.fields}

        if exc_type is None:
            self.logger.log(self.level, f"{self.operation} completed", **fields)
        else:
            self.logger.error(f"{self.operation} failed", error=str(exc_val), **fields)
