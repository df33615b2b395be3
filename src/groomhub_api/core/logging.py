"""JSON log output for the API process and its background workers."""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace


# Third-party loggers that are only useful when something is wrong.
_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite")


class InterceptHandler(logging.Handler):
    """Route stdlib records (uvicorn, sqlalchemy, alembic) through Loguru."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.opt(depth=6, exception=record.exc_info).log(level, record.getMessage())


class JsonLogSink:
    """Loguru sink writing one JSON object per line, tagged with the trace context."""

    def __init__(self, *, service_name: str, environment: str, version: str, stream=None) -> None:
        self._static = {"service": service_name, "environment": environment, "version": version}
        self._stream = stream or sys.stdout

    def __call__(self, message: "logger.Message") -> None:
        record = message.record
        payload: Dict[str, Any] = {
            "timestamp": record["time"].isoformat(),
            "level": record["level"].name.lower(),
            "message": record["message"],
            "logger": record["name"],
            **self._static,
        }

        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            payload["trace_id"] = f"{span_context.trace_id:032x}"
            payload["span_id"] = f"{span_context.span_id:016x}"

        # Keyword context such as customer_id or error_kind lands at the top level.
        payload.update(record["extra"])

        if record["exception"] is not None:
            error = record["exception"].value
            payload["exception"] = {"type": type(error).__name__, "message": str(error)}

        self._stream.write(json.dumps(payload, default=str) + "\n")
        self._stream.flush()


def configure_logging(*, service_name: str, environment: str, version: str, level: str = "INFO") -> None:
    """Send Loguru and stdlib logging to a single JSON sink."""

    logger.remove()
    logger.add(
        JsonLogSink(service_name=service_name, environment=environment, version=version),
        level=level,
        backtrace=False,
        diagnose=False,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


__all__ = ["InterceptHandler", "JsonLogSink", "configure_logging"]
