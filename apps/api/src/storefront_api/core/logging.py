from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict, Optional

from loguru import logger
from opentelemetry import trace

# Attributes every stdlib record carries; anything else arrived through ``extra=``.
_STANDARD_RECORD_KEYS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

# Libraries that are chatty at INFO and only interesting when something breaks.
_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "apscheduler.executors.default")


class InterceptHandler(logging.Handler):
    """Forward stdlib records (uvicorn, sqlalchemy, apscheduler) into Loguru."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        try:
            text = record.getMessage()
        except (TypeError, ValueError):
            text = str(record.msg)

        extra = {key: value for key, value in vars(record).items() if key not in _STANDARD_RECORD_KEYS}
        # Loguru formats the message with str.format; literal braces must survive.
        text = text.replace("{", "{{").replace("}", "}}")
        logger.bind(logger_name=record.name, **extra).opt(depth=6, exception=record.exc_info).log(level, text)


class JsonLineSink:
    """Write one JSON document per log record to stdout, tagged with deployment metadata."""

    def __init__(self, *, service_name: str, environment: str, version: str) -> None:
        self._static = {"service": service_name, "environment": environment, "version": version}

    def __call__(self, message: "logger.Message") -> None:
        sys.stdout.write(json.dumps(self.render(message.record), default=str) + "\n")

    def render(self, record: Dict[str, Any]) -> Dict[str, Any]:
        extra = dict(record["extra"])
        payload: Dict[str, Any] = {
            "timestamp": record["time"].isoformat(),
            "level": record["level"].name.lower(),
            "logger": extra.pop("logger_name", record["name"]),
            "message": record["message"],
            **self._static,
        }
        payload.update(_trace_ids())

        exception = record["exception"]
        if exception is not None:
            payload["exception"] = {
                "type": exception.type.__name__ if exception.type else None,
                "message": str(exception.value) if exception.value else None,
            }

        payload.update(extra)
        return payload


def _trace_ids() -> Dict[str, str]:
    span_context: Optional[trace.SpanContext] = trace.get_current_span().get_span_context()
    if span_context is None or not span_context.is_valid:
        return {}
    return {"trace_id": f"{span_context.trace_id:032x}", "span_id": f"{span_context.span_id:016x}"}


def configure_logging(*, service_name: str, environment: str, version: str, level: str = "INFO") -> None:
    """Send Loguru and stdlib logging to a single JSON-lines sink."""

    logger.remove()
    logger.add(
        JsonLineSink(service_name=service_name, environment=environment, version=version),
        level=level,
        backtrace=False,
        diagnose=False,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
