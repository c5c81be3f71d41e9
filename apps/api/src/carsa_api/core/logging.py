from __future__ import annotations

import json
import logging
import sys
from logging import LogRecord
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace


_STDLIB_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime"}


class InterceptHandler(logging.Handler):
    """Forward stdlib logging (uvicorn, sqlalchemy, httpx) into Loguru."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        extra = {key: value for key, value in record.__dict__.items() if key not in _STDLIB_RECORD_ATTRS}
        message = record.getMessage().replace("{", "{{").replace("}", "}}")

        bound = logger.bind(**extra) if extra else logger
        bound.opt(depth=6, exception=record.exc_info).log(level, message)


def _render(message: "logger.Message", metadata: Dict[str, str]) -> None:
    record = message.record
    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["name"],
        **metadata,
    }

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        payload["trace_id"] = f"{span_context.trace_id:032x}"
        payload["span_id"] = f"{span_context.span_id:016x}"

    payload.update(record["extra"])
    if record["exception"] is not None:
        exc_type, exc_value, _ = record["exception"]
        payload["exception"] = f"{exc_type.__name__ if exc_type else 'Exception'}: {exc_value}"

    sys.stdout.write(json.dumps(payload, default=str) + "\n")


def configure_logging(*, service_name: str, environment: str, version: str, level: str = "INFO") -> None:
    """Route Loguru and stdlib logging to structured JSON lines on stdout."""

    logger.remove()
    metadata = {"service": service_name, "environment": environment, "version": version}
    logger.add(lambda message: _render(message, metadata), level=level, backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
