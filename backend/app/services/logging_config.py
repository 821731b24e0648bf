"""
Structured logging for the BuildUnion fact core.

JSON lines in production, plain text locally. The current request id lives
in a contextvar, so every line logged while a request is served carries it
without threading it through call signatures.
"""
import contextvars
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

request_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("request_id", default=None)

# Extras promoted into the JSON payload when a log call carries them
CONTEXT_FIELDS = ("request_id", "project_id", "cite_type", "change_id", "duration_ms")

TEXT_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

QUIET_LOGGERS = ("uvicorn.access", "httpcore", "httpx", "LiteLLM", "sqlalchemy.engine")


class RequestContextFilter(logging.Filter):
    """Stamp the in-flight request id on records that did not pass one explicitly."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_var.get()
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", json_output: bool = True) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_output else logging.Formatter(TEXT_FORMAT))
    handler.addFilter(RequestContextFilter())

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers = [handler]

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
