"""Structured logging. Bot tokens and other secrets never reach log output."""

from __future__ import annotations

import json
import logging
import re
import sys
from typing import Any

# Bot API urls carry the token in the path: https://api.telegram.org/bot<token>/sendMessage
_BOT_URL_RE = re.compile(r"/bot\d+:[\w-]+")
_SECRET_MARKERS = ("token", "password", "secret", "bearer")

_RECORD_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
        "asctime",
    )
)


def _redact(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: _redact(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_redact(v) for v in obj]
    if isinstance(obj, str):
        if any(s in obj.lower() for s in _SECRET_MARKERS):
            return "[REDACTED]"
        return _BOT_URL_RE.sub("/bot[REDACTED]", obj)
    return obj


class StructuredFormatter(logging.Formatter):
    """JSON or key=value lines; ``extra=`` fields are included and redacted."""

    def __init__(self, use_json: bool = True) -> None:
        super().__init__()
        self.use_json = use_json

    def format(self, record: logging.LogRecord) -> str:
        log_dict: dict[str, Any] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": _BOT_URL_RE.sub("/bot[REDACTED]", record.getMessage()),
        }
        if record.exc_info:
            log_dict["exception"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS:
                log_dict[key] = _redact(value)
        if self.use_json:
            return json.dumps(log_dict, default=str, ensure_ascii=False)
        return " ".join(f"{k}={v!r}" for k, v in log_dict.items())


def setup_logging(level: str = "INFO", use_json: bool = True) -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    structured = [h for h in root.handlers if isinstance(h.formatter, StructuredFormatter)]
    for h in structured:
        h.formatter.use_json = use_json
    if not structured:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter(use_json=use_json))
        root.addHandler(handler)
    # httpx logs every request url at INFO, token included
    logging.getLogger("httpx").setLevel(logging.WARNING)
