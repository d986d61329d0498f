"""
Structured logging configuration for LessonGuard.

Every log record becomes one JSON line with:
  - ts (ISO-8601 UTC), level, logger, service, msg
  - any extra key=value context passed via ``extra=``

Values stored under credential-like keys are masked before they are written,
so bearer tokens, webhook signatures and signed-URL query strings never end
up in the log stream.

Usage:
    from logging_config import get_logger
    logger = get_logger(__name__)
    logger.info("session_replaced", extra={"account_id": "…", "replaced": 1})
"""
import json
import logging
import sys
from datetime import datetime, timezone

SERVICE_NAME = "lessonguard"

_RESERVED = frozenset((
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "message",
    "taskName",
))

SENSITIVE_KEYS = frozenset((
    "token", "session_token", "authorization", "signature",
    "secret", "token_key", "playback_url", "embed_url",
))


def _mask(value) -> str:
    text = str(value)
    if len(text) <= 8:
        return "***"
    return text[:4] + "…" + f"({len(text)} chars)"


class _JsonFormatter(logging.Formatter):
    """Emit each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": SERVICE_NAME,
            "msg": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _RESERVED:
                continue
            payload[key] = _mask(value) if key in SENSITIVE_KEYS and value else value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Call once at application startup to configure the root logger."""
    root = logging.getLogger()
    if root.handlers:
        return  # Already configured (e.g. when running under pytest)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JsonFormatter())
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Return a named logger (call after setup_logging())."""
    return logging.getLogger(name)
