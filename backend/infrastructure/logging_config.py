"""
Logging setup: one stdout handler, JSON lines in production.

Records pass through two filters before formatting. ``RequestContextFilter``
stamps the current request id (set by the HTTP middleware through
``request_id_ctx``) so rotation, assignment and ingestion logs can be
joined to the request that caused them. ``SensitiveDataFilter`` scrubs the
bearer secrets that guard the rotation trigger and operator endpoints.
"""

import json
import logging
import re
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Optional

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_REDACTED = "[REDACTED]"

_SECRET_PATTERNS = (
    re.compile(r"(bearer\s+)[A-Za-z0-9._~+/=-]{8,}", re.IGNORECASE),
    re.compile(r"((?:cron_secret|admin_api_key|api[_-]?key|secret)[\"'\s:=]+)[^\s&\"',]+", re.IGNORECASE),
)

# Record attributes copied into the JSON line when present
_EXTRA_FIELDS = (
    "request_id",
    "method",
    "path",
    "status_code",
    "duration_ms",
    "test_id",
    "session_id",
    "tenant_id",
)


def redact(text: str) -> str:
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(lambda m: m.group(1) + _REDACTED, text)
    return text


class RequestContextFilter(logging.Filter):
    """Attach the active request id to records that do not carry one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_ctx.get()
        return True


class SensitiveDataFilter(logging.Filter):
    """Scrub bearer tokens and configured secrets from message and args."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact(record.msg)
        if isinstance(record.args, dict):
            record.args = {k: redact(v) if isinstance(v, str) else v for k, v in record.args.items()}
        elif record.args:
            record.args = tuple(redact(a) if isinstance(a, str) else a for a in record.args)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, timestamped from the record itself."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (key, getattr(record, key))
            for key in _EXTRA_FIELDS
            if getattr(record, key, None) is not None
        )
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = redact(self.formatException(record.exc_info))
        return json.dumps(entry, default=str)


def setup_logging(json_output: bool = False, level: str = "INFO") -> None:
    """
    Replace the root handlers with a single stdout handler.

    Args:
        json_output: JSON lines (production) instead of the plain dev format.
        level: Root log level name.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        JSONFormatter()
        if json_output
        else logging.Formatter(
            "%(asctime)s %(levelname)-8s [%(request_id)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    # Handler-level filters see records from every child logger
    handler.addFilter(RequestContextFilter())
    handler.addFilter(SensitiveDataFilter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name, lib_level in (
        ("sqlalchemy.engine", logging.WARNING),
        ("httpx", logging.WARNING),
        ("uvicorn.access", logging.INFO),
    ):
        logging.getLogger(name).setLevel(lib_level)
