"""Log formatting for outbound API calls (JSON and text).

Both formatters tag each line with the request id bound by
``request_scope`` and render the request fields the client attaches as
``extra`` (method, uri, status_code, ...). Credential-bearing headers are
masked before they reach any handler output.
"""

from __future__ import annotations

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Mapping

from restclient.services.request_context import get_request_id

# Anything else on a record came in through ``extra=``.
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}

# Extras worth a ``key=value`` suffix on a human-readable line, in order.
TEXT_FIELDS: tuple[str, ...] = ("method", "uri", "status_code", "rate_limit_wait")

SENSITIVE_HEADERS: frozenset[str] = frozenset(
    {"authorization", "proxy-authorization", "cookie", "set-cookie", "x-api-key"}
)

_MASK = "********"


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Copy *headers* with credential-bearing values masked."""
    return {
        name: (_MASK if name.lower() in SENSITIVE_HEADERS else value)
        for name, value in headers.items()
    }


def request_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Return the ``extra`` fields of *record*, headers redacted."""
    fields: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _RECORD_ATTRS or key.startswith("_"):
            continue
        if key == "headers" and isinstance(value, Mapping):
            value = redact_headers(value)
        fields[key] = value
    return fields


def _timestamp(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


def _exception_text(record: logging.LogRecord) -> str | None:
    if record.exc_info and record.exc_info[0] is not None:
        return "".join(traceback.format_exception(*record.exc_info))
    return None


class JSONFormatter(logging.Formatter):
    """One JSON object per line: request id first, then every request field."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": _timestamp(record).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = get_request_id()
        if request_id:
            entry["request_id"] = request_id
        entry.update(request_fields(record))

        exception = _exception_text(record)
        if exception:
            entry["exception"] = exception
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """``<ts> <LEVEL> [rid] logger - message key=value ...``"""

    def format(self, record: logging.LogRecord) -> str:
        ts = _timestamp(record).strftime("%Y-%m-%d %H:%M:%S")
        request_id = get_request_id()
        rid = f"[{request_id[:12]}] " if request_id else ""
        line = f"{ts} {record.levelname:<8} {rid}{record.name} - {record.getMessage()}"

        fields = request_fields(record)
        suffix = " ".join(f"{key}={fields[key]}" for key in TEXT_FIELDS if key in fields)
        if suffix:
            line = f"{line} {suffix}"

        exception = _exception_text(record)
        if exception:
            line += "\n" + exception
        return line


def setup_logging(log_level: str = "INFO", log_format: str = "text") -> None:
    """Route all logging to a single stderr handler. Safe to call twice."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if log_format.lower() == "json" else TextFormatter())
    root.addHandler(handler)
