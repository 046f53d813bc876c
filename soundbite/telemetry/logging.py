# soundbite/telemetry/logging.py
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Mapping, Optional

# Attributes every LogRecord carries; anything else on a record came from `extra=`.
_RECORD_ATTRS: FrozenSet[str] = frozenset(logging.makeLogRecord({}).__dict__) | {
    "message",
    "asctime",
    "taskName",
}


def iso8601(dt: datetime) -> str:
    # UTC, millisecond precision, trailing 'Z'
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, datetime):
        return iso8601(value)
    if isinstance(value, Mapping):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_json_safe(v) for v in value]
    return str(value)


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line: ``ts``, ``level``, ``logger``, ``message``, any
    ``extra=`` fields, then the formatter's static fields (service, env).
    """

    def __init__(self, static_fields: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__()
        self.static_fields: Dict[str, Any] = dict(static_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": iso8601(datetime.fromtimestamp(record.created, tz=timezone.utc)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key.startswith("_"):
                continue
            payload[key] = _json_safe(value)
        for key, value in self.static_fields.items():
            payload.setdefault(key, value)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


_configured = False


def configure_root_logging(
    level: int | str = "INFO",
    *,
    service: Optional[str] = None,
    env: Optional[str] = None,
) -> None:
    """
    Route the root logger to stdout through ``JsonFormatter``. Only the first
    call has an effect; existing root handlers are replaced.
    """
    global _configured
    if _configured:
        return

    root = logging.getLogger()
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    root.setLevel(level if isinstance(level, int) else logging.INFO)

    for handler in list(root.handlers):
        root.removeHandler(handler)

    static = {k: v for k, v in (("service", service), ("env", env)) if v}
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter(static))
    root.addHandler(handler)

    _configured = True
