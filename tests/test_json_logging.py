import json
import logging
from datetime import datetime, timezone

from soundbite.telemetry.logging import JsonFormatter, iso8601


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("soundbite.test", logging.WARNING, __file__, 1, "job %s", ("j-1",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_emits_single_json_line() -> None:
    line = JsonFormatter({"service": "SoundBite API", "env": "test"}).format(
        _record(backend="memory", raw=b"abc")
    )
    assert "\n" not in line
    payload = json.loads(line)
    assert payload["level"] == "WARNING"
    assert payload["logger"] == "soundbite.test"
    assert payload["message"] == "job j-1"
    assert payload["backend"] == "memory"
    assert payload["raw"] == "abc"
    assert payload["service"] == "SoundBite API"
    assert payload["env"] == "test"
    assert payload["ts"].endswith("Z")
    assert "args" not in payload and "lineno" not in payload


def test_extra_fields_win_over_static_fields() -> None:
    payload = json.loads(JsonFormatter({"env": "prod"}).format(_record(env="override")))
    assert payload["env"] == "override"


def test_iso8601_is_utc_millis() -> None:
    dt = datetime(2024, 1, 2, 3, 4, 5, 678_900, tzinfo=timezone.utc)
    assert iso8601(dt) == "2024-01-02T03:04:05.678Z"
