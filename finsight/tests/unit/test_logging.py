from __future__ import annotations

import json
import logging
import sys

from finsight.core.logging import JSONFormatter, RequestIdFilter, request_id_var


def _record(message: str, *args: object) -> logging.LogRecord:
    return logging.LogRecord("finsight.test", logging.INFO, __file__, 1, message, args, None)


def test_request_id_filter_defaults_to_dash() -> None:
    record = _record("quota_cycle_reset client_id=%s", "c1")
    assert RequestIdFilter().filter(record)
    assert record.request_id == "-"


def test_json_formatter_includes_request_id() -> None:
    token = request_id_var.set("req-123")
    try:
        record = _record("usage_threshold_crossed client_id=%s threshold=%s", "c1", 75)
        RequestIdFilter().filter(record)
        payload = json.loads(JSONFormatter().format(record))
    finally:
        request_id_var.reset(token)

    assert payload["request_id"] == "req-123"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "finsight.test"
    assert payload["message"] == "usage_threshold_crossed client_id=c1 threshold=75"


def test_json_formatter_captures_exceptions() -> None:
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logging.LogRecord(
            "finsight.test", logging.ERROR, __file__, 1, "purge_failed", (), sys.exc_info()
        )
    payload = json.loads(JSONFormatter().format(record))
    assert payload["error"] == "boom"
    assert "RuntimeError" in payload["traceback"]
