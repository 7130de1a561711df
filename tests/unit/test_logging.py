from __future__ import annotations

import json
import logging
import sys

from linear_agent_orchestrator.orchestrator.logging import JsonFormatter, configure_logging


def _record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="linear_agent_orchestrator.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Trigger %s",
        args=("written",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_renders_message_and_extra() -> None:
    line = JsonFormatter().format(_record(work_item_id="CRU-123", source="webhook"))

    payload = json.loads(line)
    assert payload["level"] == "INFO"
    assert payload["logger"] == "linear_agent_orchestrator.test"
    assert payload["message"] == "Trigger written"
    assert payload["thread"] == "MainThread"
    assert "service" not in payload
    assert payload["extra"] == {"work_item_id": "CRU-123", "source": "webhook"}
    assert "exception" not in payload


def test_json_formatter_omits_empty_extra_and_includes_exception() -> None:
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = _record()
        record.exc_info = sys.exc_info()

    payload = json.loads(JsonFormatter().format(record))

    assert "extra" not in payload
    assert "RuntimeError: boom" in payload["exception"]


def test_json_formatter_stringifies_unserialisable_values() -> None:
    payload = json.loads(JsonFormatter().format(_record(path=object())))
    assert isinstance(payload["extra"]["path"], str)


def test_json_formatter_adds_service_name() -> None:
    payload = json.loads(JsonFormatter(service="orchestrator-test").format(_record()))
    assert payload["service"] == "orchestrator-test"


def test_configure_logging_is_idempotent() -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        configure_logging("debug")
        configure_logging("info")

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.level == logging.INFO
        assert logging.getLogger("urllib3").level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
