# backend/tests/test_logging_config.py
from __future__ import annotations

import json
import logging

import pytest

from repairflow.config import settings
from repairflow.logging_config import JsonFormatter, KeyValueFormatter, configure_logging
from repairflow.middleware.request_id import bind_request_id, request_id_ctx


def _record(msg: str, **extra) -> logging.LogRecord:
    r = logging.LogRecord("repairflow.escalation", logging.WARNING, __file__, 1, msg, None, None)
    for k, v in extra.items():
        setattr(r, k, v)
    return r


@pytest.fixture
def _restore_root():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    esc_level = logging.getLogger("repairflow.escalation").level
    yield
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        root.addHandler(h)
    root.setLevel(level)
    logging.getLogger("repairflow.escalation").setLevel(esc_level)


def test_json_line_carries_bound_request_id_and_workflow_ids():
    token = bind_request_id("tick-1")
    try:
        line = json.loads(
            JsonFormatter().format(_record("escalation_advanced", tracking_id=7, escalation_level=2, unrelated="x"))
        )
    finally:
        request_id_ctx.reset(token)

    assert line["message"] == "escalation_advanced"
    assert line["level"] == "WARNING"
    assert line["logger"] == "repairflow.escalation"
    assert line["request_id"] == "tick-1"
    assert line["tracking_id"] == 7
    assert line["escalation_level"] == 2
    assert "unrelated" not in line


def test_text_format_appends_ids():
    line = KeyValueFormatter().format(_record("bid_selected", bid_id=3, org_id=1))
    assert line.startswith("WARNING repairflow.escalation bid_selected")
    assert "org_id=1" in line
    assert "bid_id=3" in line


def test_configure_logging_applies_per_logger_levels(monkeypatch, _restore_root):
    monkeypatch.setattr(settings, "log_format", "text")
    monkeypatch.setattr(settings, "log_levels", {"repairflow.escalation": "debug"})

    configure_logging(level="warning")

    root = logging.getLogger()
    assert root.level == logging.WARNING
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, KeyValueFormatter)
    assert logging.getLogger("repairflow.escalation").level == logging.DEBUG
    assert logging.getLogger("repairflow.escalation").isEnabledFor(logging.DEBUG)
