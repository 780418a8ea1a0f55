# tests/test_logging_config.py
"""Tests for stageflow/infra/logging_config.py"""
from __future__ import annotations

import json
import logging
import sys

from stageflow.infra.logging_config import ConsoleFormatter, JSONFormatter, LogContext, setup_logging


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("stageflow.test", logging.INFO, __file__, 10, "moved to %s", ("loading",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:
    def test_json_formatter_includes_context(self):
        payload = json.loads(JSONFormatter().format(_record(engine="checkout", stage="loading")))
        assert payload["message"] == "moved to loading"
        assert payload["level"] == "INFO"
        assert payload["engine"] == "checkout"
        assert payload["stage"] == "loading"
        assert "event" not in payload

    def test_json_formatter_exception(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
        payload = json.loads(JSONFormatter().format(record))
        assert "ValueError: boom" in payload["exception"]

    def test_console_formatter_context(self):
        line = ConsoleFormatter().format(_record(engine="checkout", event="fetch"))
        assert "[engine=checkout event=fetch]" in line
        assert "moved to loading" in line


class TestLogContext:
    def test_context_attached(self, caplog):
        logger = logging.getLogger("stageflow.test.ctx")
        with caplog.at_level(logging.INFO, logger="stageflow.test.ctx"):
            LogContext(logger, engine="checkout").bind(stage="idle", event=None).info("hello %s", "world")
        (record,) = caplog.records
        assert record.getMessage() == "hello world"
        assert record.engine == "checkout"
        assert record.stage == "idle"
        assert not hasattr(record, "event")

    def test_bind_does_not_mutate_parent(self):
        parent = LogContext(logging.getLogger("x"), engine="a")
        child = parent.bind(stage="s")
        assert parent.context == {"engine": "a"}
        assert child.context == {"engine": "a", "stage": "s"}


class TestSetupLogging:
    def test_installs_single_handler(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging("DEBUG", use_json=True)
            setup_logging("WARNING", use_json=False)
            own = [h for h in root.handlers if isinstance(h.formatter, (JSONFormatter, ConsoleFormatter))]
            assert len(own) == 1
            assert isinstance(own[0].formatter, ConsoleFormatter)
            assert root.level == logging.WARNING
        finally:
            for handler in root.handlers[:]:
                root.removeHandler(handler)
            for handler in saved_handlers:
                root.addHandler(handler)
            root.setLevel(saved_level)
