"""Tests for structured logging."""

import json
import logging

from callscheduler.shared.logging import StructuredFormatter, TextFormatter, correlation_id_var, correlation_scope


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("callscheduler.test", logging.INFO, __file__, 1, "Call placed", None, None)
    record.__dict__.update(extra)
    return record


class TestStructuredFormatter:
    def test_extra_fields_and_correlation(self) -> None:
        with correlation_scope("CA123"):
            line = StructuredFormatter().format(_record(call_log_id="abc", level="clash"))

        data = json.loads(line)
        assert data["message"] == "Call placed"
        assert data["correlation_id"] == "CA123"
        assert data["call_log_id"] == "abc"
        assert data["level"] == "INFO"
        assert data["extra_level"] == "clash"

    def test_scope_is_reset(self) -> None:
        with correlation_scope("CA123"):
            pass

        assert correlation_id_var.get() is None
        assert "correlation_id" not in json.loads(StructuredFormatter().format(_record()))


class TestTextFormatter:
    def test_key_value_suffix(self) -> None:
        line = TextFormatter().format(_record(call_sid="CA9"))

        assert "INFO" in line
        assert "callscheduler.test: Call placed" in line
        assert line.endswith("call_sid=CA9")
