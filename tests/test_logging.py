"""Tests for log formatting, correlation ids and handler setup."""

import json
import logging
import sys

import pytest

from driveaudit.logging import (
    DevelopmentFormatter,
    JSONFormatter,
    correlation_scope,
    get_correlation_id,
    setup_logging,
)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def make_record(message="Scan started", level=logging.INFO, **extra):
    record = logging.LogRecord("driveaudit.jobs.scan_run", level, __file__, 10, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestCorrelation:

    def test_scope_sets_and_resets(self):
        assert get_correlation_id() is None
        with correlation_scope("scan-123"):
            assert get_correlation_id() == "scan-123"
            with correlation_scope("job-9"):
                assert get_correlation_id() == "job-9"
            assert get_correlation_id() == "scan-123"
        assert get_correlation_id() is None


class TestJSONFormatter:

    def test_fields_and_extras(self):
        with correlation_scope("scan-123"):
            line = JSONFormatter().format(make_record(account_id="alice@example.com"))
        data = json.loads(line)
        assert data["level"] == "INFO"
        assert data["logger"] == "driveaudit.jobs.scan_run"
        assert data["message"] == "Scan started"
        assert data["correlation_id"] == "scan-123"
        assert data["account_id"] == "alice@example.com"
        assert "source" not in data

    def test_warning_carries_source(self):
        data = json.loads(JSONFormatter().format(make_record(level=logging.WARNING)))
        assert data["source"]["line"] == 10

    def test_unserializable_extra_is_stringified(self):
        data = json.loads(JSONFormatter().format(make_record(scan_type=object())))
        assert data["scan_type"].startswith("<object")

    def test_exception_included(self):
        try:
            raise ValueError("bad")
        except ValueError:
            record = make_record(level=logging.ERROR)
            record.exc_info = sys.exc_info()
        data = json.loads(JSONFormatter().format(record))
        assert "ValueError: bad" in data["exception"]


class TestDevelopmentFormatter:

    def test_plain_line(self):
        with correlation_scope("0123456789abcdef"):
            line = DevelopmentFormatter(use_colors=False).format(make_record(scan_id="s1"))
        assert "INFO" in line
        assert "[01234567]" in line
        assert "[driveaudit.jobs.scan_run] Scan started" in line
        assert line.endswith("scan_id=s1")

    def test_colors(self):
        line = DevelopmentFormatter(use_colors=True).format(make_record())
        assert "\033[32mINFO\033[0m" in line


class TestSetupLogging:

    def test_replaces_handlers_and_sets_level(self, restore_root_logger):
        setup_logging(level="debug")
        root = restore_root_logger
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, DevelopmentFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_json_console_and_file(self, restore_root_logger, tmp_path):
        path = tmp_path / "driveaudit.log"
        setup_logging(level="INFO", json_format=True, log_file=str(path))
        root = restore_root_logger
        assert all(isinstance(h.formatter, JSONFormatter) for h in root.handlers)

        logging.getLogger("driveaudit.test").info("hello", extra={"scan_id": "s1"})
        for handler in root.handlers:
            handler.flush()

        data = json.loads(path.read_text().strip().splitlines()[-1])
        assert data["message"] == "hello"
        assert data["scan_id"] == "s1"
