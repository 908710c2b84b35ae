"""Tests for logging setup."""

import json
import logging

import pytest

from vmdeployerd.lib.logger import JSONFormatter, setup_logging


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def make_record(level, message, exc_info=None):
    return logging.LogRecord("vmdeployerd.test", level, __file__, 1, message, None, exc_info)


def test_json_formatter():
    entry = json.loads(JSONFormatter().format(make_record(logging.INFO, "VM created")))
    assert entry == {"severity": "NORMAL", "message": "VM created", "logger": "vmdeployerd.test"}


def test_json_formatter_exception():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        import sys

        record = make_record(logging.ERROR, "failed", exc_info=sys.exc_info())
    entry = json.loads(JSONFormatter().format(record))
    assert entry["severity"] == "ERROR"
    assert "RuntimeError: boom" in entry["exception"]


def test_setup_logging_json(root_logger):
    setup_logging({"debug": False, "log_level": "warning", "log_format": "json"})
    assert root_logger.level == logging.WARNING
    assert len(root_logger.handlers) == 1
    assert isinstance(root_logger.handlers[0].formatter, JSONFormatter)


def test_setup_logging_debug_text(root_logger):
    setup_logging({"debug": True, "log_level": "error", "log_format": "text"})
    assert root_logger.level == logging.DEBUG
    assert not isinstance(root_logger.handlers[0].formatter, JSONFormatter)
