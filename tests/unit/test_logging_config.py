"""
Unit tests for structured logging setup.
"""

import io
import json
import logging

import pytest
import structlog

from kvbroker.logging_config import QUIET_LOGGERS, configure_logging


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
    structlog.reset_defaults()


def _json_lines(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


def test_production_renders_json_with_app_name(test_settings, restore_logging):
    test_settings.ENVIRONMENT = "production"
    test_settings.LOG_LEVEL = "INFO"
    stream = io.StringIO()

    configure_logging(test_settings, stream)
    structlog.get_logger("kvbroker.test").warning("Queue paused", queue="emails")

    event = _json_lines(stream)[-1]
    assert event["event"] == "Queue paused"
    assert event["queue"] == "emails"
    assert event["level"] == "warning"
    assert event["app"] == "kvbroker-test"
    assert "timestamp" in event


def test_stdlib_records_share_the_format(test_settings, restore_logging):
    test_settings.ENVIRONMENT = "production"
    test_settings.LOG_LEVEL = "DEBUG"
    stream = io.StringIO()

    configure_logging(test_settings, stream)
    logging.getLogger("kvbroker.plain").info("plain record")
    logging.getLogger("redis").info("connection chatter")

    events = [line for line in _json_lines(stream) if line["event"] != "Logging configured"]
    assert [line["event"] for line in events] == ["plain record"]
    assert events[0]["app"] == "kvbroker-test"
    assert all(logging.getLogger(name).level == logging.WARNING for name in QUIET_LOGGERS)


def test_development_renders_console_lines(test_settings, restore_logging):
    test_settings.ENVIRONMENT = "development"
    test_settings.LOG_LEVEL = "INFO"
    stream = io.StringIO()

    handler = configure_logging(test_settings, stream)
    structlog.get_logger("kvbroker.test").info("Queue created", queue="emails")

    output = stream.getvalue()
    assert "Queue created" in output
    assert "queue=emails" in output
    assert logging.getLogger().handlers == [handler]
