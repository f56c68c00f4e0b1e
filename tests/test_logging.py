"""Tests for structured logging configuration."""

import io
import json

import pytest
import structlog

from instrument_spine.logging import LogContext, configure_logging, get_logger


@pytest.fixture
def log_stream():
    stream = io.StringIO()
    yield stream
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


def _events(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


class TestConfigureLogging:
    def test_json_lines_with_ecs_fields(self, log_stream):
        configure_logging(level="INFO", json_format=True, service="spine-test", stream=log_stream)
        get_logger("tests.logging").info("run_started", batch_size=500)

        [event] = _events(log_stream)
        assert event["event"] == "run_started"
        assert event["batch_size"] == 500
        assert event["log.level"] == "info"
        assert event["service.name"] == "spine-test"
        assert "@timestamp" in event

    def test_level_filtering(self, log_stream):
        configure_logging(level="WARNING", json_format=True, stream=log_stream)
        logger = get_logger("tests.logging")
        logger.info("hidden")
        logger.warning("quality_gate_breached")

        assert [e["event"] for e in _events(log_stream)] == ["quality_gate_breached"]

    def test_console_format_is_plain_text(self, log_stream):
        configure_logging(level="INFO", json_format=False, stream=log_stream)
        get_logger("tests.logging").info("run_completed")

        output = log_stream.getvalue()
        assert "run_completed" in output
        assert "\x1b[" not in output


class TestLogContext:
    def test_nested_context_restores_outer_values(self, log_stream):
        configure_logging(level="INFO", json_format=True, stream=log_stream)
        logger = get_logger("tests.logging")

        with LogContext(run_id="run-1"):
            with LogContext(batch_no=3):
                logger.info("batch_committed")
            logger.info("run_completed")
        logger.info("idle")

        inner, outer, after = _events(log_stream)
        assert (inner["migration.run_id"], inner["migration.batch_no"]) == ("run-1", 3)
        assert outer["migration.run_id"] == "run-1"
        assert "migration.batch_no" not in outer
        assert "migration.run_id" not in after
