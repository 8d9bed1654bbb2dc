"""
Tests for structured logging.
"""

import io
import json
import logging

import pytest


@pytest.fixture
def toolchest_logger():
    """Restore the toolchest logger's handlers and level after each test."""
    root = logging.getLogger("toolchest")
    handlers = list(root.handlers)
    level = root.level
    yield root
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
    root.setLevel(level)


class TestStructuredHandler:
    """Tests for JSON log output."""

    def test_event_fields(self, toolchest_logger):
        from toolchest.observability import Combinator, StructuredHandler, event_extra

        stream = io.StringIO()
        toolchest_logger.addHandler(StructuredHandler(stream))
        toolchest_logger.setLevel(logging.DEBUG)

        logging.getLogger("toolchest.functions.resilience").warning(
            "retrying %s",
            "fetch",
            extra=event_extra(Combinator.RETRY, "retry", 12.5, attempt=2),
        )

        event = json.loads(stream.getvalue().strip())
        assert event["level"] == "warning"
        assert event["logger"] == "toolchest.functions.resilience"
        assert event["message"] == "retrying fetch"
        assert event["combinator"] == "retry"
        assert event["operation"] == "retry"
        assert event["duration_ms"] == 12.5
        assert event["context"] == {"attempt": 2}
        assert "timestamp" in event

    def test_empty_fields_are_omitted(self, toolchest_logger):
        from toolchest.observability import StructuredHandler

        stream = io.StringIO()
        toolchest_logger.addHandler(StructuredHandler(stream))
        toolchest_logger.setLevel(logging.INFO)

        logging.getLogger("toolchest.plain").info("hello")

        event = json.loads(stream.getvalue())
        assert "combinator" not in event
        assert "context" not in event
        assert "exception" not in event

    def test_exception_traceback_included(self, toolchest_logger):
        from toolchest.observability import StructuredHandler

        stream = io.StringIO()
        toolchest_logger.addHandler(StructuredHandler(stream))

        try:
            raise ValueError("kaboom")
        except ValueError:
            logging.getLogger("toolchest.bg").exception("background failure")

        event = json.loads(stream.getvalue())
        assert event["level"] == "error"
        assert "ValueError: kaboom" in event["exception"]


class TestConfigureLogging:
    """Tests for handler installation."""

    def _managed(self, logger):
        return [h for h in logger.handlers if getattr(h, "_toolchest_managed", False)]

    def test_repeated_calls_do_not_stack_handlers(self, toolchest_logger):
        from toolchest.observability import LogLevel, configure_logging

        configure_logging(LogLevel.DEBUG, "json", io.StringIO())
        configure_logging(LogLevel.WARNING, "text", io.StringIO())

        assert len(self._managed(toolchest_logger)) == 1
        assert toolchest_logger.level == logging.WARNING

    def test_text_format_appends_context(self, toolchest_logger):
        from toolchest.observability import Combinator, LogLevel, configure_logging, event_extra

        stream = io.StringIO()
        configure_logging(LogLevel.INFO, "text", stream)

        logging.getLogger("toolchest.functions.timing").info(
            "scheduled", extra=event_extra(Combinator.DEBOUNCE, "schedule", name="save")
        )

        line = stream.getvalue().strip()
        assert "INFO toolchest.functions.timing: scheduled" in line
        assert line.endswith("[name=save]")

    def test_unknown_format_rejected(self):
        from toolchest.observability import configure_logging

        with pytest.raises(ValueError):
            configure_logging(fmt="xml")

    def test_configure_from_config(self, toolchest_logger, _isolated_config):
        from toolchest.observability import TextFormatter, configure_from_config

        _isolated_config.set("observability.log_level", "error")
        _isolated_config.set("observability.log_format", "text")

        configure_from_config()

        managed = self._managed(toolchest_logger)
        assert len(managed) == 1
        assert isinstance(managed[0].formatter, TextFormatter)
        assert toolchest_logger.level == logging.ERROR


class TestTimedOperation:
    """Tests for the timing decorator."""

    def test_success_logged_at_debug(self, caplog):
        from toolchest.observability import Combinator, timed_operation

        logger = logging.getLogger("toolchest.timed")

        @timed_operation(logger, Combinator.MEMOIZE, "warm_cache")
        def warm():
            return "warm"

        with caplog.at_level(logging.DEBUG, logger="toolchest"):
            assert warm() == "warm"

        record = caplog.records[-1]
        assert record.levelno == logging.DEBUG
        assert record.getMessage() == "Operation warm_cache completed"
        assert record.combinator == "memoize"
        assert record.duration_ms >= 0

    def test_failure_logged_at_warning_and_reraised(self, caplog):
        from toolchest.observability import Combinator, timed_operation

        logger = logging.getLogger("toolchest.timed")

        @timed_operation(logger, Combinator.CONFIG, "load")
        def load():
            raise OSError("disk")

        with caplog.at_level(logging.DEBUG, logger="toolchest"):
            with pytest.raises(OSError):
                load()

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert record.getMessage() == "Operation load failed"
