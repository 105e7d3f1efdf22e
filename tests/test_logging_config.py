"""Tests for structured logging and operation context."""

import json
import logging
import sys

import pytest

from src.logging_config import (
    ConsoleFormatter,
    LogFormat,
    LoggingConfig,
    LogLevel,
    OperationContext,
    StructuredFormatter,
    configure_logging,
    generate_request_id,
    get_context_dict,
)
from src.settings import Settings


def make_record(msg="hello", level=logging.INFO, exc_info=None):
    return logging.LogRecord(
        name="src.notifications.sender",
        level=level,
        pathname=__file__,
        lineno=10,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


class TestLoggingConfig:

    def test_defaults(self):
        config = LoggingConfig()
        assert config.level == LogLevel.INFO
        assert config.format == LogFormat.JSON
        assert "/notifications/health" in config.exclude_paths

    def test_from_settings(self):
        config = LoggingConfig.from_settings(Settings(log_level="debug", log_format="console"))
        assert config.level == LogLevel.DEBUG
        assert config.format == LogFormat.CONSOLE

    def test_from_settings_falls_back(self):
        config = LoggingConfig.from_settings(Settings(log_level="loud", log_format="xml"))
        assert config.level == LogLevel.INFO
        assert config.format == LogFormat.JSON


class TestOperationContext:

    def test_request_ids_unique(self):
        assert generate_request_id() != generate_request_id()

    def test_binds_and_restores(self):
        assert get_context_dict() == {}
        with OperationContext(job_id="maintenance_1_abc"):
            assert get_context_dict() == {"job_id": "maintenance_1_abc"}
        assert get_context_dict() == {}

    def test_nested_contexts_inherit(self):
        with OperationContext(client_id="c1"):
            with OperationContext(notification_id="n1"):
                assert get_context_dict() == {"client_id": "c1", "notification_id": "n1"}
            assert get_context_dict() == {"client_id": "c1"}

    def test_bind_extra(self):
        with OperationContext(request_id="r1") as ctx:
            ctx.bind(chunk=2)
            assert get_context_dict()["chunk"] == 2

    def test_elapsed_ms(self):
        with OperationContext() as ctx:
            assert ctx.elapsed_ms >= 0


class TestStructuredFormatter:

    def test_json_line(self):
        output = json.loads(StructuredFormatter().format(make_record()))
        assert output["message"] == "hello"
        assert output["level"] == "INFO"
        assert output["service"] == "xsite-push"
        assert output["caller"].endswith(":10")

    def test_without_caller(self):
        output = json.loads(StructuredFormatter(include_caller=False).format(make_record()))
        assert "caller" not in output

    def test_includes_context(self):
        with OperationContext(job_id="maintenance_1_abc"):
            output = json.loads(StructuredFormatter().format(make_record()))
        assert output["job_id"] == "maintenance_1_abc"

    def test_includes_exception(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = make_record(level=logging.ERROR, exc_info=sys.exc_info())
        output = json.loads(StructuredFormatter().format(record))
        assert output["exception"]["type"] == "ValueError"
        assert output["exception"]["message"] == "boom"

    def test_includes_extra_fields(self):
        record = make_record()
        record.status_code = 201
        output = json.loads(StructuredFormatter().format(record))
        assert output["status_code"] == 201


class TestConsoleFormatter:

    def test_readable_line(self):
        line = ConsoleFormatter().format(make_record())
        assert "INFO" in line
        assert "hello" in line

    def test_context_suffix(self):
        with OperationContext(client_id="c1"):
            line = ConsoleFormatter().format(make_record())
        assert "[client_id=c1]" in line


class TestConfigureLogging:

    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_json(self):
        configure_logging(LoggingConfig(level=LogLevel.WARNING))
        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)

    def test_console(self):
        configure_logging(LoggingConfig(format=LogFormat.CONSOLE))
        assert isinstance(logging.getLogger().handlers[0].formatter, ConsoleFormatter)

    def test_quiets_noisy_loggers(self):
        configure_logging()
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
