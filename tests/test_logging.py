"""Unit tests for structured logging configuration."""

import json
import logging
import sys
from unittest.mock import patch

import pytest

from subagents.logging_config import (
    ROOT_LOGGER,
    StructuredFormatter,
    TextFormatter,
    configure_logging,
)
from subagents.timing import timed_operation


def make_record(msg="sync_completed", name="subagents.sync", level=logging.INFO, **extra):
    record = logging.LogRecord(
        name=name,
        level=level,
        pathname="sync.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def root_logger():
    logger = logging.getLogger(ROOT_LOGGER)
    saved = (logger.handlers[:], logger.level, logger.propagate)
    logger.handlers = []
    yield logger
    logger.handlers, logger.level, logger.propagate = saved


class TestStructuredFormatter:
    def test_required_fields(self):
        data = json.loads(StructuredFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "subagents.sync"
        assert data["message"] == "sync_completed"
        assert data["timestamp"].endswith("Z")
        assert "context" not in data

    def test_extras_in_context(self):
        record = make_record(repository="acme/agents", agents_updated=2)

        data = json.loads(StructuredFormatter().format(record))

        assert data["context"] == {"repository": "acme/agents", "agents_updated": 2}

    def test_sensitive_keys_redacted(self):
        record = make_record(github_token="ghp_abc", signature="sha256=ff", owner="acme")

        data = json.loads(StructuredFormatter().format(record))

        assert data["context"]["github_token"] == "[REDACTED]"
        assert data["context"]["signature"] == "[REDACTED]"
        assert data["context"]["owner"] == "acme"

    def test_non_serializable_values_stringified(self):
        from datetime import datetime, timezone

        when = datetime(2030, 1, 1, tzinfo=timezone.utc)
        data = json.loads(StructuredFormatter().format(make_record(reset_at=when)))

        assert data["context"]["reset_at"] == str(when)

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = make_record(level=logging.ERROR)
            record.exc_info = sys.exc_info()

        data = json.loads(StructuredFormatter().format(record))

        assert "RuntimeError: boom" in data["exception"]


class TestConfigureLogging:
    def test_defaults_to_json_info(self, root_logger, monkeypatch):
        monkeypatch.delenv("SUBAGENTS_LOG_LEVEL", raising=False)
        monkeypatch.delenv("SUBAGENTS_LOG_FORMAT", raising=False)

        configure_logging()

        assert root_logger.level == logging.INFO
        assert root_logger.propagate is False
        assert isinstance(root_logger.handlers[0].formatter, StructuredFormatter)

    def test_env_control(self, root_logger, monkeypatch):
        monkeypatch.setenv("SUBAGENTS_LOG_LEVEL", "debug")
        monkeypatch.setenv("SUBAGENTS_LOG_FORMAT", "text")

        configure_logging()

        assert root_logger.level == logging.DEBUG
        assert isinstance(root_logger.handlers[0].formatter, TextFormatter)

    def test_idempotent(self, root_logger):
        configure_logging(level="INFO", fmt="json")
        configure_logging(level="WARNING", fmt="text")

        assert len(root_logger.handlers) == 1
        assert root_logger.level == logging.WARNING
        assert isinstance(root_logger.handlers[0].formatter, TextFormatter)

    def test_unknown_level_falls_back_to_info(self, root_logger):
        configure_logging(level="chatty")
        assert root_logger.level == logging.INFO


class TestTimedOperation:
    def test_logs_completion_with_context(self):
        logger = logging.getLogger("subagents.test.timing")
        with patch.object(logger, "log") as mock_log:
            with timed_operation("import_repository", logger, extra={"repo": "acme/agents"}) as ctx:
                ctx["agents"] = 3

        level, message = mock_log.call_args.args
        extra = mock_log.call_args.kwargs["extra"]
        assert level == logging.INFO
        assert message == "import_repository_completed"
        assert extra["repo"] == "acme/agents"
        assert extra["agents"] == 3
        assert extra["status"] == "success"
        assert extra["duration_ms"] >= 0

    def test_logs_failure_and_reraises(self):
        logger = logging.getLogger("subagents.test.timing")
        with patch.object(logger, "error") as mock_error:
            with pytest.raises(ValueError):
                with timed_operation("parse_repository", logger):
                    raise ValueError("bad tree")

        extra = mock_error.call_args.kwargs["extra"]
        assert mock_error.call_args.args[0] == "parse_repository_failed"
        assert extra["error"] == "bad tree"
        assert extra["error_type"] == "ValueError"
