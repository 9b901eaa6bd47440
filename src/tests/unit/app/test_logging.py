"""Tests for JSON logging setup."""

import json
import logging

import pytest

from agentlab.app.config import LoggingConfig
from agentlab.app.logging import (
    CustomJsonFormatter,
    RateLimitFilter,
    clear_trace_context,
    get_trace_id,
    set_trace_id,
    setup_logging,
)


def _record(msg: str = "hello", level: int = logging.INFO) -> logging.LogRecord:
    return logging.LogRecord("agentlab.test", level, __file__, 10, msg, None, None)


class TestTraceContext:
    def test_set_and_clear(self) -> None:
        set_trace_id("job_1")
        assert get_trace_id() == "job_1"
        clear_trace_context()
        assert get_trace_id() is None


class TestRateLimitFilter:
    def test_suppresses_after_limit(self) -> None:
        f = RateLimitFilter(rate_per_minute=2)
        results = [f.filter(_record()) for _ in range(4)]
        # two normal, one tagged, then dropped
        assert results == [True, True, True, False]

    def test_tags_first_suppressed(self) -> None:
        f = RateLimitFilter(rate_per_minute=1)
        f.filter(_record())
        tagged = _record()
        assert f.filter(tagged)
        assert tagged.msg.startswith("[RATE LIMITED]")

    def test_errors_bypass(self) -> None:
        f = RateLimitFilter(rate_per_minute=1)
        assert all(f.filter(_record(level=logging.ERROR)) for _ in range(5))

    def test_distinct_messages_counted_separately(self) -> None:
        f = RateLimitFilter(rate_per_minute=1)
        assert f.filter(_record("a"))
        assert f.filter(_record("b"))


class TestCustomJsonFormatter:
    def test_standard_fields(self) -> None:
        formatter = CustomJsonFormatter(schema_version="2.0", service="agentlabd-test")
        set_trace_id("job_7")
        try:
            payload = json.loads(formatter.format(_record()))
        finally:
            clear_trace_context()

        assert payload["message"] == "hello"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "agentlab.test"
        assert payload["schema_version"] == "2.0"
        assert payload["service"] == "agentlabd-test"
        assert payload["trace_id"] == "job_7"
        assert payload["timestamp"].endswith("+00:00")

    def test_extra_fields(self) -> None:
        record = _record()
        record.event = "state_changed"
        record.vmid = 1000
        payload = json.loads(CustomJsonFormatter().format(record))
        assert payload["event"] == "state_changed"
        assert payload["vmid"] == 1000
        assert "trace_id" not in payload


class TestSetupLogging:
    @pytest.fixture(autouse=True)
    def _restore_root(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_installs_json_handler(self) -> None:
        setup_logging(LoggingConfig(level="debug"))
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, CustomJsonFormatter)
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING

    def test_explicit_level_wins(self) -> None:
        setup_logging(LoggingConfig(level="DEBUG"), level=logging.ERROR)
        assert logging.getLogger().level == logging.ERROR
