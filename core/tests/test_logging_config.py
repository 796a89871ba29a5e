"""Tests for structured logging and trace context propagation."""

import asyncio
import json
import logging

import pytest

from flowdesigner.config import EngineConfig, ServerConfig
from flowdesigner.observability import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)
from flowdesigner.observability.logging import HumanReadableFormatter, StructuredFormatter


def _record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("flowdesigner.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:
    def test_structured_includes_context_and_extras(self):
        set_trace_context(flow_id="flow_1", execution_id="exec_1", node_id="call")

        entry = json.loads(
            StructuredFormatter().format(_record("\x1b[32mdone\x1b[0m", duration_ms=12))
        )

        assert entry["message"] == "done"
        assert entry["level"] == "info"
        assert entry["flow_id"] == "flow_1"
        assert entry["node_id"] == "call"
        assert entry["duration_ms"] == 12

    def test_human_prefix(self):
        set_trace_context(flow_id="flow_1", execution_id="exec_0123456789")

        line = HumanReadableFormatter().format(_record("started", event="run_started"))

        assert "[flow:flow_1 | exec:23456789]" in line
        assert line.endswith("started [run_started]")

    def test_no_context_no_prefix(self):
        clear_trace_context()
        line = HumanReadableFormatter().format(_record("idle"))
        assert "[flow:" not in line


class TestTraceContext:
    def test_set_merges(self):
        clear_trace_context()
        set_trace_context(flow_id="f")
        set_trace_context(node_id="n")
        assert get_trace_context() == {"flow_id": "f", "node_id": "n"}

        clear_trace_context()
        assert get_trace_context() == {}

    @pytest.mark.asyncio
    async def test_context_is_isolated_between_tasks(self):
        async def run(flow_id: str) -> dict:
            set_trace_context(flow_id=flow_id)
            await asyncio.sleep(0)
            return get_trace_context()

        first, second = await asyncio.gather(run("a"), run("b"))

        assert first["flow_id"] == "a"
        assert second["flow_id"] == "b"


class TestConfigureLogging:
    def test_json_format(self, root_logger):
        configure_logging(level="debug", format="json")

        assert root_logger.level == logging.DEBUG
        assert isinstance(root_logger.handlers[0].formatter, StructuredFormatter)

    def test_auto_uses_log_format_env(self, root_logger, monkeypatch):
        monkeypatch.setenv("LOG_FORMAT", "json")
        configure_logging(format="auto")
        assert isinstance(root_logger.handlers[0].formatter, StructuredFormatter)

    def test_auto_defaults_to_human(self, root_logger, monkeypatch):
        monkeypatch.delenv("ENV", raising=False)
        configure_logging(format="auto")
        assert isinstance(root_logger.handlers[0].formatter, HumanReadableFormatter)


class TestSettings:
    def test_defaults(self, isolated_home):
        engine = EngineConfig()
        server = ServerConfig()

        assert engine.time_scale == 0.0
        assert engine.circuit_failure_threshold == 5
        assert engine.durations == {}
        assert server.port == 8470
        assert server.storage_path == isolated_home / "flows"

    def test_configuration_file(self, isolated_home):
        isolated_home.mkdir(parents=True)
        (isolated_home / "configuration.json").write_text(
            json.dumps(
                {
                    "engine": {"circuit_failure_threshold": 2, "durations": {"connector": 5}},
                    "server": {"port": 9000},
                }
            ),
            encoding="utf-8",
        )

        assert EngineConfig().circuit_failure_threshold == 2
        assert EngineConfig().durations == {"connector": 5}
        assert ServerConfig().port == 9000

    def test_environment_overrides_file(self, isolated_home, monkeypatch):
        monkeypatch.setenv("FLOWDESIGNER_PORT", "9100")
        monkeypatch.setenv("FLOWDESIGNER_TIME_SCALE", "0.5")

        assert ServerConfig().port == 9100
        assert EngineConfig().time_scale == 0.5

    def test_unreadable_file_is_ignored(self, isolated_home):
        isolated_home.mkdir(parents=True)
        (isolated_home / "configuration.json").write_text("{", encoding="utf-8")

        assert EngineConfig().circuit_failure_threshold == 5
