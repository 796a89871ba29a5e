"""Shared fixtures for flowdesigner tests."""

import logging
from typing import Any

import pytest

from flowdesigner.config import EngineConfig
from flowdesigner.graph.executor import ExecutionEngine
from flowdesigner.graph.flow import EdgeData, FieldMapping, Flow, FlowConfig, FlowEdge, FlowNode
from flowdesigner.graph.node_types import get_default_registry
from flowdesigner.observability import clear_trace_context
from flowdesigner.runtime.event_bus import EventBus


@pytest.fixture(autouse=True)
def isolated_home(monkeypatch, tmp_path):
    """Keep tests away from the user's ~/.flowdesigner configuration."""
    home = tmp_path / "flowdesigner-home"
    monkeypatch.setenv("FLOWDESIGNER_HOME", str(home))
    for var in ("FLOWDESIGNER_TIME_SCALE", "FLOWDESIGNER_HOST", "FLOWDESIGNER_PORT",
                "FLOWDESIGNER_STORAGE", "LOG_FORMAT"):
        monkeypatch.delenv(var, raising=False)
    yield home
    clear_trace_context()


@pytest.fixture
def registry():
    return get_default_registry()


@pytest.fixture
def make_node(registry):
    """Build a node with the type's default data and config overrides."""

    def _make(node_id: str, type: str, label: str | None = None, **config: Any) -> FlowNode:
        default = registry.lookup(type).default_data
        data = default.model_copy(
            update={
                "label": label or node_id,
                "config": {**default.config, **config},
            },
            deep=True,
        )
        return FlowNode(id=node_id, type=type, data=data)

    return _make


@pytest.fixture
def make_edge():
    def _make(
        source: str,
        target: str,
        source_port: str | None = None,
        target_port: str | None = None,
        mapping: list[FieldMapping] | None = None,
    ) -> FlowEdge:
        return FlowEdge(
            id=f"e_{source}_{source_port or 'out'}_{target}",
            source=source,
            target=target,
            source_port=source_port,
            target_port=target_port,
            data=EdgeData(mapping=mapping or []),
        )

    return _make


@pytest.fixture
def make_flow():
    def _make(
        nodes: list[FlowNode],
        edges: list[FlowEdge],
        config: FlowConfig | None = None,
        flow_id: str = "flow_test",
    ) -> Flow:
        return Flow(
            id=flow_id,
            name="Test Flow",
            nodes=nodes,
            edges=edges,
            config=config or FlowConfig(),
        )

    return _make


@pytest.fixture
def engine_config():
    return EngineConfig(time_scale=0.0, circuit_failure_threshold=5, durations={})


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def engine(engine_config, event_bus):
    return ExecutionEngine(config=engine_config, event_bus=event_bus)


@pytest.fixture
def root_logger():
    """Restore the root logger after a test reconfigures logging."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)
