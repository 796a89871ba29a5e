"""
Flow Model - Nodes, ports and edges of an integration flow.

A Flow is a named, versioned directed graph:
1. Nodes are typed units of work instantiated from a NodeType
2. Edges connect a node's output port to another node's input port
3. Edge mappings shape the data handed from producer to consumer

All models are frozen and compare by value, so a consumer can detect a
change by comparing two snapshots. The JSON form uses camelCase keys.

Example:
    FlowEdge(
        id="e1",
        source="ingress",
        target="enrich",
        source_port="success",
        target_port="input",
        data=EdgeData(
            mapping=[
                FieldMapping(id="m1", source_field="order.id", target_field="orderId"),
                FieldMapping(
                    id="m2",
                    source_field="order.amount",
                    target_field="amountCents",
                    type=MappingType.TRANSFORM,
                    transform="value * 100",
                ),
            ]
        ),
    )
"""

import copy
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import Field

from flowdesigner.graph.errors import ExpressionError, ValidationFailure
from flowdesigner.graph.safe_eval import MISSING, assign_path, resolve_path, safe_eval
from flowdesigner.schemas.base import CamelModel

# Port types. "any" is assignable to and from every other type.
PORT_ANY = "any"
PORT_ERROR = "error"
PORT_TYPES = {"any", "object", "array", "string", "number", "boolean", "error"}


def is_assignable(source_type: str, target_type: str) -> bool:
    """Check whether a value on a source port may flow into a target port."""
    if PORT_ANY in (source_type, target_type):
        return True
    return source_type == target_type


def _now() -> datetime:
    return datetime.now(UTC)


class PortSpec(CamelModel):
    """A named, typed connection point on a node."""

    id: str
    name: str = ""
    type: str = PORT_ANY
    required: bool = False


class Position(CamelModel):
    """Canvas position. Irrelevant to execution."""

    x: float = 0.0
    y: float = 0.0


class NodeData(CamelModel):
    """Label, configuration and port layout of a node."""

    label: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    inputs: list[PortSpec] = Field(default_factory=list)
    outputs: list[PortSpec] = Field(default_factory=list)


class FlowNode(CamelModel):
    """A typed unit of work placed on the canvas."""

    id: str
    type: str
    position: Position = Field(default_factory=Position)
    data: NodeData = Field(default_factory=NodeData)

    def get_input(self, port_id: str | None) -> PortSpec | None:
        """Get an input port by id; None resolves to the first input port."""
        return _find_port(self.data.inputs, port_id)

    def get_output(self, port_id: str | None) -> PortSpec | None:
        """Get an output port by id; None resolves to the first output port."""
        return _find_port(self.data.outputs, port_id)

    @property
    def config(self) -> dict[str, Any]:
        return self.data.config


def _find_port(ports: list[PortSpec], port_id: str | None) -> PortSpec | None:
    if port_id is None:
        return ports[0] if ports else None
    for port in ports:
        if port.id == port_id:
            return port
    return None


class MappingType(StrEnum):
    """How a field mapping produces its value."""

    DIRECT = "direct"  # Copy source field as-is
    TRANSFORM = "transform"  # Evaluate an expression over the source field
    STATIC = "static"  # Use a fixed value


class FieldMapping(CamelModel):
    """Maps one field of the producer's output onto the consumer's input."""

    id: str
    source_field: str = ""
    target_field: str
    type: MappingType = MappingType.DIRECT
    transform: str | None = None
    static_value: Any = None

    def resolve(self, source_output: Any) -> Any:
        """Produce the mapped value from the producer's output."""
        if self.type == MappingType.STATIC:
            return copy.deepcopy(self.static_value)

        value = resolve_path(source_output, self.source_field)
        if value is MISSING:
            raise ValidationFailure(f"Mapped field '{self.source_field}' not found in input")

        if self.type == MappingType.TRANSFORM:
            if not self.transform:
                raise ExpressionError(f"Mapping '{self.id}' has no transform expression")
            return safe_eval(self.transform, {"value": value, "input": source_output})

        return copy.deepcopy(value)


class EdgeData(CamelModel):
    """Branch label and field mappings carried by an edge."""

    condition: str | None = None
    mapping: list[FieldMapping] = Field(default_factory=list)


class FlowEdge(CamelModel):
    """A directed connection from a source port to a target port."""

    id: str
    source: str
    target: str
    source_port: str | None = None
    target_port: str | None = None
    data: EdgeData = Field(default_factory=EdgeData)

    def map_inputs(self, source_output: Any) -> Any:
        """
        Map the producer's output to the consumer's input.

        With no mappings the output passes through unchanged. Otherwise the
        result is a fresh dict containing only the mapped target fields.
        """
        if not self.data.mapping:
            return copy.deepcopy(source_output)

        result: dict[str, Any] = {}
        for mapping in self.data.mapping:
            assign_path(result, mapping.target_field, mapping.resolve(source_output))
        return result


class ErrorHandling(StrEnum):
    """Default error-handling strategy for a flow."""

    PROPAGATE = "propagate"
    FALLBACK = "fallback"
    RETRY = "retry"


class FlowConfig(CamelModel):
    """Flow-wide execution defaults."""

    timeout: int = Field(default=30000, ge=0, description="Default timeout in ms")
    retries: int = Field(default=3, ge=0)
    error_handling: ErrorHandling = ErrorHandling.PROPAGATE


class Flow(CamelModel):
    """A complete, versioned integration flow."""

    id: str
    name: str
    description: str = ""
    version: str = "1.0.0"
    nodes: list[FlowNode] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)
    config: FlowConfig = Field(default_factory=FlowConfig)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def get_node(self, node_id: str) -> FlowNode | None:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_edge(self, edge_id: str) -> FlowEdge | None:
        """Get an edge by ID."""
        for edge in self.edges:
            if edge.id == edge_id:
                return edge
        return None

    def get_outgoing_edges(self, node_id: str) -> list[FlowEdge]:
        """Get all edges leaving a node, in declaration order."""
        return [e for e in self.edges if e.source == node_id]

    def get_incoming_edges(self, node_id: str) -> list[FlowEdge]:
        """Get all edges entering a node, in declaration order."""
        return [e for e in self.edges if e.target == node_id]

    def node_ids(self) -> set[str]:
        return {n.id for n in self.nodes}

    def edge_key(self, edge: FlowEdge) -> tuple[str, str | None, str, str | None]:
        """
        Canonical (source, sourcePort, target, targetPort) of an edge.

        Omitted ports resolve to the node's first output / input port, so an
        edge stored without ports and one added with explicit default ports
        share a key. Unknown nodes or ports keep the raw value.
        """
        src = self.get_node(edge.source)
        tgt = self.get_node(edge.target)
        out_port = src.get_output(edge.source_port) if src is not None else None
        in_port = tgt.get_input(edge.target_port) if tgt is not None else None
        return (
            edge.source,
            out_port.id if out_port is not None else edge.source_port,
            edge.target,
            in_port.id if in_port is not None else edge.target_port,
        )
