"""
Graph Model - The mutation API of one flow.

GraphModel owns a Flow snapshot and only ever replaces it with a new,
fully-checked snapshot. A mutation either commits completely (and notifies
subscribers) or raises a GraphError and leaves the model untouched.

Invariants preserved by every mutation:
1. Node ids are unique; edges reference existing nodes only
2. No two edges share (source, sourcePort, target, targetPort)
3. Edge port types are assignable
4. At most one ingress node, and it has no inbound edges

Example:
    model = GraphModel.create("Order intake")
    ingress = model.add_node("http-ingress", Position(x=0, y=0))
    transform = model.add_node("transform", Position(x=200, y=0))
    model.add_edge(ingress.id, transform.id)
    model.update_node_config(transform.id, {"code": "{**input, 'seen': true}"})

    unsubscribe = model.subscribe(lambda flow, change: print(change.kind))
"""

import copy
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from flowdesigner.graph.errors import (
    DanglingReference,
    DuplicateEdge,
    DuplicateIngress,
    EdgeNotFound,
    IncompatiblePort,
    InvalidConfig,
    NodeNotFound,
)
from flowdesigner.graph.flow import (
    EdgeData,
    Flow,
    FlowEdge,
    FlowNode,
    Position,
    is_assignable,
)
from flowdesigner.graph.node_types import NodeCategory, NodeTypeRegistry, get_default_registry

logger = logging.getLogger(__name__)

DUPLICATE_OFFSET = 50.0


class ChangeKind(StrEnum):
    NODE_ADDED = "node_added"
    NODE_REMOVED = "node_removed"
    NODE_DUPLICATED = "node_duplicated"
    NODE_MOVED = "node_moved"
    NODE_CONFIG_UPDATED = "node_config_updated"
    EDGE_ADDED = "edge_added"
    EDGE_REMOVED = "edge_removed"
    EDGE_DATA_UPDATED = "edge_data_updated"
    FLOW_REPLACED = "flow_replaced"


@dataclass(frozen=True)
class GraphChange:
    """Describes one committed mutation."""

    kind: ChangeKind
    node_ids: tuple[str, ...] = ()
    edge_ids: tuple[str, ...] = ()


ChangeListener = Callable[[Flow, GraphChange], None]


def _default_id_factory(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


@dataclass
class _Subscriber:
    id: int
    listener: ChangeListener = field(compare=False)


class GraphModel:
    """Mutable editing session over one Flow."""

    def __init__(
        self,
        flow: Flow,
        registry: NodeTypeRegistry | None = None,
        id_factory: Callable[[str], str] | None = None,
    ):
        self.registry = registry or get_default_registry()
        self._flow = flow
        self._id_factory = id_factory or _default_id_factory
        self._subscribers: list[_Subscriber] = []
        self._subscriber_counter = 0

    @classmethod
    def create(
        cls,
        name: str,
        registry: NodeTypeRegistry | None = None,
        id_factory: Callable[[str], str] | None = None,
    ) -> "GraphModel":
        """Create a model over a new, empty flow."""
        make_id = id_factory or _default_id_factory
        return cls(Flow(id=make_id("flow"), name=name), registry, id_factory)

    # === SNAPSHOT & NOTIFICATION ===

    @property
    def flow(self) -> Flow:
        """The current snapshot. Frozen; compare snapshots with ==."""
        return self._flow

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """
        Register a change listener.

        Returns:
            A callable that removes the listener.
        """
        self._subscriber_counter += 1
        sub = _Subscriber(id=self._subscriber_counter, listener=listener)
        self._subscribers.append(sub)

        def unsubscribe() -> None:
            self._subscribers = [s for s in self._subscribers if s.id != sub.id]

        return unsubscribe

    def _commit(
        self,
        change: GraphChange,
        nodes: list[FlowNode] | None = None,
        edges: list[FlowEdge] | None = None,
    ) -> Flow:
        update: dict[str, Any] = {"updated_at": datetime.now(UTC)}
        if nodes is not None:
            update["nodes"] = nodes
        if edges is not None:
            update["edges"] = edges
        self._flow = self._flow.model_copy(update=update)
        logger.debug(
            f"Flow {self._flow.id}: {change.kind} nodes={list(change.node_ids)} "
            f"edges={list(change.edge_ids)}"
        )
        for sub in list(self._subscribers):
            sub.listener(self._flow, change)
        return self._flow

    def replace_flow(self, flow: Flow) -> Flow:
        """Swap in a whole flow (e.g. after import)."""
        self._flow = flow
        change = GraphChange(kind=ChangeKind.FLOW_REPLACED)
        for sub in list(self._subscribers):
            sub.listener(self._flow, change)
        return self._flow

    # === LOOKUPS ===

    def _require_node(self, node_id: str) -> FlowNode:
        node = self._flow.get_node(node_id)
        if node is None:
            raise NodeNotFound(f"Node '{node_id}' not found", node_id=node_id)
        return node

    def _require_edge(self, edge_id: str) -> FlowEdge:
        edge = self._flow.get_edge(edge_id)
        if edge is None:
            raise EdgeNotFound(f"Edge '{edge_id}' not found", edge_id=edge_id)
        return edge

    def _fresh_id(self, prefix: str) -> str:
        taken = self._flow.node_ids() | {e.id for e in self._flow.edges}
        new_id = self._id_factory(prefix)
        while new_id in taken:
            new_id = self._id_factory(prefix)
        return new_id

    def _is_ingress(self, node: FlowNode) -> bool:
        return (
            node.type in self.registry
            and self.registry.lookup(node.type).category == NodeCategory.INPUT
        )

    def _ingress_nodes(self) -> list[FlowNode]:
        return [n for n in self._flow.nodes if self._is_ingress(n)]

    # === NODE MUTATIONS ===

    def add_node(self, type: str, position: Position | dict[str, float] | None = None) -> FlowNode:
        """
        Instantiate a node from the registry.

        Raises:
            UnknownNodeType: The registry has no such type
            DuplicateIngress: The flow already has an ingress node
        """
        node_type = self.registry.lookup(type)
        if node_type.category == NodeCategory.INPUT and self._ingress_nodes():
            raise DuplicateIngress(
                f"Flow already has an ingress node '{self._ingress_nodes()[0].id}'"
            )

        node = FlowNode(
            id=self._fresh_id("node"),
            type=type,
            position=Position.model_validate(position or {}),
            data=node_type.default_data.model_copy(deep=True),
        )
        self._commit(
            GraphChange(kind=ChangeKind.NODE_ADDED, node_ids=(node.id,)),
            nodes=[*self._flow.nodes, node],
        )
        return node.model_copy(deep=True)

    def remove_node(self, node_id: str) -> Flow:
        """Remove a node and, atomically, every edge touching it."""
        self._require_node(node_id)
        removed_edges = tuple(
            e.id for e in self._flow.edges if node_id in (e.source, e.target)
        )
        return self._commit(
            GraphChange(kind=ChangeKind.NODE_REMOVED, node_ids=(node_id,), edge_ids=removed_edges),
            nodes=[n for n in self._flow.nodes if n.id != node_id],
            edges=[e for e in self._flow.edges if e.id not in removed_edges],
        )

    def duplicate_node(self, node_id: str) -> FlowNode:
        """Copy a node's config and ports under a new id. Edges are not copied."""
        original = self._require_node(node_id)
        if self._is_ingress(original):
            raise DuplicateIngress("The ingress node cannot be duplicated", node_id=node_id)

        data = original.data.model_copy(
            update={"label": f"{original.data.label} (Copy)"}, deep=True
        )
        clone = FlowNode(
            id=self._fresh_id("node"),
            type=original.type,
            position=Position(
                x=original.position.x + DUPLICATE_OFFSET,
                y=original.position.y + DUPLICATE_OFFSET,
            ),
            data=data,
        )
        self._commit(
            GraphChange(kind=ChangeKind.NODE_DUPLICATED, node_ids=(node_id, clone.id)),
            nodes=[*self._flow.nodes, clone],
        )
        return clone.model_copy(deep=True)

    def move_node(self, node_id: str, position: Position | dict[str, float]) -> Flow:
        """Apply a canvas move intent."""
        node = self._require_node(node_id)
        moved = node.model_copy(update={"position": Position.model_validate(position)})
        return self._commit(
            GraphChange(kind=ChangeKind.NODE_MOVED, node_ids=(node_id,)),
            nodes=[moved if n.id == node_id else n for n in self._flow.nodes],
        )

    def update_node_config(self, node_id: str, partial: dict[str, Any]) -> Flow:
        """
        Shallow-merge partial into a node's config.

        Raises:
            InvalidConfig: partial has keys outside the node type's schema or
                values of the wrong type
        """
        node = self._require_node(node_id)
        problems = self.registry.type_problems(node.type, partial)
        if problems:
            raise InvalidConfig("; ".join(problems), node_id=node_id)

        config = {**node.data.config, **copy.deepcopy(partial)}
        updated = node.model_copy(
            update={"data": node.data.model_copy(update={"config": config})}
        )
        return self._commit(
            GraphChange(kind=ChangeKind.NODE_CONFIG_UPDATED, node_ids=(node_id,)),
            nodes=[updated if n.id == node_id else n for n in self._flow.nodes],
        )

    def rename_node(self, node_id: str, label: str) -> Flow:
        node = self._require_node(node_id)
        updated = node.model_copy(update={"data": node.data.model_copy(update={"label": label})})
        return self._commit(
            GraphChange(kind=ChangeKind.NODE_CONFIG_UPDATED, node_ids=(node_id,)),
            nodes=[updated if n.id == node_id else n for n in self._flow.nodes],
        )

    # === EDGE MUTATIONS ===

    def add_edge(
        self,
        source: str,
        target: str,
        source_port: str | None = None,
        target_port: str | None = None,
    ) -> FlowEdge:
        """
        Connect source's output port to target's input port.

        Omitted ports resolve to the node's first output / input port.

        Raises:
            DanglingReference: source or target does not exist
            IncompatiblePort: unknown port, edge into the ingress, or the port
                types are not assignable
            DuplicateEdge: an identical connection exists
        """
        src = self._flow.get_node(source)
        tgt = self._flow.get_node(target)
        if src is None or tgt is None:
            missing = source if src is None else target
            raise DanglingReference(f"Node '{missing}' does not exist", node_id=missing)

        if self._is_ingress(tgt):
            raise IncompatiblePort(
                f"Ingress node '{target}' cannot have inbound edges", node_id=target
            )

        out_port = src.get_output(source_port)
        if out_port is None:
            raise IncompatiblePort(
                f"Node '{source}' has no output port '{source_port}'", node_id=source
            )
        in_port = tgt.get_input(target_port)
        if in_port is None:
            raise IncompatiblePort(
                f"Node '{target}' has no input port '{target_port}'", node_id=target
            )
        if not is_assignable(out_port.type, in_port.type):
            raise IncompatiblePort(
                f"Port '{source}.{out_port.id}' ({out_port.type}) is not assignable to "
                f"'{target}.{in_port.id}' ({in_port.type})"
            )

        edge = FlowEdge(
            id=self._fresh_id("edge"),
            source=source,
            target=target,
            source_port=out_port.id,
            target_port=in_port.id,
        )
        key = self._flow.edge_key(edge)
        for existing in self._flow.edges:
            if self._flow.edge_key(existing) == key:
                raise DuplicateEdge(
                    f"Edge {source}.{out_port.id} -> {target}.{in_port.id} already exists",
                    edge_id=existing.id,
                )

        self._commit(
            GraphChange(kind=ChangeKind.EDGE_ADDED, node_ids=(source, target), edge_ids=(edge.id,)),
            edges=[*self._flow.edges, edge],
        )
        return edge.model_copy(deep=True)

    def remove_edge(self, edge_id: str) -> Flow:
        self._require_edge(edge_id)
        return self._commit(
            GraphChange(kind=ChangeKind.EDGE_REMOVED, edge_ids=(edge_id,)),
            edges=[e for e in self._flow.edges if e.id != edge_id],
        )

    def update_edge_data(self, edge_id: str, partial: dict[str, Any]) -> Flow:
        """
        Shallow-merge partial into an edge's data (``condition``, ``mapping``).

        Raises:
            InvalidConfig: unknown keys or malformed mappings
        """
        edge = self._require_edge(edge_id)
        known = {"condition", "mapping"}
        unknown = [k for k in partial if k not in known]
        if unknown:
            raise InvalidConfig(f"Unknown edge data keys: {unknown}", edge_id=edge_id)

        merged = {**edge.data.model_dump(by_alias=True), **copy.deepcopy(partial)}
        try:
            data = EdgeData.model_validate(merged)
        except ValueError as e:
            raise InvalidConfig(f"Invalid edge data: {e}", edge_id=edge_id) from e

        updated = edge.model_copy(update={"data": data})
        return self._commit(
            GraphChange(kind=ChangeKind.EDGE_DATA_UPDATED, edge_ids=(edge_id,)),
            edges=[updated if e.id == edge_id else e for e in self._flow.edges],
        )
