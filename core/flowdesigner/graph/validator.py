"""Structural validation of flows.

Runs read-only checks over a Flow snapshot and returns diagnostics. Errors
block execution and code generation; warnings (dead code) do not.
"""

import logging
from enum import StrEnum

from pydantic import BaseModel

from flowdesigner.graph.errors import GRAPH_ERRORS, GraphError
from flowdesigner.graph.flow import Flow, FlowNode, is_assignable
from flowdesigner.graph.node_types import NodeCategory, NodeTypeRegistry, get_default_registry

logger = logging.getLogger(__name__)


class Severity(StrEnum):
    ERROR = "error"
    WARNING = "warning"


class Diagnostic(BaseModel):
    """One finding of the Validator."""

    severity: Severity
    code: str
    message: str
    node_id: str | None = None
    edge_id: str | None = None

    model_config = {"frozen": True}

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR


def has_errors(diagnostics: list[Diagnostic]) -> bool:
    return any(d.is_error for d in diagnostics)


def raise_for_errors(diagnostics: list[Diagnostic]) -> None:
    """Raise the GraphError matching the first error diagnostic, if any."""
    errors = [d for d in diagnostics if d.is_error]
    if not errors:
        return
    first = errors[0]
    error_cls = GRAPH_ERRORS.get(first.code, GraphError)
    summary = first.message
    if len(errors) > 1:
        summary += f" (and {len(errors) - 1} more error(s))"
    raise error_cls(summary, node_id=first.node_id, edge_id=first.edge_id, diagnostics=diagnostics)


class Validator:
    """
    Validates flows against the structural invariants.

    Example:
        diagnostics = Validator().check(flow)
        for d in diagnostics:
            print(d.severity, d.code, d.message)
    """

    def __init__(self, registry: NodeTypeRegistry | None = None):
        self.registry = registry or get_default_registry()

    def check(self, flow: Flow) -> list[Diagnostic]:
        """Run every check and return all diagnostics."""
        diagnostics: list[Diagnostic] = []
        diagnostics.extend(self._check_nodes(flow))
        diagnostics.extend(self._check_edges(flow))

        ingress = self._check_ingress(flow, diagnostics)
        if ingress is not None:
            diagnostics.extend(self._check_reachability(flow, ingress))
        diagnostics.extend(self._check_cycles(flow))
        diagnostics.extend(self._check_config(flow))
        diagnostics.extend(self._check_branches(flow))

        if has_errors(diagnostics):
            logger.info(
                f"Flow {flow.id} has {sum(d.is_error for d in diagnostics)} validation error(s)"
            )
        return diagnostics

    def check_structure(self, flow: Flow) -> list[Diagnostic]:
        """Only the checks every stored flow must pass: ids, node types, edges."""
        return self._check_nodes(flow) + self._check_edges(flow)

    def ensure_valid(self, flow: Flow) -> list[Diagnostic]:
        """
        Check a flow and raise on errors.

        Used as the gate in front of simulation and code generation.

        Returns:
            The (warning-only) diagnostics of a valid flow.
        """
        diagnostics = self.check(flow)
        raise_for_errors(diagnostics)
        return diagnostics

    # === INDIVIDUAL CHECKS ===

    def _check_nodes(self, flow: Flow) -> list[Diagnostic]:
        diagnostics = []
        seen: set[str] = set()
        for node in flow.nodes:
            if node.id in seen:
                diagnostics.append(
                    _error("DuplicateNodeId", f"Duplicate node id '{node.id}'", node_id=node.id)
                )
            seen.add(node.id)
            if node.type not in self.registry:
                diagnostics.append(
                    _error(
                        "UnknownNodeType",
                        f"Node '{node.id}' has unknown type '{node.type}'",
                        node_id=node.id,
                    )
                )
        return diagnostics

    def _check_edges(self, flow: Flow) -> list[Diagnostic]:
        diagnostics = []
        seen_ids: set[str] = set()
        seen_keys: dict[tuple, str] = {}
        for edge in flow.edges:
            if edge.id in seen_ids:
                diagnostics.append(
                    _error("DuplicateEdge", f"Duplicate edge id '{edge.id}'", edge_id=edge.id)
                )
            seen_ids.add(edge.id)

            src = flow.get_node(edge.source)
            tgt = flow.get_node(edge.target)
            if src is None or tgt is None:
                missing = edge.source if src is None else edge.target
                diagnostics.append(
                    _error(
                        "DanglingReference",
                        f"Edge '{edge.id}' references missing node '{missing}'",
                        edge_id=edge.id,
                    )
                )
                continue

            out_port = src.get_output(edge.source_port)
            in_port = tgt.get_input(edge.target_port)
            if out_port is None or in_port is None:
                diagnostics.append(
                    _error(
                        "IncompatiblePort",
                        f"Edge '{edge.id}' references an unknown port",
                        edge_id=edge.id,
                    )
                )
            elif not is_assignable(out_port.type, in_port.type):
                diagnostics.append(
                    _error(
                        "IncompatiblePort",
                        f"Edge '{edge.id}': {out_port.type} is not assignable to {in_port.type}",
                        edge_id=edge.id,
                    )
                )

            key = flow.edge_key(edge)
            if key in seen_keys:
                diagnostics.append(
                    _error(
                        "DuplicateEdge",
                        f"Edge '{edge.id}' duplicates edge '{seen_keys[key]}'",
                        edge_id=edge.id,
                    )
                )
            else:
                seen_keys[key] = edge.id
        return diagnostics

    def _is_ingress(self, node: FlowNode) -> bool:
        return (
            node.type in self.registry
            and self.registry.lookup(node.type).category == NodeCategory.INPUT
        )

    def _check_ingress(self, flow: Flow, diagnostics: list[Diagnostic]) -> FlowNode | None:
        ingress_nodes = [n for n in flow.nodes if self._is_ingress(n)]
        if not ingress_nodes:
            diagnostics.append(_error("MissingIngress", "Flow has no ingress node"))
            return None
        if len(ingress_nodes) > 1:
            for extra in ingress_nodes[1:]:
                diagnostics.append(
                    _error(
                        "DuplicateIngress",
                        f"Flow has more than one ingress node: '{extra.id}'",
                        node_id=extra.id,
                    )
                )

        ingress = ingress_nodes[0]
        for edge in flow.get_incoming_edges(ingress.id):
            diagnostics.append(
                _error(
                    "IncompatiblePort",
                    f"Ingress node '{ingress.id}' has inbound edge '{edge.id}'",
                    node_id=ingress.id,
                    edge_id=edge.id,
                )
            )
        return ingress

    def _check_reachability(self, flow: Flow, ingress: FlowNode) -> list[Diagnostic]:
        reachable: set[str] = set()
        to_visit = [ingress.id]
        while to_visit:
            current = to_visit.pop()
            if current in reachable:
                continue
            reachable.add(current)
            for edge in flow.get_outgoing_edges(current):
                to_visit.append(edge.target)

        return [
            Diagnostic(
                severity=Severity.WARNING,
                code="UnreachableNode",
                message=f"Node '{node.id}' is unreachable from the ingress",
                node_id=node.id,
            )
            for node in flow.nodes
            if node.id not in reachable
        ]

    def _check_cycles(self, flow: Flow) -> list[Diagnostic]:
        """DFS with white/grey/black colouring; a grey target is a back edge."""
        white, grey, black = 0, 1, 2
        colour = {n.id: white for n in flow.nodes}
        diagnostics: list[Diagnostic] = []
        reported: set[str] = set()

        for start in flow.nodes:
            if colour[start.id] != white:
                continue
            stack = [(start.id, iter(flow.get_outgoing_edges(start.id)))]
            colour[start.id] = grey
            while stack:
                node_id, edges = stack[-1]
                edge = next(edges, None)
                if edge is None:
                    colour[node_id] = black
                    stack.pop()
                    continue
                state = colour.get(edge.target)
                if state == grey and edge.id not in reported:
                    reported.add(edge.id)
                    diagnostics.append(
                        _error(
                            "CycleDetected",
                            f"Edge '{edge.id}' closes a cycle at node '{edge.target}'",
                            node_id=edge.target,
                            edge_id=edge.id,
                        )
                    )
                elif state == white:
                    colour[edge.target] = grey
                    stack.append((edge.target, iter(flow.get_outgoing_edges(edge.target))))
        return diagnostics

    def _check_config(self, flow: Flow) -> list[Diagnostic]:
        diagnostics = []
        for node in flow.nodes:
            if node.type not in self.registry:
                continue
            for problem in self.registry.validate_config(node.type, node.data.config):
                diagnostics.append(
                    _error("InvalidConfig", f"Node '{node.id}': {problem}", node_id=node.id)
                )
        return diagnostics

    def _check_branches(self, flow: Flow) -> list[Diagnostic]:
        diagnostics = []
        for node in flow.nodes:
            if node.type not in self.registry:
                continue
            node_type = self.registry.lookup(node.type)
            if not node_type.is_branch:
                continue
            wired = {
                port.id
                for e in flow.get_outgoing_edges(node.id)
                if (port := node.get_output(e.source_port)) is not None
            }
            for port in node_type.branch_ports:
                if port not in wired:
                    diagnostics.append(
                        _error(
                            "IncompleteBranch",
                            f"Branch node '{node.id}' has no edge on output '{port}'",
                            node_id=node.id,
                        )
                    )
        return diagnostics


def _error(
    code: str,
    message: str,
    node_id: str | None = None,
    edge_id: str | None = None,
) -> Diagnostic:
    return Diagnostic(
        severity=Severity.ERROR, code=code, message=message, node_id=node_id, edge_id=edge_id
    )
