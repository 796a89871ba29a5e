"""
Error taxonomy for flow graphs and simulation runs.

Three families:
- GraphError: structural problems. Raised by GraphModel mutations, by flow
  import and by the Validator gate before a run starts.
- ExecutionError: per-step business failures recorded in the trace. They are
  either absorbed by an error-handler node or escalate the run status.
- EngineFault: the simulator itself is inconsistent (e.g. registry drift).
  Aborts the run and is reported separately from business failures.
"""

from typing import Any


class FlowDesignerError(Exception):
    """Base class for all flowdesigner errors."""


# ---------------------------------------------------------------------------
# Structural errors
# ---------------------------------------------------------------------------


class GraphError(FlowDesignerError):
    """A structural error in a flow graph."""

    code = "GraphError"

    def __init__(
        self,
        message: str,
        node_id: str | None = None,
        edge_id: str | None = None,
        diagnostics: list[Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.node_id = node_id
        self.edge_id = edge_id
        self.diagnostics = diagnostics or []

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "nodeId": self.node_id,
            "edgeId": self.edge_id,
            "diagnostics": [
                d.model_dump(by_alias=True) if hasattr(d, "model_dump") else d
                for d in self.diagnostics
            ],
        }


class DanglingReference(GraphError):
    code = "DanglingReference"


class IncompatiblePort(GraphError):
    code = "IncompatiblePort"


class DuplicateEdge(GraphError):
    code = "DuplicateEdge"


class CycleDetected(GraphError):
    code = "CycleDetected"


class IncompleteBranch(GraphError):
    code = "IncompleteBranch"


class UnknownNodeType(GraphError):
    code = "UnknownNodeType"


class DuplicateIngress(GraphError):
    code = "DuplicateIngress"


class MissingIngress(GraphError):
    code = "MissingIngress"


class InvalidConfig(GraphError):
    code = "InvalidConfig"


class InvalidFlowDocument(GraphError):
    code = "InvalidFlowDocument"


class DuplicateNodeId(GraphError):
    code = "DuplicateNodeId"


class NodeNotFound(GraphError):
    code = "NodeNotFound"


class EdgeNotFound(GraphError):
    code = "EdgeNotFound"


class FlowNotFound(GraphError):
    """No stored flow has the requested id."""

    code = "FlowNotFound"


GRAPH_ERRORS: dict[str, type[GraphError]] = {
    cls.code: cls
    for cls in (
        DanglingReference,
        IncompatiblePort,
        DuplicateEdge,
        CycleDetected,
        IncompleteBranch,
        UnknownNodeType,
        DuplicateIngress,
        MissingIngress,
        InvalidConfig,
        InvalidFlowDocument,
        DuplicateNodeId,
        NodeNotFound,
        EdgeNotFound,
        FlowNotFound,
    )
}


# ---------------------------------------------------------------------------
# Per-step execution errors
# ---------------------------------------------------------------------------


class ExecutionError(FlowDesignerError):
    """A per-step failure recorded in the execution trace."""

    kind = "ExecutionError"

    def __init__(self, message: str, node_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.node_id = node_id

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "message": self.message, "nodeId": self.node_id}


class SimulatedTimeout(ExecutionError):
    """A simulated call exceeded its configured timeout."""

    kind = "TimeoutError"


class ServiceError(ExecutionError):
    kind = "ServiceError"


class ExpressionError(ExecutionError):
    kind = "ExpressionError"


class ValidationFailure(ExecutionError):
    kind = "ValidationFailure"


# ---------------------------------------------------------------------------
# Simulator faults
# ---------------------------------------------------------------------------


class EngineFault(FlowDesignerError):
    """The simulator reached an internally inconsistent state."""
