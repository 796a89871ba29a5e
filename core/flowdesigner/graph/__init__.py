"""Flow graph: nodes, edges, node types, validation and simulation."""

from flowdesigner.graph.errors import (
    CycleDetected,
    DanglingReference,
    DuplicateEdge,
    DuplicateIngress,
    DuplicateNodeId,
    EdgeNotFound,
    EngineFault,
    ExecutionError,
    ExpressionError,
    FlowDesignerError,
    FlowNotFound,
    GraphError,
    IncompatiblePort,
    IncompleteBranch,
    InvalidConfig,
    InvalidFlowDocument,
    MissingIngress,
    NodeNotFound,
    ServiceError,
    SimulatedTimeout,
    UnknownNodeType,
    ValidationFailure,
)
from flowdesigner.graph.executor import Activation, ExecutionEngine, NodeOutcome, RunContext
from flowdesigner.graph.flow import (
    EdgeData,
    ErrorHandling,
    FieldMapping,
    Flow,
    FlowConfig,
    FlowEdge,
    FlowNode,
    MappingType,
    NodeData,
    PortSpec,
    Position,
    is_assignable,
)
from flowdesigner.graph.model import ChangeKind, GraphChange, GraphModel
from flowdesigner.graph.node_types import (
    BUILTIN_NODE_TYPES,
    ConfigField,
    FieldType,
    NodeCategory,
    NodeConfig,
    NodeType,
    NodeTypeRegistry,
    define_node_type,
    get_default_registry,
)
from flowdesigner.graph.safe_eval import render_template, resolve_path, safe_eval
from flowdesigner.graph.simulation import (
    CircuitBreaker,
    CircuitState,
    DurationModel,
    FixedDurationModel,
    backoff_delay,
)
from flowdesigner.graph.validator import Diagnostic, Severity, Validator, raise_for_errors

__all__ = [
    # Errors
    "FlowDesignerError",
    "GraphError",
    "DanglingReference",
    "IncompatiblePort",
    "DuplicateEdge",
    "CycleDetected",
    "IncompleteBranch",
    "UnknownNodeType",
    "DuplicateIngress",
    "MissingIngress",
    "InvalidConfig",
    "InvalidFlowDocument",
    "DuplicateNodeId",
    "NodeNotFound",
    "EdgeNotFound",
    "FlowNotFound",
    "ExecutionError",
    "SimulatedTimeout",
    "ServiceError",
    "ExpressionError",
    "ValidationFailure",
    "EngineFault",
    # Flow model
    "Flow",
    "FlowConfig",
    "FlowNode",
    "FlowEdge",
    "EdgeData",
    "FieldMapping",
    "MappingType",
    "ErrorHandling",
    "NodeData",
    "PortSpec",
    "Position",
    "is_assignable",
    # Node types
    "NodeType",
    "NodeTypeRegistry",
    "NodeCategory",
    "NodeConfig",
    "ConfigField",
    "FieldType",
    "BUILTIN_NODE_TYPES",
    "define_node_type",
    "get_default_registry",
    # Editing
    "GraphModel",
    "GraphChange",
    "ChangeKind",
    # Validation
    "Validator",
    "Diagnostic",
    "Severity",
    "raise_for_errors",
    # Simulation
    "ExecutionEngine",
    "Activation",
    "NodeOutcome",
    "RunContext",
    "DurationModel",
    "FixedDurationModel",
    "CircuitBreaker",
    "CircuitState",
    "backoff_delay",
    # Expressions
    "safe_eval",
    "render_template",
    "resolve_path",
]
