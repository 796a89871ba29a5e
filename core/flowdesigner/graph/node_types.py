"""
Node Type Registry - The catalog of node kinds a flow can be built from.

Each NodeType carries:
1. Display metadata (label, icon, category)
2. The default port layout and initial config
3. A config schema used both for validation and for form rendering
4. A typed config model the simulator reads

The config schema is derived from the typed config model, so the property
editor, the Validator and the simulator never disagree about what a valid
config looks like.
"""

import logging
from collections.abc import Iterable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, ValidationError
from pydantic.alias_generators import to_camel

from flowdesigner.graph.errors import InvalidConfig, UnknownNodeType
from flowdesigner.graph.flow import NodeData, PortSpec
from flowdesigner.schemas.base import CamelModel

logger = logging.getLogger(__name__)


class NodeCategory(StrEnum):
    INPUT = "input"
    TRANSFORM = "transform"
    OUTPUT = "output"
    LOGIC = "logic"
    DATA = "data"


class FieldType(StrEnum):
    """Form widget / value type of a config field."""

    TEXT = "text"
    NUMBER = "number"
    SELECT = "select"
    BOOLEAN = "boolean"
    JSON = "json"
    CODE = "code"


class ConfigField(CamelModel):
    """One entry of a NodeType's config schema."""

    name: str
    type: FieldType
    label: str
    required: bool = False
    options: list[str] = Field(default_factory=list)
    placeholder: str | None = None
    description: str | None = None


def config_field(
    default: Any,
    widget: FieldType,
    label: str,
    *,
    required: bool = False,
    options: list[str] | None = None,
    placeholder: str | None = None,
    description: str | None = None,
    **kwargs: Any,
) -> Any:
    """Declare a typed config attribute together with its form metadata."""
    return Field(
        default,
        json_schema_extra={
            "widget": widget.value,
            "label": label,
            "required": required,
            "options": options or [],
            "placeholder": placeholder,
            "description": description,
        },
        **kwargs,
    )


class NodeConfig(BaseModel):
    """Base class for typed node configs. Keys are camelCase in JSON."""

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "extra": "forbid",
        "frozen": True,
    }


def schema_from_model(model: type[NodeConfig]) -> list[ConfigField]:
    """Build the ordered config schema of a typed config model."""
    fields = []
    for name, info in model.model_fields.items():
        extra = info.json_schema_extra
        if not isinstance(extra, dict) or "widget" not in extra:
            continue
        fields.append(
            ConfigField(
                name=info.alias or to_camel(name),
                type=FieldType(extra["widget"]),
                label=str(extra["label"]),
                required=bool(extra.get("required", False)),
                options=list(extra.get("options") or []),
                placeholder=extra.get("placeholder"),
                description=extra.get("description"),
            )
        )
    return fields


# ---------------------------------------------------------------------------
# Typed configs of the built-in node types
# ---------------------------------------------------------------------------

HTTP_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH"]
FAILURE_MODES = ["none", "error", "timeout"]
BACKOFF_STRATEGIES = ["fixed", "exponential"]
DB_OPERATIONS = ["SELECT", "INSERT", "UPDATE", "DELETE"]
ERROR_STRATEGIES = ["retry", "fallback", "propagate"]


class HttpIngressConfig(NodeConfig):
    path: str = config_field(
        "/api/endpoint", FieldType.TEXT, "Endpoint Path", required=True,
        placeholder="/api/endpoint",
    )
    method: str = config_field(
        "POST", FieldType.SELECT, "HTTP Method", required=True, options=HTTP_METHODS
    )
    timeout: int = config_field(30000, FieldType.NUMBER, "Timeout (ms)", ge=0)
    enable_auth: bool = config_field(False, FieldType.BOOLEAN, "Enable Authentication")
    auth_type: str = config_field(
        "none", FieldType.SELECT, "Auth Type", options=["none", "basic", "bearer", "apikey"]
    )


class TransformConfig(NodeConfig):
    transform_type: str = config_field(
        "expression", FieldType.SELECT, "Transform Type",
        options=["expression", "template", "jsonpath"],
    )
    code: str = config_field(
        "{**input}", FieldType.CODE, "Transform Code", required=True,
        description="Expression evaluated with the node input bound to 'input'",
    )


class OutboundCallConfig(NodeConfig):
    """Settings shared by every node that simulates an outbound call."""

    timeout: int = config_field(30000, FieldType.NUMBER, "Timeout (ms)", ge=0)
    retries: int = config_field(3, FieldType.NUMBER, "Retry Count", ge=0)
    backoff_ms: int = config_field(0, FieldType.NUMBER, "Backoff (ms)", ge=0)
    backoff_strategy: str = config_field(
        "fixed", FieldType.SELECT, "Backoff Strategy", options=BACKOFF_STRATEGIES
    )
    circuit_breaker: bool = config_field(True, FieldType.BOOLEAN, "Enable Circuit Breaker")
    simulated_latency_ms: int | None = config_field(
        None, FieldType.NUMBER, "Simulated Latency (ms)", ge=0
    )
    failure_mode: str = config_field(
        "none", FieldType.SELECT, "Simulated Failure", options=FAILURE_MODES
    )
    fail_attempts: int | None = config_field(
        None, FieldType.NUMBER, "Failing Attempts",
        description="Fail only the first N attempts; empty fails every attempt",
        ge=0,
    )
    mock_response: Any = config_field(None, FieldType.JSON, "Mock Response")


class ConnectorConfig(OutboundCallConfig):
    connector_id: str = config_field("", FieldType.SELECT, "Connector", required=True)
    endpoint_id: str = config_field("", FieldType.SELECT, "Endpoint", required=True)


class ServiceCallConfig(OutboundCallConfig):
    timeout: int = config_field(10000, FieldType.NUMBER, "Timeout (ms)", ge=0)
    retries: int = config_field(0, FieldType.NUMBER, "Retry Count", ge=0)
    circuit_breaker: bool = config_field(False, FieldType.BOOLEAN, "Enable Circuit Breaker")
    service_name: str = config_field(
        "", FieldType.TEXT, "Service Name", required=True, placeholder="OrderService"
    )
    method_name: str = config_field(
        "", FieldType.TEXT, "Method Name", required=True, placeholder="processOrder"
    )
    is_async: bool = config_field(False, FieldType.BOOLEAN, "Asynchronous Call", alias="async")


class ConditionConfig(NodeConfig):
    condition: str = config_field(
        "input.amount > 1000", FieldType.CODE, "Condition Expression", required=True
    )
    condition_type: str = config_field(
        "expression", FieldType.SELECT, "Expression Type", options=["expression", "jsonpath"]
    )


class DatabaseConfig(NodeConfig):
    operation: str = config_field("SELECT", FieldType.SELECT, "Operation", options=DB_OPERATIONS)
    table: str = config_field("", FieldType.TEXT, "Table Name", required=True)
    query: str = config_field("", FieldType.CODE, "SQL Query", required=True)
    data_source: str = config_field(
        "primary", FieldType.TEXT, "Data Source", placeholder="primary"
    )
    simulated_latency_ms: int | None = config_field(
        None, FieldType.NUMBER, "Simulated Latency (ms)", ge=0
    )
    failure_mode: str = config_field(
        "none", FieldType.SELECT, "Simulated Failure", options=["none", "error"]
    )
    mock_rows: list[Any] | None = config_field(None, FieldType.JSON, "Mock Rows")


class ErrorHandlerConfig(NodeConfig):
    strategy: str | None = config_field(
        "retry", FieldType.SELECT, "Error Strategy", options=ERROR_STRATEGIES,
        description="Empty falls back to the flow's error handling",
    )
    max_retries: int = config_field(3, FieldType.NUMBER, "Max Retries", ge=0)
    backoff_ms: int = config_field(1000, FieldType.NUMBER, "Backoff (ms)", ge=0)
    backoff_strategy: str = config_field(
        "fixed", FieldType.SELECT, "Backoff Strategy", options=BACKOFF_STRATEGIES
    )
    fallback_value: Any = config_field(None, FieldType.JSON, "Fallback Value")


class ServiceBoxConfig(NodeConfig):
    name: str = config_field("Service Box", FieldType.TEXT, "Service Box Name", required=True)
    description: str = config_field(
        "Container for REST services", FieldType.TEXT, "Description"
    )
    rest_services: list[Any] = config_field([], FieldType.JSON, "REST Services")


# ---------------------------------------------------------------------------
# NodeType
# ---------------------------------------------------------------------------


class NodeType(CamelModel):
    """Catalog descriptor a FlowNode is instantiated from."""

    type: str
    label: str
    icon: str = ""
    category: NodeCategory
    default_data: NodeData
    config_schema: list[ConfigField] = Field(default_factory=list)
    branch_ports: list[str] = Field(
        default_factory=list,
        description="Exclusive routing outputs; each must be wired before execution",
    )
    merge_support: bool = False
    config_model: type[NodeConfig] | None = Field(default=None, exclude=True)

    @property
    def is_branch(self) -> bool:
        return len(self.branch_ports) > 1

    def get_field(self, name: str) -> ConfigField | None:
        for f in self.config_schema:
            if f.name == name:
                return f
        return None


def define_node_type(
    type: str,
    label: str,
    category: NodeCategory,
    config_model: type[NodeConfig],
    *,
    icon: str = "",
    default_label: str | None = None,
    inputs: Iterable[PortSpec] = (),
    outputs: Iterable[PortSpec] = (),
    branch_ports: Iterable[str] = (),
    merge_support: bool = False,
) -> NodeType:
    """Build a NodeType whose schema and default config come from its config model."""
    return NodeType(
        type=type,
        label=label,
        icon=icon,
        category=category,
        default_data=NodeData(
            label=default_label or label,
            config=config_model().model_dump(by_alias=True),
            inputs=list(inputs),
            outputs=list(outputs),
        ),
        config_schema=schema_from_model(config_model),
        branch_ports=list(branch_ports),
        merge_support=merge_support,
        config_model=config_model,
    )


def _port(id: str, name: str, type: str, required: bool = False) -> PortSpec:
    return PortSpec(id=id, name=name, type=type, required=required)


BUILTIN_NODE_TYPES: list[NodeType] = [
    define_node_type(
        "http-ingress", "HTTP Ingress", NodeCategory.INPUT, HttpIngressConfig,
        icon="Globe", default_label="HTTP Endpoint",
        outputs=[_port("success", "Success", "object", True), _port("error", "Error", "error")],
    ),
    define_node_type(
        "transform", "Transform", NodeCategory.TRANSFORM, TransformConfig,
        icon="Zap", default_label="Data Transform",
        inputs=[_port("input", "Input", "any", True)],
        outputs=[_port("output", "Output", "any", True), _port("error", "Error", "error")],
    ),
    define_node_type(
        "connector", "Connector", NodeCategory.OUTPUT, ConnectorConfig,
        icon="Link", default_label="External API",
        inputs=[_port("request", "Request", "object", True)],
        outputs=[_port("response", "Response", "object", True), _port("error", "Error", "error")],
    ),
    define_node_type(
        "service-call", "Service Call", NodeCategory.LOGIC, ServiceCallConfig,
        icon="Server", default_label="Internal Service",
        inputs=[_port("parameters", "Parameters", "object", True)],
        outputs=[_port("result", "Result", "object", True), _port("error", "Error", "error")],
    ),
    define_node_type(
        "condition", "Condition", NodeCategory.LOGIC, ConditionConfig,
        icon="GitBranch", default_label="Conditional Logic",
        inputs=[_port("input", "Input", "any", True)],
        outputs=[
            _port("true", "True", "any", True),
            _port("false", "False", "any", True),
            _port("error", "Error", "error"),
        ],
        branch_ports=["true", "false"],
    ),
    define_node_type(
        "database", "Database", NodeCategory.DATA, DatabaseConfig,
        icon="Database", default_label="Database Operation",
        inputs=[_port("parameters", "Parameters", "object")],
        outputs=[_port("result", "Result", "any", True), _port("error", "Error", "error")],
    ),
    define_node_type(
        "error-handler", "Error Handler", NodeCategory.LOGIC, ErrorHandlerConfig,
        icon="AlertTriangle",
        inputs=[_port("error", "Error", "any", True)],
        outputs=[
            _port("handled", "Handled", "any", True),
            _port("unhandled", "Unhandled", "error"),
        ],
        branch_ports=["handled", "unhandled"],
    ),
    define_node_type(
        "service-box", "Service Box", NodeCategory.LOGIC, ServiceBoxConfig,
        icon="Package",
        inputs=[_port("input", "Input", "object", True)],
        outputs=[_port("output", "Output", "object", True)],
    ),
]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _type_problem(field: ConfigField, value: Any) -> str | None:
    """Return a description of a type mismatch, or None if the value fits."""
    if value is None or field.type == FieldType.JSON:
        return None
    if field.type in (FieldType.TEXT, FieldType.CODE, FieldType.SELECT):
        if not isinstance(value, str):
            return f"'{field.name}' must be a string"
        if field.type == FieldType.SELECT and field.options and value not in field.options:
            return f"'{field.name}' must be one of {field.options}"
    elif field.type == FieldType.NUMBER:
        if isinstance(value, bool) or not isinstance(value, int | float):
            return f"'{field.name}' must be a number"
    elif field.type == FieldType.BOOLEAN:
        if not isinstance(value, bool):
            return f"'{field.name}' must be a boolean"
    return None


class NodeTypeRegistry:
    """
    Read-only catalog of node types.

    Example:
        registry = NodeTypeRegistry.default()
        problems = registry.validate_config("connector", {"connectorId": ""})
        # ["'connectorId' is required", "'endpointId' is required"]
    """

    def __init__(self, node_types: Iterable[NodeType]):
        self._types: dict[str, NodeType] = {}
        for node_type in node_types:
            if node_type.type in self._types:
                raise ValueError(f"Node type '{node_type.type}' registered twice")
            self._types[node_type.type] = node_type

    @classmethod
    def default(cls) -> "NodeTypeRegistry":
        """Registry with the built-in node types."""
        return cls(BUILTIN_NODE_TYPES)

    def extend(self, *node_types: NodeType) -> "NodeTypeRegistry":
        """Return a new registry with additional node types."""
        return NodeTypeRegistry([*self._types.values(), *node_types])

    def __contains__(self, type: str) -> bool:
        return type in self._types

    def lookup(self, type: str) -> NodeType:
        """Get a node type or raise UnknownNodeType."""
        node_type = self._types.get(type)
        if node_type is None:
            raise UnknownNodeType(f"Unknown node type '{type}'")
        return node_type

    def catalog(self) -> list[NodeType]:
        """All node types in registration order."""
        return list(self._types.values())

    def unknown_keys(self, type: str, config: dict[str, Any]) -> list[str]:
        node_type = self.lookup(type)
        known = {f.name for f in node_type.config_schema}
        return [key for key in config if key not in known]

    def validate_config(self, type: str, config: dict[str, Any]) -> list[str]:
        """
        Check a config against the node type's schema.

        Returns:
            Problems found: unknown keys, missing required fields and type
            mismatches. Empty when the config is complete and well-typed.
        """
        node_type = self.lookup(type)
        problems = [f"Unknown config key '{key}'" for key in self.unknown_keys(type, config)]

        for field in node_type.config_schema:
            value = config.get(field.name)
            if field.required and _is_blank(value):
                problems.append(f"'{field.name}' is required")
                continue
            problem = _type_problem(field, value)
            if problem:
                problems.append(problem)

        if not problems and node_type.config_model is not None:
            try:
                node_type.config_model.model_validate(config)
            except ValidationError as e:
                for error in e.errors():
                    loc = ".".join(str(p) for p in error["loc"])
                    problems.append(f"'{loc}': {error['msg']}")

        return problems

    def type_problems(self, type: str, config: dict[str, Any]) -> list[str]:
        """Like validate_config but ignores missing required fields."""
        node_type = self.lookup(type)
        problems = [f"Unknown config key '{key}'" for key in self.unknown_keys(type, config)]
        for field in node_type.config_schema:
            problem = _type_problem(field, config.get(field.name))
            if problem:
                problems.append(problem)
        return problems

    def parse_config(self, type: str, config: dict[str, Any]) -> NodeConfig:
        """Build the typed config model for a node's config."""
        node_type = self.lookup(type)
        if node_type.config_model is None:
            raise InvalidConfig(f"Node type '{type}' has no config model")
        try:
            return node_type.config_model.model_validate(config)
        except ValidationError as e:
            raise InvalidConfig(f"Invalid config for '{type}': {e}") from e


_default_registry: NodeTypeRegistry | None = None


def get_default_registry() -> NodeTypeRegistry:
    """Process-wide registry of the built-in node types."""
    global _default_registry
    if _default_registry is None:
        _default_registry = NodeTypeRegistry.default()
        logger.debug(f"Loaded {len(_default_registry.catalog())} built-in node types")
    return _default_registry
