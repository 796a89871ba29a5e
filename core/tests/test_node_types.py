"""Tests for the node type catalog and config schema checks."""

import pytest

from flowdesigner.graph.errors import InvalidConfig, UnknownNodeType
from flowdesigner.graph.flow import PortSpec
from flowdesigner.graph.node_types import (
    ConnectorConfig,
    FieldType,
    NodeCategory,
    NodeConfig,
    NodeTypeRegistry,
    ServiceCallConfig,
    config_field,
    define_node_type,
)

BUILTIN = [
    "http-ingress",
    "transform",
    "connector",
    "service-call",
    "condition",
    "database",
    "error-handler",
    "service-box",
]


class TestCatalog:
    def test_builtin_types_in_order(self, registry):
        assert [t.type for t in registry.catalog()] == BUILTIN

    def test_lookup_unknown(self, registry):
        with pytest.raises(UnknownNodeType):
            registry.lookup("ftp-poller")

    def test_only_ingress_is_input(self, registry):
        inputs = [t.type for t in registry.catalog() if t.category == NodeCategory.INPUT]
        assert inputs == ["http-ingress"]

    def test_branch_types(self, registry):
        branches = {t.type: t.branch_ports for t in registry.catalog() if t.is_branch}
        assert branches == {
            "condition": ["true", "false"],
            "error-handler": ["handled", "unhandled"],
        }

    def test_default_config_matches_schema(self, registry):
        for node_type in registry.catalog():
            names = {f.name for f in node_type.config_schema}
            assert set(node_type.default_data.config) == names, node_type.type

    def test_schema_uses_camel_case_names(self, registry):
        connector = registry.lookup("connector")
        names = [f.name for f in connector.config_schema]
        assert "connectorId" in names
        assert "circuitBreaker" in names
        assert connector.get_field("backoffStrategy").options == ["fixed", "exponential"]

    def test_service_call_overrides_outbound_defaults(self, registry):
        config = registry.lookup("service-call").default_data.config
        assert config["timeout"] == 10000
        assert config["retries"] == 0
        assert config["circuitBreaker"] is False
        assert config["async"] is False

    def test_catalog_serialises_without_config_model(self, registry):
        data = registry.lookup("transform").model_dump(mode="json", by_alias=True)
        assert "configModel" not in data
        assert data["defaultData"]["config"]["code"] == "{**input}"
        assert data["configSchema"][1]["type"] == FieldType.CODE.value


class TestConfigValidation:
    def test_defaults_of_connector_are_incomplete(self, registry):
        problems = registry.validate_config(
            "connector", registry.lookup("connector").default_data.config
        )
        assert problems == ["'connectorId' is required", "'endpointId' is required"]

    def test_complete_config(self, registry):
        config = {
            **registry.lookup("connector").default_data.config,
            "connectorId": "crm",
            "endpointId": "contacts",
        }
        assert registry.validate_config("connector", config) == []

    def test_unknown_key_and_type_mismatch(self, registry):
        problems = registry.validate_config(
            "transform", {"code": 42, "transformType": "expression", "extra": True}
        )
        assert "Unknown config key 'extra'" in problems
        assert "'code' must be a string" in problems

    def test_negative_number_rejected_by_model(self, registry):
        config = {
            **registry.lookup("connector").default_data.config,
            "connectorId": "crm",
            "endpointId": "contacts",
            "retries": -1,
        }
        problems = registry.validate_config("connector", config)
        assert len(problems) == 1
        assert "retries" in problems[0]

    def test_type_problems_ignores_required(self, registry):
        assert registry.type_problems("connector", {"connectorId": ""}) == []

    def test_parse_config(self, registry):
        config = registry.parse_config(
            "service-call",
            {"serviceName": "Billing", "methodName": "invoice", "async": True},
        )
        assert isinstance(config, ServiceCallConfig)
        assert config.is_async is True
        assert config.retries == 0

    def test_parse_config_rejects_bad_values(self, registry):
        with pytest.raises(InvalidConfig):
            registry.parse_config("connector", {"connectorId": "crm", "retries": "x"})


class _TagConfig(NodeConfig):
    tag: str = config_field("", FieldType.TEXT, "Tag", required=True)


class TestExtension:
    def test_extend_returns_new_registry(self, registry):
        tagger = define_node_type(
            "tagger", "Tagger", NodeCategory.TRANSFORM, _TagConfig,
            inputs=[PortSpec(id="input")], outputs=[PortSpec(id="output")],
        )

        extended = registry.extend(tagger)

        assert "tagger" in extended
        assert "tagger" not in registry
        assert extended.validate_config("tagger", {"tag": ""}) == ["'tag' is required"]

    def test_duplicate_registration(self):
        connector = define_node_type("connector", "Connector", NodeCategory.OUTPUT, ConnectorConfig)
        with pytest.raises(ValueError):
            NodeTypeRegistry([connector, connector])
