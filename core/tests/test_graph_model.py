"""Tests for GraphModel mutations and their invariants."""

import itertools

import pytest

from flowdesigner.graph.errors import (
    DanglingReference,
    DuplicateEdge,
    DuplicateIngress,
    EdgeNotFound,
    IncompatiblePort,
    InvalidConfig,
    NodeNotFound,
    UnknownNodeType,
)
from flowdesigner.graph.flow import FieldMapping, Position
from flowdesigner.graph.model import ChangeKind, GraphModel
from flowdesigner.graph.validator import Validator


def _sequential_ids():
    counters: dict[str, itertools.count] = {}

    def make(prefix: str) -> str:
        counter = counters.setdefault(prefix, itertools.count(1))
        return f"{prefix}_{next(counter)}"

    return make


@pytest.fixture
def model():
    return GraphModel.create("Order intake", id_factory=_sequential_ids())


@pytest.fixture
def wired(model):
    """ingress -> transform -> connector"""
    ingress = model.add_node("http-ingress", Position(x=0, y=0))
    transform = model.add_node("transform", {"x": 200, "y": 0})
    connector = model.add_node("connector", {"x": 400, "y": 0})
    model.add_edge(ingress.id, transform.id)
    model.add_edge(transform.id, connector.id)
    return model, ingress, transform, connector


class TestNodes:
    def test_create_starts_empty(self, model):
        assert model.flow.id == "flow_1"
        assert model.flow.name == "Order intake"
        assert model.flow.nodes == []
        assert model.flow.edges == []

    def test_add_node_uses_type_defaults(self, model):
        node = model.add_node("connector", {"x": 10, "y": 20})

        assert node.id == "node_1"
        assert node.position == Position(x=10, y=20)
        assert node.data.label == "External API"
        assert node.data.config["retries"] == 3
        assert [p.id for p in node.data.outputs] == ["response", "error"]
        assert model.flow.get_node(node.id) == node

    def test_add_unknown_type(self, model):
        with pytest.raises(UnknownNodeType):
            model.add_node("ftp-poller")

    def test_second_ingress_is_refused(self, model):
        model.add_node("http-ingress")
        before = model.flow

        with pytest.raises(DuplicateIngress):
            model.add_node("http-ingress")
        assert model.flow == before

    def test_remove_node_cascades_edges(self, wired):
        model, ingress, transform, connector = wired

        flow = model.remove_node(transform.id)

        assert flow.get_node(transform.id) is None
        assert flow.edges == []
        assert flow.get_node(ingress.id) is not None

    def test_remove_missing_node(self, model):
        with pytest.raises(NodeNotFound):
            model.remove_node("node_404")

    def test_duplicate_node(self, wired):
        model, _, transform, _ = wired
        model.update_node_config(transform.id, {"code": "{'a': 1}"})

        clone = model.duplicate_node(transform.id)

        assert clone.id != transform.id
        assert clone.data.label == "Data Transform (Copy)"
        assert clone.data.config["code"] == "{'a': 1}"
        assert clone.position == Position(x=250, y=50)
        assert model.flow.get_incoming_edges(clone.id) == []
        assert model.flow.get_outgoing_edges(clone.id) == []

    def test_duplicate_ingress_is_refused(self, wired):
        model, ingress, _, _ = wired
        with pytest.raises(DuplicateIngress):
            model.duplicate_node(ingress.id)

    def test_move_node(self, wired):
        model, _, transform, _ = wired
        flow = model.move_node(transform.id, {"x": 5, "y": 6})
        assert flow.get_node(transform.id).position == Position(x=5, y=6)

    def test_update_node_config_merges(self, wired):
        model, _, _, connector = wired

        model.update_node_config(connector.id, {"connectorId": "stripe"})
        model.update_node_config(connector.id, {"endpointId": "charge", "retries": 1})

        config = model.flow.get_node(connector.id).data.config
        assert config["connectorId"] == "stripe"
        assert config["endpointId"] == "charge"
        assert config["retries"] == 1
        assert config["timeout"] == 30000

    def test_update_node_config_rejects_unknown_key(self, wired):
        model, _, _, connector = wired
        before = model.flow

        with pytest.raises(InvalidConfig) as exc_info:
            model.update_node_config(connector.id, {"bogus": 1})
        assert "bogus" in exc_info.value.message
        assert model.flow == before

    def test_update_node_config_rejects_wrong_type(self, wired):
        model, _, _, connector = wired
        with pytest.raises(InvalidConfig):
            model.update_node_config(connector.id, {"retries": "three"})

    def test_rename_node(self, wired):
        model, _, transform, _ = wired
        flow = model.rename_node(transform.id, "Normalise")
        assert flow.get_node(transform.id).data.label == "Normalise"


class TestEdges:
    def test_add_edge_resolves_default_ports(self, wired):
        model, ingress, transform, _ = wired

        edge = model.flow.get_outgoing_edges(ingress.id)[0]

        assert edge.target == transform.id
        assert edge.source_port == "success"
        assert edge.target_port == "input"

    def test_add_edge_to_missing_node(self, wired):
        model, ingress, _, _ = wired
        with pytest.raises(DanglingReference):
            model.add_edge(ingress.id, "node_404")

    def test_edge_into_ingress_is_refused(self, wired):
        model, ingress, transform, _ = wired
        with pytest.raises(IncompatiblePort):
            model.add_edge(transform.id, ingress.id)

    def test_unknown_port_is_refused(self, wired):
        model, _, transform, connector = wired
        with pytest.raises(IncompatiblePort):
            model.add_edge(transform.id, connector.id, source_port="nope")

    def test_error_port_cannot_feed_object_port(self, wired):
        model, ingress, _, connector = wired
        with pytest.raises(IncompatiblePort):
            model.add_edge(ingress.id, connector.id, source_port="error")

    def test_duplicate_edge_is_refused(self, wired):
        model, ingress, transform, _ = wired
        before = model.flow

        with pytest.raises(DuplicateEdge):
            model.add_edge(ingress.id, transform.id, "success", "input")
        assert model.flow == before

    def test_duplicate_of_portless_edge_is_refused(self, make_node, make_edge, make_flow):
        flow = make_flow(
            [make_node("in", "http-ingress"), make_node("t", "transform")],
            [make_edge("in", "t")],
        )
        model = GraphModel(flow, id_factory=_sequential_ids())

        with pytest.raises(DuplicateEdge) as exc_info:
            model.add_edge("in", "t")
        assert exc_info.value.edge_id == "e_in_out_t"
        with pytest.raises(DuplicateEdge):
            model.add_edge("in", "t", "success", "input")
        assert model.flow == flow

    def test_remove_edge(self, wired):
        model, _, _, _ = wired
        edge_id = model.flow.edges[0].id

        flow = model.remove_edge(edge_id)

        assert flow.get_edge(edge_id) is None
        with pytest.raises(EdgeNotFound):
            model.remove_edge(edge_id)

    def test_update_edge_data_sets_mapping(self, wired):
        model, _, _, _ = wired
        edge_id = model.flow.edges[0].id

        flow = model.update_edge_data(
            edge_id,
            {"mapping": [{"id": "m1", "sourceField": "order.id", "targetField": "orderId"}]},
        )

        mapping = flow.get_edge(edge_id).data.mapping
        assert len(mapping) == 1
        assert mapping[0].target_field == "orderId"

    def test_update_edge_data_rejects_unknown_keys(self, wired):
        model, _, _, _ = wired
        with pytest.raises(InvalidConfig):
            model.update_edge_data(model.flow.edges[0].id, {"weight": 3})


class TestSubscriptions:
    def test_listener_receives_snapshot_and_change(self, model):
        received = []
        model.subscribe(lambda flow, change: received.append((flow, change)))

        node = model.add_node("http-ingress")

        assert len(received) == 1
        flow, change = received[0]
        assert change.kind == ChangeKind.NODE_ADDED
        assert change.node_ids == (node.id,)
        assert flow is model.flow

    def test_remove_node_reports_cascaded_edges(self, wired):
        model, _, transform, _ = wired
        changes = []
        model.subscribe(lambda flow, change: changes.append(change))

        model.remove_node(transform.id)

        assert changes[0].kind == ChangeKind.NODE_REMOVED
        assert len(changes[0].edge_ids) == 2

    def test_unsubscribe_stops_notifications(self, model):
        received = []
        unsubscribe = model.subscribe(lambda flow, change: received.append(change))

        unsubscribe()
        model.add_node("transform")

        assert received == []

    def test_failed_mutation_does_not_notify(self, model):
        received = []
        model.subscribe(lambda flow, change: received.append(change))

        with pytest.raises(NodeNotFound):
            model.move_node("node_404", {"x": 1, "y": 1})
        assert received == []

    def test_snapshots_are_immutable_values(self, wired):
        model, _, transform, _ = wired
        before = model.flow

        model.move_node(transform.id, {"x": 999, "y": 0})

        assert before != model.flow
        assert before.get_node(transform.id).position.x == 200

    def test_returned_node_does_not_alias_snapshot(self, model):
        node = model.add_node("transform")
        before = model.flow

        node.data.config["code"] = "input.x"

        assert before.get_node(node.id).data.config["code"] == "{**input}"
        assert model.flow == before

    def test_returned_clone_and_edge_do_not_alias_snapshot(self, wired):
        model, ingress, transform, _ = wired
        clone = model.duplicate_node(transform.id)
        edge = model.add_edge(ingress.id, clone.id)

        clone.data.config["code"] = "input.x"
        edge.data.mapping.append(FieldMapping(id="m1", target_field="orderId"))

        assert model.flow.get_node(clone.id).data.config["code"] == "{**input}"
        assert model.flow.get_edge(edge.id).data.mapping == []


class TestEdgeUniqueness:
    @staticmethod
    def _canonical_keys(model: GraphModel) -> list[tuple]:
        return [model.flow.edge_key(e) for e in model.flow.edges]

    def test_keys_stay_unique_across_mutations(self, wired):
        model, ingress, transform, connector = wired
        first = model.flow.get_outgoing_edges(ingress.id)[0]

        model.remove_edge(first.id)
        model.add_edge(ingress.id, transform.id)
        with pytest.raises(DuplicateEdge):
            model.add_edge(ingress.id, transform.id, "success", "input")

        clone = model.duplicate_node(transform.id)
        model.add_edge(ingress.id, clone.id)
        model.add_edge(clone.id, connector.id)
        with pytest.raises(DuplicateEdge):
            model.add_edge(clone.id, connector.id)

        model.remove_node(transform.id)
        model.add_edge(ingress.id, connector.id)
        with pytest.raises(DuplicateEdge):
            model.add_edge(ingress.id, connector.id)

        keys = self._canonical_keys(model)
        assert len(keys) == len(set(keys)) == 3
        assert Validator().check_structure(model.flow) == []

    def test_imported_portless_edges_share_canonical_key(self, make_node, make_edge, make_flow):
        flow = make_flow(
            [make_node("in", "http-ingress"), make_node("t", "transform")],
            [make_edge("in", "t"), make_edge("in", "t", "success", "input")],
        )

        assert flow.edge_key(flow.edges[0]) == flow.edge_key(flow.edges[1])
        codes = [d.code for d in Validator().check_structure(flow)]
        assert codes == ["DuplicateEdge"]
