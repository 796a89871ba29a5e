"""Tests for flow export/import and file storage."""

import json

import pytest

from flowdesigner.graph.errors import DanglingReference, FlowNotFound, InvalidFlowDocument
from flowdesigner.graph.flow import FieldMapping
from flowdesigner.storage.flow_store import FlowStore, export_flow, import_flow


@pytest.fixture
def flow(make_node, make_edge, make_flow):
    return make_flow(
        [
            make_node("ingress", "http-ingress"),
            make_node("shape", "transform", code="{'id': input.id}"),
            make_node("call", "connector", connectorId="crm", endpointId="contacts"),
        ],
        [
            make_edge("ingress", "shape"),
            make_edge(
                "shape", "call",
                mapping=[FieldMapping(id="m1", source_field="id", target_field="contactId")],
            ),
        ],
        flow_id="flow_contacts",
    )


@pytest.fixture
def store(tmp_path):
    return FlowStore(tmp_path / "flows")


class TestExportImport:
    def test_export_uses_camel_case(self, flow):
        document = json.loads(export_flow(flow))

        assert document["id"] == "flow_contacts"
        assert "createdAt" in document
        edge = document["edges"][1]
        assert edge["data"]["mapping"][0]["sourceField"] == "id"
        assert document["nodes"][2]["data"]["config"]["connectorId"] == "crm"

    def test_round_trip_preserves_flow(self, flow):
        assert import_flow(export_flow(flow)) == flow

    def test_malformed_json(self):
        with pytest.raises(InvalidFlowDocument):
            import_flow("{not json")

    def test_schema_mismatch(self):
        with pytest.raises(InvalidFlowDocument):
            import_flow(json.dumps({"id": "f", "nodes": "many"}))

    def test_structural_errors_are_rejected(self, flow):
        document = json.loads(export_flow(flow))
        document["edges"].append(
            {"id": "e_bad", "source": "shape", "target": "ghost", "data": {}}
        )

        with pytest.raises(DanglingReference) as exc_info:
            import_flow(json.dumps(document))
        assert exc_info.value.edge_id == "e_bad"

    def test_incomplete_config_is_importable(self, flow):
        document = json.loads(export_flow(flow))
        document["nodes"][2]["data"]["config"]["connectorId"] = ""

        imported = import_flow(json.dumps(document))

        assert imported.get_node("call").data.config["connectorId"] == ""


class TestFlowStore:
    @pytest.mark.asyncio
    async def test_save_and_load(self, store, flow):
        await store.save_flow(flow)

        assert await store.flow_exists(flow.id)
        assert (store.base_path / "flow_contacts.json").exists()
        assert await store.load_flow(flow.id) == flow

    @pytest.mark.asyncio
    async def test_save_replaces_existing(self, store, flow):
        await store.save_flow(flow)
        renamed = flow.model_copy(update={"name": "Contacts v2"})

        await store.save_flow(renamed)

        assert (await store.load_flow(flow.id)).name == "Contacts v2"
        assert [p.name for p in store.base_path.iterdir()] == ["flow_contacts.json"]

    @pytest.mark.asyncio
    async def test_load_missing(self, store):
        with pytest.raises(FlowNotFound):
            await store.load_flow("flow_missing")

    @pytest.mark.asyncio
    async def test_list_flows_newest_first(self, store, flow):
        older = flow.model_copy(
            update={"id": "flow_old", "updated_at": flow.updated_at.replace(year=2020)}
        )
        await store.save_flow(older)
        await store.save_flow(flow)
        (store.base_path / "corrupt.json").write_text("{", encoding="utf-8")

        flows = await store.list_flows()

        assert [f.id for f in flows] == ["flow_contacts", "flow_old"]

    @pytest.mark.asyncio
    async def test_list_flows_without_directory(self, store):
        assert await store.list_flows() == []

    @pytest.mark.asyncio
    async def test_delete(self, store, flow):
        await store.save_flow(flow)

        assert await store.delete_flow(flow.id) is True
        assert await store.delete_flow(flow.id) is False
        assert not await store.flow_exists(flow.id)

    @pytest.mark.parametrize(
        "flow_id", ["", "../etc/passwd", "a/b", ".hidden", "C:flows", "bad$id", "nul\x00l"]
    )
    def test_rejects_unsafe_ids(self, store, flow_id):
        with pytest.raises(ValueError):
            store.get_flow_path(flow_id)
