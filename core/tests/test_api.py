"""
Tests for the flow HTTP API.
"""

import json

import aiohttp
import pytest

from flowdesigner.config import EngineConfig, ServerConfig
from flowdesigner.graph.executor import ExecutionEngine
from flowdesigner.server.api import FlowApiServer
from flowdesigner.storage.flow_store import FlowStore, export_flow


def _make_server(tmp_path):
    """Helper to create a FlowApiServer with port=0 for OS-assigned port."""
    config = ServerConfig(host="127.0.0.1", port=0, storage_path=tmp_path / "flows")
    engine = ExecutionEngine(config=EngineConfig(time_scale=0.0, durations={}))
    return FlowApiServer(engine, FlowStore(config.storage_path), config)


def _base_url(server: FlowApiServer) -> str:
    return f"http://127.0.0.1:{server.port}"


@pytest.fixture
def flow(make_node, make_edge, make_flow):
    return make_flow(
        [
            make_node("ingress", "http-ingress"),
            make_node("check", "condition", condition="input.amount > 1000"),
            make_node("big", "transform", code="{'tier': 'big'}"),
            make_node("small", "transform", code="{'tier': 'small'}"),
        ],
        [
            make_edge("ingress", "check"),
            make_edge("check", "big", source_port="true"),
            make_edge("check", "small", source_port="false"),
        ],
        flow_id="flow_tiers",
    )


class TestServerLifecycle:
    @pytest.mark.asyncio
    async def test_start_stop(self, tmp_path):
        server = _make_server(tmp_path)

        await server.start()
        assert server.is_running
        assert server.port is not None

        await server.stop()
        assert not server.is_running
        assert server.port is None

    @pytest.mark.asyncio
    async def test_stop_when_not_started(self, tmp_path):
        server = _make_server(tmp_path)
        await server.stop()
        assert not server.is_running


class TestRoutes:
    @pytest.mark.asyncio
    async def test_node_types(self, tmp_path):
        server = _make_server(tmp_path)
        await server.start()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(f"{_base_url(server)}/api/node-types") as resp:
                    assert resp.status == 200
                    body = await resp.json()
            types = [t["type"] for t in body["nodeTypes"]]
            assert "connector" in types
            assert "configSchema" in body["nodeTypes"][0]
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_save_list_load_delete(self, tmp_path, flow):
        server = _make_server(tmp_path)
        await server.start()
        base = _base_url(server)
        try:
            async with aiohttp.ClientSession() as session:
                async with session.put(
                    f"{base}/api/flows/flow_tiers", data=export_flow(flow)
                ) as resp:
                    assert resp.status == 200
                    assert await resp.json() == {"id": "flow_tiers", "saved": True}

                async with session.get(f"{base}/api/flows") as resp:
                    listing = await resp.json()
                assert [f["id"] for f in listing["flows"]] == ["flow_tiers"]

                async with session.get(f"{base}/api/flows/flow_tiers") as resp:
                    loaded = await resp.json()
                assert loaded["name"] == flow.name
                assert len(loaded["nodes"]) == 4

                async with session.delete(f"{base}/api/flows/flow_tiers") as resp:
                    assert resp.status == 200

                async with session.get(f"{base}/api/flows/flow_tiers") as resp:
                    assert resp.status == 404
                    error = (await resp.json())["error"]
                assert error["code"] == "FlowNotFound"
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_put_with_mismatched_id(self, tmp_path, flow):
        server = _make_server(tmp_path)
        await server.start()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.put(
                    f"{_base_url(server)}/api/flows/other", data=export_flow(flow)
                ) as resp:
                    assert resp.status == 400
                    body = await resp.json()
            assert body["error"]["code"] == "InvalidFlowDocument"
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_validate_reports_diagnostics(self, tmp_path, flow):
        document = json.loads(export_flow(flow))
        document["edges"] = document["edges"][:2]
        server = _make_server(tmp_path)
        await server.start()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/api/flows/validate", json={"flow": document}
                ) as resp:
                    assert resp.status == 200
                    body = await resp.json()
            assert body["valid"] is False
            assert [d["code"] for d in body["diagnostics"]] == [
                "UnreachableNode",
                "IncompleteBranch",
            ]
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_validate_reports_structural_problems_as_diagnostics(self, tmp_path, flow):
        document = json.loads(export_flow(flow))
        document["edges"] = document["edges"][:2] + [
            {
                "id": "e_dup",
                "source": "ingress",
                "target": "check",
                "sourcePort": "success",
                "targetPort": "input",
            },
            {"id": "e_ghost", "source": "big", "target": "ghost"},
        ]
        server = _make_server(tmp_path)
        await server.start()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/api/flows/validate", json={"flow": document}
                ) as resp:
                    assert resp.status == 200
                    body = await resp.json()
            assert body["valid"] is False
            assert [d["code"] for d in body["diagnostics"]] == [
                "DuplicateEdge",
                "DanglingReference",
                "UnreachableNode",
                "IncompleteBranch",
            ]
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_run_returns_trace(self, tmp_path, flow):
        server = _make_server(tmp_path)
        await server.start()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/api/flows/run",
                    json={"flow": json.loads(export_flow(flow)), "input": {"amount": 5000}},
                ) as resp:
                    assert resp.status == 200
                    trace = await resp.json()
            assert trace["flowId"] == "flow_tiers"
            assert trace["status"] == "success"
            steps = {s["nodeId"]: s for s in trace["steps"]}
            assert steps["big"]["output"] == {"tier": "big"}
            assert steps["small"]["status"] == "skipped"
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_run_stored_flow_by_id(self, tmp_path, flow):
        server = _make_server(tmp_path)
        await server.store.save_flow(flow)
        await server.start()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/api/flows/run",
                    json={"flowId": "flow_tiers", "input": {"amount": 1}},
                ) as resp:
                    trace = await resp.json()
            assert trace["steps"][-1]["nodeId"] == "small"
            assert trace["steps"][-1]["status"] == "success"
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_run_invalid_flow_is_rejected(self, tmp_path, flow):
        document = json.loads(export_flow(flow))
        document["nodes"] = document["nodes"][1:]
        document["edges"] = document["edges"][1:]
        server = _make_server(tmp_path)
        await server.start()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/api/flows/run", json={"flow": document}
                ) as resp:
                    assert resp.status == 400
                    body = await resp.json()
            assert body["error"]["code"] == "MissingIngress"
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_bad_json_body(self, tmp_path):
        server = _make_server(tmp_path)
        await server.start()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{_base_url(server)}/api/flows/run", data=b"{oops"
                ) as resp:
                    assert resp.status == 400
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_cancel_without_active_run(self, tmp_path):
        server = _make_server(tmp_path)
        await server.start()
        try:
            async with aiohttp.ClientSession() as session:
                cancel_url = f"{_base_url(server)}/api/flows/flow_tiers/cancel"
                async with session.post(cancel_url) as resp:
                    assert resp.status == 200
                    assert await resp.json() == {"flowId": "flow_tiers", "cancelled": False}
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_traversal_id_is_bad_request(self, tmp_path):
        server = _make_server(tmp_path)
        await server.start()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.delete(f"{_base_url(server)}/api/flows/.hidden") as resp:
                    assert resp.status == 400
                    body = await resp.json()
            assert body["error"]["code"] == "BadRequest"
        finally:
            await server.stop()
