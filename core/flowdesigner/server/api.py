"""
Flow API Server - The designer's UI actions over HTTP.

Uses aiohttp for a lightweight embedded server that runs within the
existing asyncio loop.

Routes:
    GET    /api/node-types               Node type catalog (palette, property editor)
    GET    /api/flows                    Stored flows
    GET    /api/flows/{flow_id}          Load a flow
    PUT    /api/flows/{flow_id}          Save a flow
    DELETE /api/flows/{flow_id}          Delete a flow
    POST   /api/flows/validate           "Validate" - diagnostics for a flow document
    POST   /api/flows/run                "Run Test" - simulate a flow, return the trace
    POST   /api/flows/{flow_id}/cancel   "Cancel" - stop the flow's active run
"""

import json
import logging
from pathlib import Path
from typing import Any

from aiohttp import web

from flowdesigner.config import ServerConfig
from flowdesigner.graph.errors import EngineFault, FlowNotFound, GraphError, InvalidFlowDocument
from flowdesigner.graph.executor import ExecutionEngine
from flowdesigner.graph.validator import has_errors
from flowdesigner.storage.flow_store import FlowStore, export_flow, import_flow, parse_flow

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {FlowNotFound.code}


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Translate flowdesigner errors into JSON responses."""
    try:
        return await handler(request)
    except GraphError as e:
        status = 404 if e.code in _NOT_FOUND_CODES else 400
        return web.json_response({"error": e.to_dict()}, status=status)
    except EngineFault as e:
        logger.error(f"Engine fault serving {request.path}: {e}")
        return web.json_response({"error": {"code": "EngineFault", "message": str(e)}}, status=500)
    except ValueError as e:
        # Invalid flow ids rejected by the store
        return web.json_response({"error": {"code": "BadRequest", "message": str(e)}}, status=400)


async def _read_json(request: web.Request) -> Any:
    body = await request.read()
    try:
        return json.loads(body) if body else {}
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidFlowDocument(f"Request body is not valid JSON: {e}") from e


class FlowApiServer:
    """
    Embedded HTTP server exposing validation, simulation and flow storage.

    Lifecycle:
        server = FlowApiServer(engine, store, config)
        await server.start()
        # ... server running ...
        await server.stop()
    """

    def __init__(
        self,
        engine: ExecutionEngine | None = None,
        store: FlowStore | None = None,
        config: ServerConfig | None = None,
    ):
        self._config = config or ServerConfig()
        self.engine = engine or ExecutionEngine()
        self.store = store or FlowStore(Path(self._config.storage_path), self.engine.registry)
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[error_middleware])
        app.router.add_get("/api/node-types", self._handle_node_types)
        app.router.add_get("/api/flows", self._handle_list_flows)
        app.router.add_post("/api/flows/validate", self._handle_validate)
        app.router.add_post("/api/flows/run", self._handle_run)
        app.router.add_get("/api/flows/{flow_id}", self._handle_get_flow)
        app.router.add_put("/api/flows/{flow_id}", self._handle_put_flow)
        app.router.add_delete("/api/flows/{flow_id}", self._handle_delete_flow)
        app.router.add_post("/api/flows/{flow_id}/cancel", self._handle_cancel)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await self._site.start()
        logger.info(f"Flow API server started on {self._config.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            self._site = None
            logger.info("Flow API server stopped")

    @property
    def is_running(self) -> bool:
        return self._site is not None

    @property
    def port(self) -> int | None:
        """Return the actual listening port (useful when configured with port=0)."""
        if self._site and self._site._server and self._site._server.sockets:
            return self._site._server.sockets[0].getsockname()[1]
        return None

    # === HANDLERS ===

    async def _handle_node_types(self, request: web.Request) -> web.Response:
        catalog = [
            node_type.model_dump(mode="json", by_alias=True)
            for node_type in self.engine.registry.catalog()
        ]
        return web.json_response({"nodeTypes": catalog})

    async def _handle_list_flows(self, request: web.Request) -> web.Response:
        flows = await self.store.list_flows()
        return web.json_response(
            {
                "flows": [
                    {
                        "id": f.id,
                        "name": f.name,
                        "version": f.version,
                        "updatedAt": f.updated_at.isoformat(),
                    }
                    for f in flows
                ]
            }
        )

    async def _handle_get_flow(self, request: web.Request) -> web.Response:
        flow = await self.store.load_flow(request.match_info["flow_id"])
        return web.Response(text=export_flow(flow), content_type="application/json")

    async def _handle_put_flow(self, request: web.Request) -> web.Response:
        flow_id = request.match_info["flow_id"]
        flow = import_flow(await request.read(), self.engine.registry)
        if flow.id != flow_id:
            raise InvalidFlowDocument(f"Flow id '{flow.id}' does not match URL id '{flow_id}'")
        await self.store.save_flow(flow)
        return web.json_response({"id": flow.id, "saved": True})

    async def _handle_delete_flow(self, request: web.Request) -> web.Response:
        flow_id = request.match_info["flow_id"]
        if not await self.store.delete_flow(flow_id):
            raise FlowNotFound(f"Flow '{flow_id}' not found")
        return web.json_response({"id": flow_id, "deleted": True})

    async def _handle_validate(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        if not isinstance(body, dict):
            raise InvalidFlowDocument("Validate request must be a JSON object")
        # Structural problems are reported as diagnostics, not as a 400
        flow = parse_flow(json.dumps(body.get("flow", body)))
        diagnostics = self.engine.validator.check(flow)
        return web.json_response(
            {
                "valid": not has_errors(diagnostics),
                "diagnostics": [d.model_dump(mode="json") for d in diagnostics],
            }
        )

    async def _handle_run(self, request: web.Request) -> web.Response:
        """
        Body: {"flow": <flow document>, "input": {...}} or {"flowId": "...", "input": {...}}
        """
        body = await _read_json(request)
        if not isinstance(body, dict):
            raise InvalidFlowDocument("Run request must be a JSON object")

        if "flow" in body:
            flow = import_flow(json.dumps(body["flow"]), self.engine.registry)
        elif "flowId" in body:
            flow = await self.store.load_flow(str(body["flowId"]))
        else:
            raise InvalidFlowDocument("Run request needs 'flow' or 'flowId'")

        trace = await self.engine.run(flow, body.get("input", {}))
        return web.Response(
            text=trace.model_dump_json(by_alias=True), content_type="application/json"
        )

    async def _handle_cancel(self, request: web.Request) -> web.Response:
        flow_id = request.match_info["flow_id"]
        cancelled = self.engine.cancel(flow_id)
        return web.json_response({"flowId": flow_id, "cancelled": cancelled})
