"""
Command-line interface for the flow designer core.

Usage:
    flowdesigner validate flows/order-intake.json
    flowdesigner run flows/order-intake.json --input '{"amount": 1500}'
    flowdesigner node-types
    flowdesigner serve --port 8470
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.table import Table

from flowdesigner.config import EngineConfig, ServerConfig
from flowdesigner.graph.errors import GraphError
from flowdesigner.graph.executor import ExecutionEngine
from flowdesigner.graph.node_types import get_default_registry
from flowdesigner.graph.validator import Diagnostic, Validator, has_errors
from flowdesigner.observability import configure_logging
from flowdesigner.schemas.trace import ExecutionTrace
from flowdesigner.storage.flow_store import import_flow, parse_flow

STATUS_STYLES = {
    "success": "green",
    "error": "red",
    "skipped": "dim",
    "cancelled": "yellow",
    "warning": "yellow",
}


def _console() -> Console:
    return Console()


def _load_flow(path: str):
    return import_flow(Path(path).read_text(encoding="utf-8"))


def _parse_input(args: argparse.Namespace) -> Any:
    if args.input_file:
        return json.loads(Path(args.input_file).read_text(encoding="utf-8"))
    if args.input:
        return json.loads(args.input)
    return {}


def _report_graph_error(e: GraphError) -> int:
    console = _console()
    console.print(f"[red]{e.code}[/red]: {e.message}")
    if e.diagnostics:
        console.print(diagnostics_table(e.diagnostics))
    return 1


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def diagnostics_table(diagnostics: list[Diagnostic]) -> Table:
    table = Table(title="Diagnostics")
    table.add_column("Severity")
    table.add_column("Code")
    table.add_column("Node")
    table.add_column("Edge")
    table.add_column("Message")
    for d in diagnostics:
        style = STATUS_STYLES.get(d.severity.value, "")
        table.add_row(
            f"[{style}]{d.severity}[/{style}]" if style else str(d.severity),
            d.code,
            d.node_id or "",
            d.edge_id or "",
            d.message,
        )
    return table


def trace_table(trace: ExecutionTrace) -> Table:
    table = Table(title=f"Execution {trace.execution_id}")
    table.add_column("#", justify="right")
    table.add_column("Node")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Duration (ms)", justify="right")
    table.add_column("Retries", justify="right")
    table.add_column("Error")
    for i, step in enumerate(trace.steps, start=1):
        style = STATUS_STYLES.get(step.status.value, "")
        table.add_row(
            str(i),
            step.node_id,
            step.node_type,
            f"[{style}]{step.status}[/{style}]",
            str(step.duration_ms),
            str(step.retry_count),
            f"{step.error.type}: {step.error.message}" if step.error else "",
        )
    return table


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate a flow document."""
    try:
        flow = parse_flow(Path(args.flow).read_text(encoding="utf-8"))
    except GraphError as e:
        return _report_graph_error(e)
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    diagnostics = Validator().check(flow)
    if args.json:
        print(json.dumps([d.model_dump(mode="json") for d in diagnostics], indent=2))
    elif diagnostics:
        _console().print(diagnostics_table(diagnostics))
    else:
        _console().print(f"[green]Flow '{flow.name}' is valid[/green]")
    return 1 if has_errors(diagnostics) else 0


def cmd_run(args: argparse.Namespace) -> int:
    """Simulate a flow against an input payload."""
    try:
        flow = _load_flow(args.flow)
        input_data = _parse_input(args)
    except GraphError as e:
        return _report_graph_error(e)
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except json.JSONDecodeError as e:
        print(f"Error: invalid input JSON: {e}", file=sys.stderr)
        return 1

    config = EngineConfig()
    if args.time_scale is not None:
        config.time_scale = args.time_scale
    engine = ExecutionEngine(config=config)

    try:
        trace = asyncio.run(engine.run(flow, input_data, open_circuits=args.open_circuit))
    except GraphError as e:
        return _report_graph_error(e)

    if args.json:
        print(trace.model_dump_json(by_alias=True, indent=2))
    else:
        console = _console()
        console.print(trace_table(trace))
        style = STATUS_STYLES.get(trace.status.value, "")
        console.print(
            f"Status: [{style}]{trace.status}[/{style}]  "
            f"Duration: {trace.duration_ms}ms  Steps: {trace.step_count}"
        )
        if trace.error:
            console.print(f"[red]{trace.error}[/red]")
    return 0 if trace.status == "success" else 1


def cmd_node_types(args: argparse.Namespace) -> int:
    """List the node type catalog."""
    catalog = get_default_registry().catalog()
    if args.json:
        print(json.dumps([t.model_dump(mode="json", by_alias=True) for t in catalog], indent=2))
        return 0

    table = Table(title="Node Types")
    table.add_column("Type")
    table.add_column("Label")
    table.add_column("Category")
    table.add_column("Inputs")
    table.add_column("Outputs")
    for t in catalog:
        table.add_row(
            t.type,
            t.label,
            str(t.category),
            ", ".join(f"{p.id}:{p.type}" for p in t.default_data.inputs),
            ", ".join(f"{p.id}:{p.type}" for p in t.default_data.outputs),
        )
    _console().print(table)
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the HTTP API until interrupted."""
    from flowdesigner.server.api import FlowApiServer

    config = ServerConfig()
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.storage:
        config.storage_path = Path(args.storage)

    async def _serve() -> None:
        server = FlowApiServer(config=config)
        await server.start()
        try:
            await asyncio.Event().wait()
        finally:
            await server.stop()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        pass
    return 0


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    validate_parser = subparsers.add_parser("validate", help="Validate a flow document")
    validate_parser.add_argument("flow", help="Path to an exported flow JSON file")
    validate_parser.add_argument("--json", action="store_true", help="Print diagnostics as JSON")
    validate_parser.set_defaults(func=cmd_validate)

    run_parser = subparsers.add_parser("run", help="Simulate a flow")
    run_parser.add_argument("flow", help="Path to an exported flow JSON file")
    run_parser.add_argument("--input", "-i", help="Input payload as a JSON string")
    run_parser.add_argument("--input-file", help="Read the input payload from a JSON file")
    run_parser.add_argument(
        "--open-circuit",
        action="append",
        default=[],
        metavar="NAME",
        help="Start the run with this circuit tripped (repeatable)",
    )
    run_parser.add_argument(
        "--time-scale", type=float, default=None, help="Real seconds per simulated second"
    )
    run_parser.add_argument("--json", action="store_true", help="Print the trace as JSON")
    run_parser.set_defaults(func=cmd_run)

    types_parser = subparsers.add_parser("node-types", help="List node types")
    types_parser.add_argument("--json", action="store_true", help="Print the catalog as JSON")
    types_parser.set_defaults(func=cmd_node_types)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--storage", default=None, help="Directory of stored flows")
    serve_parser.set_defaults(func=cmd_serve)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flowdesigner",
        description="Validate and simulate integration flows",
    )
    parser.add_argument("--log-level", default="WARNING", help="Log level")
    parser.add_argument(
        "--log-format", default="auto", choices=["auto", "json", "human"], help="Log format"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level, format=args.log_format)
    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
