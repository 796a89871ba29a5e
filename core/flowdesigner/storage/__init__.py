"""Flow persistence."""

from flowdesigner.storage.flow_store import FlowStore, export_flow, import_flow, parse_flow

__all__ = ["FlowStore", "export_flow", "import_flow", "parse_flow"]
