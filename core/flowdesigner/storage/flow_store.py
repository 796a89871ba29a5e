"""
Flow Store - File storage of flows.

Layout:
  {base_path}/
    └── {flow_id}.json    # One exported flow per file

Files hold exactly the export format, so a stored file can be shared and
re-imported elsewhere.
"""

import asyncio
import logging
from pathlib import Path

from pydantic import ValidationError

from flowdesigner.graph.errors import FlowNotFound, InvalidFlowDocument
from flowdesigner.graph.flow import Flow
from flowdesigner.graph.node_types import NodeTypeRegistry
from flowdesigner.graph.validator import Validator, raise_for_errors
from flowdesigner.utils.io import atomic_write

logger = logging.getLogger(__name__)


def export_flow(flow: Flow) -> str:
    """Serialise a flow to its JSON document (camelCase keys)."""
    return flow.model_dump_json(by_alias=True, indent=2)


def parse_flow(document: str | bytes) -> Flow:
    """
    Read a flow document without checking its graph.

    Used where the caller reports graph problems itself (the Validate action).

    Raises:
        InvalidFlowDocument: Malformed JSON or a document not matching the flow schema
    """
    try:
        return Flow.model_validate_json(document)
    except ValidationError as e:
        raise InvalidFlowDocument(
            f"Invalid flow document: {e.error_count()} problem(s): {e}"
        ) from e


def import_flow(document: str | bytes, registry: NodeTypeRegistry | None = None) -> Flow:
    """
    Parse a flow document and re-check its structure.

    Raises:
        InvalidFlowDocument: Malformed JSON or a document not matching the flow schema
        GraphError: Unknown node types, duplicate ids, dangling or duplicate
            edges, incompatible ports
    """
    flow = parse_flow(document)
    raise_for_errors(Validator(registry).check_structure(flow))
    return flow


class FlowStore:
    """
    Async file storage of flows.

    Example:
        store = FlowStore(Path("~/.flowdesigner/flows").expanduser())
        await store.save_flow(model.flow)
        flow = await store.load_flow(model.flow.id)
    """

    def __init__(self, base_path: Path, registry: NodeTypeRegistry | None = None):
        self.base_path = Path(base_path)
        self.registry = registry

    def _validate_key(self, key: str) -> None:
        """
        Validate a flow id used as a file name.

        Raises:
            ValueError: If the id is empty or could escape the store directory
        """
        if not key or key.strip() == "":
            raise ValueError("Flow id cannot be empty")
        if "/" in key or "\\" in key:
            raise ValueError(f"Invalid flow id: path separators not allowed in '{key}'")
        if ".." in key or key.startswith("."):
            raise ValueError(f"Invalid flow id: path traversal detected in '{key}'")
        if len(key) > 1 and key[1] == ":":
            raise ValueError(f"Invalid flow id: absolute paths not allowed in '{key}'")
        if "\x00" in key:
            raise ValueError("Invalid flow id: null bytes not allowed")
        dangerous_chars = {"<", ">", "|", "&", "$", "`", "'", '"'}
        if any(char in key for char in dangerous_chars):
            raise ValueError(f"Invalid flow id: contains dangerous characters in '{key}'")

    def get_flow_path(self, flow_id: str) -> Path:
        self._validate_key(flow_id)
        return self.base_path / f"{flow_id}.json"

    async def save_flow(self, flow: Flow) -> None:
        """Atomically write a flow, replacing any stored version."""
        path = self.get_flow_path(flow.id)

        def _write():
            with atomic_write(path) as f:
                f.write(export_flow(flow))

        await asyncio.to_thread(_write)
        logger.debug(f"Saved flow {flow.id}")

    async def load_flow(self, flow_id: str) -> Flow:
        """
        Load a stored flow.

        Raises:
            FlowNotFound: No flow with this id is stored
            InvalidFlowDocument: The stored file is corrupt
        """
        path = self.get_flow_path(flow_id)

        def _read():
            if not path.exists():
                return None
            return path.read_text(encoding="utf-8")

        document = await asyncio.to_thread(_read)
        if document is None:
            raise FlowNotFound(f"Flow '{flow_id}' not found")
        return import_flow(document, self.registry)

    async def list_flows(self) -> list[Flow]:
        """All readable stored flows, most recently updated first."""

        def _scan():
            flows = []
            if not self.base_path.exists():
                return flows
            for path in sorted(self.base_path.glob("*.json")):
                try:
                    flows.append(Flow.model_validate_json(path.read_text(encoding="utf-8")))
                except (OSError, ValidationError) as e:
                    logger.warning(f"Failed to load {path}: {e}")
            flows.sort(key=lambda f: f.updated_at, reverse=True)
            return flows

        return await asyncio.to_thread(_scan)

    async def delete_flow(self, flow_id: str) -> bool:
        """
        Delete a stored flow.

        Returns:
            True if deleted, False if not found
        """
        path = self.get_flow_path(flow_id)

        def _delete():
            if not path.exists():
                return False
            path.unlink()
            logger.info(f"Deleted flow {flow_id}")
            return True

        return await asyncio.to_thread(_delete)

    async def flow_exists(self, flow_id: str) -> bool:
        path = self.get_flow_path(flow_id)
        return await asyncio.to_thread(path.exists)
