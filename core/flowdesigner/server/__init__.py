"""HTTP API."""

from flowdesigner.server.api import FlowApiServer

__all__ = ["FlowApiServer"]
