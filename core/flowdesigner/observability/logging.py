"""
Logging setup for flowdesigner with per-run trace context.

The engine stamps flow_id and execution_id into a ContextVar when a run
starts and node_id as it visits each node. Both formatters read that
context, so a plain ``logger.info(...)`` anywhere below the engine is
attributed to the right run without passing ids around. Concurrent runs
each live in their own task and therefore see their own context.

Output is JSON lines (LOG_FORMAT=json or ENV=production) or a colored
single-line format for local use.
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

_ANSI = re.compile(r"\x1b\[[0-9;]*m")

# Attributes copied from ``extra=`` into JSON entries
_RECORD_FIELDS = ("event", "duration_ms", "retry_count", "node_id", "status")

_LEVEL_COLORS = {
    logging.DEBUG: "\x1b[36m",
    logging.INFO: "\x1b[32m",
    logging.WARNING: "\x1b[33m",
    logging.ERROR: "\x1b[31m",
    logging.CRITICAL: "\x1b[35m",
}
_RESET = "\x1b[0m"


def strip_ansi_codes(text: str) -> str:
    return _ANSI.sub("", text)


def _clean(value: Any) -> Any:
    return strip_ansi_codes(value) if isinstance(value, str) else value


class StructuredFormatter(logging.Formatter):
    """One JSON object per record: base fields, trace context, then extras."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
            **get_trace_context(),
        }
        for name in _RECORD_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = _clean(value)
        if record.exc_info:
            entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """``[INFO    ] [flow:f | exec:1a2b3c4d | node:n] message [event]``"""

    def format(self, record: logging.LogRecord) -> str:
        context = get_trace_context()
        tags = []
        if context.get("flow_id"):
            tags.append(f"flow:{context['flow_id']}")
        if context.get("execution_id"):
            # Execution ids share a long prefix; the tail is what tells runs apart
            tags.append(f"exec:{context['execution_id'][-8:]}")
        if context.get("node_id"):
            tags.append(f"node:{context['node_id']}")

        color = _LEVEL_COLORS.get(record.levelno, "")
        line = f"{color}[{record.levelname:<8}]{_RESET} "
        if tags:
            line += f"[{' | '.join(tags)}] "
        line += record.getMessage()

        event = getattr(record, "event", None)
        if event is not None:
            line += f" [{event}]"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _resolve_format(format: str) -> str:
    if format != "auto":
        return format
    if os.getenv("LOG_FORMAT", "").lower() == "json":
        return "json"
    return "json" if os.getenv("ENV", "development").lower() == "production" else "human"


def configure_logging(level: str = "INFO", format: str = "auto") -> None:
    """
    Install a single stderr handler on the root logger.

    Args:
        level: Level name, case-insensitive.
        format: "json", "human" or "auto".
    """
    json_output = _resolve_format(format) == "json"

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter() if json_output else HumanReadableFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    if json_output:
        # Route aiohttp's own handlers through ours so the stream stays parseable
        for name in ("aiohttp.access", "aiohttp.server"):
            aiohttp_logger = logging.getLogger(name)
            aiohttp_logger.handlers.clear()
            aiohttp_logger.propagate = True


def set_trace_context(**fields: Any) -> None:
    """
    Merge ``fields`` into the current task's trace context.

    Passing ``None`` for a field removes it, e.g. ``set_trace_context(node_id=None)``
    once the engine leaves a node.
    """
    merged = {**(trace_context.get() or {}), **fields}
    trace_context.set({k: v for k, v in merged.items() if v is not None})


def get_trace_context() -> dict:
    return dict(trace_context.get() or {})


def clear_trace_context() -> None:
    trace_context.set(None)
