"""Shared flowdesigner configuration.

Centralises reading of ~/.flowdesigner/configuration.json so the engine,
the HTTP server and the CLI share one implementation. The directory can be
moved with FLOWDESIGNER_HOME.

Example configuration.json:
    {
        "engine": {"time_scale": 0.0, "circuit_failure_threshold": 5},
        "server": {"host": "127.0.0.1", "port": 8470}
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------


def get_flowdesigner_home() -> Path:
    """Directory holding configuration and stored flows."""
    home = os.environ.get("FLOWDESIGNER_HOME")
    return Path(home).expanduser() if home else Path.home() / ".flowdesigner"


def get_config_file() -> Path:
    return get_flowdesigner_home() / "configuration.json"


def get_flowdesigner_config() -> dict[str, Any]:
    """Load configuration from <home>/configuration.json ({} when absent or unreadable)."""
    config_file = get_config_file()
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable configuration {config_file}: {e}")
        return {}


def _section(name: str) -> dict[str, Any]:
    section = get_flowdesigner_config().get(name, {})
    return section if isinstance(section, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_time_scale() -> float:
    """Real seconds slept per simulated second (0 = run as fast as possible)."""
    env = os.environ.get("FLOWDESIGNER_TIME_SCALE")
    if env:
        return float(env)
    return float(_section("engine").get("time_scale", 0.0))


def get_circuit_failure_threshold() -> int:
    return int(_section("engine").get("circuit_failure_threshold", 5))


def get_circuit_reset_timeout_ms() -> int:
    return int(_section("engine").get("circuit_reset_timeout_ms", 30000))


def get_duration_overrides() -> dict[str, int]:
    """Per-type simulated durations (ms) replacing the built-in defaults."""
    overrides = _section("engine").get("durations", {})
    return {str(k): int(v) for k, v in overrides.items()} if isinstance(overrides, dict) else {}


def get_server_host() -> str:
    return os.environ.get("FLOWDESIGNER_HOST") or _section("server").get("host", "127.0.0.1")


def get_server_port() -> int:
    env = os.environ.get("FLOWDESIGNER_PORT")
    if env:
        return int(env)
    return int(_section("server").get("port", 8470))


def get_storage_path() -> Path:
    configured = os.environ.get("FLOWDESIGNER_STORAGE") or _section("server").get("storage_path")
    if configured:
        return Path(configured).expanduser()
    return get_flowdesigner_home() / "flows"


# ---------------------------------------------------------------------------
# Typed configs
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Simulation engine settings."""

    time_scale: float = field(default_factory=get_time_scale)
    circuit_failure_threshold: int = field(default_factory=get_circuit_failure_threshold)
    circuit_reset_timeout_ms: int = field(default_factory=get_circuit_reset_timeout_ms)
    durations: dict[str, int] = field(default_factory=get_duration_overrides)


@dataclass
class ServerConfig:
    """HTTP API server settings."""

    host: str = field(default_factory=get_server_host)
    port: int = field(default_factory=get_server_port)
    storage_path: Path = field(default_factory=get_storage_path)
