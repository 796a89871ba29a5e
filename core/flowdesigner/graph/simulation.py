"""
Simulation primitives - deterministic time, backoff and circuit breakers.

Nothing here touches the wall clock or a random source. Every duration in a
trace comes from a DurationModel, so identical flows and inputs produce
identical traces.
"""

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol

from flowdesigner.graph.flow import FlowNode

logger = logging.getLogger(__name__)

DEFAULT_DURATIONS_MS: dict[str, int] = {
    "http-ingress": 1,
    "transform": 2,
    "condition": 1,
    "connector": 50,
    "service-call": 20,
    "database": 10,
    "error-handler": 1,
    "service-box": 1,
}


class DurationModel(Protocol):
    """Simulated duration of one attempt at executing a node."""

    def __call__(self, node: FlowNode, attempt: int) -> int: ...


@dataclass
class FixedDurationModel:
    """
    Per-type fixed durations.

    A node's ``simulatedLatencyMs`` config, when set, overrides the per-type
    value.
    """

    durations: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_DURATIONS_MS))
    default_ms: int = 1

    def __call__(self, node: FlowNode, attempt: int) -> int:
        latency = node.data.config.get("simulatedLatencyMs")
        if isinstance(latency, int | float) and not isinstance(latency, bool):
            return int(latency)
        return self.durations.get(node.type, self.default_ms)


class SimulatedClock:
    """
    Simulated elapsed time of one run.

    ``time_scale`` converts simulated milliseconds into real sleeping at the
    suspension points; 0 only yields to the event loop.
    """

    def __init__(self, time_scale: float = 0.0):
        self.now_ms = 0
        self.time_scale = time_scale

    def advance(self, ms: int) -> None:
        self.now_ms += max(0, int(ms))

    async def suspend(self, ms: int) -> None:
        """Model latency at a suspension point."""
        self.advance(ms)
        await asyncio.sleep(ms / 1000 * self.time_scale if self.time_scale > 0 else 0)


def backoff_delay(strategy: str, base_ms: int, retry_number: int) -> int:
    """
    Delay before the given retry (1-based).

    fixed: base, base, base...  exponential: base, 2*base, 4*base...
    """
    if retry_number < 1 or base_ms <= 0:
        return 0
    if strategy == "exponential":
        return base_ms * (2 ** (retry_number - 1))
    return base_ms


class CircuitState(StrEnum):
    """Circuit breaker states"""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, rejecting calls
    HALF_OPEN = "half_open"  # Next call probes recovery


@dataclass
class CircuitBreaker:
    """Circuit breaker driven by simulated time."""

    name: str
    failure_threshold: int = 5
    reset_timeout_ms: int = 30000
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at_ms: int = 0

    def allow(self, now_ms: int) -> bool:
        """Whether a call may be attempted at the given simulated time."""
        if self.state == CircuitState.OPEN:
            if now_ms - self.opened_at_ms >= self.reset_timeout_ms:
                self.state = CircuitState.HALF_OPEN
                logger.debug(f"Circuit '{self.name}' half-open")
                return True
            return False
        return True

    def record_success(self) -> None:
        self.consecutive_failures = 0
        if self.state != CircuitState.CLOSED:
            logger.debug(f"Circuit '{self.name}' closed")
        self.state = CircuitState.CLOSED

    def record_failure(self, now_ms: int) -> None:
        self.consecutive_failures += 1
        if (
            self.state == CircuitState.HALF_OPEN
            or self.consecutive_failures >= self.failure_threshold
        ):
            self.trip(now_ms)

    def trip(self, now_ms: int = 0) -> None:
        if self.state != CircuitState.OPEN:
            logger.info(f"Circuit '{self.name}' opened after {self.consecutive_failures} failures")
        self.state = CircuitState.OPEN
        self.opened_at_ms = now_ms


class CircuitBreakerRegistry:
    """Breakers for one run, keyed by the simulated target (connector or service)."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout_ms: int = 30000,
        open_circuits: Iterable[str] = (),
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self._breakers: dict[str, CircuitBreaker] = {}
        for name in open_circuits:
            self.get(name).trip(0)

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name=name,
                failure_threshold=self.failure_threshold,
                reset_timeout_ms=self.reset_timeout_ms,
            )
            self._breakers[name] = breaker
        return breaker

    def states(self) -> dict[str, str]:
        return {name: b.state.value for name, b in self._breakers.items()}
