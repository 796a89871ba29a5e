"""
Trace Schema - The ordered record of one simulation run.

A trace lists one step per visited node (plus one extra step per
error-handler re-invocation), in visitation order, with the simulated
duration and retry count of each.
"""

from enum import StrEnum
from typing import Any

from pydantic import Field, computed_field

from flowdesigner.schemas.base import CamelModel


class RunStatus(StrEnum):
    """Status of a simulation run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.ERROR, RunStatus.CANCELLED)


class StepStatus(StrEnum):
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class StepError(CamelModel):
    """Serialised ExecutionError."""

    type: str
    message: str
    node_id: str | None = None


class HttpTrace(CamelModel):
    """Simulated request/response pair of a connector call."""

    request: Any = None
    response: Any = None


class ExecutionStep(CamelModel):
    """Outcome of one node visit."""

    node_id: str
    node_type: str
    status: StepStatus
    input: Any = None
    output: Any = None
    error: StepError | None = None
    duration_ms: int = 0
    retry_count: int = 0
    http_trace: HttpTrace | None = None


class ExecutionTrace(CamelModel):
    """Result of a simulation run."""

    flow_id: str
    execution_id: str
    status: RunStatus
    duration_ms: int = 0
    steps: list[ExecutionStep] = Field(default_factory=list)
    error: str | None = None
    fault: str | None = Field(
        default=None, description="Set when the simulator itself failed (EngineFault)"
    )

    @computed_field
    @property
    def step_count(self) -> int:
        return len(self.steps)

    def steps_for(self, node_id: str) -> list[ExecutionStep]:
        """All steps recorded for a node, in order."""
        return [s for s in self.steps if s.node_id == node_id]

    def step_for(self, node_id: str) -> ExecutionStep | None:
        """The first step recorded for a node."""
        for step in self.steps:
            if step.node_id == node_id:
                return step
        return None

    def visited(self) -> list[str]:
        """Node ids that actually executed (not skipped), in order."""
        return [s.node_id for s in self.steps if s.status != StepStatus.SKIPPED]
