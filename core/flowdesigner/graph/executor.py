"""
Execution Engine - Simulates flows against sample input.

The engine:
1. Validates the flow (structural errors are raised before any run starts)
2. Orders the nodes reachable from the ingress topologically
3. Computes each node's input from the signals on its inbound edges
4. Dispatches by node type and records one step per visit
5. Routes the outcome onto outgoing edges (active, failure or inactive)
6. Returns an ExecutionTrace

Nothing is actually called: connectors, services and databases are
simulated, and every duration comes from the injected DurationModel so
repeated runs produce identical traces.
"""

import asyncio
import copy
import heapq
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from flowdesigner.config import EngineConfig
from flowdesigner.graph.errors import (
    EngineFault,
    ExecutionError,
    ExpressionError,
    GraphError,
    ServiceError,
    SimulatedTimeout,
    ValidationFailure,
)
from flowdesigner.graph.flow import PORT_ERROR, Flow, FlowEdge, FlowNode
from flowdesigner.graph.model import GraphModel
from flowdesigner.graph.node_types import (
    ConditionConfig,
    DatabaseConfig,
    ErrorHandlerConfig,
    NodeCategory,
    NodeConfig,
    NodeType,
    NodeTypeRegistry,
    OutboundCallConfig,
    TransformConfig,
    get_default_registry,
)
from flowdesigner.graph.safe_eval import MISSING, render_template, resolve_path, safe_eval
from flowdesigner.graph.simulation import (
    DEFAULT_DURATIONS_MS,
    CircuitBreakerRegistry,
    CircuitState,
    DurationModel,
    FixedDurationModel,
    SimulatedClock,
    backoff_delay,
)
from flowdesigner.graph.validator import Validator
from flowdesigner.observability import set_trace_context
from flowdesigner.runtime.event_bus import EventBus
from flowdesigner.schemas.trace import (
    ExecutionStep,
    ExecutionTrace,
    HttpTrace,
    RunStatus,
    StepError,
    StepStatus,
)

logger = logging.getLogger(__name__)

HANDLED = "handled"
UNHANDLED = "unhandled"

_ALLOWED_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.PENDING: {RunStatus.RUNNING},
    RunStatus.RUNNING: {RunStatus.SUCCESS, RunStatus.ERROR, RunStatus.CANCELLED},
}

# Input port types whose values are checked before dispatch
_PORT_VALUE_TYPES: dict[str, type] = {"object": dict, "array": list}


class Activation(StrEnum):
    """State of an edge once its source node has a step."""

    ACTIVE = "active"  # Carries the producer's output
    FAILURE = "failure"  # Carries a failure payload down an error channel
    INACTIVE = "inactive"  # Branch not taken, or producer skipped


@dataclass
class Signal:
    """What an edge carries to its target."""

    activation: Activation
    payload: Any = None
    failure: ExecutionError | None = None  # Set while a failure is not yet absorbed

    @property
    def tainted(self) -> bool:
        return self.failure is not None


_INACTIVE = Signal(Activation.INACTIVE)


@dataclass
class NodeOutcome:
    """Result of dispatching one node."""

    output: Any = None
    error: ExecutionError | None = None
    ports: list[str] | None = None  # Output ports to activate; None = the default set
    duration_ms: int | None = None  # None = engine applies the DurationModel
    retry_count: int = 0
    http_trace: HttpTrace | None = None
    absorbed: bool = False  # An error-handler consumed the incoming failure

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class RunContext:
    """Mutable state of one simulation run."""

    flow: Flow
    execution_id: str
    input: Any
    clock: SimulatedClock
    breakers: CircuitBreakerRegistry
    cancel_event: asyncio.Event
    status: RunStatus = RunStatus.PENDING
    steps: list[ExecutionStep] = field(default_factory=list)
    signals: dict[str, Signal] = field(default_factory=dict)  # edge id -> signal
    node_inputs: dict[str, Any] = field(default_factory=dict)
    node_signals: dict[str, Signal] = field(default_factory=dict)
    attempts: dict[str, int] = field(default_factory=dict)  # physical call attempts per node
    unrecovered: list[ExecutionError] = field(default_factory=list)

    def transition(self, new_status: RunStatus) -> None:
        if new_status not in _ALLOWED_TRANSITIONS.get(self.status, set()):
            raise EngineFault(f"Illegal run transition {self.status} -> {new_status}")
        self.status = new_status

    def next_attempt(self, node_id: str) -> int:
        self.attempts[node_id] = self.attempts.get(node_id, 0) + 1
        return self.attempts[node_id]


NodeHandler = Callable[
    [RunContext, FlowNode, NodeConfig | None, Any, Signal], Awaitable[NodeOutcome]
]


class ExecutionEngine:
    """
    Simulates flows and produces execution traces.

    Runs of the same flow are serialized; runs of different flows may
    interleave freely.

    Example:
        engine = ExecutionEngine()
        trace = await engine.run(flow, {"amount": 1500})
        for step in trace.steps:
            print(step.node_id, step.status, step.duration_ms)
    """

    def __init__(
        self,
        registry: NodeTypeRegistry | None = None,
        config: EngineConfig | None = None,
        duration_model: DurationModel | None = None,
        event_bus: EventBus | None = None,
        id_factory: Callable[[], str] | None = None,
    ):
        self.registry = registry or get_default_registry()
        self.config = config or EngineConfig()
        self.duration_model = duration_model or FixedDurationModel(
            durations={**DEFAULT_DURATIONS_MS, **self.config.durations}
        )
        self.event_bus = event_bus
        self.validator = Validator(self.registry)
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._handlers: dict[str, NodeHandler] = {
            "http-ingress": self._run_ingress,
            "transform": self._run_transform,
            "condition": self._run_condition,
            "connector": self._run_outbound,
            "service-call": self._run_outbound,
            "database": self._run_database,
            "error-handler": self._run_error_handler,
            "service-box": self._run_passthrough,
        }

    def register_handler(self, node_type: str, handler: NodeHandler) -> None:
        """Attach simulation semantics to a node type added to the registry."""
        self._handlers[node_type] = handler

    # === RUN CONTROL ===

    async def run(
        self,
        flow: Flow | GraphModel,
        input_data: Any = None,
        *,
        open_circuits: Iterable[str] = (),
        execution_id: str | None = None,
    ) -> ExecutionTrace:
        """
        Simulate a flow.

        Args:
            flow: Flow snapshot (or the GraphModel owning it)
            input_data: Payload emitted by the ingress node
            open_circuits: Circuit names that start tripped for this run
            execution_id: Use a fixed execution id instead of a generated one

        Raises:
            GraphError: The flow does not pass validation. No run starts.
        """
        if isinstance(flow, GraphModel):
            flow = flow.flow
        self.validator.ensure_valid(flow)

        lock = self._locks.setdefault(flow.id, asyncio.Lock())
        if lock.locked():
            logger.debug(f"Flow '{flow.id}' is already running; waiting")
        self._lock_users[flow.id] = self._lock_users.get(flow.id, 0) + 1
        try:
            async with lock:
                cancel_event = asyncio.Event()
                self._cancel_events[flow.id] = cancel_event
                try:
                    return await self._execute(
                        flow, input_data, cancel_event, open_circuits, execution_id
                    )
                finally:
                    self._cancel_events.pop(flow.id, None)
        finally:
            # Drop the lock once no run of this flow holds or waits on it
            self._lock_users[flow.id] -= 1
            if not self._lock_users[flow.id]:
                del self._lock_users[flow.id]
                del self._locks[flow.id]

    def cancel(self, flow_id: str) -> bool:
        """
        Cancel the active run of a flow.

        The engine notices between steps; steps recorded so far are kept.

        Returns:
            True if a run was active
        """
        event = self._cancel_events.get(flow_id)
        if event is None:
            return False
        event.set()
        logger.info(f"Cancellation requested for flow '{flow_id}'")
        return True

    def is_running(self, flow_id: str) -> bool:
        return flow_id in self._cancel_events

    # === TRAVERSAL ===

    async def _execute(
        self,
        flow: Flow,
        input_data: Any,
        cancel_event: asyncio.Event,
        open_circuits: Iterable[str],
        execution_id: str | None,
    ) -> ExecutionTrace:
        ctx = RunContext(
            flow=flow,
            execution_id=execution_id or self._id_factory(),
            input=input_data,
            clock=SimulatedClock(self.config.time_scale),
            breakers=CircuitBreakerRegistry(
                failure_threshold=self.config.circuit_failure_threshold,
                reset_timeout_ms=self.config.circuit_reset_timeout_ms,
                open_circuits=open_circuits,
            ),
            cancel_event=cancel_event,
        )
        set_trace_context(flow_id=flow.id, execution_id=ctx.execution_id, node_id=None)
        logger.info(f"Simulating flow '{flow.id}' ({len(flow.nodes)} nodes)")

        try:
            await self._simulate(ctx)
        except EngineFault as e:
            logger.error(f"Engine fault while simulating flow '{flow.id}': {e}", exc_info=True)
            ctx.status = RunStatus.ERROR
            if self.event_bus is not None:
                await self.event_bus.emit_engine_fault(flow.id, ctx.execution_id, str(e))
            return self._build_trace(ctx, fault=str(e))
        finally:
            set_trace_context(node_id=None)

        trace = self._build_trace(ctx)
        logger.info(
            f"Flow '{flow.id}' finished: {trace.status} "
            f"({trace.step_count} steps, {trace.duration_ms}ms simulated)",
            extra={"status": str(trace.status), "duration_ms": trace.duration_ms},
        )
        if self.event_bus is not None:
            await self.event_bus.emit_run_finished(
                flow.id, ctx.execution_id, trace.status.value, trace.duration_ms, trace.error
            )
        return trace

    async def _simulate(self, ctx: RunContext) -> None:
        ctx.transition(RunStatus.RUNNING)
        if self.event_bus is not None:
            await self.event_bus.emit_run_started(ctx.flow.id, ctx.execution_id, ctx.input)

        for node in self._execution_order(ctx.flow):
            if ctx.cancel_event.is_set():
                logger.info(f"Run cancelled before node '{node.id}'")
                ctx.transition(RunStatus.CANCELLED)
                return
            set_trace_context(node_id=node.id)
            await self._visit(ctx, node)

        ctx.transition(RunStatus.ERROR if ctx.unrecovered else RunStatus.SUCCESS)

    def _ingress(self, flow: Flow) -> FlowNode:
        for node in flow.nodes:
            if self._node_type(node).category == NodeCategory.INPUT:
                return node
        raise EngineFault(f"Flow '{flow.id}' has no ingress node")

    def _execution_order(self, flow: Flow) -> list[FlowNode]:
        """Stable topological order of the nodes reachable from the ingress."""
        position = {node.id: i for i, node in enumerate(flow.nodes)}

        reachable: set[str] = set()
        to_visit = [self._ingress(flow).id]
        while to_visit:
            current = to_visit.pop()
            if current in reachable:
                continue
            reachable.add(current)
            to_visit.extend(e.target for e in flow.get_outgoing_edges(current))

        indegree = dict.fromkeys(reachable, 0)
        for edge in flow.edges:
            if edge.source in reachable and edge.target in reachable:
                indegree[edge.target] += 1

        ready = [(position[nid], nid) for nid, degree in indegree.items() if degree == 0]
        heapq.heapify(ready)
        order: list[FlowNode] = []
        while ready:
            _, node_id = heapq.heappop(ready)
            order.append(flow.nodes[position[node_id]])
            for edge in flow.get_outgoing_edges(node_id):
                if edge.target not in indegree:
                    continue
                indegree[edge.target] -= 1
                if indegree[edge.target] == 0:
                    heapq.heappush(ready, (position[edge.target], edge.target))

        if len(order) != len(reachable):
            raise EngineFault(f"Flow '{flow.id}' could not be ordered topologically")
        return order

    def _node_type(self, node: FlowNode) -> NodeType:
        try:
            return self.registry.lookup(node.type)
        except GraphError as e:
            raise EngineFault(f"Node '{node.id}' references unregistered type '{node.type}'") from e

    # === NODE VISIT ===

    async def _visit(self, ctx: RunContext, node: FlowNode) -> None:
        node_type = self._node_type(node)

        if node_type.category == NodeCategory.INPUT:
            incoming = Signal(Activation.ACTIVE, ctx.input)
            live: list[tuple[FlowEdge, Signal]] = []
        else:
            live = [
                (edge, signal)
                for edge in ctx.flow.get_incoming_edges(node.id)
                if (signal := ctx.signals.get(edge.id, _INACTIVE)).activation
                != Activation.INACTIVE
            ]
            if not live:
                await self._skip(ctx, node)
                return
            incoming = Signal(
                Activation.FAILURE
                if any(s.activation == Activation.FAILURE for _, s in live)
                else Activation.ACTIVE,
                failure=next((s.failure for _, s in live if s.failure is not None), None),
            )

        try:
            value = self._compute_input(node, node_type, live, ctx.input)
        except ExecutionError as e:
            if e.node_id is None:
                e.node_id = node.id
            outcome = NodeOutcome(error=e)
            value = live[0][1].payload if len(live) == 1 else [s.payload for _, s in live]
            self._finish_timing(ctx, node, outcome)
        else:
            incoming.payload = value
            ctx.node_inputs[node.id] = value
            ctx.node_signals[node.id] = incoming
            outcome = await self._invoke(ctx, node, value, incoming)

        await self._record(ctx, node, value, outcome)
        self._route(ctx, node, outcome, incoming)

    def _compute_input(
        self,
        node: FlowNode,
        node_type: NodeType,
        live: list[tuple[FlowEdge, Signal]],
        run_input: Any,
    ) -> Any:
        if node_type.category == NodeCategory.INPUT:
            return copy.deepcopy(run_input)
        if len(live) > 1 and not node_type.merge_support:
            raise ValidationFailure(
                f"Node '{node.id}' received {len(live)} concurrent inputs "
                "but does not support merging"
            )

        values = []
        for edge, signal in live:
            value = edge.map_inputs(signal.payload)
            port = node.get_input(edge.target_port)
            expected = _PORT_VALUE_TYPES.get(port.type) if port else None
            if expected is not None and not isinstance(value, expected):
                raise ValidationFailure(
                    f"Input port '{port.id}' of node '{node.id}' expects {port.type}, "
                    f"got {_json_type(value)}"
                )
            values.append(value)
        return values[0] if len(values) == 1 else values

    async def _invoke(
        self, ctx: RunContext, node: FlowNode, value: Any, incoming: Signal
    ) -> NodeOutcome:
        """Dispatch a node once. Also used to re-invoke a node on handler retries."""
        node_type = self._node_type(node)
        handler = self._handlers.get(node.type)
        if handler is None:
            raise EngineFault(f"No simulation semantics registered for node type '{node.type}'")

        config = self._parse_config(node, node_type)
        try:
            outcome = await handler(ctx, node, config, value, incoming)
        except ExecutionError as e:
            outcome = NodeOutcome(error=e)

        if outcome.error is not None and outcome.error.node_id is None:
            outcome.error.node_id = node.id
        self._finish_timing(ctx, node, outcome)
        return outcome

    def _finish_timing(self, ctx: RunContext, node: FlowNode, outcome: NodeOutcome) -> None:
        if outcome.duration_ms is None:
            outcome.duration_ms = self.duration_model(node, 0)
            ctx.clock.advance(outcome.duration_ms)

    def _parse_config(self, node: FlowNode, node_type: NodeType) -> NodeConfig | None:
        if node_type.config_model is None:
            return None
        try:
            return self.registry.parse_config(node.type, node.data.config)
        except GraphError as e:
            raise EngineFault(f"Config of validated node '{node.id}' no longer parses: {e}") from e

    async def _record(
        self, ctx: RunContext, node: FlowNode, value: Any, outcome: NodeOutcome
    ) -> ExecutionStep:
        step = ExecutionStep(
            node_id=node.id,
            node_type=node.type,
            status=StepStatus.ERROR if outcome.failed else StepStatus.SUCCESS,
            input=value,
            output=None if outcome.failed else outcome.output,
            error=StepError.model_validate(outcome.error.to_dict()) if outcome.error else None,
            duration_ms=outcome.duration_ms or 0,
            retry_count=outcome.retry_count,
            http_trace=outcome.http_trace,
        )
        return await self._append_step(ctx, step)

    async def _skip(self, ctx: RunContext, node: FlowNode) -> None:
        logger.debug(f"Skipping node '{node.id}': no active inbound edge")
        await self._append_step(
            ctx, ExecutionStep(node_id=node.id, node_type=node.type, status=StepStatus.SKIPPED)
        )
        for edge in ctx.flow.get_outgoing_edges(node.id):
            ctx.signals[edge.id] = _INACTIVE

    async def _append_step(self, ctx: RunContext, step: ExecutionStep) -> ExecutionStep:
        ctx.steps.append(step)
        logger.debug(
            f"Step {len(ctx.steps)}: {step.node_id} -> {step.status}",
            extra={"duration_ms": step.duration_ms, "retry_count": step.retry_count},
        )
        if self.event_bus is not None:
            await self.event_bus.emit_step_recorded(
                ctx.flow.id, ctx.execution_id, step.model_dump(mode="json", by_alias=True)
            )
        return step

    def _route(
        self, ctx: RunContext, node: FlowNode, outcome: NodeOutcome, incoming: Signal
    ) -> None:
        """Set the signal of every outgoing edge and detect unrecovered failures."""
        if outcome.failed:
            failure: ExecutionError | None = outcome.error
            payload = outcome.error.to_dict()
        else:
            failure = None if outcome.absorbed else incoming.failure
            payload = outcome.output

        emitted = False
        for edge in ctx.flow.get_outgoing_edges(node.id):
            port = node.get_output(edge.source_port)
            if port is None:
                raise EngineFault(f"Edge '{edge.id}' leaves unknown port of node '{node.id}'")

            if outcome.ports is not None:
                selected = port.id in outcome.ports
            elif outcome.failed:
                selected = port.type == PORT_ERROR
            else:
                selected = port.type != PORT_ERROR

            if not selected:
                ctx.signals[edge.id] = _INACTIVE
            elif port.type == PORT_ERROR:
                ctx.signals[edge.id] = Signal(Activation.FAILURE, payload, failure or outcome.error)
                emitted = True
            else:
                ctx.signals[edge.id] = Signal(Activation.ACTIVE, payload, failure)
                emitted = True

        if not emitted and failure is not None:
            logger.warning(f"Unrecovered failure at node '{node.id}': {failure}")
            ctx.unrecovered.append(failure)

    def _build_trace(self, ctx: RunContext, fault: str | None = None) -> ExecutionTrace:
        error = None
        if fault is not None:
            error = f"EngineFault: {fault}"
        elif ctx.status == RunStatus.CANCELLED:
            error = "Run cancelled"
        elif ctx.unrecovered:
            first = ctx.unrecovered[0]
            error = f"{first.kind} at node '{first.node_id}': {first.message}"
        return ExecutionTrace(
            flow_id=ctx.flow.id,
            execution_id=ctx.execution_id,
            status=ctx.status,
            duration_ms=ctx.clock.now_ms,
            steps=list(ctx.steps),
            error=error,
            fault=fault,
        )

    # === NODE SEMANTICS ===

    async def _run_ingress(self, ctx, node, config, value, incoming) -> NodeOutcome:
        return NodeOutcome(output=value)

    async def _run_passthrough(self, ctx, node, config, value, incoming) -> NodeOutcome:
        return NodeOutcome(output=value)

    async def _run_transform(
        self, ctx: RunContext, node: FlowNode, config: TransformConfig, value: Any, incoming: Signal
    ) -> NodeOutcome:
        scope = {"input": value, "value": value}
        if config.transform_type == "template":
            if isinstance(value, dict):
                scope = {**value, **scope}
            return NodeOutcome(output=render_template(config.code, scope))
        if config.transform_type == "jsonpath":
            result = resolve_path(value, config.code)
            if result is MISSING:
                raise ExpressionError(f"Path '{config.code}' not found in input")
            return NodeOutcome(output=copy.deepcopy(result))
        return NodeOutcome(output=safe_eval(config.code, scope))

    async def _run_condition(
        self, ctx: RunContext, node: FlowNode, config: ConditionConfig, value: Any, incoming: Signal
    ) -> NodeOutcome:
        if config.condition_type == "jsonpath":
            result = resolve_path(value, config.condition)
            matched = result is not MISSING and bool(result)
        else:
            matched = bool(safe_eval(config.condition, {"input": value, "value": value}))
        logger.debug(f"Condition '{config.condition}' evaluated to {matched}")
        return NodeOutcome(output=value, ports=["true" if matched else "false"])

    async def _run_outbound(
        self,
        ctx: RunContext,
        node: FlowNode,
        config: OutboundCallConfig,
        value: Any,
        incoming: Signal,
    ) -> NodeOutcome:
        """Simulated connector or service call with retries and circuit breaking."""
        circuit = _circuit_name(node)
        breaker = ctx.breakers.get(circuit) if config.circuit_breaker else None
        request = _request_for(node, value)

        elapsed = 0
        retry_count = 0
        error: ExecutionError | None = None
        output = None
        response: dict[str, Any] | None = None

        for attempt in range(config.retries + 1):
            if attempt > 0:
                retry_count = attempt
                delay = backoff_delay(config.backoff_strategy, config.backoff_ms, attempt)
                elapsed += delay
                await ctx.clock.suspend(delay)
                logger.info(
                    f"Retrying '{node.id}' ({attempt}/{config.retries}) after {delay}ms backoff"
                )
                if self.event_bus is not None:
                    await self.event_bus.emit_node_retry(
                        ctx.flow.id, ctx.execution_id, node.id, attempt, str(error)
                    )

            if breaker is not None and not breaker.allow(ctx.clock.now_ms):
                error = ServiceError(f"Circuit '{circuit}' is open; call not attempted")
                response = {"status": 503, "error": error.message}
                break

            number = ctx.next_attempt(node.id)
            latency = self.duration_model(node, attempt)
            failing = config.failure_mode != "none" and (
                config.fail_attempts is None or number <= config.fail_attempts
            )
            timed_out = (failing and config.failure_mode == "timeout") or (
                config.timeout > 0 and latency > config.timeout
            )

            if timed_out:
                waited = config.timeout if config.timeout > 0 else latency
                elapsed += waited
                await ctx.clock.suspend(waited)
                error = SimulatedTimeout(f"Call to '{circuit}' timed out after {waited}ms")
                response = {"status": 504, "error": error.message}
            else:
                elapsed += latency
                await ctx.clock.suspend(latency)
                if not failing:
                    error = None
                    output = _mock_output(node, config, value)
                    response = {"status": 200, "body": output}
                    if breaker is not None:
                        breaker.record_success()
                    break
                error = ServiceError(f"Call to '{circuit}' failed (simulated)")
                response = {"status": 500, "error": error.message}

            if breaker is not None:
                was_open = breaker.state == CircuitState.OPEN
                breaker.record_failure(ctx.clock.now_ms)
                tripped = not was_open and breaker.state == CircuitState.OPEN
                if tripped and self.event_bus is not None:
                    await self.event_bus.emit_circuit_opened(
                        ctx.flow.id, ctx.execution_id, node.id, circuit
                    )

        return NodeOutcome(
            output=None if error else output,
            error=error,
            duration_ms=elapsed,
            retry_count=retry_count,
            http_trace=(
                HttpTrace(request=request, response=response)
                if node.type == "connector"
                else None
            ),
        )

    async def _run_database(
        self, ctx: RunContext, node: FlowNode, config: DatabaseConfig, value: Any, incoming: Signal
    ) -> NodeOutcome:
        duration = self.duration_model(node, 0)
        await ctx.clock.suspend(duration)
        if config.failure_mode == "error":
            return NodeOutcome(
                error=ServiceError(f"Query against '{config.table}' failed (simulated)"),
                duration_ms=duration,
            )

        operation = config.operation.upper()
        if operation == "SELECT":
            output: Any = copy.deepcopy(config.mock_rows) if config.mock_rows is not None else []
        else:
            output = {
                "operation": operation,
                "table": config.table,
                "dataSource": config.data_source,
                "rowsAffected": 1,
                "parameters": value,
            }
        return NodeOutcome(output=output, duration_ms=duration)

    async def _run_error_handler(
        self,
        ctx: RunContext,
        node: FlowNode,
        config: ErrorHandlerConfig,
        value: Any,
        incoming: Signal,
    ) -> NodeOutcome:
        failure = incoming.failure
        if failure is None:
            return NodeOutcome(output=value, ports=[HANDLED])

        strategy = config.strategy or ctx.flow.config.error_handling.value
        if strategy == "fallback":
            logger.info(f"Handler '{node.id}' substituting fallback for {failure.kind}")
            return NodeOutcome(
                output=copy.deepcopy(config.fallback_value), ports=[HANDLED], absorbed=True
            )
        if strategy == "retry":
            max_retries = config.max_retries if config.strategy else ctx.flow.config.retries
            return await self._retry_upstream(ctx, node, config, failure, max_retries)
        return NodeOutcome(error=failure, ports=[UNHANDLED])

    async def _retry_upstream(
        self,
        ctx: RunContext,
        node: FlowNode,
        config: ErrorHandlerConfig,
        failure: ExecutionError,
        max_retries: int,
    ) -> NodeOutcome:
        """Re-invoke the node that produced a failure, recording each attempt."""
        base = self.duration_model(node, 0)
        origin = ctx.flow.get_node(failure.node_id) if failure.node_id else None
        if origin is None or origin.id not in ctx.node_inputs:
            logger.warning(f"Handler '{node.id}' cannot retry: failing node is unknown")
            return NodeOutcome(error=failure, ports=[UNHANDLED])

        waited = 0
        attempts = 0
        last = failure
        for attempt in range(1, max_retries + 1):
            if ctx.cancel_event.is_set():
                break
            delay = backoff_delay(config.backoff_strategy, config.backoff_ms, attempt)
            waited += delay
            await ctx.clock.suspend(delay)
            attempts = attempt
            logger.info(f"Handler '{node.id}' retrying '{origin.id}' ({attempt}/{max_retries})")
            if self.event_bus is not None:
                await self.event_bus.emit_node_retry(
                    ctx.flow.id, ctx.execution_id, origin.id, attempt, str(last)
                )

            set_trace_context(node_id=origin.id)
            value = ctx.node_inputs[origin.id]
            retried = await self._invoke(ctx, origin, value, ctx.node_signals[origin.id])
            await self._record(ctx, origin, value, retried)
            set_trace_context(node_id=node.id)

            if not retried.failed:
                ctx.clock.advance(base)
                return NodeOutcome(
                    output=retried.output,
                    ports=[HANDLED],
                    duration_ms=base + waited,
                    retry_count=attempts,
                    absorbed=True,
                )
            last = retried.error

        ctx.clock.advance(base)
        return NodeOutcome(
            error=last, ports=[UNHANDLED], duration_ms=base + waited, retry_count=attempts
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _json_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int | float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _circuit_name(node: FlowNode) -> str:
    config = node.data.config
    if node.type == "connector" and config.get("connectorId"):
        return f"{config['connectorId']}/{config.get('endpointId', '')}"
    if node.type == "service-call" and config.get("serviceName"):
        return f"{config['serviceName']}.{config.get('methodName', '')}"
    return node.id


def _request_for(node: FlowNode, value: Any) -> dict[str, Any]:
    config = node.data.config
    if node.type == "connector":
        return {
            "connectorId": config.get("connectorId"),
            "endpointId": config.get("endpointId"),
            "body": value,
        }
    return {
        "service": config.get("serviceName"),
        "method": config.get("methodName"),
        "parameters": value,
    }


def _mock_output(node: FlowNode, config: OutboundCallConfig, value: Any) -> Any:
    if config.mock_response is not None:
        return copy.deepcopy(config.mock_response)
    node_config = node.data.config
    if node.type == "connector":
        return {
            "status": 200,
            "connectorId": node_config.get("connectorId"),
            "endpointId": node_config.get("endpointId"),
            "data": copy.deepcopy(value),
        }
    if node_config.get("async"):
        return {
            "accepted": True,
            "service": node_config.get("serviceName"),
            "method": node_config.get("methodName"),
        }
    return {
        "service": node_config.get("serviceName"),
        "method": node_config.get("methodName"),
        "result": copy.deepcopy(value),
    }
