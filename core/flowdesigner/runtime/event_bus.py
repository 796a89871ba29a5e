"""
Event Bus - Pub/sub of simulation run lifecycle events.

The engine publishes one event per recorded step plus run start and run
end, so a trace viewer can animate a run while it is still going. Faults
and circuit trips are published as separate event types so an operator
console can watch for them without parsing step payloads.
"""

import asyncio
import itertools
import logging
from collections import Counter, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"

    STEP_RECORDED = "step_recorded"
    NODE_RETRY = "node_retry"
    CIRCUIT_OPENED = "circuit_opened"

    ENGINE_FAULT = "engine_fault"


_TERMINAL_BY_STATUS = {
    "success": EventType.RUN_COMPLETED,
    "cancelled": EventType.RUN_CANCELLED,
}


@dataclass
class FlowEvent:
    """Something that happened during one simulation run."""

    type: EventType
    flow_id: str
    execution_id: str | None = None
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "flow_id": self.flow_id,
            "execution_id": self.execution_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[FlowEvent], Awaitable[None]]


@dataclass
class Subscription:
    id: str
    event_types: frozenset[EventType]
    handler: EventHandler
    filter_flow: str | None = None
    filter_node: str | None = None
    filter_execution: str | None = None

    def accepts(self, event: FlowEvent) -> bool:
        if event.type not in self.event_types:
            return False
        wanted = (
            (self.filter_flow, event.flow_id),
            (self.filter_node, event.node_id),
            (self.filter_execution, event.execution_id),
        )
        return all(expected is None or expected == actual for expected, actual in wanted)


class EventBus:
    """
    Async pub/sub bus for run events.

    Handlers run concurrently, bounded by ``max_concurrent_handlers``. A
    handler that raises is logged and does not affect other handlers or the
    publishing run.

    Example:
        bus = EventBus()

        async def on_step(event: FlowEvent):
            print(event.node_id, event.data["status"])

        bus.subscribe([EventType.STEP_RECORDED], on_step)
        engine = ExecutionEngine(event_bus=bus)
    """

    def __init__(self, max_history: int = 1000, max_concurrent_handlers: int = 10):
        self._subscriptions: dict[str, Subscription] = {}
        self._history: deque[FlowEvent] = deque(maxlen=max_history)
        self._handler_slots = asyncio.Semaphore(max_concurrent_handlers)
        self._ids = itertools.count(1)

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_flow: str | None = None,
        filter_node: str | None = None,
        filter_execution: str | None = None,
    ) -> str:
        """Register ``handler`` and return a subscription id for unsubscribe()."""
        sub_id = f"sub_{next(self._ids)}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=frozenset(event_types),
            handler=handler,
            filter_flow=filter_flow,
            filter_node=filter_node,
            filter_execution=filter_execution,
        )
        logger.debug(f"Subscription {sub_id} registered for {sorted(event_types)}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._subscriptions.pop(subscription_id, None) is not None

    async def publish(self, event: FlowEvent) -> None:
        self._history.append(event)
        targets = [s.handler for s in list(self._subscriptions.values()) if s.accepts(event)]
        if targets:
            await asyncio.gather(*(self._deliver(event, h) for h in targets))

    async def _deliver(self, event: FlowEvent, handler: EventHandler) -> None:
        async with self._handler_slots:
            try:
                await handler(event)
            except Exception:
                logger.exception(f"Subscriber failed handling {event.type}")

    async def _emit(
        self,
        event_type: EventType,
        flow_id: str,
        execution_id: str | None,
        node_id: str | None = None,
        **data: Any,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=event_type,
                flow_id=flow_id,
                execution_id=execution_id,
                node_id=node_id,
                data=data,
            )
        )

    # === PUBLISHERS USED BY THE ENGINE ===

    async def emit_run_started(
        self, flow_id: str, execution_id: str, input_data: Any = None
    ) -> None:
        await self._emit(EventType.RUN_STARTED, flow_id, execution_id, input=input_data)

    async def emit_step_recorded(
        self, flow_id: str, execution_id: str, step: dict[str, Any]
    ) -> None:
        # The step dict is the camelCase trace step, published as-is
        await self.publish(
            FlowEvent(
                type=EventType.STEP_RECORDED,
                flow_id=flow_id,
                execution_id=execution_id,
                node_id=step.get("nodeId"),
                data=step,
            )
        )

    async def emit_node_retry(
        self,
        flow_id: str,
        execution_id: str,
        node_id: str,
        retry_count: int,
        error: str | None = None,
    ) -> None:
        await self._emit(
            EventType.NODE_RETRY,
            flow_id,
            execution_id,
            node_id,
            retry_count=retry_count,
            error=error,
        )

    async def emit_circuit_opened(
        self, flow_id: str, execution_id: str, node_id: str, circuit: str
    ) -> None:
        await self._emit(EventType.CIRCUIT_OPENED, flow_id, execution_id, node_id, circuit=circuit)

    async def emit_run_finished(
        self,
        flow_id: str,
        execution_id: str,
        status: str,
        duration_ms: int,
        error: str | None = None,
    ) -> None:
        """Publish the terminal event for ``status`` (anything unknown counts as failed)."""
        await self._emit(
            _TERMINAL_BY_STATUS.get(status, EventType.RUN_FAILED),
            flow_id,
            execution_id,
            status=status,
            duration_ms=duration_ms,
            error=error,
        )

    async def emit_engine_fault(self, flow_id: str, execution_id: str, fault: str) -> None:
        await self._emit(EventType.ENGINE_FAULT, flow_id, execution_id, fault=fault)

    # === QUERIES ===

    def get_history(
        self,
        event_type: EventType | None = None,
        flow_id: str | None = None,
        execution_id: str | None = None,
        limit: int = 100,
    ) -> list[FlowEvent]:
        """Recorded events, newest first."""
        selected = (
            e
            for e in reversed(self._history)
            if (event_type is None or e.type == event_type)
            and (flow_id is None or e.flow_id == flow_id)
            and (execution_id is None or e.execution_id == execution_id)
        )
        return list(itertools.islice(selected, limit))

    def get_stats(self) -> dict:
        return {
            "total_events": len(self._history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": dict(Counter(e.type.value for e in self._history)),
        }

    async def wait_for(
        self,
        event_type: EventType,
        flow_id: str | None = None,
        execution_id: str | None = None,
        timeout: float | None = None,
    ) -> FlowEvent | None:
        """Block until a matching event is published. Returns None on timeout."""
        arrived: asyncio.Future[FlowEvent] = asyncio.get_running_loop().create_future()

        async def capture(event: FlowEvent) -> None:
            if not arrived.done():
                arrived.set_result(event)

        sub_id = self.subscribe(
            [event_type], capture, filter_flow=flow_id, filter_execution=execution_id
        )
        try:
            return await asyncio.wait_for(arrived, timeout=timeout)
        except TimeoutError:
            return None
        finally:
            self.unsubscribe(sub_id)
