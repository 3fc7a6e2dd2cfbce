"""Async pub/sub event bus for agent progress events."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine, Iterable
from uuid import uuid4

from stepwise.utils.logging import get_logger

log = get_logger(__name__)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(str, Enum):
    PHASE_CHANGED = "agent.phase_changed"
    PLAN_CREATED = "agent.plan_created"
    PLAN_ADJUSTED = "agent.plan_adjusted"
    STEP_PROPOSED = "agent.step_proposed"
    STEP_STARTED = "agent.step_started"
    STEP_COMPLETED = "agent.step_completed"
    AGENT_COMPLETED = "agent.completed"
    TOOL_PROPOSED = "tool.execution.proposed"
    TOOL_APPROVED = "tool.execution.approved"
    TOOL_DENIED = "tool.execution.denied"
    TOOL_STARTED = "tool.execution.started"
    TOOL_COMPLETED = "tool.execution.completed"


@dataclass
class AgentEvent:
    type: EventType
    # data keys always include session_id or execution_id
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid4().hex[:12])
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def timestamp_ms(self) -> int:
        return int(self.timestamp.timestamp() * 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "data": self.data,
            "timestamp_ms": self.timestamp_ms,
        }


# ---------------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------------

Handler = Callable[[AgentEvent], Coroutine[Any, Any, None]]


@dataclass
class _Subscription:
    handler: Handler
    # None means every event type
    types: frozenset[EventType] | None
    queue: asyncio.Queue[AgentEvent]

    @property
    def label(self) -> str:
        return getattr(self.handler, "__qualname__", repr(self.handler))

    def accepts(self, event: AgentEvent) -> bool:
        return self.types is None or event.type in self.types


class EventBus:
    """Fan agent events out to async subscribers.

    Each subscriber owns one bounded queue and one consumer task, so it sees
    events in publish order across every type it listens to. Publishing never
    blocks the run: a full queue drops the event with a warning.
    """

    def __init__(self, max_queue_size: int = 256) -> None:
        self._subscriptions: list[_Subscription] = []
        self._max_queue_size = max_queue_size
        self._tasks: list[asyncio.Task[None]] = []

    def subscribe(
        self,
        event_types: EventType | Iterable[EventType] | None,
        handler: Handler,
    ) -> None:
        if isinstance(event_types, EventType):
            types: frozenset[EventType] | None = frozenset({event_types})
        elif event_types is None:
            types = None
        else:
            types = frozenset(event_types)
        self._subscriptions.append(
            _Subscription(handler, types, asyncio.Queue(maxsize=self._max_queue_size))
        )

    def subscribe_all(self, handler: Handler) -> None:
        self.subscribe(None, handler)

    async def publish(self, event: AgentEvent) -> None:
        for sub in self._subscriptions:
            if not sub.accepts(event):
                continue
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                log.warning("event_dropped_queue_full", event_type=event.type.value, handler=sub.label)

    async def start(self) -> None:
        for sub in self._subscriptions:
            self._tasks.append(asyncio.create_task(self._consume(sub), name=f"bus-{sub.label}"))

    async def _consume(self, sub: _Subscription) -> None:
        while True:
            event = await sub.queue.get()
            try:
                await sub.handler(event)
            except Exception:
                log.exception("event_handler_failed", event_type=event.type.value, handler=sub.label)
            finally:
                sub.queue.task_done()

    async def stop(self, drain_timeout: float = 0.5) -> None:
        """Give consumers ``drain_timeout`` seconds to empty their queues, then cancel them."""
        if self._tasks and drain_timeout > 0:
            joins = [asyncio.create_task(sub.queue.join()) for sub in self._subscriptions]
            _, pending = await asyncio.wait(joins, timeout=drain_timeout)
            for join in pending:
                join.cancel()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
