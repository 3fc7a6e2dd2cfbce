"""Mutable state of one agent run, shared by the controller and executors."""

from __future__ import annotations

from typing import Any

from stepwise.config import AgentConfig
from stepwise.core.bus import AgentEvent, EventBus, EventType
from stepwise.core.cancel import CancelFlag
from stepwise.errors import RunCancelled
from stepwise.models import AgentSession, Phase, StepResult, ToolExecutionRecord, utcnow
from stepwise.storage.sessions import SessionStore
from stepwise.tools.base import ToolContext
from stepwise.utils.logging import get_logger

log = get_logger(__name__)


class RunContext:
    """Session plus the per-run collaborators every component needs.

    Event publishing and session-store writes go through this object so that
    their failures are logged and never change a step's outcome.
    """

    def __init__(
        self,
        session: AgentSession,
        assistant_message_id: str,
        cancel: CancelFlag,
        bus: EventBus | None = None,
        session_store: SessionStore | None = None,
    ) -> None:
        self.session = session
        self.assistant_message_id = assistant_message_id
        self.cancel = cancel
        self.bus = bus
        self.session_store = session_store
        self.tool_calls_in_step = 0
        self.last_step_result: StepResult | None = None
        self.pending_executions: list[ToolExecutionRecord] = []

    @property
    def conversation_id(self) -> str:
        return self.session.conversation_id

    @property
    def config(self) -> AgentConfig:
        return self.session.config

    @property
    def is_cancelled(self) -> bool:
        return self.cancel.is_cancelled

    def check_cancelled(self) -> None:
        if self.cancel.is_cancelled:
            raise RunCancelled()

    def tool_context(self) -> ToolContext:
        return ToolContext(
            session_id=self.session.id,
            conversation_id=self.session.conversation_id,
            message_id=self.assistant_message_id,
        )

    async def publish(self, event_type: EventType, **data: Any) -> None:
        if self.bus is None:
            return
        try:
            await self.bus.publish(AgentEvent(type=event_type, data=data))
        except Exception:
            log.exception("event_publish_failed", event_type=event_type.value)

    async def persist(self, operation: str, *args: Any) -> None:
        """Call ``SessionStore.<operation>(*args)``; failures are logged only."""
        if self.session_store is None:
            return
        try:
            await getattr(self.session_store, operation)(*args)
        except Exception:
            log.exception("session_store_write_failed", operation=operation, session_id=self.session.id)

    async def set_phase(self, phase: Phase) -> None:
        self.session.phase = phase
        self.session.updated_at = utcnow()
        await self.persist("update_phase", self.session.id, phase)
        await self.publish(EventType.PHASE_CHANGED, session_id=self.session.id, phase=phase.to_dict())
