"""In-memory approval store and approval-requirement resolution."""

from __future__ import annotations

import asyncio
from typing import Any, Protocol
from uuid import uuid4

from stepwise.models import ApprovalDecision, ApprovalRequest
from stepwise.utils.logging import get_logger

log = get_logger(__name__)


class ApprovalOverrides(Protocol):
    async def get_conversation_tool_approval_override(
        self, conversation_id: str, tool_name: str
    ) -> bool | None: ...

    async def get_tool_approval_override(self, tool_name: str) -> bool | None: ...


class ApprovalStore:
    """Pending approval requests, each resolved through an asyncio future.

    Resolution happens on the event loop that created the request; other
    threads should go through ``loop.call_soon_threadsafe``.
    """

    def __init__(self) -> None:
        self._pending: dict[str, tuple[ApprovalRequest, asyncio.Future[ApprovalDecision]]] = {}

    def create_request(
        self,
        execution_id: str,
        tool_name: str,
        args: Any,
        iteration: int,
        preview: Any = None,
        conversation_id: str | None = None,
        message_id: str | None = None,
    ) -> tuple[str, asyncio.Future[ApprovalDecision]]:
        approval_id = uuid4().hex
        future: asyncio.Future[ApprovalDecision] = asyncio.get_running_loop().create_future()
        request = ApprovalRequest(
            approval_id=approval_id,
            execution_id=execution_id,
            tool_name=tool_name,
            args=args,
            iteration=iteration,
            preview=preview,
            conversation_id=conversation_id,
            message_id=message_id,
        )
        self._pending[approval_id] = (request, future)
        return approval_id, future

    def resolve(self, approval_id: str, decision: ApprovalDecision) -> bool:
        """Deliver a decision. Returns False when the request is unknown or settled."""
        entry = self._pending.pop(approval_id, None)
        if entry is None:
            return False
        _, future = entry
        if future.done():
            return False
        future.set_result(decision)
        log.info("approval_resolved", approval_id=approval_id, decision=decision.value)
        return True

    def cancel(self, approval_id: str) -> bool:
        entry = self._pending.pop(approval_id, None)
        if entry is None:
            return False
        entry[1].cancel()
        return True

    def get(self, approval_id: str) -> ApprovalRequest | None:
        entry = self._pending.get(approval_id)
        return entry[0] if entry else None

    def pending(self) -> list[ApprovalRequest]:
        return sorted((req for req, _ in self._pending.values()), key=lambda r: r.timestamp_ms)


async def resolve_requires_approval(
    overrides: ApprovalOverrides | None,
    conversation_id: str,
    tool_name: str,
    default: bool,
) -> bool:
    """Conversation override, then global override, then the tool's default."""
    if overrides is None:
        return default
    try:
        value = await overrides.get_conversation_tool_approval_override(conversation_id, tool_name)
    except Exception as exc:
        log.warning("conversation_approval_override_failed", tool=tool_name, error=str(exc))
        return default
    if value is not None:
        return value
    try:
        value = await overrides.get_tool_approval_override(tool_name)
    except Exception as exc:
        log.warning("global_approval_override_failed", tool=tool_name, error=str(exc))
        return default
    return default if value is None else value
