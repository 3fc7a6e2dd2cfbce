"""Shared fixtures: fake tools, run context and stores."""

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from stepwise.config import AgentConfig
from stepwise.core.approvals import ApprovalStore
from stepwise.core.cancel import CancelFlag
from stepwise.core.state import RunContext
from stepwise.core.tool_executor import ToolExecutor
from stepwise.errors import ToolError
from stepwise.models import AgentSession, ApprovalDecision, ToolResultMode
from stepwise.storage.outputs import ToolOutputStore
from stepwise.tools.base import BaseTool, ToolContext, ToolResult
from stepwise.tools.registry import ToolRegistry


class EchoTool(BaseTool):
    def __init__(self) -> None:
        self.calls: list[dict] = []

    @property
    def name(self) -> str:
        return "test.echo"

    @property
    def description(self) -> str:
        return "Echoes input"

    @property
    def parameters(self) -> dict:
        return {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]}

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        self.calls.append(args)
        return ToolResult(success=True, output={"echo": args["text"]})


class BigTool(BaseTool):
    """Returns a result well above the auto-inline threshold."""

    @property
    def name(self) -> str:
        return "test.big"

    @property
    def description(self) -> str:
        return "Returns many items"

    @property
    def parameters(self) -> dict:
        return {"type": "object"}

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        count = args.get("count", 200)
        items = [{"id": f"item-{i}", "name": f"Item number {i}"} for i in range(count)]
        return ToolResult(success=True, output={"items": items})


class InlineBigTool(BigTool):
    @property
    def name(self) -> str:
        return "test.inline_big"

    @property
    def result_mode(self) -> ToolResultMode:
        return ToolResultMode.INLINE


class FailingTool(BaseTool):
    @property
    def name(self) -> str:
        return "test.fail"

    @property
    def description(self) -> str:
        return "Always fails"

    @property
    def parameters(self) -> dict:
        return {"type": "object"}

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        raise ToolError("boom")


class CrashingTool(BaseTool):
    @property
    def name(self) -> str:
        return "test.crash"

    @property
    def description(self) -> str:
        return "Raises an unexpected exception"

    @property
    def parameters(self) -> dict:
        return {"type": "object"}

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        raise RuntimeError("kaboom")


class SlowTool(BaseTool):
    @property
    def name(self) -> str:
        return "test.slow"

    @property
    def description(self) -> str:
        return "Sleeps before answering"

    @property
    def parameters(self) -> dict:
        return {"type": "object", "properties": {"seconds": {"type": "number"}}}

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        await asyncio.sleep(args.get("seconds", 0.1))
        return ToolResult(success=True, output={"slept": args.get("seconds", 0.1)})


class GuardedTool(EchoTool):
    @property
    def name(self) -> str:
        return "test.guarded"

    @property
    def requires_approval(self) -> bool:
        return True

    async def preview(self, args: dict[str, Any], context: ToolContext) -> Any:
        return f"Will echo {args.get('text')!r}"


async def resolve_next_approval(approvals: ApprovalStore, decision: ApprovalDecision) -> None:
    while not approvals.pending():
        await asyncio.sleep(0.01)
    approvals.resolve(approvals.pending()[0].approval_id, decision)


def published(bus: MagicMock) -> list:
    return [c.args[0] for c in bus.publish.call_args_list]


@pytest.fixture
def registry():
    return ToolRegistry([
        EchoTool(), BigTool(), InlineBigTool(), FailingTool(), CrashingTool(), SlowTool(),
        GuardedTool(),
    ])


@pytest.fixture
def approvals():
    return ApprovalStore()


@pytest.fixture
def bus():
    bus = MagicMock()
    bus.publish = AsyncMock()
    return bus


@pytest.fixture
def agent_config():
    return AgentConfig(approval_timeout_ms=2_000, tool_execution_timeout_ms=2_000)


@pytest.fixture
def ctx(agent_config, bus):
    session = AgentSession(conversation_id="conv-1", message_id="msg-1", config=agent_config)
    return RunContext(session, "assistant-1", CancelFlag(), bus=bus)


@pytest.fixture
async def output_store(tmp_path):
    store = ToolOutputStore(tmp_path / "outputs.db")
    await store.start()
    yield store
    await store.stop()


@pytest.fixture
def executor(registry, approvals, output_store):
    return ToolExecutor(registry, approvals, output_store)
