"""Tests for tool_batch dispatch."""

import asyncio
from unittest.mock import AsyncMock

from stepwise.config import AgentConfig
from stepwise.core.batch import PARALLEL_FALLBACK_TIMEOUT_MS, BatchDispatcher
from stepwise.core.bus import EventType
from stepwise.models import ApprovalDecision, OutputMode, ToolBatchCall

from conftest import published, resolve_next_approval


def call(tool: str, output_mode: OutputMode = OutputMode.AUTO, **args) -> ToolBatchCall:
    return ToolBatchCall(tool=tool, args=args, output_mode=output_mode)


class TestCapacity:
    async def test_empty_batch(self, executor, ctx):
        result = await BatchDispatcher(executor).execute(ctx, "step-1", [])
        assert result.success is False
        assert result.error == "tool_batch requires at least one tool call"

    async def test_no_capacity_left(self, executor, ctx, registry):
        ctx.tool_calls_in_step = ctx.config.max_tool_calls_per_step
        result = await BatchDispatcher(executor).execute(
            ctx, "step-1", [call("test.echo", text="a"), call("test.echo", text="b")]
        )
        assert result.success is False
        assert result.error == "tool_batch requested 2 calls but only 0 tool calls remain in this step"
        assert result.output["requested_calls"] == 2
        assert result.output["remaining_tool_calls"] == 0
        assert registry.get("test.echo").calls == []

    async def test_clamps_from_the_tail(self, executor, ctx, registry):
        ctx.tool_calls_in_step = ctx.config.max_tool_calls_per_step - 2
        calls = [call("test.echo", text=str(i)) for i in range(4)]
        result = await BatchDispatcher(executor).execute(ctx, "step-1", calls)
        assert result.success is True
        assert result.output["requested_calls"] == 4
        assert result.output["executed_calls"] == 2
        assert result.output["dropped_calls"] == 2
        assert sorted(c["text"] for c in registry.get("test.echo").calls) == ["0", "1"]
        assert [r.iteration for r in result.tool_executions] == [7, 8]
        assert ctx.tool_calls_in_step == ctx.config.max_tool_calls_per_step


class TestParallel:
    async def test_results_follow_call_order(self, executor, ctx, bus):
        calls = [
            call("test.slow", seconds=0.3),
            call("test.echo", text="fast"),
            call("test.slow", seconds=0.05),
        ]
        result = await BatchDispatcher(executor).execute(ctx, "step-1", calls)
        out = result.output
        assert out["execution_mode"] == "parallel"
        assert out["successful_calls"] == 3
        assert [r["tool"] for r in out["results"]] == ["test.slow", "test.echo", "test.slow"]
        assert [r.iteration for r in result.tool_executions] == [1, 2, 3]
        assert ctx.tool_calls_in_step == 3

        completed = [e.data["iteration"] for e in published(bus) if e.type is EventType.TOOL_COMPLETED]
        assert completed == [1, 2, 3]
        started = [e for e in published(bus) if e.type is EventType.TOOL_STARTED]
        assert all(e.data["requires_approval"] is False for e in started)

    async def test_calls_run_concurrently(self, executor, ctx):
        calls = [call("test.slow", seconds=0.3) for _ in range(3)]
        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await BatchDispatcher(executor).execute(ctx, "step-1", calls)
        assert result.success is True
        assert loop.time() - started < 0.8

    async def test_preflight_failure_does_not_stop_the_batch(self, executor, ctx):
        calls = [call("test.echo", text="a"), call("nope"), call("test.echo", text="b")]
        result = await BatchDispatcher(executor).execute(ctx, "step-1", calls)
        out = result.output
        assert result.success is False
        assert result.error == "Unknown tool: nope"
        assert out["successful_calls"] == 2
        assert out["failed_calls"] == 1
        failed = out["results"][0]
        assert failed["tool"] == "nope"
        assert failed["preview"] == "Unknown tool: nope"
        assert [r.iteration for r in result.tool_executions] == [2, 1, 2]
        assert ctx.tool_calls_in_step == 2

    async def test_failures_are_captured_per_call(self, executor, ctx):
        calls = [call("test.fail"), call("test.crash"), call("test.echo", text="ok")]
        result = await BatchDispatcher(executor).execute(ctx, "step-1", calls)
        assert result.error == "boom"
        errors = [r["error"] for r in result.output["results"]]
        assert errors == ["boom", "Tool execution failed: kaboom", None]

    async def test_panicking_call_is_isolated(self, executor, ctx, monkeypatch):
        monkeypatch.setattr(executor, "run_and_classify", AsyncMock(side_effect=RuntimeError("bug")))
        result = await BatchDispatcher(executor).execute(ctx, "step-1", [call("test.echo", text="a")])
        assert result.success is False
        assert result.error == "Tool execution panicked"

    async def test_disabled_timeout_uses_fallback(self, executor, ctx, monkeypatch):
        ctx.session.config = AgentConfig(tool_execution_timeout_ms=0)
        spy = AsyncMock(wraps=executor.run_and_classify)
        monkeypatch.setattr(executor, "run_and_classify", spy)
        await BatchDispatcher(executor).execute(ctx, "step-1", [call("test.echo", text="a")])
        assert spy.call_args.args[-1] == PARALLEL_FALLBACK_TIMEOUT_MS

    async def test_persisted_entry_reports_output_ref(self, executor, ctx):
        result = await BatchDispatcher(executor).execute(
            ctx, "step-1", [call("test.big"), call("test.echo", text="a")]
        )
        big = result.output["results"][0]
        assert big["output_ref"] == result.tool_executions[0].execution_id
        assert big["resolved_output_mode"] == "persist"
        assert big["metadata"]["root_type"] == "object"
        assert result.output["results"][1]["output_ref"] == "none"


class TestSequential:
    async def test_approval_forces_sequential(self, executor, ctx, approvals, registry):
        waiter = asyncio.create_task(resolve_next_approval(approvals, ApprovalDecision.APPROVED))
        calls = [call("test.echo", text="a"), call("test.guarded", text="b")]
        result = await BatchDispatcher(executor).execute(ctx, "step-1", calls)
        await waiter
        assert result.output["execution_mode"] == "sequential"
        assert result.success is True
        assert [r.iteration for r in result.tool_executions] == [1, 2]
        assert registry.get("test.guarded").calls == [{"text": "b"}]

    async def test_denial_is_recorded_and_batch_continues(self, executor, ctx, approvals, registry):
        waiter = asyncio.create_task(resolve_next_approval(approvals, ApprovalDecision.DENIED))
        calls = [call("test.guarded", text="a"), call("test.echo", text="b")]
        result = await BatchDispatcher(executor).execute(ctx, "step-1", calls)
        await waiter
        assert result.error == "Tool execution denied by approval"
        assert result.output["failed_calls"] == 1
        assert registry.get("test.echo").calls == [{"text": "b"}]
