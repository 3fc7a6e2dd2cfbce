"""tool_batch steps: capacity clamping, then sequential or parallel dispatch."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Sequence
from uuid import uuid4

from stepwise.core.state import RunContext
from stepwise.core.tool_executor import (
    PERSISTED_PREVIEW_MAX_CHARS,
    ToolExecutor,
    ToolOutcome,
    hydrate_tool_args,
    output_ref_id,
)
from stepwise.models import (
    ExecutingPhase,
    OutputMode,
    StepResult,
    ToolBatchCall,
    ToolExecutionRecord,
    now_ms,
)
from stepwise.tools.base import BaseTool
from stepwise.utils.logging import get_logger
from stepwise.utils.text import to_json, truncate_with_notice

log = get_logger(__name__)

# Used for parallel calls when the configured tool timeout is disabled
PARALLEL_FALLBACK_TIMEOUT_MS = 120_000


def batch_result_summary(record: ToolExecutionRecord) -> dict[str, Any]:
    """Per-call entry of a batch step's ``results`` array."""
    result = record.result
    metadata = result.get("metadata") if isinstance(result, dict) else None
    if record.success:
        preview_value = result.get("preview") if isinstance(result, dict) else None
        if isinstance(preview_value, str):
            preview = truncate_with_notice(preview_value, PERSISTED_PREVIEW_MAX_CHARS)
        elif result is not None:
            preview = truncate_with_notice(to_json(result), PERSISTED_PREVIEW_MAX_CHARS)
        else:
            preview = "none"
    else:
        preview = record.error or "Tool execution failed"

    return {
        "tool": record.tool_name,
        "execution_id": record.execution_id,
        "success": record.success,
        "requested_output_mode": (
            record.requested_output_mode.value if record.requested_output_mode else None
        ),
        "resolved_output_mode": (
            record.resolved_output_mode.value if record.resolved_output_mode else None
        ),
        "forced_persist": record.forced_persist,
        "forced_reason": record.forced_reason,
        "output_ref": output_ref_id(result) or "none",
        "metadata": metadata,
        "preview": preview,
        "error": record.error,
    }


@dataclass
class _ParallelCall:
    iteration: int
    execution_id: str
    tool: BaseTool
    args: Any
    requested: OutputMode
    outcome: ToolOutcome | None = None
    duration_ms: int = 0
    timestamp_ms: int = 0


class BatchDispatcher:
    def __init__(self, executor: ToolExecutor) -> None:
        self._executor = executor

    async def execute(
        self, ctx: RunContext, step_id: str, calls: Sequence[ToolBatchCall]
    ) -> StepResult:
        requested_calls = len(calls)
        if not calls:
            error = "tool_batch requires at least one tool call"
            return StepResult(
                step_id=step_id,
                success=False,
                output={"success": False, "message": error},
                error=error,
            )

        remaining = max(0, ctx.config.max_tool_calls_per_step - ctx.tool_calls_in_step)
        if remaining == 0:
            error = (
                f"tool_batch requested {requested_calls} calls but only "
                f"{remaining} tool calls remain in this step"
            )
            return StepResult(
                step_id=step_id,
                success=False,
                output={
                    "success": False,
                    "message": error,
                    "requested_calls": requested_calls,
                    "remaining_tool_calls": remaining,
                },
                error=error,
            )

        selected = list(calls[:remaining])
        dropped_calls = requested_calls - len(selected)
        if dropped_calls:
            log.warning(
                "tool_batch_clamped",
                requested_calls=requested_calls,
                remaining_tool_calls=remaining,
                executed_calls=len(selected),
                dropped_calls=dropped_calls,
            )

        if await self._requires_sequential(ctx, selected):
            log.info("tool_batch_sequential", reason="approval_required", calls=len(selected))
            return await self._execute_sequential(ctx, step_id, selected, requested_calls, dropped_calls)
        return await self._execute_parallel(ctx, step_id, selected, requested_calls, dropped_calls)

    async def _requires_sequential(self, ctx: RunContext, calls: list[ToolBatchCall]) -> bool:
        for call in calls:
            tool = self._executor.registry.get(call.tool.strip())
            if tool is not None and await self._executor.requires_approval(ctx, tool):
                return True
        return False

    async def _execute_sequential(
        self,
        ctx: RunContext,
        step_id: str,
        calls: list[ToolBatchCall],
        requested_calls: int,
        dropped_calls: int,
    ) -> StepResult:
        started = time.monotonic()
        records: list[ToolExecutionRecord] = []
        first_error: str | None = None

        for call in calls:
            tool_name = call.tool.strip()
            result = await self._executor.execute(
                ctx, step_id, tool_name, call.args, call.output_mode
            )
            if not result.success and first_error is None:
                first_error = result.error or f"Tool execution failed: {tool_name}"
            records.extend(result.tool_executions)

        return self._aggregate(
            step_id, records, first_error, requested_calls, dropped_calls, "sequential", started
        )

    async def _execute_parallel(
        self,
        ctx: RunContext,
        step_id: str,
        calls: list[ToolBatchCall],
        requested_calls: int,
        dropped_calls: int,
    ) -> StepResult:
        started = time.monotonic()
        records: list[ToolExecutionRecord] = []
        first_error: str | None = None
        runnable: list[_ParallelCall] = []
        cursor = ctx.tool_calls_in_step + 1

        await ctx.set_phase(ExecutingPhase(step_id=step_id, tool_iteration=cursor))

        for call in calls:
            ctx.check_cancelled()
            tool_name = call.tool.strip()
            args = hydrate_tool_args(
                tool_name, call.args, ctx.conversation_id, ctx.last_step_result,
                ctx.session.step_results,
            )
            tool, error = await self._executor.preflight(tool_name, args)
            if tool is None:
                failed = await self._executor.preflight_failure(
                    ctx, step_id, tool_name, args, cursor, error or ""
                )
                records.extend(failed.tool_executions)
                if first_error is None:
                    first_error = failed.error
                continue

            entry = _ParallelCall(
                iteration=cursor,
                execution_id=uuid4().hex,
                tool=tool,
                args=args,
                requested=call.output_mode,
            )
            log.info(
                "tool_execution_started",
                tool=tool_name,
                execution_id=entry.execution_id,
                iteration=entry.iteration,
                session_id=ctx.session.id,
                batch=True,
            )
            await self._executor.publish_started(
                ctx, entry.execution_id, tool_name, args, entry.iteration, requires_approval=False
            )
            runnable.append(entry)
            cursor += 1

        timeout_ms = ctx.config.tool_execution_timeout_ms or PARALLEL_FALLBACK_TIMEOUT_MS
        log.info("tool_batch_parallel", calls=len(runnable), timeout_ms=timeout_ms)
        await asyncio.gather(*(self._run_isolated(ctx, entry, timeout_ms) for entry in runnable))

        for entry in sorted(runnable, key=lambda e: e.iteration):
            ctx.tool_calls_in_step = max(ctx.tool_calls_in_step, entry.iteration)
            outcome = entry.outcome or ToolOutcome.failure("Tool execution panicked")
            record = ToolExecutionRecord.with_delivery(
                outcome.delivery,
                execution_id=entry.execution_id,
                tool_name=entry.tool.name,
                args=entry.args,
                result=outcome.output,
                success=outcome.success,
                error=outcome.error,
                duration_ms=entry.duration_ms,
                iteration=entry.iteration,
                timestamp_ms=entry.timestamp_ms or now_ms(),
                requested_output_mode=entry.requested,
                artifact_persist_warning=outcome.artifact_persist_warning,
            )
            await self._executor.publish_completed(ctx, record)
            if not record.success and first_error is None:
                first_error = record.error
            records.append(record)
            ctx.pending_executions.append(record)

        return self._aggregate(
            step_id, records, first_error, requested_calls, dropped_calls, "parallel", started
        )

    async def _run_isolated(self, ctx: RunContext, entry: _ParallelCall, timeout_ms: int) -> None:
        started = time.monotonic()
        try:
            entry.outcome = await self._executor.run_and_classify(
                ctx, entry.tool, entry.execution_id, entry.args, entry.requested, timeout_ms
            )
        except Exception:
            log.exception("tool_execution_panicked", tool=entry.tool.name,
                          execution_id=entry.execution_id)
            entry.outcome = ToolOutcome.failure("Tool execution panicked")
        entry.duration_ms = int((time.monotonic() - started) * 1000)
        entry.timestamp_ms = now_ms()

    @staticmethod
    def _aggregate(
        step_id: str,
        records: list[ToolExecutionRecord],
        first_error: str | None,
        requested_calls: int,
        dropped_calls: int,
        execution_mode: str,
        started: float,
    ) -> StepResult:
        summaries = [batch_result_summary(record) for record in records]
        successful = sum(1 for record in records if record.success)
        success = first_error is None
        output = {
            "success": success,
            "batch_size": len(summaries),
            "requested_calls": requested_calls,
            "executed_calls": len(summaries),
            "dropped_calls": dropped_calls,
            "successful_calls": successful,
            "failed_calls": len(summaries) - successful,
            "execution_mode": execution_mode,
            "results": summaries,
        }
        return StepResult(
            step_id=step_id,
            success=success,
            output=output,
            error=first_error,
            tool_executions=tuple(records),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
