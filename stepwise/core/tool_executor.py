"""Single tool-call execution: hydration, preflight, approval, timeout, delivery."""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from stepwise.core.actions import normalize_tool_args
from stepwise.core.approvals import ApprovalStore, resolve_requires_approval
from stepwise.core.bus import EventType
from stepwise.core.cancel import POLL_INTERVAL_S, CancelFlag
from stepwise.core.delivery import is_introspection_tool, resolve_output_delivery
from stepwise.core.metadata import compute_output_metadata, value_char_len
from stepwise.core.state import RunContext
from stepwise.errors import ApprovalChannelClosed, ToolCallLimitExceeded, ToolError
from stepwise.models import (
    ApprovalDecision,
    ExecutingPhase,
    OutputDeliveryResolution,
    OutputMode,
    ResolvedOutputMode,
    StepResult,
    ToolExecutionRecord,
    ToolOutputRecord,
    now_ms,
)
from stepwise.storage.outputs import ToolOutputStore
from stepwise.tools.base import BaseTool, ToolContext
from stepwise.tools.registry import ToolRegistry
from stepwise.utils.logging import get_logger
from stepwise.utils.text import summarize_args, to_json, truncate_chars

log = get_logger(__name__)

PERSISTED_PREVIEW_MAX_CHARS = 1_200
ARGS_LOG_MAX_CHARS = 500

DENIED_BY_APPROVAL = "Tool execution denied by approval"
APPROVAL_TIMED_OUT = "Tool approval timed out"
EXECUTION_CANCELLED = "Tool execution cancelled"
DENIAL_ERRORS = frozenset({DENIED_BY_APPROVAL, APPROVAL_TIMED_OUT, EXECUTION_CANCELLED})

ID_HYDRATING_TOOLS = frozenset({
    "tool_outputs.read",
    "tool_outputs.stats",
    "tool_outputs.extract",
    "tool_outputs.count",
    "tool_outputs.sample",
})
CONVERSATION_ID_TOOLS = frozenset({"tool_outputs.read"})

INTROSPECTION_TOOL_HINTS = [
    "tool_outputs.read — load full output into context",
    "tool_outputs.extract — extract fields via JSONPath",
    "tool_outputs.stats — get schema, field types, counts",
    "tool_outputs.count — count items matching criteria",
    "tool_outputs.sample — sample items from arrays",
    "tool_outputs.list — list all stored outputs",
]


# ---------------------------------------------------------------------------
# Argument hydration for introspection tools
# ---------------------------------------------------------------------------

def _non_blank_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


_MAX_STRING_DECODES = 4


def output_ref_id(value: Any, _decodes: int = 0) -> str | None:
    """Find the first ``output_ref.id`` anywhere inside ``value``.

    Strings are decoded as JSON and searched too, up to a few levels of
    re-encoding.
    """
    if isinstance(value, dict):
        ref = value.get("output_ref")
        if isinstance(ref, dict):
            found = _non_blank_str(ref.get("id"))
            if found:
                return found
        for child in value.values():
            found = output_ref_id(child, _decodes)
            if found:
                return found
        return None
    if isinstance(value, list):
        for child in value:
            found = output_ref_id(child, _decodes)
            if found:
                return found
        return None
    if isinstance(value, str) and _decodes < _MAX_STRING_DECODES:
        try:
            parsed = json.loads(value)
        except ValueError:
            return None
        return output_ref_id(parsed, _decodes + 1)
    return None


def _apply_extract_defaults(tool_name: str, args: Any) -> Any:
    if tool_name != "tool_outputs.extract":
        return args
    args = dict(args) if isinstance(args, dict) else {}
    paths = args.get("paths")
    if isinstance(paths, list) and paths:
        return args
    if isinstance(paths, str) and paths.strip():
        args["paths"] = [paths.strip()]
    else:
        args["paths"] = ["$"]
    return args


def hydrate_tool_args(
    tool_name: str,
    args: Any,
    conversation_id: str,
    last_step_result: StepResult | None,
    history: list[StepResult],
) -> Any:
    """Fill defaults and a missing output id for ``tool_outputs.*`` calls.

    The id comes from the most recent step that produced an ``output_ref``.
    """
    if not is_introspection_tool(tool_name):
        return args

    args = _apply_extract_defaults(tool_name, normalize_tool_args(args))
    if tool_name not in ID_HYDRATING_TOOLS:
        return args
    if isinstance(args, dict) and _non_blank_str(args.get("id")):
        return args

    found = output_ref_id(last_step_result.output) if last_step_result else None
    if found is None:
        for result in reversed(history):
            found = output_ref_id(result.output)
            if found:
                break
    if found is None:
        return args

    hydrated = dict(args) if isinstance(args, dict) else {}
    hydrated["id"] = found
    if tool_name in CONVERSATION_ID_TOOLS:
        current = hydrated.get("conversation_id")
        if current is None or (isinstance(current, str) and not current.strip()):
            hydrated["conversation_id"] = conversation_id
    return _apply_extract_defaults(tool_name, hydrated)


# ---------------------------------------------------------------------------
# Handler invocation
# ---------------------------------------------------------------------------

async def _invoke(tool: BaseTool, args: Any, context: ToolContext) -> Any:
    try:
        result = await tool.execute(args, context)
    except ToolError:
        raise
    except Exception as exc:
        raise ToolError(f"Tool execution failed: {exc}") from exc
    if not result.success:
        raise ToolError(result.error or "Tool execution failed")
    return result.output


def _discard_result(task: asyncio.Task[Any]) -> None:
    if not task.cancelled():
        task.exception()


async def run_tool_handler(
    tool: BaseTool,
    args: Any,
    context: ToolContext,
    cancel: CancelFlag,
    timeout_ms: int,
) -> Any:
    """Run ``tool`` on its own task and wait in short slices.

    Raises ToolError on cancellation, timeout or tool failure. A task that is
    given up on keeps running; its outcome is discarded.
    """
    task = asyncio.ensure_future(_invoke(tool, args, context))
    loop = asyncio.get_running_loop()
    started = loop.time()
    try:
        while True:
            if cancel.is_cancelled:
                raise ToolError(EXECUTION_CANCELLED)
            wait_for = POLL_INTERVAL_S
            if timeout_ms > 0:
                remaining = timeout_ms / 1000 - (loop.time() - started)
                if remaining <= 0:
                    raise ToolError(f"Tool execution timed out after {timeout_ms} ms")
                wait_for = min(wait_for, remaining)
            done, _ = await asyncio.wait({task}, timeout=wait_for)
            if done:
                return task.result()
    finally:
        if not task.done():
            task.add_done_callback(_discard_result)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

@dataclass
class ToolOutcome:
    success: bool
    output: Any
    error: str | None
    delivery: OutputDeliveryResolution | None = None
    artifact_persist_warning: str | None = None

    @classmethod
    def failure(cls, message: str, delivery: OutputDeliveryResolution | None = None) -> ToolOutcome:
        return cls(False, {"message": message, "success": False}, message, delivery)


class ToolExecutor:
    def __init__(
        self,
        registry: ToolRegistry,
        approvals: ApprovalStore,
        output_store: ToolOutputStore | None = None,
    ) -> None:
        self._registry = registry
        self._approvals = approvals
        self._outputs = output_store

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    # -- preflight -----------------------------------------------------------

    async def _validate_output_reference(self, tool_name: str, args: Any) -> str | None:
        if tool_name not in ID_HYDRATING_TOOLS or not isinstance(args, dict):
            return None
        output_id = _non_blank_str(args.get("id"))
        if output_id is None:
            return None
        if self._outputs is None:
            return f"Invalid tool_outputs id '{output_id}': no tool output store is configured"
        try:
            exists = await self._outputs.exists(output_id)
        except Exception as exc:
            return f"Invalid tool_outputs id '{output_id}': {exc}"
        if exists:
            return None
        return (
            f"Invalid tool_outputs id '{output_id}': no stored output exists for this id. "
            "Use ExecutionId/OutputRef.id from a previous tool execution, or omit id to "
            "auto-hydrate from the latest persisted output."
        )

    async def preflight(self, tool_name: str, args: Any) -> tuple[BaseTool | None, str | None]:
        """Return the tool, or the reason it cannot run with these args."""
        tool = self._registry.get(tool_name)
        if tool is None:
            return None, f"Unknown tool: {tool_name}"
        try:
            self._registry.validate_args(tool.metadata(), args)
        except ToolError as exc:
            return None, exc.message
        error = await self._validate_output_reference(tool_name, args)
        if error is not None:
            return None, error
        return tool, None

    async def preflight_failure(
        self,
        ctx: RunContext,
        step_id: str,
        tool_name: str,
        args: Any,
        iteration: int,
        error: str,
    ) -> StepResult:
        execution_id = uuid4().hex
        output = {"message": error, "success": False}
        log.warning(
            "tool_preflight_failed",
            tool=tool_name,
            execution_id=execution_id,
            iteration=iteration,
            session_id=ctx.session.id,
            error=error,
            args=summarize_args(args, ARGS_LOG_MAX_CHARS),
        )
        record = ToolExecutionRecord(
            execution_id=execution_id,
            tool_name=tool_name,
            args=args,
            result=output,
            success=False,
            error=error,
            duration_ms=0,
            iteration=iteration,
            timestamp_ms=now_ms(),
        )
        await self.publish_completed(ctx, record)
        ctx.pending_executions.append(record)
        return StepResult(
            step_id=step_id,
            success=False,
            output=output,
            error=error,
            tool_executions=(record,),
        )

    # -- approval ------------------------------------------------------------

    async def requires_approval(self, ctx: RunContext, tool: BaseTool) -> bool:
        return await resolve_requires_approval(
            ctx.session_store, ctx.conversation_id, tool.name, tool.requires_approval
        )

    async def _await_approval(
        self,
        ctx: RunContext,
        tool: BaseTool,
        execution_id: str,
        args: Any,
        iteration: int,
    ) -> str | None:
        """Block until the request is settled. Returns the denial reason, if denied."""
        preview = None
        try:
            preview = await tool.preview(args, ctx.tool_context())
        except Exception as exc:
            log.warning("tool_preview_failed", tool=tool.name, error=str(exc))

        approval_id, future = self._approvals.create_request(
            execution_id=execution_id,
            tool_name=tool.name,
            args=args,
            iteration=iteration,
            preview=preview,
            conversation_id=ctx.conversation_id,
            message_id=ctx.assistant_message_id,
        )
        ids = {
            "execution_id": execution_id,
            "approval_id": approval_id,
            "tool_name": tool.name,
            "iteration": iteration,
            "conversation_id": ctx.conversation_id,
            "message_id": ctx.assistant_message_id,
        }
        log.info("tool_approval_requested", session_id=ctx.session.id, **ids)
        await ctx.publish(
            EventType.TOOL_PROPOSED, args=args, preview=preview, timestamp_ms=now_ms(), **ids
        )

        loop = asyncio.get_running_loop()
        started = loop.time()
        timeout_s = ctx.config.approval_timeout_ms / 1000
        forced_reason: str | None = None
        while True:
            if ctx.is_cancelled:
                self._approvals.cancel(approval_id)
                forced_reason = EXECUTION_CANCELLED
                decision = ApprovalDecision.DENIED
                break
            done, _ = await asyncio.wait({future}, timeout=POLL_INTERVAL_S)
            if done:
                if future.cancelled():
                    raise ApprovalChannelClosed(approval_id)
                decision = future.result()
                break
            if loop.time() - started >= timeout_s:
                self._approvals.cancel(approval_id)
                forced_reason = APPROVAL_TIMED_OUT
                decision = ApprovalDecision.DENIED
                break

        if decision is ApprovalDecision.APPROVED:
            log.info("tool_approval_approved", session_id=ctx.session.id, **ids)
            await ctx.publish(EventType.TOOL_APPROVED, timestamp_ms=now_ms(), **ids)
            return None

        reason = forced_reason or DENIED_BY_APPROVAL
        log.warning("tool_approval_denied", session_id=ctx.session.id, reason=reason, **ids)
        await ctx.publish(EventType.TOOL_DENIED, reason=reason, timestamp_ms=now_ms(), **ids)
        return reason

    # -- classification ------------------------------------------------------

    async def classify_output(
        self,
        ctx: RunContext,
        tool: BaseTool,
        execution_id: str,
        args: Any,
        requested: OutputMode,
        value: Any,
    ) -> ToolOutcome:
        """Resolve delivery, store the artifact and build the delivered result."""
        size_chars = value_char_len(value)
        delivery = resolve_output_delivery(tool.name, requested, tool.result_mode, size_chars)

        output_ref = None
        persist_error: str | None = None
        if not is_introspection_tool(tool.name) and self._outputs is not None:
            record = ToolOutputRecord(
                id=execution_id,
                tool_name=tool.name,
                conversation_id=ctx.conversation_id,
                message_id=ctx.assistant_message_id,
                parameters=args if isinstance(args, dict) else {"value": args},
                output=value,
            )
            try:
                output_ref = await self._outputs.store(record)
            except Exception as exc:
                persist_error = f"Failed to persist tool output: {exc}"

        if delivery.resolved is ResolvedOutputMode.INLINE:
            if persist_error:
                log.warning(
                    "artifact_persist_warning",
                    tool=tool.name,
                    execution_id=execution_id,
                    warning=persist_error,
                )
            return ToolOutcome(True, value, None, delivery, persist_error)

        if persist_error:
            return ToolOutcome.failure(persist_error, delivery)
        if output_ref is None:
            return ToolOutcome.failure("Resolved persisted output but missing output_ref", delivery)

        preview, preview_truncated = truncate_chars(to_json(value), PERSISTED_PREVIEW_MAX_CHARS)
        envelope = {
            "persisted": True,
            "output_ref": output_ref.to_dict(),
            "size_chars": size_chars,
            "preview": preview,
            "preview_truncated": preview_truncated,
            "metadata": compute_output_metadata(value),
            "requested_output_mode": delivery.requested.value,
            "resolved_output_mode": delivery.resolved.value,
            "forced_persist": delivery.forced_persist,
            "forced_reason": delivery.forced_reason,
            "available_tools": INTROSPECTION_TOOL_HINTS,
        }
        return ToolOutcome(True, envelope, None, delivery)

    async def run_and_classify(
        self,
        ctx: RunContext,
        tool: BaseTool,
        execution_id: str,
        args: Any,
        requested: OutputMode,
        timeout_ms: int,
    ) -> ToolOutcome:
        try:
            value = await run_tool_handler(tool, args, ctx.tool_context(), ctx.cancel, timeout_ms)
        except ToolError as exc:
            return ToolOutcome.failure(exc.message)
        return await self.classify_output(ctx, tool, execution_id, args, requested, value)

    # -- events --------------------------------------------------------------

    async def publish_started(
        self,
        ctx: RunContext,
        execution_id: str,
        tool_name: str,
        args: Any,
        iteration: int,
        requires_approval: bool,
    ) -> None:
        await ctx.publish(
            EventType.TOOL_STARTED,
            execution_id=execution_id,
            tool_name=tool_name,
            args=args,
            requires_approval=requires_approval,
            iteration=iteration,
            conversation_id=ctx.conversation_id,
            message_id=ctx.assistant_message_id,
            timestamp_ms=now_ms(),
        )

    async def publish_completed(self, ctx: RunContext, record: ToolExecutionRecord) -> None:
        payload: dict[str, Any] = {
            "execution_id": record.execution_id,
            "tool_name": record.tool_name,
            "success": record.success,
            "duration_ms": record.duration_ms,
            "iteration": record.iteration,
            "conversation_id": ctx.conversation_id,
            "message_id": ctx.assistant_message_id,
            "timestamp_ms": record.timestamp_ms,
        }
        if record.success:
            payload["result"] = record.result
            if record.artifact_persist_warning:
                payload["artifact_persist_warning"] = record.artifact_persist_warning
        else:
            payload["error"] = record.error or "Tool execution failed"
        await ctx.publish(EventType.TOOL_COMPLETED, **payload)

    # -- entry point ---------------------------------------------------------

    async def execute(
        self,
        ctx: RunContext,
        step_id: str,
        tool_name: str,
        args: Any,
        requested: OutputMode = OutputMode.AUTO,
    ) -> StepResult:
        """Execute one tool call and return its step result.

        Raises ToolCallLimitExceeded when the step quota is used up and
        RunCancelled when the run is cancelled after approval.
        """
        limit = ctx.config.max_tool_calls_per_step
        if ctx.tool_calls_in_step >= limit:
            raise ToolCallLimitExceeded(limit)
        iteration = ctx.tool_calls_in_step + 1
        await ctx.set_phase(ExecutingPhase(step_id=step_id, tool_iteration=iteration))

        args = hydrate_tool_args(
            tool_name, args, ctx.conversation_id, ctx.last_step_result, ctx.session.step_results
        )
        tool, error = await self.preflight(tool_name, args)
        if tool is None:
            return await self.preflight_failure(ctx, step_id, tool_name, args, iteration, error or "")

        execution_id = uuid4().hex
        requires_approval = await self.requires_approval(ctx, tool)
        if requires_approval:
            denial = await self._await_approval(ctx, tool, execution_id, args, iteration)
            if denial is not None:
                record = ToolExecutionRecord(
                    execution_id=execution_id,
                    tool_name=tool_name,
                    args=args,
                    result=None,
                    success=False,
                    error=denial,
                    duration_ms=0,
                    iteration=iteration,
                    timestamp_ms=now_ms(),
                    requested_output_mode=requested,
                )
                ctx.pending_executions.append(record)
                return StepResult(
                    step_id=step_id,
                    success=False,
                    error=denial,
                    tool_executions=(record,),
                )

        ctx.check_cancelled()
        ctx.tool_calls_in_step += 1
        iteration = ctx.tool_calls_in_step
        log.info(
            "tool_execution_started",
            tool=tool_name,
            execution_id=execution_id,
            requires_approval=requires_approval,
            iteration=iteration,
            session_id=ctx.session.id,
            args=summarize_args(args, ARGS_LOG_MAX_CHARS),
        )
        await self.publish_started(ctx, execution_id, tool_name, args, iteration, requires_approval)

        started = time.monotonic()
        outcome = await self.run_and_classify(
            ctx, tool, execution_id, args, requested, ctx.config.tool_execution_timeout_ms
        )
        duration_ms = int((time.monotonic() - started) * 1000)

        record = ToolExecutionRecord.with_delivery(
            outcome.delivery,
            execution_id=execution_id,
            tool_name=tool_name,
            args=args,
            result=outcome.output,
            success=outcome.success,
            error=outcome.error,
            duration_ms=duration_ms,
            iteration=iteration,
            timestamp_ms=now_ms(),
            requested_output_mode=requested,
            artifact_persist_warning=outcome.artifact_persist_warning,
        )
        if record.success:
            log.info("tool_execution_completed", tool=tool_name, execution_id=execution_id,
                     duration_ms=duration_ms)
        else:
            log.warning("tool_execution_failed", tool=tool_name, execution_id=execution_id,
                        duration_ms=duration_ms, error=record.error)
        await self.publish_completed(ctx, record)
        ctx.pending_executions.append(record)

        return StepResult(
            step_id=step_id,
            success=outcome.success,
            output=outcome.output,
            error=outcome.error,
            tool_executions=(record,),
            duration_ms=duration_ms,
        )
