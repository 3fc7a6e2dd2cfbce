"""Controller turn loop: ask the model for one action, execute it, feed back."""

from __future__ import annotations

from typing import Any, Sequence
from uuid import uuid4

from stepwise.config import AgentConfig, HistoryConfig
from stepwise.core.actions import (
    AskUser,
    Complete,
    ControllerAction,
    GuardrailStop,
    NextStep,
    decode_action,
)
from stepwise.core.approvals import ApprovalStore
from stepwise.core.batch import BatchDispatcher
from stepwise.core.bus import EventBus, EventType
from stepwise.core.cancel import CancelFlag
from stepwise.core.history import compact_history
from stepwise.core.prompts import (
    CONTROLLER_PROMPT,
    controller_output_format,
    limits_message,
    tools_message,
)
from stepwise.core.state import RunContext
from stepwise.core.summaries import summarize_executions
from stepwise.core.tool_executor import DENIAL_ERRORS, ToolExecutor
from stepwise.errors import GuardrailStopped, MissingPlanError, TurnLimitExceeded
from stepwise.llm.base import LLMProvider
from stepwise.llm.types import LLMMessage
from stepwise.models import (
    AgentSession,
    AskUserAction,
    CompletePhase,
    ControllerPhase,
    ExecutingPhase,
    GuardrailStopPhase,
    Plan,
    PlanStep,
    RespondAction,
    ResumeTarget,
    StepAction,
    StepResult,
    StepStatus,
    StepType,
    ToolBatchAction,
    ToolCallAction,
    ToolExecutionRecord,
    utcnow,
)
from stepwise.storage.outputs import ToolOutputStore
from stepwise.storage.sessions import SessionStore
from stepwise.tools.base import ToolMetadata
from stepwise.tools.registry import ToolRegistry
from stepwise.utils.logging import get_logger, run_log_context

log = get_logger(__name__)

GOAL_MAX_CHARS = 160
DENIAL_RESPONSE = (
    "Okay, stopping since the tool request wasn't approved. "
    "Let me know how you'd like to continue."
)

_DEFAULT_DESCRIPTIONS = {
    StepType.TOOL: "Call the selected tool",
    StepType.TOOL_BATCH: "Execute a batch of tool calls",
    StepType.RESPOND: "Respond to the user",
    StepType.ASK_USER: "Ask the user for clarification",
}


def summarize_goal(user_message: str) -> str:
    trimmed = user_message.strip()
    if not trimmed:
        return "Agent task"
    return trimmed[:GOAL_MAX_CHARS]


def _step_action(step: NextStep) -> StepAction:
    if step.step_type is StepType.TOOL:
        return ToolCallAction(tool=step.tool or "", args=step.args, output_mode=step.output_mode)
    if step.step_type is StepType.TOOL_BATCH:
        return ToolBatchAction(calls=step.tools)
    if step.step_type is StepType.RESPOND:
        return RespondAction(message=step.message or "")
    return AskUserAction(
        question=step.question or "",
        context=step.context,
        resume_to=step.resume_to or ResumeTarget.REFLECTING,
    )


class Controller:
    """Drives one agent run for one assistant message.

    ``run()`` returns the final response text. Fatal conditions raise an
    ``AgentError`` subclass; everything that goes wrong inside a step is
    recorded on the step and shown to the model on the next turn.
    """

    def __init__(
        self,
        llm: LLMProvider,
        registry: ToolRegistry,
        approvals: ApprovalStore,
        cancel: CancelFlag,
        messages: Sequence[LLMMessage],
        conversation_id: str,
        message_id: str,
        assistant_message_id: str,
        bus: EventBus | None = None,
        session_store: SessionStore | None = None,
        output_store: ToolOutputStore | None = None,
        config: AgentConfig | None = None,
        history: HistoryConfig | None = None,
    ) -> None:
        self._llm = llm
        self._registry = registry
        self._messages = list(messages)
        self._history = history or HistoryConfig()
        session = AgentSession(
            conversation_id=conversation_id,
            message_id=message_id,
            config=config or AgentConfig(),
        )
        self._ctx = RunContext(session, assistant_message_id, cancel, bus, session_store)
        self._executor = ToolExecutor(registry, approvals, output_store)
        self._batch = BatchDispatcher(self._executor)
        self._requested_user_input = False

    @property
    def session(self) -> AgentSession:
        return self._ctx.session

    @property
    def messages(self) -> list[LLMMessage]:
        return list(self._messages)

    @property
    def requested_user_input(self) -> bool:
        return self._requested_user_input

    def take_tool_executions(self) -> list[ToolExecutionRecord]:
        """Drain the executions recorded since the last call, for persistence."""
        pending = self._ctx.pending_executions
        self._ctx.pending_executions = []
        return pending

    # -- main loop -----------------------------------------------------------

    async def run(self, user_message: str) -> str:
        with run_log_context(self._ctx.session.id, self._ctx.conversation_id):
            return await self._run(user_message)

    async def _run(self, user_message: str) -> str:
        ctx = self._ctx
        await ctx.persist("save_session", ctx.session)
        log.info("agent_run_started", message_id=ctx.assistant_message_id)
        await ctx.set_phase(ControllerPhase())

        turns = 0
        while True:
            ctx.check_cancelled()
            if turns >= ctx.config.max_total_llm_turns:
                log.warning("turn_limit_exceeded", session_id=ctx.session.id, turns=turns)
                raise TurnLimitExceeded(ctx.config.max_total_llm_turns)
            turns += 1
            ctx.tool_calls_in_step = 0

            action = await self._call_controller(turns)
            if isinstance(action, NextStep):
                await self._ensure_plan(user_message)
                response = await self._execute_step(action)
                if response is not None:
                    return await self._finish(response)
            elif isinstance(action, Complete):
                return await self._finish(action.message)
            elif isinstance(action, GuardrailStop):
                detail = action.message or action.reason
                log.warning("guardrail_stop", session_id=ctx.session.id, reason=action.reason)
                await ctx.set_phase(GuardrailStopPhase(reason=action.reason, recoverable=False))
                raise GuardrailStopped(action.reason, detail)
            elif isinstance(action, AskUser):
                self._requested_user_input = True
                return await self._finish(action.question)

    async def _finish(self, response: str) -> str:
        ctx = self._ctx
        await ctx.persist("mark_completed", ctx.session.id, response)
        now = utcnow()
        ctx.session.phase = CompletePhase(final_response=response)
        ctx.session.updated_at = now
        ctx.session.completed_at = now
        log.info("agent_run_completed", session_id=ctx.session.id, steps=len(ctx.session.step_results))
        await ctx.publish(EventType.AGENT_COMPLETED, session_id=ctx.session.id, response=response)
        return response

    # -- model call ----------------------------------------------------------

    async def _available_tools(self) -> list[ToolMetadata]:
        tools = self._registry.list_metadata()
        store = self._ctx.session_store
        if store is None:
            return tools
        try:
            overrides = await store.load_tool_approval_overrides()
            conversation = await store.load_conversation_tool_approval_overrides(
                self._ctx.conversation_id
            )
        except Exception as exc:
            log.warning("approval_overrides_load_failed", error=str(exc))
            return tools
        for tool in tools:
            if tool.name in conversation:
                tool.requires_approval = conversation[tool.name]
            elif tool.name in overrides:
                tool.requires_approval = overrides[tool.name]
        return tools

    def _compacted_history(self) -> list[LLMMessage]:
        return compact_history(
            self._messages,
            max_chars=self._history.max_chars,
            stable_prefix_messages=self._history.stable_prefix_messages,
            recent_tail_messages=self._history.recent_tail_messages,
        )

    async def build_controller_messages(self) -> list[LLMMessage]:
        """Static prompt, tools and limits first so the prefix stays cacheable."""
        tools = await self._available_tools()
        return [
            LLMMessage(role="system", content=CONTROLLER_PROMPT),
            LLMMessage(role="system", content=tools_message(tools)),
            LLMMessage(role="system", content=limits_message(self._ctx.config)),
            *self._compacted_history(),
        ]

    async def _call_controller(self, turn: int) -> ControllerAction:
        messages = await self.build_controller_messages()
        log.debug("controller_prompt", turn=turn, messages=len(messages))
        response = await self._llm.complete(messages, output_format=controller_output_format())
        log.debug("controller_output", turn=turn, content=response.content)
        return decode_action(response.content)

    # -- steps ---------------------------------------------------------------

    async def _ensure_plan(self, user_message: str) -> None:
        ctx = self._ctx
        if ctx.session.plan is not None:
            return
        plan = Plan(goal=summarize_goal(user_message))
        ctx.session.plan = plan
        await ctx.persist("save_plan", ctx.session.id, plan)
        await ctx.publish(EventType.PLAN_CREATED, session_id=ctx.session.id, plan=plan.to_dict())

    async def _step_preview(self, step: NextStep) -> Any:
        if step.step_type is not StepType.TOOL or not step.tool:
            return None
        tool = self._registry.get(step.tool)
        if tool is None:
            return None
        try:
            return await tool.preview(step.args, self._ctx.tool_context())
        except Exception as exc:
            log.warning("tool_preview_failed", tool=step.tool, error=str(exc))
            return None

    async def _execute_step(self, step: NextStep) -> str | None:
        """Run one step. Returns the final response when the step ends the run."""
        ctx = self._ctx
        ctx.tool_calls_in_step = 0
        plan = ctx.session.plan
        if plan is None:
            raise MissingPlanError()

        step_id = f"step-{uuid4().hex}"
        plan_step = PlanStep(
            id=step_id,
            sequence=len(plan.steps),
            description=step.description or _DEFAULT_DESCRIPTIONS[step.step_type],
            action=_step_action(step),
        )
        plan.steps.append(plan_step)
        await ctx.persist("save_plan_steps", plan.id, [plan_step])
        await ctx.publish(EventType.PLAN_ADJUSTED, session_id=ctx.session.id, plan=plan.to_dict())
        await ctx.publish(
            EventType.STEP_PROPOSED,
            session_id=ctx.session.id,
            step=plan_step.to_dict(),
            risk="None",
            approval_id=None,
            preview=await self._step_preview(step),
        )

        await ctx.set_phase(ExecutingPhase(step_id=step_id, tool_iteration=0))
        plan_step.advance(StepStatus.EXECUTING)
        await ctx.persist("update_step_status", step_id, StepStatus.EXECUTING)
        await ctx.publish(EventType.STEP_STARTED, session_id=ctx.session.id, step_id=step_id)
        log.info("step_started", session_id=ctx.session.id, step_id=step_id,
                 step_type=step.step_type.value)

        if step.step_type is StepType.TOOL:
            result = await self._executor.execute(
                ctx, step_id, step.tool or "", step.args, step.output_mode
            )
        elif step.step_type is StepType.TOOL_BATCH:
            result = await self._batch.execute(ctx, step_id, step.tools)
        elif step.step_type is StepType.RESPOND:
            result = StepResult(step_id=step_id, success=True, output={"message": step.message or ""})
        else:
            result = StepResult(step_id=step_id, success=True, output={"question": step.question or ""})

        status = StepStatus.COMPLETED if result.success else StepStatus.FAILED
        plan_step.advance(status)
        plan_step.result = result
        await ctx.persist("update_step_status", step_id, status)
        await ctx.persist("save_step_result", ctx.session.id, result)
        await ctx.publish(
            EventType.STEP_COMPLETED,
            session_id=ctx.session.id,
            step_id=step_id,
            success=result.success,
            result=result.output,
            error=result.error,
        )
        log.info("step_completed", session_id=ctx.session.id, step_id=step_id,
                 success=result.success, error=result.error)

        ctx.last_step_result = result
        ctx.session.step_results.append(result)
        summary = summarize_executions(result.tool_executions)
        if summary is not None:
            self._messages.append(LLMMessage(role="user", content=summary))

        is_ask_user = step.step_type is StepType.ASK_USER
        if not is_ask_user:
            await ctx.set_phase(ControllerPhase())

        if result.error in DENIAL_ERRORS:
            return DENIAL_RESPONSE
        if is_ask_user:
            self._requested_user_input = True
            return step.question or ""
        if step.step_type is StepType.RESPOND:
            return step.message or ""
        return None
