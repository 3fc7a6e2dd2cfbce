"""Session, plan, step and tool-execution data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Union
from uuid import uuid4

from stepwise.config import AgentConfig


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return int(utcnow().timestamp() * 1000)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class OutputMode(str, Enum):
    """Delivery mode requested by the model for a tool result."""

    AUTO = "auto"
    INLINE = "inline"
    PERSIST = "persist"

    @classmethod
    def parse(cls, value: str) -> OutputMode | None:
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class ResolvedOutputMode(str, Enum):
    INLINE = "inline"
    PERSIST = "persist"


class ToolResultMode(str, Enum):
    """Result policy a tool declares for itself."""

    INLINE = "inline"
    PERSIST = "persist"
    AUTO = "auto"


class StepType(str, Enum):
    TOOL = "tool"
    TOOL_BATCH = "tool_batch"
    RESPOND = "respond"
    ASK_USER = "ask_user"


class StepStatus(str, Enum):
    PROPOSED = "proposed"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


_STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PROPOSED: frozenset({StepStatus.EXECUTING}),
    StepStatus.EXECUTING: frozenset({StepStatus.COMPLETED, StepStatus.FAILED}),
    StepStatus.COMPLETED: frozenset(),
    StepStatus.FAILED: frozenset(),
}


class ResumeTarget(str, Enum):
    REFLECTING = "reflecting"
    CONTROLLER = "controller"


class ApprovalDecision(str, Enum):
    APPROVED = "approved"
    DENIED = "denied"


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ControllerPhase:
    kind: ClassVar[str] = "controller"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind}


@dataclass(frozen=True)
class ExecutingPhase:
    step_id: str
    tool_iteration: int = 0
    kind: ClassVar[str] = "executing"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "step_id": self.step_id, "tool_iteration": self.tool_iteration}


@dataclass(frozen=True)
class GuardrailStopPhase:
    reason: str
    recoverable: bool = False
    kind: ClassVar[str] = "guardrail_stop"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "reason": self.reason, "recoverable": self.recoverable}


@dataclass(frozen=True)
class CompletePhase:
    final_response: str
    kind: ClassVar[str] = "complete"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "final_response": self.final_response}


Phase = Union[ControllerPhase, ExecutingPhase, GuardrailStopPhase, CompletePhase]


def is_terminal(phase: Phase) -> bool:
    return isinstance(phase, (GuardrailStopPhase, CompletePhase))


# ---------------------------------------------------------------------------
# Step actions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ToolBatchCall:
    tool: str
    args: dict[str, Any] = field(default_factory=dict)
    output_mode: OutputMode = OutputMode.AUTO

    def to_dict(self) -> dict[str, Any]:
        return {"tool": self.tool, "args": self.args, "output_mode": self.output_mode.value}


@dataclass(frozen=True)
class ToolCallAction:
    tool: str
    args: dict[str, Any] = field(default_factory=dict)
    output_mode: OutputMode = OutputMode.AUTO
    step_type: ClassVar[StepType] = StepType.TOOL

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.step_type.value,
            "tool": self.tool,
            "args": self.args,
            "output_mode": self.output_mode.value,
        }


@dataclass(frozen=True)
class ToolBatchAction:
    calls: tuple[ToolBatchCall, ...]
    step_type: ClassVar[StepType] = StepType.TOOL_BATCH

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.step_type.value, "tools": [c.to_dict() for c in self.calls]}


@dataclass(frozen=True)
class RespondAction:
    message: str
    step_type: ClassVar[StepType] = StepType.RESPOND

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.step_type.value, "message": self.message}


@dataclass(frozen=True)
class AskUserAction:
    question: str
    context: str | None = None
    resume_to: ResumeTarget = ResumeTarget.REFLECTING
    step_type: ClassVar[StepType] = StepType.ASK_USER

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.step_type.value,
            "question": self.question,
            "context": self.context,
            "resume_to": self.resume_to.value,
        }


StepAction = Union[ToolCallAction, ToolBatchAction, RespondAction, AskUserAction]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OutputDeliveryResolution:
    requested: OutputMode
    resolved: ResolvedOutputMode
    forced_persist: bool = False
    forced_reason: str | None = None


@dataclass(frozen=True)
class ToolExecutionRecord:
    execution_id: str
    tool_name: str
    args: dict[str, Any]
    result: Any
    success: bool
    error: str | None
    duration_ms: int
    iteration: int
    timestamp_ms: int
    requested_output_mode: OutputMode | None = None
    resolved_output_mode: ResolvedOutputMode | None = None
    forced_persist: bool | None = None
    forced_reason: str | None = None
    artifact_persist_warning: str | None = None

    @classmethod
    def with_delivery(
        cls,
        delivery: OutputDeliveryResolution | None,
        **kwargs: Any,
    ) -> ToolExecutionRecord:
        if delivery is None:
            return cls(**kwargs)
        return cls(
            resolved_output_mode=delivery.resolved,
            forced_persist=delivery.forced_persist,
            forced_reason=delivery.forced_reason,
            **kwargs,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "tool_name": self.tool_name,
            "args": self.args,
            "result": self.result,
            "success": self.success,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "iteration": self.iteration,
            "timestamp_ms": self.timestamp_ms,
            "requested_output_mode": self.requested_output_mode.value if self.requested_output_mode else None,
            "resolved_output_mode": self.resolved_output_mode.value if self.resolved_output_mode else None,
            "forced_persist": self.forced_persist,
            "forced_reason": self.forced_reason,
            "artifact_persist_warning": self.artifact_persist_warning,
        }


@dataclass(frozen=True)
class StepResult:
    step_id: str
    success: bool
    output: Any = None
    error: str | None = None
    tool_executions: tuple[ToolExecutionRecord, ...] = ()
    duration_ms: int = 0
    completed_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "tool_executions": [e.to_dict() for e in self.tool_executions],
            "duration_ms": self.duration_ms,
            "completed_at": self.completed_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Plan and session
# ---------------------------------------------------------------------------

@dataclass
class PlanStep:
    id: str
    sequence: int
    description: str
    action: StepAction
    expected_outcome: str = "Step result recorded."
    status: StepStatus = StepStatus.PROPOSED
    result: StepResult | None = None

    def advance(self, status: StepStatus) -> None:
        if status not in _STEP_TRANSITIONS[self.status]:
            raise ValueError(f"Illegal step transition {self.status.value} -> {status.value}")
        self.status = status

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sequence": self.sequence,
            "description": self.description,
            "expected_outcome": self.expected_outcome,
            "action": self.action.to_dict(),
            "status": self.status.value,
            "result": self.result.to_dict() if self.result else None,
        }


@dataclass
class Plan:
    goal: str
    id: str = field(default_factory=lambda: uuid4().hex)
    steps: list[PlanStep] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "goal": self.goal,
            "steps": [s.to_dict() for s in self.steps],
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class AgentSession:
    conversation_id: str
    message_id: str
    id: str = field(default_factory=lambda: uuid4().hex)
    phase: Phase = field(default_factory=ControllerPhase)
    plan: Plan | None = None
    step_results: list[StepResult] = field(default_factory=list)
    config: AgentConfig = field(default_factory=AgentConfig)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None


# ---------------------------------------------------------------------------
# Collaborator records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OutputRef:
    id: str
    storage: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "storage": self.storage}


@dataclass(frozen=True)
class ToolOutputRecord:
    id: str
    tool_name: str
    message_id: str
    output: Any
    parameters: dict[str, Any] = field(default_factory=dict)
    conversation_id: str | None = None
    success: bool = True
    created_at: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class ApprovalRequest:
    approval_id: str
    execution_id: str
    tool_name: str
    args: dict[str, Any]
    iteration: int
    preview: Any = None
    conversation_id: str | None = None
    message_id: str | None = None
    timestamp_ms: int = field(default_factory=now_ms)
