"""Exception hierarchy.

Run-level (fatal) errors derive from ``AgentError`` and abort
``Controller.run``. Step-level failures are never raised past the tool
executor; they are captured in a failed ``StepResult`` instead. ``ToolError``
is what tool implementations raise to report such a failure.
"""

from __future__ import annotations


class AgentError(Exception):
    """Fatal error that ends an agent run."""


class RunCancelled(AgentError):
    def __init__(self) -> None:
        super().__init__("Cancelled")


class TurnLimitExceeded(AgentError):
    def __init__(self, limit: int) -> None:
        super().__init__("Exceeded maximum LLM turns")
        self.limit = limit


class ToolCallLimitExceeded(AgentError):
    def __init__(self, limit: int) -> None:
        super().__init__("Exceeded tool call limit")
        self.limit = limit


class MissingPlanError(AgentError):
    def __init__(self) -> None:
        super().__init__("Missing plan")


class ActionDecodeError(AgentError):
    """The model response could not be turned into a valid action."""


class ApprovalChannelClosed(AgentError):
    def __init__(self, approval_id: str) -> None:
        super().__init__("Approval channel closed")
        self.approval_id = approval_id


class GuardrailStopped(AgentError):
    """The model halted the run itself."""

    def __init__(self, reason: str, detail: str) -> None:
        super().__init__(detail)
        self.reason = reason
        self.detail = detail


class ToolError(Exception):
    """Raised by a tool to report a failed invocation."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message
