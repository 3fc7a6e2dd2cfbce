"""Base tool interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from stepwise.models import ToolResultMode


@dataclass
class ToolResult:
    success: bool
    output: Any = None
    error: str = ""


@dataclass(frozen=True)
class ToolContext:
    """Identity of the run invoking a tool."""

    session_id: str | None = None
    conversation_id: str | None = None
    message_id: str | None = None


@dataclass
class ToolMetadata:
    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)
    requires_approval: bool = False
    result_mode: ToolResultMode = ToolResultMode.AUTO

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
            "requires_approval": self.requires_approval,
            "result_mode": self.result_mode.value,
        }


class BaseTool(ABC):
    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def description(self) -> str: ...

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON Schema for tool parameters."""
        ...

    @property
    def requires_approval(self) -> bool:
        """Default approval requirement; stored overrides take precedence."""
        return False

    @property
    def result_mode(self) -> ToolResultMode:
        return ToolResultMode.AUTO

    @abstractmethod
    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult: ...

    async def preview(self, args: dict[str, Any], context: ToolContext) -> Any:
        """Human-readable preview shown with an approval request. None = no preview."""
        return None

    def metadata(self) -> ToolMetadata:
        return ToolMetadata(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
            requires_approval=self.requires_approval,
            result_mode=self.result_mode,
        )
