"""Tool interface, registry and the built-in output introspection tools."""

from stepwise.tools.base import BaseTool, ToolContext, ToolMetadata, ToolResult
from stepwise.tools.registry import ToolRegistry
from stepwise.tools.tool_outputs import register_tool_output_tools

__all__ = [
    "BaseTool",
    "ToolContext",
    "ToolMetadata",
    "ToolResult",
    "ToolRegistry",
    "register_tool_output_tools",
]
