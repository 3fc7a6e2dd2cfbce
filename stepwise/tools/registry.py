"""Tool registry with JSON-schema argument validation."""

from __future__ import annotations

from typing import Any, Iterable

from jsonschema import Draft7Validator, SchemaError
from jsonschema.exceptions import best_match

from stepwise.errors import ToolError
from stepwise.tools.base import BaseTool, ToolMetadata
from stepwise.utils.logging import get_logger

log = get_logger(__name__)


def _format_validation_error(path: Iterable[Any], message: str) -> str:
    dotted = ".".join(str(part) for part in path)
    if dotted:
        return f"{dotted}: {message}"
    return message


class ToolRegistry:
    def __init__(self, tools: Iterable[BaseTool] = ()) -> None:
        self._tools: dict[str, BaseTool] = {}
        self._validators: dict[str, Draft7Validator] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: BaseTool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool
        log.debug("tool_registered", tool=tool.name)

    def get(self, name: str) -> BaseTool | None:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def list_metadata(self) -> list[ToolMetadata]:
        return [self._tools[name].metadata() for name in sorted(self._tools)]

    def _validator(self, metadata: ToolMetadata) -> Draft7Validator:
        validator = self._validators.get(metadata.name)
        if validator is None:
            schema = metadata.parameters or {"type": "object"}
            Draft7Validator.check_schema(schema)
            validator = Draft7Validator(schema)
            self._validators[metadata.name] = validator
        return validator

    def validate_args(self, metadata: ToolMetadata, args: Any) -> None:
        """Raise ToolError when ``args`` does not satisfy the tool's schema."""
        try:
            validator = self._validator(metadata)
        except SchemaError as exc:
            raise ToolError(
                f"Invalid args for tool {metadata.name}: tool schema is invalid ({exc.message})"
            ) from exc

        first = best_match(validator.iter_errors(args))
        if first is not None:
            raise ToolError(
                f"Invalid args for tool {metadata.name}: "
                f"{_format_validation_error(first.path, first.message)}"
            )
