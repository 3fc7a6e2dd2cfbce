"""Introspection tools over persisted tool outputs (``tool_outputs.*``).

Paths are RFC 9535 JSONPath queries evaluated by python-jsonpath: names,
indexes and slices, wildcards, recursive descent (``..``), unions and filter
selectors such as ``$.users[?@.age > 30].name``. A query always starts at the
root identifier ``$``.
"""

from __future__ import annotations

import functools
import random
from typing import Any

import jsonpath

from stepwise.core.metadata import json_type_name
from stepwise.errors import ToolError
from stepwise.models import ToolOutputRecord, ToolResultMode
from stepwise.storage.outputs import ToolOutputStore
from stepwise.tools.base import BaseTool, ToolContext, ToolResult
from stepwise.tools.registry import ToolRegistry
from stepwise.utils.text import to_json


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

@functools.lru_cache(maxsize=256)
def _compile(path: str) -> Any:
    return jsonpath.compile(path)


def compile_path(path: str) -> Any:
    """Parse ``path`` once; every syntax problem becomes a ToolError."""
    if not isinstance(path, str):
        raise ToolError("Each path must be a string")
    if not path.strip().startswith("$"):
        raise ToolError(f"Invalid JSONPath '{path}': must start with '$'")
    try:
        return _compile(path.strip())
    except jsonpath.JSONPathError as exc:
        raise ToolError(f"Invalid JSONPath '{path}': {exc}") from exc


def query_path(value: Any, path: str) -> list[Any]:
    """All nodes of ``value`` matched by ``path``."""
    compiled = compile_path(path)
    try:
        return compiled.findall(value)
    except jsonpath.JSONPathError as exc:
        raise ToolError(f"Invalid JSONPath '{path}': {exc}") from exc


# ---------------------------------------------------------------------------
# Stats helpers
# ---------------------------------------------------------------------------

def format_bytes(size: int) -> str:
    kb = 1024
    mb = kb * 1024
    gb = mb * 1024
    if size >= gb:
        return f"{size / gb:.1f} GB"
    if size >= mb:
        return f"{size / mb:.1f} MB"
    if size >= kb:
        return f"{size / kb:.1f} KB"
    return f"{size} B"


def sample_indices(length: int) -> list[int]:
    """First, middle and last index, deduplicated."""
    if length == 0:
        return []
    indices = {0, length - 1}
    if length > 2:
        indices.add(length // 2)
    return sorted(indices)


def array_item_type(items: list[Any]) -> str:
    if not items:
        return "unknown"
    first = json_type_name(items[0])
    if all(json_type_name(item) == first for item in items[:10]):
        return first
    return "mixed"


class _Stats:
    def __init__(self) -> None:
        self.max_depth = 0
        self.total_keys = 0
        self.total_values = 0
        self.types = {t: 0 for t in ("object", "array", "string", "number", "boolean", "null")}
        self.arrays: list[dict[str, Any]] = []
        self.objects: list[dict[str, Any]] = []

    def walk(self, value: Any, path: str, depth: int, max_depth: int, sample_arrays: bool) -> None:
        self.max_depth = max(self.max_depth, depth)
        self.total_values += 1
        self.types[json_type_name(value)] += 1
        if isinstance(value, dict):
            self.total_keys += len(value)
            self.objects.append({"path": path, "keys": len(value)})
            if depth < max_depth:
                for key, child in value.items():
                    self.walk(child, f"{path}.{key}", depth + 1, max_depth, sample_arrays)
        elif isinstance(value, list):
            item_type = array_item_type(value) if sample_arrays else "unknown"
            self.arrays.append({"path": path, "length": len(value), "item_type": item_type})
            if depth < max_depth:
                for idx in sample_indices(len(value)):
                    self.walk(value[idx], f"{path}[{idx}]", depth + 1, max_depth, sample_arrays)


def infer_schema(value: Any, depth: int, max_depth: int, sample_arrays: bool) -> dict[str, Any]:
    """A JSON Schema sketch of ``value``; arrays are typed from their first item."""
    if depth >= max_depth:
        return {}
    if isinstance(value, dict):
        return {
            "type": "object",
            "properties": {
                key: infer_schema(child, depth + 1, max_depth, sample_arrays)
                for key, child in value.items()
            },
        }
    if isinstance(value, list):
        items = infer_schema(value[0], depth + 1, max_depth, sample_arrays) if sample_arrays and value else {}
        return {"type": "array", "items": items}
    return {"type": json_type_name(value)}


def count_nested_items(value: Any) -> int:
    if not isinstance(value, list):
        return 0
    return len(value) + sum(count_nested_items(item) for item in value if isinstance(item, list))


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

_ID_PROPERTY = {"type": "string", "description": "The tool output reference ID"}


class _OutputTool(BaseTool):
    def __init__(self, store: ToolOutputStore) -> None:
        self._store = store

    @property
    def result_mode(self) -> ToolResultMode:
        return ToolResultMode.INLINE

    async def _load(self, args: dict[str, Any]) -> ToolOutputRecord:
        output_id = str(args.get("id") or "").strip()
        if not output_id:
            raise ToolError("Missing 'id'")
        record = await self._store.read(output_id)
        if record is None:
            raise ToolError(f"Tool output not found: {output_id}")
        return record


class ReadOutputTool(_OutputTool):
    @property
    def name(self) -> str:
        return "tool_outputs.read"

    @property
    def description(self) -> str:
        return "Read a stored tool output by id."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "id": {"type": "string"},
                "conversation_id": {"type": "string"},
            },
            "required": ["id"],
            "additionalProperties": False,
        }

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        record = await self._load(args)
        expected = args.get("conversation_id")
        if isinstance(expected, str):
            if record.conversation_id is None:
                raise ToolError("Stored output missing conversation_id")
            if record.conversation_id != expected:
                raise ToolError("conversation_id does not match stored record")
        return ToolResult(success=True, output={
            "id": record.id,
            "tool_name": record.tool_name,
            "conversation_id": record.conversation_id,
            "message_id": record.message_id,
            "created_at": record.created_at,
            "success": record.success,
            "parameters": record.parameters,
            "output": record.output,
        })


class ListOutputsTool(_OutputTool):
    @property
    def name(self) -> str:
        return "tool_outputs.list"

    @property
    def description(self) -> str:
        return "List stored tool outputs with filtering, sorting, and preview capabilities."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "conversation_id": {"type": "string", "description": "Filter by conversation ID"},
                "tool_name": {"type": "string", "description": "Filter by tool name"},
                "success": {"type": "boolean", "description": "Filter by success status"},
                "after": {"type": "integer", "description": "Only outputs created after this time (ms)"},
                "before": {"type": "integer", "description": "Only outputs created before this time (ms)"},
                "limit": {"type": "integer", "minimum": 1, "maximum": 100, "default": 20},
                "offset": {"type": "integer", "minimum": 0, "default": 0},
                "sort_by": {"type": "string", "enum": ["created_at", "size", "tool_name"],
                            "default": "created_at"},
                "sort_order": {"type": "string", "enum": ["asc", "desc"], "default": "desc"},
                "include_preview": {"type": "boolean", "default": True},
                "preview_length": {"type": "integer", "minimum": 0, "maximum": 500, "default": 100},
            },
            "additionalProperties": False,
        }

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        limit = min(int(args.get("limit", 20)), 100)
        offset = int(args.get("offset", 0))
        include_preview = bool(args.get("include_preview", True))
        preview_length = min(int(args.get("preview_length", 100)), 500)

        records, total = await self._store.list(
            conversation_id=args.get("conversation_id"),
            tool_name=args.get("tool_name"),
            success=args.get("success"),
            after=args.get("after"),
            before=args.get("before"),
            limit=limit,
            offset=offset,
            sort_by=args.get("sort_by", "created_at"),
            descending=args.get("sort_order", "desc") == "desc",
        )

        outputs = []
        for record in records:
            serialized = to_json(record.output)
            summary: dict[str, Any] = {"type": json_type_name(record.output)}
            if isinstance(record.output, dict):
                summary["keys"] = len(record.output)
            elif isinstance(record.output, list):
                summary["items"] = len(record.output)
            entry: dict[str, Any] = {
                "id": record.id,
                "tool_name": record.tool_name,
                "conversation_id": record.conversation_id,
                "message_id": record.message_id,
                "created_at": record.created_at,
                "success": record.success,
                "size_bytes": len(serialized.encode()),
                "summary": summary,
            }
            if include_preview:
                entry["preview"] = serialized[:preview_length]
            outputs.append(entry)

        return ToolResult(success=True, output={
            "outputs": outputs,
            "total": total,
            "has_more": offset + limit < total,
        })


class StatsOutputTool(_OutputTool):
    @property
    def name(self) -> str:
        return "tool_outputs.stats"

    @property
    def description(self) -> str:
        return (
            "Get statistics about a stored tool output: size, structure, types, arrays, objects "
            "and an optional inferred JSON schema."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "id": _ID_PROPERTY,
                "include_schema": {"type": "boolean", "default": False},
                "max_depth": {"type": "integer", "minimum": 1, "maximum": 10, "default": 5},
                "sample_arrays": {"type": "boolean", "default": True},
                "paths": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Specific paths to analyze (root if not specified)",
                },
            },
            "required": ["id"],
            "additionalProperties": False,
        }

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        record = await self._load(args)
        max_depth = min(int(args.get("max_depth", 5)), 10)
        sample_arrays = bool(args.get("sample_arrays", True))

        paths = args.get("paths")
        if isinstance(paths, list):
            targets = [
                (path, node)
                for path in paths if isinstance(path, str)
                for node in query_path(record.output, path)
            ]
        else:
            targets = [("$", record.output)]

        stats = _Stats()
        for path, node in targets:
            stats.walk(node, path, 0, max_depth, sample_arrays)

        serialized = to_json(record.output)
        size = len(serialized.encode())
        output: dict[str, Any] = {
            "id": record.id,
            "tool_name": record.tool_name,
            "created_at": record.created_at,
            "size": {
                "bytes": size,
                "characters": len(serialized),
                "formatted": format_bytes(size),
            },
            "structure": {
                "root_type": json_type_name(record.output),
                "max_depth": stats.max_depth,
                "total_keys": stats.total_keys,
                "total_values": stats.total_values,
            },
            "types": stats.types,
            "arrays": stats.arrays,
            "objects": stats.objects,
        }
        if args.get("include_schema"):
            output["schema"] = infer_schema(record.output, 0, max_depth, sample_arrays)
        return ToolResult(success=True, output=output)


class ExtractOutputTool(_OutputTool):
    @property
    def name(self) -> str:
        return "tool_outputs.extract"

    @property
    def description(self) -> str:
        return "Extract specific fields from a stored tool output using JSONPath expressions."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "id": _ID_PROPERTY,
                "paths": {
                    "type": "array",
                    "items": {"type": "string"},
                    "minItems": 1,
                    "description": "JSONPath expressions to extract",
                },
                "flatten": {"type": "boolean", "default": False},
                "include_paths": {"type": "boolean", "default": False},
                "default_value": {"description": "Value for paths that match nothing"},
            },
            "required": ["id", "paths"],
            "additionalProperties": False,
        }

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        paths = args.get("paths")
        if not isinstance(paths, list):
            raise ToolError("Missing 'paths' array")
        if not paths:
            raise ToolError("'paths' array must not be empty")
        record = await self._load(args)
        default = args.get("default_value")
        flatten = bool(args.get("flatten", False))
        include_paths = bool(args.get("include_paths", False))

        missing: list[str] = []
        matches: list[tuple[str, list[Any]]] = []
        for path in paths:
            nodes = query_path(record.output, path)
            if not nodes:
                missing.append(path)
            matches.append((path, nodes))

        if flatten:
            extracted: Any = []
            for _, nodes in matches:
                if nodes:
                    extracted.extend(nodes)
                elif "default_value" in args:
                    extracted.append(default)
        elif include_paths:
            extracted = [{"path": path, "value": nodes or default} for path, nodes in matches]
        else:
            extracted = {path: nodes or default for path, nodes in matches}

        output: dict[str, Any] = {"extracted": extracted}
        if missing:
            output["missing_paths"] = missing
        return ToolResult(success=True, output=output)


_COUNT_TYPES = ("array_length", "object_keys", "matches", "nested_total")


class CountOutputTool(_OutputTool):
    @property
    def name(self) -> str:
        return "tool_outputs.count"

    @property
    def description(self) -> str:
        return "Count items in arrays, object keys, or matches without loading full data."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "id": _ID_PROPERTY,
                "counts": {
                    "type": "array",
                    "minItems": 1,
                    "items": {
                        "type": "object",
                        "properties": {
                            "name": {"type": "string"},
                            "path": {"type": "string"},
                            "count_type": {"type": "string", "enum": list(_COUNT_TYPES),
                                           "default": "array_length"},
                        },
                        "required": ["name", "path"],
                        "additionalProperties": False,
                    },
                },
            },
            "required": ["id", "counts"],
            "additionalProperties": False,
        }

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        ops = args.get("counts")
        if not isinstance(ops, list):
            raise ToolError("Missing 'counts' array")
        record = await self._load(args)
        counts: dict[str, int] = {}
        for op in ops:
            name = op.get("name") if isinstance(op, dict) else None
            path = op.get("path") if isinstance(op, dict) else None
            if not isinstance(name, str):
                raise ToolError("Each count operation requires 'name'")
            if not isinstance(path, str):
                raise ToolError("Each count operation requires 'path'")
            count_type = op.get("count_type", "array_length")
            nodes = query_path(record.output, path)
            if count_type == "array_length":
                count = sum(len(n) for n in nodes if isinstance(n, list))
            elif count_type == "object_keys":
                count = sum(len(n) for n in nodes if isinstance(n, dict))
            elif count_type == "matches":
                count = len(nodes)
            elif count_type == "nested_total":
                count = sum(count_nested_items(n) for n in nodes)
            else:
                raise ToolError(f"Unknown count_type '{count_type}'")
            counts[name] = count
        return ToolResult(success=True, output={"counts": counts, "total": sum(counts.values())})


class SampleOutputTool(_OutputTool):
    @property
    def name(self) -> str:
        return "tool_outputs.sample"

    @property
    def description(self) -> str:
        return "Sample items from an array in a stored tool output (random, first, last or systematic)."

    @property
    def result_mode(self) -> ToolResultMode:
        return ToolResultMode.AUTO

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "id": _ID_PROPERTY,
                "path": {"type": "string", "description": "JSONPath to the array to sample from"},
                "size": {"type": "integer", "minimum": 1, "maximum": 1000},
                "strategy": {"type": "string", "enum": ["random", "first", "last", "systematic"],
                             "default": "random"},
                "seed": {"type": "integer"},
                "stride": {"type": "integer", "minimum": 1},
            },
            "required": ["id", "path", "size"],
            "additionalProperties": False,
        }

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        path = args.get("path")
        if not isinstance(path, str):
            raise ToolError("Missing 'path'")
        if not isinstance(args.get("size"), int):
            raise ToolError("Missing 'size'")
        record = await self._load(args)
        items = next((n for n in query_path(record.output, path) if isinstance(n, list)), None)
        if items is None:
            raise ToolError(f"Path '{path}' did not match an array")

        total = len(items)
        size = min(int(args["size"]), total)
        strategy = args.get("strategy", "random")
        if strategy == "first":
            indices = list(range(size))
        elif strategy == "last":
            indices = list(range(total - size, total))
        elif strategy == "systematic":
            stride = max(int(args.get("stride", 1)), 1)
            indices = list(range(0, total, stride))[:size]
        else:
            indices = sorted(random.Random(args.get("seed")).sample(range(total), size))

        return ToolResult(success=True, output={
            "sample": [items[i] for i in indices],
            "total_items": total,
            "sample_size": len(indices),
            "indices": indices,
        })


def register_tool_output_tools(registry: ToolRegistry, store: ToolOutputStore) -> None:
    for tool_cls in (
        ReadOutputTool,
        ListOutputsTool,
        StatsOutputTool,
        ExtractOutputTool,
        CountOutputTool,
        SampleOutputTool,
    ):
        registry.register(tool_cls(store))
