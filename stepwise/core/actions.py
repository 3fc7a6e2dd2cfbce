"""Controller action decoding.

The model answers every controller turn with one JSON object. This module
extracts that object from the raw response text, rewrites the field aliases
models commonly produce onto the canonical keys, and validates the result into
one of four typed actions. Validation fails closed: a response that explains
its intent in ``thinking`` but never names a tool, message or question is
rejected rather than guessed at.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union

from stepwise.errors import ActionDecodeError
from stepwise.models import OutputMode, ResumeTarget, StepType, ToolBatchCall

JSON_START_MARKER = "=====JSON_START====="
JSON_END_MARKER = "=====JSON_END====="

_TOOL_ALIASES = ("tool_name", "name")
_ARGS_ALIASES = ("tool_args", "arguments", "tool_input")
_TOOLS_ALIASES = ("tool_calls", "calls")
_MESSAGE_ALIASES = ("response", "content")


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NextStep:
    """Execute one step. ``step_type`` is the effective (possibly inferred) type."""

    step_type: StepType
    thinking: Any = None
    description: str | None = None
    tool: str | None = None
    tools: tuple[ToolBatchCall, ...] = ()
    args: Any = None
    output_mode: OutputMode = OutputMode.AUTO
    message: str | None = None
    question: str | None = None
    context: str | None = None
    resume_to: ResumeTarget | None = None


@dataclass(frozen=True)
class Complete:
    message: str


@dataclass(frozen=True)
class GuardrailStop:
    reason: str
    message: str | None = None


@dataclass(frozen=True)
class AskUser:
    question: str
    context: str | None = None
    resume_to: ResumeTarget = ResumeTarget.REFLECTING


ControllerAction = Union[NextStep, Complete, GuardrailStop, AskUser]


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def _extract_marked_json(raw: str) -> str | None:
    start = raw.find(JSON_START_MARKER)
    if start < 0:
        return None
    after_start = start + len(JSON_START_MARKER)
    end = raw.find(JSON_END_MARKER, after_start)
    if end < 0:
        return None
    return raw[after_start:end].strip()


def extract_json(raw: str) -> str:
    """Pull the JSON text out of a model response.

    Priority: the marked envelope, then a fenced code block, then the
    trimmed text itself.
    """
    trimmed = raw.strip()
    marked = _extract_marked_json(trimmed)
    if marked is not None:
        return marked
    if not trimmed.startswith("```"):
        return trimmed

    lines = trimmed.splitlines()[1:]
    if lines and lines[-1].strip().startswith("```"):
        lines.pop()
    return "\n".join(lines).strip()


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------

def _move_alias(obj: dict[str, Any], canonical: str, aliases: tuple[str, ...]) -> None:
    for alias in aliases:
        if canonical not in obj and alias in obj:
            obj[canonical] = obj.pop(alias)


def normalize_action_payload(value: Any) -> Any:
    """Rewrite alias keys onto canonical ones. Never overwrites a canonical key."""
    if not isinstance(value, dict):
        return value
    out = dict(value)

    # older prompts nested the step fields
    nested = out.pop("step", None)
    if nested is None:
        nested = out.pop("next_step", None)
    if isinstance(nested, dict):
        for key, val in nested.items():
            out.setdefault(key, val)

    _move_alias(out, "tool", _TOOL_ALIASES)
    _move_alias(out, "args", _ARGS_ALIASES)
    _move_alias(out, "tools", _TOOLS_ALIASES)

    tools = out.get("tools")
    if isinstance(tools, list):
        entries = []
        for entry in tools:
            if isinstance(entry, dict):
                entry = dict(entry)
                _move_alias(entry, "tool", _TOOL_ALIASES)
                _move_alias(entry, "args", _ARGS_ALIASES)
            entries.append(entry)
        out["tools"] = entries

    _move_alias(out, "message", _MESSAGE_ALIASES)
    return out


def normalize_tool_args(value: Any) -> Any:
    """Coerce model-supplied tool args into an object.

    Args usually arrive as JSON text because strict output schemas cannot
    describe a free-form object.
    """
    if value is None:
        return {}
    if not isinstance(value, str):
        return value
    trimmed = value.strip()
    if not trimmed:
        return {}
    try:
        parsed = json.loads(trimmed)
    except ValueError:
        return {"input": value}
    if isinstance(parsed, dict):
        return parsed
    return {"value": parsed}


def parse_output_mode(value: str | None) -> OutputMode:
    if value is None:
        return OutputMode.AUTO
    mode = OutputMode.parse(value)
    if mode is None:
        raise ActionDecodeError(
            f"Invalid output_mode '{value}': expected one of auto, inline, persist"
        )
    return mode


# ---------------------------------------------------------------------------
# Field access
# ---------------------------------------------------------------------------

def _opt_str(obj: dict[str, Any], key: str) -> str | None:
    value = obj.get(key)
    if value is None or isinstance(value, str):
        return value
    raise ActionDecodeError(
        f"Invalid controller output: field '{key}' must be a string"
    )


def _req_str(obj: dict[str, Any], key: str, action: str) -> str:
    value = _opt_str(obj, key)
    if value is None:
        raise ActionDecodeError(
            f"Invalid controller output: {action} requires field '{key}'"
        )
    return value


def _non_blank(value: str | None) -> bool:
    return value is not None and bool(value.strip())


def _first_non_blank(obj: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = obj.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _resume_target(obj: dict[str, Any]) -> ResumeTarget | None:
    raw = _opt_str(obj, "resume_to")
    if raw is None:
        return None
    try:
        return ResumeTarget(raw)
    except ValueError:
        raise ActionDecodeError(
            f"Invalid controller output: resume_to must be reflecting or controller, got '{raw}'"
        ) from None


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def infer_step_type(
    tool: str | None,
    tools: list[Any] | None,
    message: str | None,
    question: str | None,
) -> StepType | None:
    if tools:
        return StepType.TOOL_BATCH
    if _non_blank(tool):
        return StepType.TOOL
    if _non_blank(question):
        return StepType.ASK_USER
    if _non_blank(message):
        return StepType.RESPOND
    return None


def _parse_batch_calls(raw: Any) -> list[dict[str, Any]] | None:
    if raw is None:
        return None
    if not isinstance(raw, list):
        raise ActionDecodeError("Invalid controller output: field 'tools' must be an array")
    for idx, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ActionDecodeError(
                f"Invalid controller output: tools[{idx}] must be an object"
            )
        if not isinstance(entry.get("tool"), str):
            raise ActionDecodeError(
                f"Invalid controller output: tools[{idx}] requires string field 'tool'"
            )
        output_mode = entry.get("output_mode")
        if output_mode is not None and not isinstance(output_mode, str):
            raise ActionDecodeError(
                f"Invalid controller output: tools[{idx}].output_mode must be a string"
            )
    return raw


def _parse_next_step(obj: dict[str, Any]) -> NextStep:
    if "thinking" not in obj:
        raise ActionDecodeError("Invalid controller output: next_step requires field 'thinking'")

    explicit_type = _opt_str(obj, "type")
    description = _opt_str(obj, "description")
    tool = _opt_str(obj, "tool")
    tools = _parse_batch_calls(obj.get("tools"))
    output_mode = _opt_str(obj, "output_mode")
    message = _opt_str(obj, "message")
    question = _opt_str(obj, "question")
    context = _opt_str(obj, "context")
    resume_to = _resume_target(obj)

    if explicit_type is not None:
        try:
            step_type = StepType(explicit_type)
        except ValueError:
            raise ActionDecodeError(f"Unknown step type: {explicit_type}") from None
    else:
        inferred = infer_step_type(tool, tools, message, question)
        if inferred is None:
            raise ActionDecodeError(
                "Cannot determine step type: provide 'type' or 'tool'/'message'/'question'"
            )
        step_type = inferred

    mode = OutputMode.AUTO
    calls: list[ToolBatchCall] = []
    if step_type is StepType.TOOL:
        if not _non_blank(tool):
            raise ActionDecodeError("next_step type=tool requires non-empty 'tool' field")
        mode = parse_output_mode(output_mode)
    elif step_type is StepType.TOOL_BATCH:
        if not tools:
            raise ActionDecodeError("next_step type=tool_batch requires non-empty 'tools' field")
        for idx, entry in enumerate(tools):
            if not entry["tool"].strip():
                raise ActionDecodeError(
                    f"next_step type=tool_batch requires non-empty tool name at tools[{idx}]"
                )
            raw_mode = entry.get("output_mode")
            entry_mode = OutputMode.AUTO if raw_mode is None else OutputMode.parse(raw_mode)
            if entry_mode is None:
                raise ActionDecodeError(
                    f"Invalid output_mode '{entry['output_mode']}' at tools[{idx}]: "
                    "expected one of auto, inline, persist"
                )
            calls.append(ToolBatchCall(
                tool=entry["tool"].strip(),
                args=normalize_tool_args(entry.get("args")),
                output_mode=entry_mode,
            ))
    elif step_type is StepType.RESPOND:
        if not _non_blank(message):
            raise ActionDecodeError("next_step type=respond requires non-empty 'message' field")
    elif step_type is StepType.ASK_USER:
        if not _non_blank(question):
            raise ActionDecodeError("next_step type=ask_user requires non-empty 'question' field")

    return NextStep(
        step_type=step_type,
        thinking=obj.get("thinking"),
        description=description,
        tool=tool.strip() if tool else tool,
        tools=tuple(calls),
        args=normalize_tool_args(obj.get("args")),
        output_mode=mode,
        message=message,
        question=question,
        context=context,
        resume_to=resume_to,
    )


def parse_action(value: Any) -> ControllerAction:
    """Validate a decoded JSON value into a typed controller action."""
    obj = normalize_action_payload(value)
    if not isinstance(obj, dict):
        raise ActionDecodeError("Invalid controller output: expected a JSON object")

    action = obj.get("action")
    if action == "next_step":
        return _parse_next_step(obj)
    if action == "complete":
        return Complete(message=_req_str(obj, "message", "complete"))
    if action == "guardrail_stop":
        return GuardrailStop(
            reason=_req_str(obj, "reason", "guardrail_stop"),
            message=_opt_str(obj, "message"),
        )
    if action == "ask_user":
        resume_to = _resume_target(obj)
        return AskUser(
            question=_req_str(obj, "question", "ask_user"),
            context=_opt_str(obj, "context"),
            resume_to=resume_to or ResumeTarget.REFLECTING,
        )
    if action == "respond":
        # legacy shape
        message = _first_non_blank(obj, ("message", "response"))
        if message is not None:
            return Complete(message=message)
        raise ActionDecodeError("Invalid controller output: action=respond requires a message")
    if action is None:
        raise ActionDecodeError("Invalid controller output: missing field 'action'")
    raise ActionDecodeError(f"Invalid controller output: unknown action '{action}'")


def decode_action(raw_text: str) -> ControllerAction:
    """Extract, parse and validate one controller response."""
    json_text = extract_json(raw_text)
    try:
        value = json.loads(json_text)
    except ValueError as exc:
        raise ActionDecodeError(f"Invalid JSON: {exc}") from exc
    return parse_action(value)
