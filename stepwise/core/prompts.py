"""Controller prompt, limits block and the structured-output schema."""

from __future__ import annotations

from typing import Any, Iterable

from stepwise.config import AgentConfig
from stepwise.core.actions import JSON_END_MARKER, JSON_START_MARKER
from stepwise.tools.base import ToolMetadata
from stepwise.utils.text import to_json

CONTROLLER_PROMPT = f"""\
You are the controller for an autonomous agent. Decide the SINGLE next action based on the current context.

Your job:
- Pick exactly one action: next_step, complete, guardrail_stop, or ask_user.
- If you need one tool, choose next_step with type="tool" and supply the tool name and args \
(args must be a JSON string encoding an object, e.g. "{{\\"path\\":\\"...\\"}}").
- If you need multiple independent tools, choose next_step with type="tool_batch" and provide \
"tools": [{{ "tool": "...", "args": "{{...}}", "output_mode"?: "auto|inline|persist" }}].
- If you can answer now without tools, choose complete and return the final message.
- If action is next_step, include a mandatory top-level "thinking" object. Use it to reason from evidence to action.
- If the user needs a reply but no tools are required, use complete (preferred) or next_step(type="respond").
- For tool steps, you may set output_mode: "auto" (default), "inline", or "persist". For tool_batch, set \
output_mode per tool entry. Prefer persist when output is likely large or when only a compact summary is \
needed before follow-up extraction.
- If you need clarification from the user before continuing safely, use next_step(type="ask_user") with a direct question.
- Respect the limits. If remaining turns or tool calls are zero, do NOT request more tools.
- Before choosing complete, scan AVAILABLE TOOLS and prefer using them to satisfy the user request. \
If a tool requires approval, request it rather than refusing.
- When a tool output is persisted, use tool_outputs.extract, tool_outputs.stats, tool_outputs.count or \
tool_outputs.sample to inspect it instead of loading the full output with tool_outputs.read.
- If output is persisted, do not invent IDs or values; call tool_outputs.extract to obtain exact values.
- For tool_outputs.* tools, id must be a prior tool ExecutionId/OutputRef.id, never an external resource id. \
If the latest persisted output is intended, omit id and it will be filled in.

Output MUST be exactly:
{JSON_START_MARKER}
{{single JSON object}}
{JSON_END_MARKER}
No markdown, no code fences, no extra text outside the markers.

Schema:
{{
  "action": "next_step" | "complete" | "guardrail_stop" | "ask_user",
  "thinking"?: {{"task"?: "...", "facts"?: [...], "decisions"?: [...], "risks"?: [...], "confidence"?: 0.0}},
  "type"?: "tool" | "tool_batch" | "respond" | "ask_user",
  "description"?: "...",
  "tool"?: "tool_name",
  "tools"?: [{{ "tool": "tool_name", "args"?: "{{ ... }}", "output_mode"?: "auto" | "inline" | "persist" }}],
  "args"?: "{{ ... }}",
  "output_mode"?: "auto" | "inline" | "persist",
  "message"?: "...",
  "reason"?: "...",
  "question"?: "...",
  "context"?: "...",
  "resume_to"?: "reflecting" | "controller"
}}

Notes:
- All fields except "action" are top-level. There is no nested "step" object.
- "type" can be inferred: "tools" implies tool_batch, "tool" implies tool, "question" implies ask_user, \
"message" implies respond.
- Tool args go in "args" as a JSON string encoding an object. Use "{{}}" when no args are needed.
- output_mode is advisory; oversized output may be persisted anyway.
- When action="complete", include "message" with the final response.
- When action="guardrail_stop", include "reason" and optionally "message" for a user-facing note.
"""


def tools_message(tools: Iterable[ToolMetadata]) -> str:
    return "AVAILABLE TOOLS (JSON):\n" + to_json([tool.to_dict() for tool in tools])


def limits_message(config: AgentConfig) -> str:
    return (
        "LIMITS:\n"
        f"max_total_llm_turns={config.max_total_llm_turns}\n"
        f"max_tool_calls_per_step={config.max_tool_calls_per_step}\n"
        'Hard rule: for action="next_step" with type="tool_batch", tools length MUST be '
        "<= max_tool_calls_per_step."
    )


_OUTPUT_MODES = ["auto", "inline", "persist"]


def controller_output_format() -> dict[str, Any]:
    """JSON-schema output format for providers with structured output.

    Kept flat with ``args`` as a string: strict structured-output modes reject
    free-form objects and conditional keywords.
    """
    string = {"type": "string"}
    string_list = {"type": "array", "items": string}
    schema = {
        "type": "object",
        "additionalProperties": False,
        "required": ["action"],
        "properties": {
            "action": {
                "type": "string",
                "enum": ["next_step", "complete", "guardrail_stop", "ask_user"],
            },
            "thinking": {
                "type": "object",
                "additionalProperties": True,
                "properties": {
                    "task": string,
                    "facts": string_list,
                    "decisions": string_list,
                    "risks": string_list,
                    "confidence": {"type": "number"},
                },
            },
            "type": {"type": "string", "enum": ["tool", "tool_batch", "respond", "ask_user"]},
            "description": string,
            "tool": string,
            "tools": {
                "type": "array",
                "items": {
                    "type": "object",
                    "additionalProperties": False,
                    "required": ["tool"],
                    "properties": {
                        "tool": string,
                        "args": string,
                        "output_mode": {"type": "string", "enum": _OUTPUT_MODES},
                    },
                },
            },
            "args": string,
            "output_mode": {"type": "string", "enum": _OUTPUT_MODES},
            "message": string,
            "reason": string,
            "question": string,
            "context": string,
            "resume_to": {"type": "string", "enum": ["reflecting", "controller"]},
        },
    }
    return {"type": "json_schema", "schema": schema}
