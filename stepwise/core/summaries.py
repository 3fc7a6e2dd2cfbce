"""Text summaries of tool executions fed back into the controller history."""

from __future__ import annotations

from typing import Any, Sequence

from stepwise.core.metadata import compute_output_metadata, strip_id_hints
from stepwise.core.tool_executor import output_ref_id
from stepwise.models import ToolExecutionRecord
from stepwise.utils.text import summarize_args, to_json, truncate_with_notice

SUMMARY_MAX_CHARS = 2_000
SUMMARY_MAX_ARGS_CHARS = 400
SUMMARY_MAX_METADATA_CHARS = 320
SUMMARY_MAX_RESULT_CHARS = 800

SUMMARY_HEADER = "[Tool executions]"


def _flag(value: bool) -> str:
    return "true" if value else "false"


def _result_field(result: Any, key: str) -> Any:
    if isinstance(result, dict):
        return result.get(key)
    return None


def _result_str(result: Any, key: str) -> str | None:
    value = _result_field(result, key)
    return value if isinstance(value, str) else None


def format_execution_block(record: ToolExecutionRecord) -> str:
    """Full summary of a single execution, including inline output when present."""
    result = record.result
    args = summarize_args(record.args, SUMMARY_MAX_ARGS_CHARS)
    output_ref = output_ref_id(result) if result is not None else None
    output_ref = output_ref or "none"

    if record.requested_output_mode is not None:
        requested = record.requested_output_mode.value
    else:
        requested = _result_str(result, "requested_output_mode") or "n/a"

    if record.resolved_output_mode is not None:
        resolved = record.resolved_output_mode.value
    else:
        resolved = _result_str(result, "resolved_output_mode")
        if resolved is None:
            if output_ref != "none":
                resolved = "persist"
            elif record.success:
                resolved = "inline"
            else:
                resolved = "n/a"

    forced_persist = record.forced_persist
    if forced_persist is None:
        raw_forced = _result_field(result, "forced_persist")
        forced_persist = raw_forced if isinstance(raw_forced, bool) else False
    forced_reason = record.forced_reason or _result_str(result, "forced_reason") or "none"

    is_persist = resolved == "persist"
    metadata = _result_field(result, "metadata")
    if metadata is None and result is not None and not is_persist:
        metadata = compute_output_metadata(result)
    if is_persist:
        metadata = strip_id_hints(metadata)
    if metadata is None:
        metadata_summary = "none"
    else:
        metadata_summary = truncate_with_notice(to_json(metadata), SUMMARY_MAX_METADATA_CHARS)

    summary = (
        f"Tool: {record.tool_name} | ExecutionId: {record.execution_id} | "
        f"Success: {_flag(record.success)} | RequestedOutputMode: {requested} | "
        f"ResolvedOutputMode: {resolved} | ForcedPersist: {_flag(forced_persist)} | "
        f"ForcedReason: {forced_reason} | OutputRef: {output_ref} | Args: {args} | "
        f"Metadata: {metadata_summary}"
    )

    if not record.success:
        error = record.error or "Tool execution failed"
        return f"{summary} | Error: {truncate_with_notice(error, SUMMARY_MAX_RESULT_CHARS)}"
    if is_persist:
        return (
            f"{summary} | Note: Exact values require tool_outputs.extract "
            "(omit id to hydrate latest output_ref)."
        )
    output = to_json(result) if result is not None else "none"
    return f"{summary} | Output: {output}"


def format_batch_line(record: ToolExecutionRecord) -> str:
    """Identity-only line for one execution of a multi-call step."""
    output_ref = (output_ref_id(record.result) if record.result is not None else None) or "none"
    if record.success:
        error = "none"
    else:
        error = truncate_with_notice(
            record.error or "Tool execution failed", SUMMARY_MAX_RESULT_CHARS // 4
        )
    return (
        f"Tool: {record.tool_name} | ExecutionId: {record.execution_id} | "
        f"Success: {_flag(record.success)} | OutputRef: {output_ref} | Error: {error}"
    )


def summarize_executions(records: Sequence[ToolExecutionRecord]) -> str | None:
    """Build the ``[Tool executions]`` history message, or None if nothing ran."""
    if not records:
        return None
    if len(records) > 1:
        blocks = [format_batch_line(record) for record in records]
    else:
        blocks = [format_execution_block(records[0])]
    body = truncate_with_notice("\n".join(blocks), SUMMARY_MAX_CHARS)
    return f"{SUMMARY_HEADER}\n{body}"
